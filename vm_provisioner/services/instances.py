"""Instance records and bundle resolution.

Each provisioned VM is tracked by an :class:`InstanceRecord` whose token is
the durable handle on its bundle. Resolving the token and re-minting it are
separate, explicit calls; nothing here re-mints behind the caller's back.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from vm_provisioner.config import settings
from vm_provisioner.domain import InstanceRecord
from vm_provisioner.logging import LoggerFactory
from vm_provisioner.storage.bundle import BundleLayout
from vm_provisioner.storage.capability import CapabilityTokenBroker
from vm_provisioner.storage.exceptions import (
    CapabilityResolutionError,
    InstanceNotFoundError,
    UnsupportedBundleExtensionError,
)


log = LoggerFactory.for_bundle()


class InstanceRecordStore(Protocol):
    """Key/value store for instance records."""

    def create(self, record: InstanceRecord) -> str:
        ...

    def read(self, record_id: str) -> InstanceRecord:
        ...

    def update(self, record: InstanceRecord) -> None:
        ...

    def delete(self, record_id: str) -> None:
        ...

    def list(self) -> list[InstanceRecord]:
        ...


class JsonInstanceStore:
    """Instance records kept in one JSON file."""

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path or settings.get_setting("instance_store_path"))
        self._lock = threading.Lock()

    def _load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Instance store {self.path} is not a JSON object")
        return data

    def _save(self, data: dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        temp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        temp_path.replace(self.path)

    def create(self, record: InstanceRecord) -> str:
        with self._lock:
            data = self._load()
            if not record.record_id:
                record.record_id = uuid.uuid4().hex[:12]
            data[record.record_id] = record.to_dict()
            self._save(data)
        return record.record_id

    def read(self, record_id: str) -> InstanceRecord:
        with self._lock:
            data = self._load()
        if record_id not in data:
            raise InstanceNotFoundError(record_id)
        return InstanceRecord.from_dict(data[record_id])

    def update(self, record: InstanceRecord) -> None:
        with self._lock:
            data = self._load()
            if record.record_id not in data:
                raise InstanceNotFoundError(record.record_id)
            data[record.record_id] = record.to_dict()
            self._save(data)

    def delete(self, record_id: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(record_id, None) is None:
                raise InstanceNotFoundError(record_id)
            self._save(data)

    def list(self) -> list[InstanceRecord]:
        with self._lock:
            data = self._load()
        return [InstanceRecord.from_dict(item) for item in data.values()]


@dataclass(frozen=True)
class BundleResolution:
    layout: BundleLayout
    stale: bool = False


class InstanceManager:
    """Operations on one instance record."""

    def __init__(
        self,
        record: InstanceRecord,
        store: InstanceRecordStore,
        broker: CapabilityTokenBroker,
    ):
        self.record = record
        self.store = store
        self.broker = broker

    @classmethod
    def register(
        cls,
        layout: BundleLayout,
        token: bytes,
        store: InstanceRecordStore,
        broker: CapabilityTokenBroker,
    ) -> InstanceManager:
        """Create and persist a record for a freshly provisioned bundle."""
        record = InstanceRecord(
            name=layout.name,
            bundle_path=layout.path,
            token=token,
            created_at=datetime.now(),
        )
        store.create(record)
        log.info(f"Registered instance {record.name} ({record.record_id})")
        return cls(record, store, broker)

    @classmethod
    def link_existing(
        cls,
        path: Path | str,
        store: InstanceRecordStore,
        broker: CapabilityTokenBroker,
    ) -> InstanceManager:
        """Track a bundle that already exists on disk.

        A bundle that is already tracked under the same path returns its
        existing record instead of a duplicate.

        Raises:
            UnsupportedBundleExtensionError: If ``path`` is not a bundle path
            CapabilityResolutionError: If nothing exists at ``path``
        """
        layout = BundleLayout.from_path(Path(path).absolute())
        wanted = layout.path.resolve()
        for record in store.list():
            if Path(record.bundle_path).resolve() == wanted:
                log.info(f"Bundle {layout.path} is already tracked as {record.record_id}")
                return cls(record, store, broker)

        token = broker.mint(layout.path)
        manager = cls.register(layout, token, store, broker)
        manager.refresh_link_status()
        return manager

    @property
    def record_id(self) -> str:
        return self.record.record_id

    @property
    def name(self) -> str:
        return self.record.name

    def resolve(self) -> BundleResolution:
        """Resolve the record's token to a bundle layout.

        Raises:
            CapabilityResolutionError: If the token cannot be resolved at all
            UnsupportedBundleExtensionError: If it resolves to a non-bundle path
        """
        resolution = self.broker.resolve(self.record.token)
        return BundleResolution(
            layout=BundleLayout.from_path(resolution.path), stale=resolution.stale
        )

    def remint(self, layout: BundleLayout | None = None) -> bytes:
        """Mint a fresh token for ``layout`` (default: the recorded path) and store it."""
        layout = layout or BundleLayout.from_path(self.record.bundle_path)
        token = self.broker.mint(layout.path)
        self.record.token = token
        self.record.bundle_path = layout.path
        self.record.is_linked = True
        self.store.update(self.record)
        log.info(f"Re-minted capability token for {self.record.name}")
        return token

    def relink(self, path: Path | str) -> bytes:
        """Point the record at a bundle that moved to ``path``."""
        layout = BundleLayout.from_path(Path(path).absolute())
        token = self.remint(layout)
        log.info(f"Relinked {self.record.name} to {layout.path}")
        return token

    def refresh_link_status(self) -> bool:
        """Recompute ``is_linked`` from the token and the bundle on disk.

        The record is only written back when the flag changes.
        """
        try:
            linked = self.resolve().layout.path.is_dir()
        except (CapabilityResolutionError, UnsupportedBundleExtensionError) as error:
            log.debug(f"{self.record.name} is not linked: {error}")
            linked = False
        if linked != self.record.is_linked:
            self.record.is_linked = linked
            self.store.update(self.record)
            log.info(f"{self.record.name} is now {'linked' if linked else 'unlinked'}")
        return linked

    def rename(self, name: str) -> None:
        self.record.name = name
        self.store.update(self.record)

    def mark_started(self) -> None:
        self.record.last_ran_at = datetime.now()
        self.store.update(self.record)

    def delete(self) -> None:
        """Remove the record. The bundle on disk is left alone."""
        self.store.delete(self.record.record_id)
        log.info(f"Deleted instance record {self.record.record_id}")
