"""Durable capability tokens for filesystem locations.

A token is an opaque byte string that can be turned back into a path later.
Resolution can come back *stale*: the path still resolves but the token no
longer describes it faithfully (for example, the directory was replaced).
Deciding whether to re-mint is left to the caller; resolving never rewrites
anything.
"""

from __future__ import annotations

import json
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, Protocol

from vm_provisioner.logging import LoggerFactory

from .exceptions import CapabilityResolutionError


log = LoggerFactory.for_bundle()

TOKEN_VERSION = 1


@dataclass(frozen=True)
class TokenResolution:
    """Outcome of resolving a token."""

    path: Path
    stale: bool = False


class CapabilityTokenBroker(Protocol):
    """Mints and resolves capability tokens and grants scoped access."""

    def mint(self, path: Path) -> bytes:
        ...

    def resolve(self, token: bytes) -> TokenResolution:
        ...

    def scoped_access(self, path: Path):
        """Context manager holding access to ``path`` for its duration."""
        ...


class FileCapabilityBroker:
    """Capability broker backed by plain filesystem identity.

    Tokens record the path together with the device and inode it pointed to
    when minted. A token whose path now names a different inode resolves as
    stale; a token whose path no longer exists cannot be resolved.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[Path, int] = {}

    def mint(self, path: Path) -> bytes:
        """Create a token for an existing path.

        Raises:
            CapabilityResolutionError: If the path does not exist
        """
        path = Path(path).absolute()
        try:
            stat = path.stat()
        except OSError as error:
            raise CapabilityResolutionError(f"cannot mint token: {error}", path) from error
        payload = {
            "version": TOKEN_VERSION,
            "path": str(path),
            "device": stat.st_dev,
            "inode": stat.st_ino,
        }
        log.debug(f"Minted capability token for {path}")
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    def resolve(self, token: bytes) -> TokenResolution:
        """Resolve a token back to its path.

        Raises:
            CapabilityResolutionError: If the token is malformed or its path is gone
        """
        try:
            payload = json.loads(token.decode("utf-8"))
            path = Path(payload["path"])
            device = int(payload["device"])
            inode = int(payload["inode"])
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
            raise CapabilityResolutionError(f"malformed token: {error}") from error

        try:
            stat = path.stat()
        except FileNotFoundError as error:
            raise CapabilityResolutionError("path no longer exists", path) from error
        except OSError as error:
            raise CapabilityResolutionError(str(error), path) from error

        stale = (stat.st_dev, stat.st_ino) != (device, inode)
        if stale:
            log.warning(f"Capability token for {path} is stale")
        return TokenResolution(path=path, stale=stale)

    @contextmanager
    def scoped_access(self, path: Path) -> Generator[bool, None, None]:
        """Hold access to ``path`` while inside the block.

        Yields True when access was granted. Nested scopes on the same path
        are counted and released in order.
        """
        path = Path(path)
        granted = os.access(path, os.R_OK | os.W_OK) if path.exists() else os.access(
            path.parent, os.W_OK
        )
        with self._lock:
            self._active[path] = self._active.get(path, 0) + 1
        log.trace(f"Scoped access started for {path} (granted={granted})")
        try:
            yield granted
        finally:
            with self._lock:
                remaining = self._active.get(path, 1) - 1
                if remaining:
                    self._active[path] = remaining
                else:
                    self._active.pop(path, None)
            log.trace(f"Scoped access ended for {path}")

    def is_accessing(self, path: Path) -> bool:
        with self._lock:
            return Path(path) in self._active
