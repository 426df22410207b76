"""Binary launch configuration metadata.

The metadata file stored in each bundle is exactly 27 bytes::

    offset  0: tag 0    offset  1..8:  cpu cores    (u64 big-endian)
    offset  9: tag 1    offset 10..17: memory GiB   (u64 big-endian)
    offset 18: tag 2    offset 19..26: storage GiB  (u64 big-endian)

Reads are strict about length and tag bytes, because the file may have been
written by an incompatible version or simply be corrupted. Bytes past offset
26 are ignored.
"""

from __future__ import annotations

import struct
from pathlib import Path

from vm_provisioner.domain import LaunchConfiguration
from vm_provisioner.logging import LoggerFactory

from .exceptions import (
    MetadataDecodeError,
    MetadataReadError,
    MetadataWriteError,
)


log = LoggerFactory.for_bundle()

CPU_TAG = 0
MEMORY_TAG = 1
STORAGE_TAG = 2

METADATA_FORMAT = struct.Struct(">BQBQBQ")
METADATA_SIZE = METADATA_FORMAT.size  # 27
TAG_OFFSETS = {0: CPU_TAG, 9: MEMORY_TAG, 18: STORAGE_TAG}


def encode(config: LaunchConfiguration) -> bytes:
    """Pack a launch configuration into its 27-byte form."""
    return METADATA_FORMAT.pack(
        CPU_TAG,
        config.cpu_cores,
        MEMORY_TAG,
        config.memory_gib,
        STORAGE_TAG,
        config.storage_gib,
    )


def decode(data: bytes) -> LaunchConfiguration:
    """Unpack metadata bytes.

    Raises:
        MetadataDecodeError: If the buffer is short or a tag byte is wrong
    """
    if len(data) < METADATA_SIZE:
        raise MetadataDecodeError(
            f"expected at least {METADATA_SIZE} bytes, got {len(data)}",
            length=len(data),
        )
    for offset, expected in TAG_OFFSETS.items():
        if data[offset] != expected:
            raise MetadataDecodeError(
                f"tag at offset {offset} is {data[offset]}, expected {expected}",
                length=len(data),
            )
    _, cpu_cores, _, memory_gib, _, storage_gib = METADATA_FORMAT.unpack_from(data)
    return LaunchConfiguration(
        cpu_cores=cpu_cores, memory_gib=memory_gib, storage_gib=storage_gib
    )


def read_launch_configuration(path: Path) -> LaunchConfiguration:
    """Read and decode a metadata file.

    Raises:
        MetadataReadError: If the file cannot be read
        MetadataDecodeError: If its contents are malformed
    """
    try:
        data = Path(path).read_bytes()
    except OSError as error:
        raise MetadataReadError(path, error) from error
    return decode(data)


def write_launch_configuration(path: Path, config: LaunchConfiguration) -> None:
    """Encode and write a metadata file, replacing any previous contents.

    Raises:
        MetadataWriteError: If the file cannot be written
    """
    data = encode(config)
    try:
        Path(path).write_bytes(data)
    except OSError as error:
        raise MetadataWriteError(path, error) from error
    log.debug(f"Wrote launch configuration to {path}: {config.format_label()}")
