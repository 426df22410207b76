"""HTTP download of restore images.

Streams the image to a temporary file next to its destination and then
renames it into place, so the destination either holds a complete download
or nothing.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Callable

import aiohttp

from vm_provisioner.config import settings
from vm_provisioner.logging import LoggerFactory, ThrottledLogger
from vm_provisioner.storage.exceptions import (
    DownloadWriteError,
    FileMoveError,
    RestoreImageMissingError,
    RestoreImageNetworkError,
    RestoreImageResponseError,
)

log = LoggerFactory.for_network()


class RestoreImageDownloader:
    """Downloads a restore image with fractional progress."""

    def __init__(self, chunk_size: int | None = None, timeout_seconds: float | None = None):
        """Initialize downloader.

        Args:
            chunk_size: Bytes per read, defaults to the ``download_chunk_size`` setting
            timeout_seconds: Total request timeout; None (the default) means none
        """
        self.chunk_size = chunk_size or settings.get_int(
            "download_chunk_size", settings.DEFAULT_DOWNLOAD_CHUNK_SIZE
        )
        if timeout_seconds is None:
            timeout_seconds = settings.get_setting("download_timeout_seconds")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def download(
        self,
        url: str,
        destination: Path,
        progress_callback: Callable[[float], None] | None = None,
    ) -> Path:
        """Download ``url`` to ``destination``.

        Args:
            url: Restore image URL
            destination: Final path; its directory must exist
            progress_callback: Optional callback(fraction) with fraction in [0.0, 1.0]

        Returns:
            The destination path

        Raises:
            RestoreImageNetworkError: Connection failed, reset or timed out
            RestoreImageResponseError: Server answered with a non-200 status
            RestoreImageMissingError: Temporary file disappeared before the move
            DownloadWriteError: Temporary file could not be created or written
            FileMoveError: Temporary file could not be renamed into place
        """
        destination = Path(destination)
        try:
            fd, temp_name = tempfile.mkstemp(
                dir=destination.parent, prefix=f".{destination.stem}-", suffix=".download"
            )
        except OSError as error:
            log.error(f"Cannot create a temporary file in {destination.parent}: {error}")
            raise DownloadWriteError(None, destination, error) from error
        os.close(fd)
        temp_path = Path(temp_name)

        await self._fetch(url, temp_path, destination, progress_callback)

        if not temp_path.exists():
            log.error(f"Downloaded file vanished from {temp_path}")
            raise RestoreImageMissingError(temp_path)
        try:
            os.replace(temp_path, destination)
        except OSError as error:
            raise FileMoveError(temp_path, destination, error) from error
        log.info(f"Restore image saved to {destination}")
        return destination

    async def _fetch(
        self,
        url: str,
        temp_path: Path,
        destination: Path,
        progress_callback: Callable[[float], None] | None,
    ) -> None:
        throttled = ThrottledLogger(log, interval_seconds=10.0)
        log.info(f"Downloading restore image from {url}")
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        log.error(f"Restore image request returned HTTP {resp.status}")
                        raise RestoreImageResponseError(url, resp.status)

                    total = resp.content_length
                    received = 0
                    with open(temp_path, "wb") as handle:
                        async for chunk in resp.content.iter_chunked(self.chunk_size):
                            handle.write(chunk)
                            received += len(chunk)
                            if total:
                                fraction = min(received / total, 1.0)
                                throttled.info(
                                    url, f"Downloaded {fraction * 100:.1f}% of restore image"
                                )
                                if progress_callback:
                                    progress_callback(fraction)

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.error(f"Network error during restore image download: {e}")
                raise RestoreImageNetworkError(url, e) from e
            except OSError as e:
                log.error(f"Failed writing restore image to {temp_path}: {e}")
                raise DownloadWriteError(temp_path, destination, e) from e

        if progress_callback:
            progress_callback(1.0)
