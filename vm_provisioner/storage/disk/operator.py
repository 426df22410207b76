"""Privileged disk image operations.

Creating and resizing raw disk images needs elevated rights, so the work is
done by an external helper process. This module only decides what to run and
interprets what comes back.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator, Callable, Sequence

from vm_provisioner.config import settings
from vm_provisioner.logging import LoggerFactory

from .command_runners import (
    build_create_command,
    build_resize_command,
    run_checked_helper,
    run_helper_with_progress,
)


log = LoggerFactory.for_disk()

_STREAM_DONE = object()


class DiskImageOperator:
    """Runs the disk helper to create or resize an image.

    Nothing here locks the image: callers must not run two operations
    against the same file at once.
    """

    def __init__(
        self,
        helper_path: str | None = None,
        image_format: str | None = None,
        privilege_command: Sequence[str] | None = None,
    ):
        self.helper_path = helper_path or settings.get_setting(
            "disk_helper_path", settings.DEFAULT_DISK_HELPER_PATH
        )
        self.image_format = image_format or settings.get_setting(
            "disk_image_format", settings.DEFAULT_DISK_IMAGE_FORMAT
        )
        if privilege_command is None:
            privilege_command = settings.get_setting("disk_helper_privilege_command") or []
        self.privilege_command = list(privilege_command)

    async def create(self, path: Path, size_gib: int) -> None:
        """Create a blank sparse image of ``size_gib`` at ``path``.

        Raises:
            DiskHelperLaunchError: If the helper cannot be started
            DiskHelperExitError: If the helper exits non-zero
        """
        command = build_create_command(
            self.helper_path, path, size_gib, self.image_format, self.privilege_command
        )
        log.info(f"Creating {size_gib} GiB disk image at {path}")
        await run_checked_helper(command, "create")
        log.info(f"Created disk image at {path}")

    async def resize(
        self,
        path: Path,
        size_gib: int,
        progress_sink: Callable[[int], None],
    ) -> None:
        """Resize the image at ``path``, reporting percentages to ``progress_sink``.

        The sink is registered before the helper starts, so no output is
        missed. It is called from the event loop and must not block.

        Raises:
            DiskHelperLaunchError: If the helper cannot be started
            DiskHelperExitError: If the helper exits non-zero
        """
        command = build_resize_command(
            self.helper_path, path, size_gib, self.privilege_command
        )
        log.info(f"Resizing disk image at {path} to {size_gib} GiB")
        await run_helper_with_progress(command, "resize", progress_sink)
        log.info(f"Resized disk image at {path}")

    async def iter_resize(self, path: Path, size_gib: int) -> AsyncIterator[int]:
        """Resize as an async stream of percentages.

        The stream ends normally on success and raises the helper's error
        after the last percentage on failure. Abandoning the stream early
        does not stop the helper; it runs to completion.
        """
        queue: asyncio.Queue = asyncio.Queue()

        async def _run() -> None:
            try:
                await self.resize(path, size_gib, queue.put_nowait)
            finally:
                queue.put_nowait(_STREAM_DONE)

        task = asyncio.create_task(_run())
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_DONE:
                    break
                yield item
        finally:
            await task
