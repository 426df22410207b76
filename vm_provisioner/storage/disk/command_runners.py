"""Disk helper process execution with progress tracking."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Sequence

from vm_provisioner.logging import LoggerFactory

from ..exceptions import DiskHelperExitError, DiskHelperLaunchError
from .progress import ProgressLineParser


log = LoggerFactory.for_disk()

READ_SIZE = 4096


def build_create_command(
    helper: str,
    path: Path,
    size_gib: int,
    image_format: str,
    privilege_command: Sequence[str] = (),
) -> list[str]:
    """Command creating a blank, sparse, filesystem-less image."""
    return [
        *privilege_command,
        helper,
        "image",
        "create",
        "blank",
        "--fs",
        "none",
        "--format",
        image_format,
        "--size",
        f"{size_gib}GiB",
        str(path),
    ]


def build_resize_command(
    helper: str,
    path: Path,
    size_gib: int,
    privilege_command: Sequence[str] = (),
) -> list[str]:
    """Command resizing an existing image."""
    return [
        *privilege_command,
        helper,
        "image",
        "resize",
        "--size",
        f"{size_gib}GiB",
        str(path),
    ]


async def spawn_helper(command: list[str]) -> asyncio.subprocess.Process:
    """Start the helper with stdout and stderr merged into one pipe.

    Raises:
        DiskHelperLaunchError: If the process cannot be started at all
    """
    log.debug(f"Running command: {' '.join(command)}")
    try:
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as error:
        log.error(f"Failed to launch {command[0]}: {error}")
        raise DiskHelperLaunchError(command, error) from error


async def run_checked_helper(command: list[str], operation: str) -> str:
    """Run the helper to completion and raise if it fails.

    Returns:
        The combined output, decoded

    Raises:
        DiskHelperLaunchError: If the process cannot be started
        DiskHelperExitError: If it exits non-zero
    """
    process = await spawn_helper(command)
    stdout, _ = await process.communicate()
    output = (stdout or b"").decode("utf-8", errors="replace")
    if process.returncode != 0:
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        message = lines[-1] if lines else None
        log.error(
            f"Command failed with code {process.returncode}: {message or '(no output)'}"
        )
        raise DiskHelperExitError(operation, process.returncode, message)
    return output


async def run_helper_with_progress(
    command: list[str],
    operation: str,
    progress_sink: Callable[[int], None],
    *,
    read_size: int = READ_SIZE,
) -> None:
    """Run the helper and deliver every parsed percentage to ``progress_sink``.

    Percentages are delivered in the order they appear in the output. The
    helper does not promise they only go up, so neither does this.

    Raises:
        DiskHelperLaunchError: If the process cannot be started
        DiskHelperExitError: If it exits non-zero; carries the last non-empty
            output line as its message
    """
    process = await spawn_helper(command)
    parser = ProgressLineParser()

    while True:
        chunk = await process.stdout.read(read_size)
        if not chunk:
            break
        for percentage in parser.feed(chunk):
            log.bind(tags=["disk", "progress"]).debug(f"{operation}: {percentage}%")
            progress_sink(percentage)
    for percentage in parser.flush():
        progress_sink(percentage)

    returncode = await process.wait()
    if returncode != 0:
        message = parser.last_line or f"Failed to {operation} disk image"
        log.error(f"Command failed with code {returncode}: {message}")
        raise DiskHelperExitError(operation, returncode, message)
    log.debug(f"{operation.capitalize()} helper finished successfully")


__all__ = [
    "build_create_command",
    "build_resize_command",
    "run_checked_helper",
    "run_helper_with_progress",
    "spawn_helper",
]
