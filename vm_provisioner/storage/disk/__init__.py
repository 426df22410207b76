"""Disk image creation and resizing through the privileged helper.

Main Entry Points:
    - DiskImageOperator.create(): Blank sparse image of a given size
    - DiskImageOperator.resize(): Resize with percentage events to a sink
    - DiskImageOperator.iter_resize(): Same, as an async iterator

Helpers:
    - ProgressLineParser: Incremental ``[NN% completed]`` line parser
    - build_create_command() / build_resize_command(): Helper argument lists
"""

from .command_runners import (
    build_create_command,
    build_resize_command,
    run_checked_helper,
    run_helper_with_progress,
    spawn_helper,
)
from .operator import DiskImageOperator
from .progress import ProgressLineParser, parse_percentage


__all__ = [
    "DiskImageOperator",
    "ProgressLineParser",
    "build_create_command",
    "build_resize_command",
    "parse_percentage",
    "run_checked_helper",
    "run_helper_with_progress",
    "spawn_helper",
]
