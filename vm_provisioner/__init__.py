"""Provision, configure and resize virtual machine bundles."""

from .__version__ import __version__


__all__ = ["__version__"]
