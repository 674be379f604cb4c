"""Build bootable Debian virtual-machine disk images."""

from .__version__ import __version__


__all__ = ["__version__"]
