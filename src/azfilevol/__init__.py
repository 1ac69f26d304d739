"""azfilevol - Azure Files volume driver core

Philosophy:
- Brick architecture (self-contained modules)
- One opaque volume identifier carries everything needed to find a share
- Secrets never leave the request that supplied them
- Fail fast with a stable error kind

azfilevol exposes Azure Files SMB shares as mountable filesystems, and VHD
files stored inside those shares as loop-attached block devices.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
