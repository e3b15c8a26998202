"""Kata static tarball builder - orchestration for kata-static release tarballs.

This package fans out the per-asset builds of a Kata Containers static
release for one architecture, collects their artifacts, and merges them
against a version manifest into a single distributable tarball.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
