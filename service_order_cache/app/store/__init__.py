"""
Local store package.

Provides the file-backed store that owns the on-disk representation of
resolved orders on a node.
"""

from .file_store import LocalOrderStore

__all__ = ["LocalOrderStore"]
