"""
Validation and splitting of paths in the store's virtual filesystem.

A path must begin with a ``/``, may not contain empty components (``//`` or a
trailing ``/``) and may not use ``.`` or ``..``. The root is ``/``.
"""
from typing import List, Tuple

from ..errors import InvalidPath

ROOT = "/"


def split_path(path: str) -> List[str]:
    """
    Validate a path and return its components.

    Args:
        path: An absolute path such as ``/files/test.txt``

    Returns:
        The list of components; empty for the root
    """
    if not isinstance(path, str) or not path:
        raise InvalidPath(str(path), "path is empty")
    if not path.startswith("/"):
        raise InvalidPath(path, "path must be absolute")
    if path == ROOT:
        return []
    parts = path[1:].split("/")
    for part in parts:
        if part == "":
            raise InvalidPath(path, "path must not contain empty components")
        if part in (".", ".."):
            raise InvalidPath(path, "path must not contain '.' or '..'")
        if "\0" in part:
            raise InvalidPath(path, "path must not contain NUL")
    return parts


def parent_child(path: str) -> Tuple[str, str]:
    """Split a non-root path into its parent path and final name."""
    parts = split_path(path)
    if not parts:
        raise InvalidPath(path, "the root has no parent")
    return join_path(parts[:-1]), parts[-1]


def join_path(parts: List[str]) -> str:
    return "/" + "/".join(parts)


def ancestors(path: str) -> List[str]:
    """Every ancestor of ``path`` from the root down, excluding the path itself."""
    parts = split_path(path)
    return [join_path(parts[:i]) for i in range(len(parts))]
