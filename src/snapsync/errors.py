"""
Error taxonomy shared by the store, the request server and its clients.

Every error carries a ``kind`` string that survives the network boundary,
so a client can raise the same class the server raised.
"""
from typing import Any, Dict, Optional


class SnapsyncError(Exception):
    """Base class for every error the store reports to a caller."""
    kind = "Error"
    status_code = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "context": self.context}


class NotFound(SnapsyncError):
    """A path, hash or version is absent."""
    kind = "NotFound"
    status_code = 404


class InvalidPath(SnapsyncError):
    """A path is malformed or structurally impossible (e.g. a child of a file)."""
    kind = "InvalidPath"
    status_code = 400

    def __init__(self, path: str, reason: str):
        super().__init__(f"invalid path {path!r}: {reason}", {"path": path})
        self.path = path
        self.reason = reason


class InvalidSelector(SnapsyncError):
    """A rollback selector points outside the history."""
    kind = "InvalidSelector"
    status_code = 400


class StaleBase(SnapsyncError):
    """
    A commit was attempted against a parent that is no longer the tip.
    Always retried inside the request server.
    """
    kind = "StaleBase"
    status_code = 409

    def __init__(self, parent: int, tip: int):
        super().__init__(f"base {parent} is stale, tip is {tip}", {"parent": parent, "tip": tip})
        self.parent = parent
        self.tip = tip


class Conflict(SnapsyncError):
    """Retries were exhausted, or a collision could not be resolved."""
    kind = "Conflict"
    status_code = 409


class StoreIOError(SnapsyncError):
    """Storage or network failure."""
    kind = "IOError"
    status_code = 500


ERROR_KINDS = {cls.kind: cls for cls in (NotFound, InvalidPath, InvalidSelector, StaleBase, Conflict, StoreIOError)}


def error_from_dict(data: Dict[str, Any]) -> SnapsyncError:
    """Rebuild an error sent over the wire by ``SnapsyncError.to_dict``."""
    kind = data.get("kind", "IOError")
    message = data.get("message", "")
    context = data.get("context") or {}
    cls = ERROR_KINDS.get(kind, StoreIOError)
    if cls is InvalidPath:
        err = InvalidPath.__new__(InvalidPath)
        SnapsyncError.__init__(err, message, context)
        err.path = context.get("path", "")
        err.reason = message
        return err
    if cls is StaleBase:
        err = StaleBase.__new__(StaleBase)
        SnapsyncError.__init__(err, message, context)
        err.parent = context.get("parent", -1)
        err.tip = context.get("tip", -1)
        return err
    return cls(message, context)
