"""
Serializable records of the versioned store: tree nodes, history entries,
listing rows and rollback selectors.
"""
from dataclasses import field
import hashlib
from typing import Optional

from serde import serde

FILE = "file"
DIR = "dir"


@serde
class Node:
    """
    A file or directory entry within a tree.
    Directory children map a child name to the child's node id; nodes are
    never mutated once stored, so a node id may be shared by many trees.
    """
    kind: str
    name: str
    timestamp: int
    hash: Optional[str] = None
    size: int = 0
    children: dict[str, str] = field(default_factory=dict)

    @property
    def is_dir(self) -> bool:
        return self.kind == DIR

    @property
    def is_file(self) -> bool:
        return self.kind == FILE

    def node_id(self) -> str:
        # Merkle-style: the id covers the fields and every child id
        hasher = hashlib.sha256()
        for item in (self.kind, self.name, str(self.timestamp), self.hash or "", str(self.size)):
            hasher.update(item.encode("utf-8"))
            hasher.update(b"\0")
        for name in sorted(self.children):
            hasher.update(name.encode("utf-8"))
            hasher.update(b"\0")
            hasher.update(self.children[name].encode("utf-8"))
        return hasher.hexdigest()


def file_node(name: str, content_hash: str, size: int, timestamp: int) -> Node:
    return Node(FILE, name, timestamp, content_hash, size)


def dir_node(name: str, children: dict[str, str], timestamp: int) -> Node:
    return Node(DIR, name, timestamp, None, 0, {k: children[k] for k in sorted(children)})


@serde
class NodeInfo:
    """Node metadata as returned by GetNode."""
    path: str
    kind: str
    timestamp: int
    hash: Optional[str] = None
    size: int = 0
    children: list[str] = field(default_factory=list)


@serde
class HistoryEntry:
    sequence: int
    timestamp: int
    tree: str
    parent: Optional[int] = None


@serde
class ListingEntry:
    path: str
    hash: str
    timestamp: int


EARLIEST = "earliest"
LATEST = "latest"
AT_TIME = "at_time"


@serde
class Selector:
    """
    Identifies a historical version to re-commit as the tip:
    ``earliest`` counts from sequence 0, ``latest`` counts back from the tip
    and ``at_time`` picks the newest entry at or before a timestamp (ns).
    """
    kind: str
    value: int

    @classmethod
    def earliest(cls, n: int) -> "Selector":
        return cls(EARLIEST, n)

    @classmethod
    def latest(cls, n: int) -> "Selector":
        return cls(LATEST, n)

    @classmethod
    def at_time(cls, timestamp: int) -> "Selector":
        return cls(AT_TIME, timestamp)

    def __str__(self) -> str:
        return f"{self.kind}({self.value})"
