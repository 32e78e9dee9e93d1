"""
Implementation of the versioned filesystem tree.

A tree is addressed by the id of its root directory node. Every mutation
builds a new root: the nodes along the touched path are rebuilt and every
other subtree is reused by id, so published trees never change.
"""
import logging
import time
from typing import AsyncIterator, List, Optional, Tuple

from cachetools import LRUCache
from serde.json import from_json, to_json

from ..errors import InvalidPath, NotFound
from .database import Database
from .models import ListingEntry, Node, dir_node, file_node
from .paths import join_path, split_path

logger = logging.getLogger(__name__)

NODE_CACHE_SIZE = 65536


class TreeEngine:
    """
    Maps paths to object hashes at a given version using copy-on-write.
    Mutations are pure functions of ``(base tree, args) -> new tree``; they
    never assign a sequence number.
    """
    db: Database
    nodes: LRUCache

    def __init__(self, db: Database, cache_size: int = NODE_CACHE_SIZE):
        self.db = db
        # Evicted nodes are reloaded from the database
        self.nodes = LRUCache(maxsize=cache_size)

    async def get_node(self, node_id: str) -> Node:
        node = self.nodes.get(node_id)
        if node is not None:
            return node
        row = await self.db.fetchone("SELECT node FROM nodes WHERE id = ?", (node_id,))
        if row is None:
            raise NotFound(f"tree node {node_id} not found", {"node": node_id})
        node = from_json(Node, row[0])
        self.nodes[node_id] = node
        return node

    async def put_node(self, node: Node) -> str:
        node_id = node.node_id()
        if node_id not in self.nodes:
            await self.db.execute("INSERT OR IGNORE INTO nodes (id, node) VALUES (?, ?)", (node_id, to_json(node)))
            self.nodes[node_id] = node
        return node_id

    async def empty_tree(self, timestamp: Optional[int] = None) -> str:
        """Store a tree holding only the root and return its id."""
        return await self.put_node(dir_node("", {}, timestamp if timestamp is not None else time.time_ns()))

    async def clear(self) -> str:
        """A fresh, empty tree. Prior trees are untouched."""
        return await self.empty_tree()

    async def _walk(self, tree: str, parts: List[str], path: str) -> List[Optional[Node]]:
        """
        Load the directories along ``parts``, root first.
        Missing directories are returned as None; a file in the way is an error.
        """
        current: Optional[Node] = await self.get_node(tree)
        chain: List[Optional[Node]] = [current]
        for i, part in enumerate(parts):
            if current is not None:
                child_id = current.children.get(part)
                current = await self.get_node(child_id) if child_id is not None else None
                if current is not None and not current.is_dir:
                    raise InvalidPath(path, f"{join_path(parts[:i + 1])} is a file")
            chain.append(current)
        return chain

    async def _rebuild(self, chain: List[Optional[Node]], parts: List[str], child_id: Optional[str], timestamp: int) -> str:
        # chain[i] is the directory holding parts[i]; walk back up to the root
        for i in range(len(parts) - 1, -1, -1):
            parent = chain[i]
            children = dict(parent.children) if parent is not None else {}
            if child_id is None:
                children.pop(parts[i], None)
            else:
                children[parts[i]] = child_id
            name = parts[i - 1] if i > 0 else ""
            child_id = await self.put_node(dir_node(name, children, timestamp))
        return child_id

    async def insert(self, tree: str, path: str, content_hash: str, size: int, timestamp: Optional[int] = None) -> str:
        """
        Produce a new tree where ``path`` is a file referencing ``content_hash``.

        Args:
            tree: Id of the base tree
            path: Absolute path of the file
            content_hash: Hash of an object in the object store
            size: Size of the object in bytes
            timestamp: Modification time in ns (defaults to now)

        Returns:
            Id of the new tree
        """
        parts = split_path(path)
        if not parts:
            raise InvalidPath(path, "cannot insert a file at the root")
        now = timestamp if timestamp is not None else time.time_ns()
        chain = await self._walk(tree, parts[:-1], path)
        parent = chain[-1]
        if parent is not None:
            existing_id = parent.children.get(parts[-1])
            if existing_id is not None and (await self.get_node(existing_id)).is_dir:
                raise InvalidPath(path, "path is a directory")
        leaf_id = await self.put_node(file_node(parts[-1], content_hash, size, now))
        new_tree = await self._rebuild(chain, parts, leaf_id, now)
        logger.debug(f"insert {path} -> {content_hash}: tree {tree} -> {new_tree}")
        return new_tree

    async def delete(self, tree: str, path: str) -> str:
        """
        Produce a new tree without ``path`` (and its subtree, for a directory).
        Objects referenced by the removed nodes stay in the object store.
        """
        parts = split_path(path)
        if not parts:
            raise InvalidPath(path, "cannot delete the root, clear the tree instead")
        try:
            chain = await self._walk(tree, parts[:-1], path)
        except InvalidPath:
            raise NotFound(f"{path} not found", {"path": path})
        parent = chain[-1]
        if parent is None or parts[-1] not in parent.children:
            raise NotFound(f"{path} not found", {"path": path})
        new_tree = await self._rebuild(chain, parts, None, time.time_ns())
        logger.debug(f"delete {path}: tree {tree} -> {new_tree}")
        return new_tree

    async def resolve(self, tree: str, path: str) -> Node:
        """Look up the node at ``path``; a pure read of an immutable tree."""
        parts = split_path(path)
        node = await self.get_node(tree)
        for part in parts:
            child_id = node.children.get(part) if node.is_dir else None
            if child_id is None:
                raise NotFound(f"{path} not found", {"path": path})
            node = await self.get_node(child_id)
        return node

    async def children(self, tree: str, path: str) -> List[str]:
        """Sorted child names of the directory at ``path``."""
        node = await self.resolve(tree, path)
        if not node.is_dir:
            raise InvalidPath(path, "path is a file")
        return sorted(node.children)

    async def listing(self, tree: str) -> AsyncIterator[ListingEntry]:
        """
        Every file in the tree, depth first, children in name order.
        Each call starts a fresh traversal.
        """
        stack: List[Tuple[str, str]] = [("", tree)]
        while stack:
            prefix, node_id = stack.pop()
            node = await self.get_node(node_id)
            if node.is_file:
                yield ListingEntry(prefix, node.hash or "", node.timestamp)
                continue
            # Reversed so the smallest name is popped first
            for name in sorted(node.children, reverse=True):
                stack.append((f"{prefix}/{name}", node.children[name]))
