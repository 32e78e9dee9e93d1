"""
Implementation of the object store for file contents.
Objects are immutable byte strings addressed by the SHA-256 of their bytes.
"""
import hashlib
import logging

from ..errors import NotFound, StoreIOError
from .database import Database

logger = logging.getLogger(__name__)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ObjectStore:
    """
    Store for file contents using content-addressed storage.
    Writing the same bytes twice stores them once; nothing is ever updated
    or deleted.
    """
    def __init__(self, db: Database):
        self.db = db

    async def put(self, data: bytes) -> str:
        """
        Write data to the store.

        Args:
            data: The complete content of an object

        Returns:
            The content hash the object is stored under
        """
        hash_value = content_hash(data)
        # INSERT OR IGNORE keeps the first write; the statement is durable on return
        inserted = await self.db.execute(
            "INSERT OR IGNORE INTO objects (hash, data) VALUES (?, ?)", (hash_value, bytes(data))
        )
        if inserted:
            logger.debug(f"stored object {hash_value} ({len(data)} bytes)")
        return hash_value

    async def get(self, hash_value: str) -> bytes:
        """
        Read an object from the store.

        Args:
            hash_value: The content hash returned by ``put``

        Returns:
            The stored bytes, exactly as written
        """
        row = await self.db.fetchone("SELECT data FROM objects WHERE hash = ?", (hash_value,))
        if row is None:
            raise NotFound(f"object {hash_value} not found", {"hash": hash_value})
        data = bytes(row[0])
        if content_hash(data) != hash_value:
            raise StoreIOError(f"object {hash_value} is corrupt", {"hash": hash_value})
        return data

    async def contains(self, hash_value: str) -> bool:
        """Check if an object exists in the store."""
        row = await self.db.fetchone("SELECT 1 FROM objects WHERE hash = ?", (hash_value,))
        return row is not None

    async def count(self) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) FROM objects")
        return int(row[0]) if row else 0
