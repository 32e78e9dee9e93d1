"""
The process-wide store handle: one database and the components built on it.
"""
import logging
from typing import Any, Optional

from .database import Database
from .history_log import HistoryLog
from .models import HistoryEntry
from .object_store import ObjectStore
from .tree_engine import TreeEngine

logger = logging.getLogger(__name__)


class Store:
    """
    Created once at startup and closed at exit; passed explicitly to the
    request server rather than kept as global state.
    """
    db: Database
    objects: ObjectStore
    trees: TreeEngine
    history: HistoryLog

    def __init__(self, db: Database):
        self.db = db
        self.objects = ObjectStore(db)
        self.trees = TreeEngine(db)
        self.history = HistoryLog(db)

    @classmethod
    async def open(cls, directory: str) -> "Store":
        db = await Database.open(directory)
        store = cls(db)
        try:
            await store.history.load()
            if store.history.empty():
                # The very first tree has no parent and holds only the root
                root = await store.trees.empty_tree()
                await store.history.initialize(root)
                logger.info(f"initialised empty store at {directory}")
        except Exception:
            await db.close()
            raise
        return store

    async def close(self) -> None:
        await self.db.close()

    async def __aenter__(self) -> "Store":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def version(self, sequence: Optional[int] = None) -> HistoryEntry:
        """The entry for ``sequence``, or the tip when it is None."""
        if sequence is None:
            return self.history.current()
        return self.history.at(sequence)
