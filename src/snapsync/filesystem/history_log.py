"""
Implementation of the history log: the append-only chain of published trees.
"""
import asyncio
import logging
import math
import time
from typing import List, Optional

from sortedcontainers import SortedList

from ..errors import InvalidSelector, NotFound, StaleBase
from .database import Database
from .models import AT_TIME, EARLIEST, LATEST, HistoryEntry, Selector

logger = logging.getLogger(__name__)


class HistoryLog:
    """
    Strictly ordered sequence of tree snapshots.
    ``commit`` is the single serialization point: it appends only when the
    caller's parent is still the tip. Everything else reads the in-memory
    index, which only ever grows.
    """
    db: Database
    log: List[HistoryEntry]
    by_time: SortedList
    lock: asyncio.Lock

    def __init__(self, db: Database):
        self.db = db
        self.log = []
        self.by_time = SortedList()
        self.lock = asyncio.Lock()

    async def load(self) -> None:
        rows = await self.db.fetchall("SELECT sequence, ts, tree, parent FROM history ORDER BY sequence")
        self.log = [HistoryEntry(seq, ts, tree, parent) for (seq, ts, tree, parent) in rows]
        self.by_time = SortedList((entry.timestamp, entry.sequence) for entry in self.log)
        logger.info(f"loaded {len(self.log)} history entries")

    async def initialize(self, tree: str) -> HistoryEntry:
        """Record ``tree`` as sequence 0 if the log is empty."""
        async with self.lock:
            if self.log:
                return self.log[-1]
            return await self._append(tree, None)

    def empty(self) -> bool:
        return not self.log

    async def _append(self, tree: str, parent: Optional[int]) -> HistoryEntry:
        sequence = len(self.log)
        timestamp = time.time_ns()
        if self.log:
            # Never let the clock run backwards across the log
            timestamp = max(timestamp, self.log[-1].timestamp)
        await self.db.execute(
            "INSERT INTO history (sequence, ts, tree, parent) VALUES (?, ?, ?, ?)",
            (sequence, timestamp, tree, parent),
        )
        entry = HistoryEntry(sequence, timestamp, tree, parent)
        self.log.append(entry)
        self.by_time.add((timestamp, sequence))
        return entry

    async def commit(self, tree: str, parent: int) -> HistoryEntry:
        """
        Append ``tree`` as the new tip.

        Args:
            tree: Id of the new tree's root
            parent: Sequence number the tree was derived from

        Returns:
            The new history entry

        Raises:
            StaleBase: ``parent`` is no longer the tip
        """
        async with self.lock:
            tip = self.current()
            if parent != tip.sequence:
                raise StaleBase(parent, tip.sequence)
            entry = await self._append(tree, parent)
        logger.info(f"committed version {entry.sequence} (tree {tree}, parent {parent})")
        return entry

    def current(self) -> HistoryEntry:
        if not self.log:
            raise NotFound("history is empty")
        return self.log[-1]

    def at(self, sequence: int) -> HistoryEntry:
        if sequence < 0 or sequence >= len(self.log):
            raise NotFound(f"version {sequence} not found", {"version": sequence})
        return self.log[sequence]

    def entries(self) -> List[HistoryEntry]:
        return list(self.log)

    def select(self, selector: Selector) -> HistoryEntry:
        """Resolve a rollback selector against the current tip."""
        tip = self.current().sequence
        n = selector.value
        if selector.kind == EARLIEST:
            if n < 0 or n > tip:
                raise InvalidSelector(f"{selector} is outside 0..{tip}", {"selector": str(selector), "tip": tip})
            return self.log[n]
        if selector.kind == LATEST:
            if n < 0 or n > tip:
                raise InvalidSelector(f"{selector} is outside 0..{tip}", {"selector": str(selector), "tip": tip})
            return self.log[tip - n]
        if selector.kind == AT_TIME:
            # Timestamps never decrease with sequence, so the last (ts, seq) pair
            # at or before the time is also the highest sequence
            index = self.by_time.bisect_right((n, math.inf))
            if index == 0:
                raise NotFound(f"no version at or before {n}", {"selector": str(selector)})
            return self.log[self.by_time[index - 1][1]]
        raise InvalidSelector(f"unknown selector kind {selector.kind!r}", {"selector": str(selector)})

    async def rollback(self, selector: Selector) -> HistoryEntry:
        """
        Re-commit a historical tree as the new tip. Nothing is removed from
        the log; the sequence number still moves forward.
        """
        parent = self.current().sequence
        target = self.select(selector)
        entry = await self.commit(target.tree, parent)
        logger.info(f"rolled back to version {target.sequence} via {selector} as version {entry.sequence}")
        return entry
