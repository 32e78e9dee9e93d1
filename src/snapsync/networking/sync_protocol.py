"""
Implementation of the synchronization engine.
A local directory is reconciled with the request server's current tree in
both directions, on demand or every ``resync_time`` seconds.
"""
import asyncio
from dataclasses import dataclass, field
import hashlib
import logging
import os
import tempfile
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os
from watchfiles import Change, awatch

from ..errors import NotFound, SnapsyncError
from ..filesystem.models import ListingEntry
from .remote import RemoteStore

logger = logging.getLogger(__name__)

TMP_PREFIX = ".snapsync-tmp-"

UNCHANGED = "unchanged"
UPLOAD = "upload"
DOWNLOAD = "download"
DELETE_LOCAL = "delete_local"
DELETE_REMOTE = "delete_remote"
FORGET = "forget"


@dataclass
class LocalFile:
    path: str
    hash: str
    mtime_ns: int
    size: int


@dataclass
class SyncReport:
    """Outcome of one resync round."""
    version: Optional[int] = None
    uploaded: List[str] = field(default_factory=list)
    downloaded: List[str] = field(default_factory=list)
    deleted_local: List[str] = field(default_factory=list)
    deleted_remote: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def partially_failed(self) -> bool:
        return bool(self.failed)


def classify(local: Optional[LocalFile], remote: Optional[ListingEntry], base: Optional[str]) -> Tuple[str, bool]:
    """
    Three-way comparison of one path against the last synced hash.

    Returns:
        The action to take, and whether both sides had changed
    """
    local_hash = local.hash if local else None
    remote_hash = remote.hash if remote else None
    if local_hash == remote_hash:
        return (UNCHANGED if local_hash is not None else FORGET), False
    if remote_hash == base:
        return (UPLOAD if local is not None else DELETE_REMOTE), False
    if local_hash == base:
        return (DOWNLOAD if remote is not None else DELETE_LOCAL), False
    # Changed on both sides: a modification beats a deletion, otherwise the
    # later write wins and ties go to the server
    if local is None:
        return DOWNLOAD, True
    if remote is None:
        return UPLOAD, True
    if local.mtime_ns > remote.timestamp:
        return UPLOAD, True
    return DOWNLOAD, True


def is_temp_name(path: str) -> bool:
    """Whether ``path`` names one of the engine's own in-progress downloads."""
    return os.path.basename(path).startswith(TMP_PREFIX)


class SyncEngine:
    """
    Bi-directional sync between a local directory and a remote store.

    ``base`` holds the last synced hash of every path and is updated path by
    path, so one failing path never causes the others to be recomputed from
    a stale base. ``last_synced`` only advances after a round in which every
    path succeeded.
    """
    remote: RemoteStore
    directory: str
    resync_time: float
    watch: bool
    debounce: int
    last_synced: Optional[int]
    base: Dict[str, str]
    markers: Dict[str, Tuple[int, int, str]]
    lock: asyncio.Lock

    def __init__(self, remote: RemoteStore, directory: str, resync_time: float = 60.0, watch: bool = True, debounce: int = 1600):
        self.remote = remote
        self.directory = os.path.abspath(directory)
        self.resync_time = resync_time
        self.watch = watch
        # Milliseconds to group filesystem events into one batch
        self.debounce = debounce
        self.last_synced = None
        self.base = {}
        # path -> (mtime_ns, size, hash); lets unchanged files skip rehashing
        self.markers = {}
        self.lock = asyncio.Lock()
        self._sync_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stop_watching = asyncio.Event()

    def local_path(self, path: str) -> str:
        """Takes a path relative to the server and produces a path in the sync directory."""
        return os.path.join(self.directory, *path[1:].split("/"))

    def remote_path(self, local: str) -> str:
        """Takes a path in the sync directory and produces a path relative to the server."""
        relative = os.path.relpath(local, self.directory)
        return "/" + "/".join(relative.split(os.sep))

    async def _hash_file(self, local: str) -> str:
        hasher = hashlib.sha256()
        async with aiofiles.open(local, "rb") as f:
            while True:
                chunk = await f.read(1024 * 1024)
                if not chunk:
                    break
                hasher.update(chunk)
        return hasher.hexdigest()

    def _scan(self) -> List[str]:
        found = []
        for dirpath, dirnames, filenames in os.walk(self.directory):
            dirnames.sort()
            for name in sorted(filenames):
                if not is_temp_name(name):
                    found.append(os.path.join(dirpath, name))
        return found

    async def local_listing(self) -> AsyncIterator[LocalFile]:
        """
        Every regular file under the sync directory, in path order.
        Files are only rehashed when their modification marker changed.
        """
        for local in await asyncio.to_thread(self._scan):
            if await aiofiles.os.path.islink(local):
                continue
            path = self.remote_path(local)
            try:
                st = await aiofiles.os.stat(local)
                marker = self.markers.get(path)
                if marker is not None and marker[0] == st.st_mtime_ns and marker[1] == st.st_size:
                    file_hash = marker[2]
                else:
                    file_hash = await self._hash_file(local)
                    self.markers[path] = (st.st_mtime_ns, st.st_size, file_hash)
            except FileNotFoundError:
                # Removed while scanning
                continue
            yield LocalFile(path, file_hash, st.st_mtime_ns, st.st_size)

    async def upload(self, path: str) -> Tuple[str, int]:
        async with aiofiles.open(self.local_path(path), "rb") as f:
            data = await f.read()
        logger.info(f"remote copy of '{path}' is out of date; uploading to server")
        return await self.remote.insert(path, data)

    async def download(self, path: str, entry: ListingEntry, version: int) -> None:
        logger.info(f"local copy of '{path}' is out of date; fetching from server")
        data = await self.remote.get(path, version)
        local = self.local_path(path)
        parent = os.path.dirname(local)
        await aiofiles.os.makedirs(parent, exist_ok=True)
        fd, temp_path = await asyncio.to_thread(tempfile.mkstemp, dir=parent, prefix=TMP_PREFIX)
        try:
            os.close(fd)
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            # Stamp the server's time so the copy does not look like a newer local edit
            await asyncio.to_thread(os.utime, temp_path, ns=(entry.timestamp, entry.timestamp))
            await aiofiles.os.replace(temp_path, local)
        except BaseException:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise
        st = await aiofiles.os.stat(local)
        self.markers[path] = (st.st_mtime_ns, st.st_size, entry.hash)

    async def delete_local(self, path: str) -> None:
        logger.info(f"remote file '{path}' deleted; deleting local copy")
        try:
            await aiofiles.os.remove(self.local_path(path))
        except FileNotFoundError:
            pass
        self.markers.pop(path, None)

    async def delete_remote(self, path: str) -> Optional[int]:
        logger.info(f"local file '{path}' deleted; deleting remote copy")
        try:
            return await self.remote.delete(path)
        except NotFound:
            return None

    async def resync(self) -> SyncReport:
        """Run one reconciliation round."""
        async with self.lock:
            return await self._resync()

    async def _resync(self) -> SyncReport:
        logger.info(f"re-syncing {self.directory} with {self.remote.base_url}")
        # Pin the remote snapshot so every path is compared against one version
        tip = await self.remote.healthcheck()
        remote = {entry.path: entry for entry in await self.remote.listing(tip)}
        local = {item.path: item async for item in self.local_listing()}

        report = SyncReport(version=tip)
        latest = tip
        for path in sorted(set(local) | set(remote) | set(self.base)):
            if is_temp_name(path):
                # Local listings never include these names
                report.skipped.append(path)
                logger.warning(f"skipping '{path}': the name is reserved for temporary files")
                continue
            action, conflict = classify(local.get(path), remote.get(path), self.base.get(path))
            if conflict:
                report.conflicts.append(path)
                logger.warning(f"'{path}' changed on both sides; resolved by {action} (last write wins)")
            try:
                if action == UNCHANGED:
                    self.base[path] = local[path].hash
                elif action == UPLOAD:
                    content_hash, version = await self.upload(path)
                    latest = max(latest, version)
                    self.base[path] = content_hash
                    report.uploaded.append(path)
                elif action == DOWNLOAD:
                    await self.download(path, remote[path], tip)
                    self.base[path] = remote[path].hash
                    report.downloaded.append(path)
                elif action == DELETE_LOCAL:
                    await self.delete_local(path)
                    self.base.pop(path, None)
                    report.deleted_local.append(path)
                elif action == DELETE_REMOTE:
                    version = await self.delete_remote(path)
                    if version is not None:
                        latest = max(latest, version)
                    self.base.pop(path, None)
                    report.deleted_remote.append(path)
                else:
                    self.base.pop(path, None)
            except (SnapsyncError, OSError) as e:
                report.failed[path] = str(e)
                logger.error(f"failed to sync '{path}': {e}")

        if report.partially_failed:
            logger.error(f"re-sync partially failed ({len(report.failed)} paths); keeping marker at {self.last_synced}")
        else:
            self.last_synced = latest
            report.version = latest
            logger.info(f"re-sync complete at version {latest}")
        return report

    async def start(self) -> None:
        """Start periodic synchronization, and the directory watcher if enabled."""
        if self._sync_task is None:
            self._sync_task = asyncio.create_task(self._sync_loop())
        if self.watch and self._watch_task is None:
            self._stop_watching = asyncio.Event()
            self._watch_task = asyncio.create_task(self._watch_loop())

    async def stop(self) -> None:
        """Stop periodic synchronization and the directory watcher."""
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        if self._watch_task is not None:
            # The watcher polls the event between steps and then returns
            self._stop_watching.set()
            await self._watch_task
            self._watch_task = None

    async def run(self) -> None:
        """Sync until cancelled."""
        await self.start()
        try:
            await self._sync_task
        finally:
            await self.stop()

    async def _resync_logged(self) -> None:
        try:
            await self.resync()
        except Exception as e:
            logger.exception(f"Error in sync loop: {e}")

    async def _sync_loop(self) -> None:
        """Main synchronization loop."""
        while True:
            await self._resync_logged()
            await asyncio.sleep(self.resync_time)

    def _watch_filter(self, change: Change, path: str) -> bool:
        return not is_temp_name(path)

    async def _watch_loop(self) -> None:
        """Resync as soon as something changes under the sync directory."""
        try:
            async for changes in awatch(
                self.directory,
                watch_filter=self._watch_filter,
                debounce=self.debounce,
                stop_event=self._stop_watching,
            ):
                logger.debug(f"{len(changes)} changes under {self.directory}; re-syncing")
                await self._resync_logged()
        except Exception as e:
            logger.exception(f"Error watching {self.directory}: {e}")
