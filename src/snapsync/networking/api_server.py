"""
The request server: the single admission point for CLI and sync clients.

Reads go straight to immutable snapshots. Mutations build a tree against the
current tip and commit it through the history log's compare-and-append,
rebuilding on ``StaleBase`` up to a bounded number of retries.
"""
import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from serde import SerdeError, from_dict, to_dict
from starlette.requests import ClientDisconnect

from ..errors import Conflict, InvalidPath, InvalidSelector, SnapsyncError, StaleBase, StoreIOError
from ..filesystem.models import HistoryEntry, ListingEntry, NodeInfo, Selector
from ..filesystem.paths import split_path
from ..filesystem.store import Store

logger = logging.getLogger(__name__)

MAX_RETRIES = 32


class APIHandler:
    store: Store
    max_retries: int

    def __init__(self, store: Store, max_retries: int = MAX_RETRIES):
        self.router = APIRouter()
        self.store = store
        self.max_retries = max_retries
        self.router.add_api_route("/insert", self.insert_route, methods=["POST"])
        self.router.add_api_route("/get", self.get_route, methods=["GET"])
        self.router.add_api_route("/delete", self.delete_route, methods=["POST"])
        self.router.add_api_route("/listing", self.listing_route, methods=["GET"])
        self.router.add_api_route("/node", self.node_route, methods=["GET"])
        self.router.add_api_route("/clear", self.clear_route, methods=["POST"])
        self.router.add_api_route("/rollback", self.rollback_route, methods=["POST"])
        self.router.add_api_route("/history", self.history_route, methods=["GET"])
        self.router.add_api_route("/healthcheck", self.healthcheck, methods=["GET"])

    async def _mutate(self, what: str, build: Callable[[HistoryEntry], Awaitable[str]]) -> HistoryEntry:
        for attempt in range(self.max_retries + 1):
            tip = self.store.history.current()
            tree = await build(tip)
            try:
                return await self.store.history.commit(tree, tip.sequence)
            except StaleBase as e:
                logger.debug(f"{what}: {e.message}, retrying ({attempt + 1}/{self.max_retries})")
        raise Conflict(f"{what}: gave up after {self.max_retries} retries", {"operation": what})

    # Operations

    async def insert(self, path: str, data: bytes) -> tuple[str, HistoryEntry]:
        split_path(path)
        # The body has been received in full before a hash is assigned
        content_hash = await self.store.objects.put(data)

        async def build(tip: HistoryEntry) -> str:
            return await self.store.trees.insert(tip.tree, path, content_hash, len(data))

        entry = await self._mutate(f"insert {path}", build)
        logger.info(f"stored {path} (object {content_hash}) as version {entry.sequence}")
        return content_hash, entry

    async def get(self, path: str, version: Optional[int] = None) -> bytes:
        entry = self.store.version(version)
        node = await self.store.trees.resolve(entry.tree, path)
        if not node.is_file:
            raise InvalidPath(path, "path is a directory")
        logger.info(f"retrieving {path} at version {entry.sequence}")
        return await self.store.objects.get(node.hash)

    async def delete(self, path: str) -> HistoryEntry:
        async def build(tip: HistoryEntry) -> str:
            return await self.store.trees.delete(tip.tree, path)

        entry = await self._mutate(f"delete {path}", build)
        logger.info(f"deleted {path} as version {entry.sequence}")
        return entry

    async def listing(self, version: Optional[int] = None) -> list[ListingEntry]:
        entry = self.store.version(version)
        return [item async for item in self.store.trees.listing(entry.tree)]

    async def node(self, path: str, version: Optional[int] = None) -> NodeInfo:
        entry = self.store.version(version)
        node = await self.store.trees.resolve(entry.tree, path)
        return NodeInfo(path, node.kind, node.timestamp, node.hash, node.size, sorted(node.children))

    async def clear(self) -> HistoryEntry:
        async def build(tip: HistoryEntry) -> str:
            return await self.store.trees.clear()

        entry = await self._mutate("clear", build)
        logger.info(f"cleared tree as version {entry.sequence}")
        return entry

    async def rollback(self, selector: Selector) -> HistoryEntry:
        async def build(tip: HistoryEntry) -> str:
            return self.store.history.select(selector).tree

        entry = await self._mutate(f"rollback {selector}", build)
        logger.info(f"rolled back via {selector} as version {entry.sequence}")
        return entry

    def history(self) -> list[HistoryEntry]:
        return self.store.history.entries()

    # Routes

    async def insert_route(self, path: str, request: Request) -> dict[str, Any]:
        try:
            data = await request.body()
        except ClientDisconnect as e:
            # A client that disconnects mid-upload never gets a hash assigned
            raise StoreIOError(f"upload of {path} interrupted: {e}", {"path": path}) from e
        content_hash, entry = await self.insert(path, data)
        return {"hash": content_hash, "version": entry.sequence}

    async def get_route(self, path: str, version: Optional[int] = None) -> Response:
        return Response(content=await self.get(path, version), media_type="application/octet-stream")

    async def delete_route(self, path: str) -> dict[str, Any]:
        return {"version": (await self.delete(path)).sequence}

    async def listing_route(self, version: Optional[int] = None) -> list[dict[str, Any]]:
        return [to_dict(item) for item in await self.listing(version)]

    async def node_route(self, path: str, version: Optional[int] = None) -> dict[str, Any]:
        return to_dict(await self.node(path, version))

    async def clear_route(self) -> dict[str, Any]:
        return {"version": (await self.clear()).sequence}

    async def rollback_route(self, selector: dict[str, Any]) -> dict[str, Any]:
        try:
            parsed = from_dict(Selector, selector)
        except (SerdeError, KeyError, TypeError, ValueError) as e:
            raise InvalidSelector(f"malformed selector {selector!r}: {e}") from e
        if isinstance(parsed.value, bool) or not isinstance(parsed.value, int):
            raise InvalidSelector(f"selector value must be an integer, got {parsed.value!r}")
        return {"version": (await self.rollback(parsed)).sequence}

    async def history_route(self) -> list[dict[str, Any]]:
        return [to_dict(entry) for entry in self.history()]

    async def healthcheck(self) -> str:
        return str(self.store.history.current().sequence)


async def snapsync_error_handler(request: Request, exc: SnapsyncError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(store: Store, max_retries: int = MAX_RETRIES, **kwargs: Any) -> FastAPI:
    """Build the FastAPI application serving ``store``."""
    app = FastAPI(**kwargs)
    handler = APIHandler(store, max_retries)
    app.include_router(handler.router)
    app.add_exception_handler(SnapsyncError, snapsync_error_handler)
    app.state.handler = handler
    return app
