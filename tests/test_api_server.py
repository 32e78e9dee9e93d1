"""Tests for the request server, driven through the remote client."""
import asyncio
import hashlib
import json

import httpx
import pytest

from snapsync.errors import Conflict, InvalidPath, InvalidSelector, NotFound, StaleBase
from snapsync.filesystem.models import Selector
from snapsync.filesystem.store import Store
from snapsync.networking.api_server import APIHandler, create_app
from snapsync.networking.remote import RemoteStore


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class TestScenarios:
    async def test_insert_then_listing(self, remote: RemoteStore) -> None:
        content_hash, version = await remote.insert("/files/test.txt", b"hello")
        entries = await remote.listing()

        assert content_hash == sha(b"hello")
        assert version == 1
        assert [(e.path, e.hash) for e in entries] == [("/files/test.txt", sha(b"hello"))]
        assert entries[0].timestamp > 0

    async def test_dedup(self, remote: RemoteStore, store: Store) -> None:
        await remote.insert("/files/test.txt", b"hello")
        await remote.insert("/files/copy.txt", b"hello")
        entries = await remote.listing()

        assert await store.objects.count() == 1
        assert sorted(e.path for e in entries) == ["/files/copy.txt", "/files/test.txt"]
        assert {e.hash for e in entries} == {sha(b"hello")}

    async def test_delete_then_rollback(self, remote: RemoteStore) -> None:
        await remote.insert("/files/test.txt", b"hello")
        await remote.insert("/files/copy.txt", b"hello")
        await remote.delete("/files/test.txt")

        assert [e.path for e in await remote.listing()] == ["/files/copy.txt"]

        await remote.rollback(Selector.latest(1))
        assert [e.path for e in await remote.listing()] == ["/files/copy.txt", "/files/test.txt"]

    async def test_clear(self, remote: RemoteStore) -> None:
        await remote.insert("/files/test.txt", b"hello")
        version = await remote.clear()

        assert await remote.listing() == []
        assert [e.path for e in await remote.listing(version - 1)] == ["/files/test.txt"]


class TestOperations:
    async def test_get(self, remote: RemoteStore) -> None:
        await remote.insert("/a.bin", b"\x00\x01binary")
        assert await remote.get("/a.bin") == b"\x00\x01binary"

    async def test_get_old_version(self, remote: RemoteStore) -> None:
        _, first = await remote.insert("/a.txt", b"one")
        await remote.insert("/a.txt", b"two")

        assert await remote.get("/a.txt") == b"two"
        assert await remote.get("/a.txt", first) == b"one"

    async def test_node(self, remote: RemoteStore) -> None:
        await remote.insert("/dir/a.txt", b"abc")
        file_info = await remote.node("/dir/a.txt")
        dir_info = await remote.node("/dir")

        assert file_info.kind == "file"
        assert file_info.hash == sha(b"abc")
        assert file_info.size == 3
        assert dir_info.kind == "dir"
        assert dir_info.children == ["a.txt"]

    async def test_history(self, remote: RemoteStore) -> None:
        await remote.insert("/a", b"a")
        await remote.delete("/a")
        history = await remote.history()

        assert [e.sequence for e in history] == [0, 1, 2]
        assert [e.parent for e in history] == [None, 0, 1]

    async def test_healthcheck_reports_tip(self, remote: RemoteStore) -> None:
        assert await remote.healthcheck() == 0
        await remote.insert("/a", b"a")
        assert await remote.healthcheck() == 1


class TestErrors:
    async def test_get_missing(self, remote: RemoteStore) -> None:
        with pytest.raises(NotFound):
            await remote.get("/missing")

    async def test_get_directory(self, remote: RemoteStore) -> None:
        await remote.insert("/dir/a", b"a")
        with pytest.raises(InvalidPath):
            await remote.get("/dir")

    async def test_invalid_path(self, remote: RemoteStore, store: Store) -> None:
        with pytest.raises(InvalidPath) as info:
            await remote.insert("relative", b"data")
        assert info.value.path == "relative"
        assert await store.objects.count() == 0

    async def test_child_of_file(self, remote: RemoteStore) -> None:
        await remote.insert("/file", b"x")
        with pytest.raises(InvalidPath):
            await remote.insert("/file/child", b"y")

    async def test_delete_missing(self, remote: RemoteStore) -> None:
        with pytest.raises(NotFound):
            await remote.delete("/missing")

    async def test_bad_version(self, remote: RemoteStore) -> None:
        with pytest.raises(NotFound):
            await remote.listing(42)

    async def test_rollback_out_of_range(self, remote: RemoteStore) -> None:
        await remote.insert("/a", b"a")
        with pytest.raises(InvalidSelector):
            await remote.rollback(Selector.latest(2))
        with pytest.raises(InvalidSelector):
            await remote.rollback(Selector.earliest(2))

    async def test_rollback_before_history(self, remote: RemoteStore) -> None:
        with pytest.raises(NotFound):
            await remote.rollback(Selector.at_time(0))

    async def test_malformed_selector(self, app) -> None:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
            response = await client.post("/rollback", json={"kind": "latest", "value": "one"})

        assert response.status_code == 400
        assert response.json()["kind"] == "InvalidSelector"

    async def test_server_keeps_serving_after_errors(self, remote: RemoteStore) -> None:
        for _ in range(3):
            with pytest.raises(NotFound):
                await remote.get("/missing")
        await remote.insert("/ok", b"ok")
        assert await remote.get("/ok") == b"ok"

    async def test_upload_interrupted_by_disconnect(self, app, store: Store) -> None:
        tip = store.history.current()
        objects = await store.objects.count()
        incoming = [
            {"type": "http.request", "body": b"first half of the ", "more_body": True},
            {"type": "http.disconnect"},
        ]
        sent = []

        async def receive():
            return incoming.pop(0)

        async def send(message):
            sent.append(message)

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/insert",
            "raw_path": b"/insert",
            "root_path": "",
            "query_string": b"path=/upload.bin",
            "headers": [(b"host", b"testserver"), (b"content-type", b"application/octet-stream")],
            "client": ("127.0.0.1", 5000),
            "server": ("testserver", 80),
        }
        await app(scope, receive, send)

        start = next(m for m in sent if m["type"] == "http.response.start")
        body = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
        assert start["status"] == 500
        assert json.loads(body)["kind"] == "IOError"
        assert await store.objects.count() == objects
        assert store.history.current() == tip


class TestConcurrency:
    async def test_concurrent_inserts_are_serialized(self, handler: APIHandler, store: Store) -> None:
        count = 8
        results = await asyncio.gather(*[handler.insert(f"/dir/file{i}", f"data{i}".encode()) for i in range(count)])

        versions = sorted(entry.sequence for _, entry in results)
        assert versions == list(range(1, count + 1))
        paths = [e.path for e in await handler.listing()]
        assert paths == sorted(f"/dir/file{i}" for i in range(count))

    async def test_concurrent_mixed_mutations(self, handler: APIHandler) -> None:
        await handler.insert("/keep", b"k")
        await asyncio.gather(
            handler.insert("/a", b"a"),
            handler.insert("/b", b"b"),
            handler.delete("/keep"),
        )
        assert [e.path for e in await handler.listing()] == ["/a", "/b"]

    async def test_retries_exhausted(self, store: Store, monkeypatch) -> None:
        handler = APIHandler(store, max_retries=2)

        async def always_stale(tree, parent):
            raise StaleBase(parent, parent + 1)

        monkeypatch.setattr(store.history, "commit", always_stale)
        with pytest.raises(Conflict):
            await handler.insert("/a", b"a")


async def test_create_app_routes(store: Store) -> None:
    app = create_app(store)
    paths = {route.path for route in app.routes}
    for path in ["/insert", "/get", "/delete", "/listing", "/node", "/clear", "/rollback", "/history", "/healthcheck"]:
        assert path in paths
