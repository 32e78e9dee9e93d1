"""
Shared fixtures: a store on a temporary database, the request server app
built on it, and a remote client talking to the app in-process.
"""
import httpx
import pytest

from snapsync.filesystem.store import Store
from snapsync.networking.api_server import create_app
from snapsync.networking.remote import RemoteStore


@pytest.fixture
async def store(tmp_path):
    store = await Store.open(str(tmp_path / "db"))
    yield store
    await store.close()


@pytest.fixture
def app(store):
    return create_app(store)


@pytest.fixture
def handler(app):
    return app.state.handler


@pytest.fixture
async def remote(app):
    client = RemoteStore("http://testserver", transport=httpx.ASGITransport(app=app))
    yield client
    await client.close()
