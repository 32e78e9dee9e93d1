"""
Networking for the versioned store.
This module serves the store over HTTP and synchronises local directories with it.
"""

from .api_server import APIHandler, create_app
from .remote import RemoteStore
from .sync_protocol import SyncEngine, SyncReport

__all__ = ['APIHandler', 'create_app', 'RemoteStore', 'SyncEngine', 'SyncReport']
