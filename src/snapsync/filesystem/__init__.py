"""
Versioned, content-addressed filesystem store.
Objects hold file contents, trees map paths to objects and the history log
orders every published tree.
"""

from .database import Database
from .history_log import HistoryLog
from .models import HistoryEntry, ListingEntry, Node, NodeInfo, Selector
from .object_store import ObjectStore, content_hash
from .store import Store
from .tree_engine import TreeEngine

__all__ = ['Database', 'HistoryLog', 'HistoryEntry', 'ListingEntry', 'Node', 'NodeInfo', 'Selector',
           'ObjectStore', 'content_hash', 'Store', 'TreeEngine']
