"""
Personal file synchronization over an immutable, content-addressed store.
Every update produces a new, fully addressable snapshot.
"""

__version__ = "0.1.0"
