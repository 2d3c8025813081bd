"""
Client side of the direct-messaging key system: durable key storage, the
public key registry and its content store / profile directory collaborators.
"""

from .cache import LocalCache, MemoryCache, FileCache
from .content_store import ContentStore, ContentStoreError, MemoryContentStore, HTTPContentStore
from .directory import (
    Profile,
    ProfileDirectory,
    DirectoryError,
    MemoryProfileDirectory,
    HTTPProfileDirectory,
)
from .registry import PublicKeyRegistry, CACHE_TTL_MS
from .storage import SQLKeyStore

__all__ = [
    'LocalCache',
    'MemoryCache',
    'FileCache',
    'ContentStore',
    'ContentStoreError',
    'MemoryContentStore',
    'HTTPContentStore',
    'Profile',
    'ProfileDirectory',
    'DirectoryError',
    'MemoryProfileDirectory',
    'HTTPProfileDirectory',
    'PublicKeyRegistry',
    'CACHE_TTL_MS',
    'SQLKeyStore',
]
