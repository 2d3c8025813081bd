"""
Public Key Registry

Makes encryption public keys discoverable for E2E messaging. Keys are
published to a content-addressed store and cached locally.

Flow:
1. User initializes keys -> public key record published -> content id kept locally
2. Sender wants to message a user -> find their key content id -> fetch the record
3. Local cache (24h, expired lazily on read) avoids repeated fetches
"""

import json
import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from dmcrypto.keys import ExportedPublicKey
from dmcrypto.primitives import InvalidKeyFormat

from .cache import LocalCache
from .content_store import ContentStore, ContentStoreError
from .directory import ProfileDirectory, DirectoryError

logger = logging.getLogger(__name__)

REGISTRY_CACHE_KEY = "dm-pubkey-cache"
OWN_KEY_CID_PREFIX = "dm-pubkey-cid-"
CACHE_TTL_MS = 24 * 60 * 60 * 1000  # 24 hours
RECORD_VERSION = 1


@dataclass
class PublicKeyRecord:
    """
    Record published to the content store.

    Attributes:
        address: Owner address (lowercase)
        public_key: Owner's exported public key
        published_at: Epoch milliseconds
        version: Record format version
    """
    address: str
    public_key: ExportedPublicKey
    published_at: int
    version: int = RECORD_VERSION

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'address': self.address,
            'publicKey': self.public_key.to_dict(),
            'publishedAt': self.published_at,
            'version': self.version,
        }


@dataclass
class CacheEntry:
    """A resolved public key and where it came from"""
    public_key: ExportedPublicKey
    cid: str
    fetched_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'publicKey': self.public_key.to_dict(),
            'cid': self.cid,
            'fetchedAt': self.fetched_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CacheEntry':
        return cls(
            public_key=ExportedPublicKey.from_dict(data['publicKey']),
            cid=str(data['cid']),
            fetched_at=int(data['fetchedAt']),
        )


class PublicKeyRegistry:
    """
    Publishes our public key and resolves other users' keys.

    Resolution order: local cache -> directory-indicated fetch -> unknown.
    Failed fetches are never cached.
    """

    def __init__(self, content_store: ContentStore, cache: LocalCache,
                 directory: Optional[ProfileDirectory] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            content_store: Where key records are published and fetched
            cache: Local storage for the key cache and own-key pointers
            directory: Optional profile directory used by lookups
            clock: Returns the current time in seconds
        """
        self.content_store = content_store
        self.cache = cache
        self.directory = directory
        self.clock = clock

    def _now_ms(self) -> int:
        return int(round(self.clock() * 1000))

    # -- local cache ----------------------------------------------------------

    def _get_cache(self) -> Dict[str, Any]:
        stored = self.cache.get_item(REGISTRY_CACHE_KEY)
        if not stored:
            return {}
        try:
            data = json.loads(stored)
        except ValueError as e:
            logger.debug("Discarding unreadable public key cache: %s", e)
            return {}
        return data if isinstance(data, dict) else {}

    def _set_cache(self, cache: Dict[str, Any]):
        self.cache.set_item(REGISTRY_CACHE_KEY, json.dumps(cache))

    def _get_cached_entry(self, address: str) -> Optional[CacheEntry]:
        cache = self._get_cache()
        normalized = address.lower()
        raw = cache.get(normalized)
        if raw is None:
            return None

        try:
            entry = CacheEntry.from_dict(raw)
        except (InvalidKeyFormat, KeyError, TypeError, ValueError):
            logger.debug("Dropping malformed cache entry for %s", normalized)
            entry = None

        if entry is None or self._now_ms() - entry.fetched_at > CACHE_TTL_MS:
            # Expired (or unusable): evict
            del cache[normalized]
            self._set_cache(cache)
            return None

        return entry

    def _set_cached_key(self, address: str, public_key: ExportedPublicKey, cid: str):
        cache = self._get_cache()
        cache[address.lower()] = CacheEntry(
            public_key=public_key,
            cid=cid,
            fetched_at=self._now_ms(),
        ).to_dict()
        self._set_cache(cache)

    # -- own key pointer ------------------------------------------------------

    def get_own_key_cid(self, address: str) -> Optional[str]:
        """Get the content id where our own public key record is stored"""
        return self.cache.get_item(f"{OWN_KEY_CID_PREFIX}{address.lower()}")

    def _set_own_key_cid(self, address: str, cid: str):
        self.cache.set_item(f"{OWN_KEY_CID_PREFIX}{address.lower()}", cid)

    def forget_own_key_cid(self, address: str):
        """
        Drop the pointer to our published record.

        Call when the local key pair is deleted, so the next publish uploads
        the new public key instead of returning the old content id.
        """
        self.cache.remove_item(f"{OWN_KEY_CID_PREFIX}{address.lower()}")

    # -- public API -----------------------------------------------------------

    async def publish_public_key(self, address: str, public_key: ExportedPublicKey) -> str:
        """
        Publish our public key and cache it.

        Idempotent per device: once a content id has been recorded for
        ``address`` it is returned without contacting the store again.

        Returns:
            Content id of the published record

        Raises:
            ContentStoreError: If the upload fails
        """
        existing_cid = self.get_own_key_cid(address)
        if existing_cid:
            return existing_cid

        record = PublicKeyRecord(
            address=address.lower(),
            public_key=public_key,
            published_at=self._now_ms(),
        )
        cid = await self.content_store.publish(record.to_dict())
        logger.info("Published public key for %s as %s", address.lower(), cid)

        self._set_own_key_cid(address, cid)
        self._set_cached_key(address, public_key, cid)
        return cid

    async def fetch_public_key(self, address: str,
                               content_id: Optional[str] = None) -> Optional[ExportedPublicKey]:
        """
        Fetch a user's public key.

        Args:
            address: The user's address
            content_id: Optional known content id of their key record

        Returns:
            The public key, or None if it is unknown or could not be fetched
        """
        cached = self._get_cached_entry(address)
        if cached:
            return cached.public_key

        if content_id:
            try:
                record = await self.content_store.fetch(content_id)
                public_key = ExportedPublicKey.from_dict(record.get('publicKey'))
            except (ContentStoreError, InvalidKeyFormat, AttributeError) as e:
                logger.warning("Failed to fetch public key for %s from %s: %s",
                               address.lower(), content_id, e)
                return None

            self._set_cached_key(address, public_key, content_id)
            return public_key

        return None

    async def lookup_public_key_by_address(self, address: str) -> Optional[ExportedPublicKey]:
        """
        Look up a user's public key by address.

        Resolution order:
        1. Local cache
        2. Profile's public key content id -> fetch
        3. None (key not discoverable)
        """
        cached = self._get_cached_entry(address)
        if cached:
            return cached.public_key

        if self.directory is None:
            return None

        try:
            profile = await self.directory.get_profile(address)
        except DirectoryError as e:
            logger.warning("Profile lookup for %s failed: %s", address.lower(), e)
            return None

        if profile and profile.public_key_cid:
            return await self.fetch_public_key(address, profile.public_key_cid)

        return None

    def has_cached_public_key(self, address: str) -> bool:
        """Check if we have an unexpired cached public key for an address"""
        return self._get_cached_entry(address) is not None

    def get_cached_key_cid(self, address: str) -> Optional[str]:
        """Get the content id of a cached public key (for sharing)"""
        cached = self._get_cached_entry(address)
        return cached.cid if cached else None

    def clear_public_key_cache(self):
        """Clear the entire public key cache (own-key pointers are kept)"""
        self.cache.remove_item(REGISTRY_CACHE_KEY)
