"""
Tests for the public key registry: publishing, resolution order, caching
and the lazy 24h expiry.
"""

import json
import asyncio

from dmcrypto.keys import ExportedPublicKey, generate_key_pair, export_public_key
from dmclient.cache import MemoryCache
from dmclient.content_store import ContentStoreError, MemoryContentStore
from dmclient.directory import DirectoryError, MemoryProfileDirectory, ProfileDirectory
from dmclient.registry import (
    CACHE_TTL_MS,
    OWN_KEY_CID_PREFIX,
    REGISTRY_CACHE_KEY,
    PublicKeyRegistry,
)


ADDRESS = "0x1234567890ABCDEF"
TEST_KEY = ExportedPublicKey(x="test-x-coordinate", y="test-y-coordinate")


class CountingContentStore(MemoryContentStore):
    """Memory store that records how often it is hit"""

    def __init__(self):
        super().__init__()
        self.publish_calls = 0
        self.fetch_calls = 0

    async def publish(self, data):
        self.publish_calls += 1
        return await super().publish(data)

    async def fetch(self, cid):
        self.fetch_calls += 1
        return await super().fetch(cid)


class FailingContentStore(MemoryContentStore):
    async def fetch(self, cid):
        raise ContentStoreError("network unreachable")


class UnreachableDirectory(ProfileDirectory):
    async def get_profile(self, address):
        raise DirectoryError("directory offline")


class FakeClock:
    """Clock that moves in whole milliseconds"""

    def __init__(self, now_ms=1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self):
        return self.now_ms / 1000.0

    def advance_ms(self, ms):
        self.now_ms += ms


def _registry(store=None, cache=None, directory=None, clock=None):
    return PublicKeyRegistry(
        store if store is not None else CountingContentStore(),
        cache if cache is not None else MemoryCache(),
        directory=directory,
        clock=clock or FakeClock(),
    )


def test_publish_is_idempotent():
    async def scenario():
        store = CountingContentStore()
        registry = _registry(store=store)

        first = await registry.publish_public_key(ADDRESS, TEST_KEY)
        second = await registry.publish_public_key(ADDRESS, TEST_KEY)

        assert first == second
        assert store.publish_calls == 1
        assert registry.get_own_key_cid(ADDRESS) == first
        # Pointer is keyed by lowercase address
        assert registry.get_own_key_cid(ADDRESS.lower()) == first

    asyncio.run(scenario())


def test_publish_record_format():
    async def scenario():
        clock = FakeClock(1_700_000_000_500)
        store = CountingContentStore()
        registry = _registry(store=store, clock=clock)

        cid = await registry.publish_public_key(ADDRESS, TEST_KEY)
        record = await store.fetch(cid)

        assert record == {
            "address": ADDRESS.lower(),
            "publicKey": {"x": "test-x-coordinate", "y": "test-y-coordinate"},
            "publishedAt": 1_700_000_000_500,
            "version": 1,
        }

    asyncio.run(scenario())


def test_publish_then_fetch_uses_cache():
    async def scenario():
        store = CountingContentStore()
        registry = _registry(store=store)

        cid = await registry.publish_public_key(ADDRESS, TEST_KEY)

        assert registry.has_cached_public_key(ADDRESS)
        assert registry.get_cached_key_cid(ADDRESS) == cid
        assert await registry.fetch_public_key(ADDRESS) == TEST_KEY
        assert await registry.lookup_public_key_by_address(ADDRESS) == TEST_KEY
        assert store.fetch_calls == 0

    asyncio.run(scenario())


def test_publish_failure_propagates_and_records_nothing():
    class BrokenStore(MemoryContentStore):
        async def publish(self, data):
            raise ContentStoreError("upload failed")

    async def scenario():
        registry = _registry(store=BrokenStore())
        try:
            await registry.publish_public_key(ADDRESS, TEST_KEY)
        except ContentStoreError:
            pass
        else:
            raise AssertionError("publish should have failed")

        assert registry.get_own_key_cid(ADDRESS) is None
        assert not registry.has_cached_public_key(ADDRESS)

    asyncio.run(scenario())


def test_fetch_by_content_id():
    async def scenario():
        remote = CountingContentStore()
        cid = await _registry(store=remote).publish_public_key(ADDRESS, TEST_KEY)

        # A different device sharing only the content store
        registry = _registry(store=remote)
        assert not registry.has_cached_public_key(ADDRESS)
        assert await registry.fetch_public_key(ADDRESS) is None

        assert await registry.fetch_public_key(ADDRESS, cid) == TEST_KEY
        assert registry.get_cached_key_cid(ADDRESS) == cid

        # Second call is served from the cache
        assert await registry.fetch_public_key(ADDRESS, cid) == TEST_KEY
        assert remote.fetch_calls == 1

    asyncio.run(scenario())


def test_fetch_failure_returns_none_and_is_not_cached():
    async def scenario():
        cache = MemoryCache()
        registry = _registry(store=FailingContentStore(), cache=cache)

        assert await registry.fetch_public_key(ADDRESS, "sha256-deadbeef") is None
        assert not registry.has_cached_public_key(ADDRESS)
        assert cache.get_item(REGISTRY_CACHE_KEY) is None

        # Unknown content id on a working store behaves the same way
        registry = _registry(cache=cache)
        assert await registry.fetch_public_key(ADDRESS, "sha256-missing") is None

    asyncio.run(scenario())


def test_fetch_rejects_record_without_public_key():
    async def scenario():
        store = CountingContentStore()
        no_key = await store.publish({"address": ADDRESS.lower(), "version": 1})
        bad_key = await store.publish({"address": ADDRESS.lower(), "publicKey": {"x": 5}})

        registry = _registry(store=store)
        assert await registry.fetch_public_key(ADDRESS, no_key) is None
        assert await registry.fetch_public_key(ADDRESS, bad_key) is None
        assert not registry.has_cached_public_key(ADDRESS)

    asyncio.run(scenario())


def test_cache_ttl_boundary():
    async def scenario():
        clock = FakeClock()
        store = CountingContentStore()
        cid = await store.publish({"address": ADDRESS.lower(), "publicKey": TEST_KEY.to_dict(),
                                   "publishedAt": 0, "version": 1})
        registry = _registry(store=store, clock=clock)

        assert await registry.fetch_public_key(ADDRESS, cid) == TEST_KEY
        assert store.fetch_calls == 1

        clock.advance_ms(CACHE_TTL_MS - 1)
        assert await registry.fetch_public_key(ADDRESS, cid) == TEST_KEY
        assert store.fetch_calls == 1

        clock.advance_ms(2)
        assert await registry.fetch_public_key(ADDRESS, cid) == TEST_KEY
        assert store.fetch_calls == 2

    asyncio.run(scenario())


def test_expired_entry_is_evicted_on_read():
    async def scenario():
        clock = FakeClock()
        cache = MemoryCache()
        registry = _registry(cache=cache, clock=clock)
        await registry.publish_public_key(ADDRESS, TEST_KEY)

        clock.advance_ms(CACHE_TTL_MS + 1)
        assert not registry.has_cached_public_key(ADDRESS)
        assert registry.get_cached_key_cid(ADDRESS) is None
        assert ADDRESS.lower() not in json.loads(cache.get_item(REGISTRY_CACHE_KEY))
        # Without a content id an expired key is simply unknown
        assert await registry.fetch_public_key(ADDRESS) is None

    asyncio.run(scenario())


def test_lookup_via_directory():
    async def scenario():
        store = CountingContentStore()
        directory = MemoryProfileDirectory()
        cid = await _registry(store=store).publish_public_key(ADDRESS, TEST_KEY)
        await directory.save_profile(ADDRESS, public_key_cid=cid)

        registry = _registry(store=store, directory=directory)
        assert await registry.lookup_public_key_by_address(ADDRESS) == TEST_KEY
        assert registry.get_cached_key_cid(ADDRESS) == cid

        # Normalized directory lookup tolerates leading zeros
        assert await directory.get_profile("0x001234567890abcdef") is not None

    asyncio.run(scenario())


def test_lookup_unknown_address():
    async def scenario():
        directory = MemoryProfileDirectory()
        await directory.save_profile("0xfeed", display_name="no key yet")

        registry = _registry(directory=directory)
        assert await registry.lookup_public_key_by_address("0xfeed") is None
        assert await registry.lookup_public_key_by_address("0xbeef") is None
        assert await _registry().lookup_public_key_by_address("0xbeef") is None

    asyncio.run(scenario())


def test_lookup_survives_directory_failure():
    async def scenario():
        registry = _registry(directory=UnreachableDirectory())
        assert await registry.lookup_public_key_by_address(ADDRESS) is None

    asyncio.run(scenario())


def test_cache_is_case_insensitive():
    async def scenario():
        registry = _registry()
        await registry.publish_public_key(ADDRESS.upper(), TEST_KEY)
        assert registry.has_cached_public_key(ADDRESS.lower())
        assert await registry.fetch_public_key("0x1234567890abcdef") == TEST_KEY

    asyncio.run(scenario())


def test_clear_cache_keeps_own_pointer():
    async def scenario():
        store = CountingContentStore()
        registry = _registry(store=store)
        cid = await registry.publish_public_key(ADDRESS, TEST_KEY)

        registry.clear_public_key_cache()
        assert not registry.has_cached_public_key(ADDRESS)
        assert registry.get_own_key_cid(ADDRESS) == cid

        assert await registry.publish_public_key(ADDRESS, TEST_KEY) == cid
        assert store.publish_calls == 1

    asyncio.run(scenario())


def test_corrupt_cache_is_treated_as_empty():
    async def scenario():
        cache = MemoryCache()
        cache.set_item(REGISTRY_CACHE_KEY, "{oops")
        registry = _registry(cache=cache)
        assert not registry.has_cached_public_key(ADDRESS)

        cache.set_item(REGISTRY_CACHE_KEY, json.dumps({ADDRESS.lower(): {"publicKey": "nope"}}))
        assert await registry.fetch_public_key(ADDRESS) is None

        await registry.publish_public_key(ADDRESS, TEST_KEY)
        assert registry.has_cached_public_key(ADDRESS)

    asyncio.run(scenario())


def test_own_key_pointer_storage_format():
    async def scenario():
        cache = MemoryCache()
        registry = _registry(cache=cache)
        cid = await registry.publish_public_key(ADDRESS, TEST_KEY)
        assert cache.get_item(f"{OWN_KEY_CID_PREFIX}{ADDRESS.lower()}") == cid

    asyncio.run(scenario())


def test_real_key_survives_publish_and_fetch():
    async def scenario():
        store = CountingContentStore()
        exported = export_public_key(generate_key_pair().public_key)
        cid = await _registry(store=store).publish_public_key(ADDRESS, exported)
        assert await _registry(store=store).fetch_public_key(ADDRESS, cid) == exported

    asyncio.run(scenario())


def test_forget_own_pointer_republishes_new_key():
    async def scenario():
        store = CountingContentStore()
        cache = MemoryCache()
        registry = _registry(store=store, cache=cache)
        old_key = export_public_key(generate_key_pair().public_key)
        new_key = export_public_key(generate_key_pair().public_key)

        old_cid = await registry.publish_public_key(ADDRESS, old_key)

        # Local keys deleted and regenerated
        registry.forget_own_key_cid(ADDRESS)
        registry.clear_public_key_cache()
        assert registry.get_own_key_cid(ADDRESS) is None
        assert cache.get_item(f"{OWN_KEY_CID_PREFIX}{ADDRESS.lower()}") is None

        new_cid = await registry.publish_public_key(ADDRESS, new_key)
        assert new_cid != old_cid
        assert store.publish_calls == 2
        assert (await store.fetch(new_cid))["publicKey"] == new_key.to_dict()
        assert await registry.fetch_public_key(ADDRESS) == new_key

        # Forgetting an address that never published is harmless
        registry.forget_own_key_cid("0xfeed")

    asyncio.run(scenario())


def test_lookup_with_unusable_content_id_returns_none():
    async def scenario():
        directory = MemoryProfileDirectory()
        await directory.save_profile(ADDRESS, public_key_cid="bad\x01cid")

        registry = _registry(directory=directory)
        assert await registry.lookup_public_key_by_address(ADDRESS) is None
        assert await registry.fetch_public_key(ADDRESS, "../profiles/x") is None
        assert not registry.has_cached_public_key(ADDRESS)

    asyncio.run(scenario())
