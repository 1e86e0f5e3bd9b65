"""
tests/test_credential_cache.py -- Unit tests for cache/store.py.

All time movement goes through FakeClock; nothing sleeps.

Coverage:
  - Effective TTL = min(requested, earliest expiry - now - buffer), floored at 0
  - Token expiring inside the TTL window is never served (3-minute expiry, 5-minute ttl)
  - A populated tier entering the buffer turns a hit into a miss
  - invalidate / purge_expired
  - ExpiringStore: pop is one-shot, replace keeps the deadline, non-positive ttl stores nothing
"""

from __future__ import annotations

from datetime import timedelta

from cache.store import CredentialCache, ExpiringStore
from conftest import CLIENT, TENANT, make_bundle


class TestCredentialCachePut:
    def test_ttl_capped_by_token_expiry(self, clock) -> None:
        cache = CredentialCache(clock=clock)
        bundle = make_bundle(clock.now, rm_minutes=20)
        effective = cache.put(TENANT, CLIENT, bundle, timedelta(minutes=30))
        assert effective == timedelta(minutes=15)

    def test_requested_ttl_used_when_shorter(self, clock) -> None:
        cache = CredentialCache(clock=clock)
        effective = cache.put(TENANT, CLIENT, make_bundle(clock.now, rm_minutes=120), timedelta(minutes=10))
        assert effective == timedelta(minutes=10)

    def test_earliest_tier_wins(self, clock) -> None:
        cache = CredentialCache(clock=clock)
        bundle = make_bundle(clock.now, rm_minutes=60, dg_minutes=12)
        assert cache.put(TENANT, CLIENT, bundle, timedelta(minutes=30)) == timedelta(minutes=7)

    def test_token_expiring_within_ttl_is_not_cached(self, clock) -> None:
        cache = CredentialCache(clock=clock)
        bundle = make_bundle(clock.now, rm_minutes=3)
        effective = cache.put(TENANT, CLIENT, bundle, timedelta(minutes=5))
        assert effective == timedelta(0)
        assert cache.get(TENANT, CLIENT) is None
        assert len(cache) == 0

    def test_default_ttl(self, clock) -> None:
        cache = CredentialCache(ttl=timedelta(minutes=30), clock=clock)
        assert cache.put(TENANT, CLIENT, make_bundle(clock.now, rm_minutes=600)) == timedelta(minutes=30)


class TestCredentialCacheGet:
    def test_hit_returns_same_bundle(self, clock) -> None:
        cache = CredentialCache(clock=clock)
        bundle = make_bundle(clock.now, rm_minutes=60)
        cache.put(TENANT, CLIENT, bundle)
        assert cache.get(TENANT, CLIENT) is bundle

    def test_entry_expires_with_effective_ttl(self, clock) -> None:
        cache = CredentialCache(clock=clock)
        cache.put(TENANT, CLIENT, make_bundle(clock.now, rm_minutes=60), timedelta(minutes=10))
        clock.advance(minutes=10)
        assert cache.get(TENANT, CLIENT) is None

    def test_tier_inside_buffer_is_a_miss(self, clock) -> None:
        cache = CredentialCache(buffer=timedelta(minutes=5), clock=clock)
        bundle = make_bundle(clock.now, rm_minutes=60)
        # Bypass put()'s TTL formula to simulate an entry stored under a longer-lived bundle.
        cache._store.set((TENANT, CLIENT), bundle, timedelta(hours=2))
        clock.advance(minutes=56)
        assert cache.get(TENANT, CLIENT) is None
        assert len(cache) == 0

    def test_keys_are_per_tenant_and_client(self, clock) -> None:
        cache = CredentialCache(clock=clock)
        cache.put(TENANT, CLIENT, make_bundle(clock.now))
        assert cache.get(TENANT, "other-client") is None
        assert cache.get("other-tenant", CLIENT) is None

    def test_invalidate(self, clock) -> None:
        cache = CredentialCache(clock=clock)
        cache.put(TENANT, CLIENT, make_bundle(clock.now))
        cache.invalidate(TENANT, CLIENT)
        assert cache.get(TENANT, CLIENT) is None

    def test_purge_expired(self, clock) -> None:
        cache = CredentialCache(clock=clock)
        cache.put(TENANT, CLIENT, make_bundle(clock.now), timedelta(minutes=1))
        cache.put(TENANT, "long", make_bundle(clock.now, client="long"), timedelta(minutes=20))
        clock.advance(minutes=2)
        assert cache.purge_expired() == 1
        assert len(cache) == 1


class TestExpiringStore:
    def test_pop_is_single_use(self, clock) -> None:
        store: ExpiringStore[str] = ExpiringStore(timedelta(minutes=10), clock)
        store.set("state", "request")
        assert store.pop("state") == "request"
        assert store.pop("state") is None

    def test_pop_after_expiry_returns_none(self, clock) -> None:
        store: ExpiringStore[str] = ExpiringStore(timedelta(minutes=10), clock)
        store.set("state", "request")
        clock.advance(minutes=10)
        assert store.pop("state") is None

    def test_replace_keeps_deadline(self, clock) -> None:
        store: ExpiringStore[str] = ExpiringStore(timedelta(minutes=10), clock)
        store.set("k", "v1")
        deadline = store.expires_at("k")
        clock.advance(minutes=5)
        assert store.replace("k", "v2")
        assert store.get("k") == "v2"
        assert store.expires_at("k") == deadline

    def test_replace_missing_key(self, clock) -> None:
        store: ExpiringStore[str] = ExpiringStore(timedelta(minutes=10), clock)
        assert not store.replace("missing", "v")
        assert store.get("missing") is None

    def test_non_positive_ttl_stores_nothing(self, clock) -> None:
        store: ExpiringStore[str] = ExpiringStore(timedelta(minutes=10), clock)
        store.set("k", "v")
        store.set("k", "v2", timedelta(0))
        assert store.get("k") is None
