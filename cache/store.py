"""
cache/store.py -- In-memory TTL stores for ephemeral flow state and credentials.

ExpiringStore holds short-lived records keyed by string: pending
authorization requests (by state), flow error records (by state) and
provisioning progress (by progress id). Every entry carries an absolute
deadline fixed when it is set; nothing extends it.

CredentialCache sits in front of the vault-backed CredentialStore. An entry
is never allowed to outlive the tokens it holds:

    effective_ttl = min(requested_ttl, earliest_expiry - now - buffer)

and a lookup also misses when any populated tier is inside the buffer, so a
stale bundle is never served -- only an extra vault read can happen.

Both take an injectable clock so tests can move time without sleeping.
There are no locks: single dict operations (get, pop, assignment) are
atomic, and pop() is the one-shot consume used for state values.

Usage:
    cache = CredentialCache()
    cache.put("tenant", "client", bundle, timedelta(minutes=30))
    bundle = cache.get("tenant", "client")   # CredentialBundle or None
    cache.invalidate("tenant", "client")
    cache.purge_expired()                    # called periodically by the API lifespan
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Generic, Optional, TypeVar

from core.models import Clock, CredentialBundle, utc_now

_DEFAULT_TTL = timedelta(minutes=30)
_DEFAULT_BUFFER = timedelta(minutes=5)

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: datetime


class ExpiringStore(Generic[V]):
    def __init__(self, ttl: timedelta, clock: Clock = utc_now) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Any, _Entry[V]] = {}

    def set(self, key: Any, value: V, ttl: Optional[timedelta] = None) -> None:
        """Store value, replacing any existing entry. A non-positive ttl stores nothing."""
        ttl = self.ttl if ttl is None else ttl
        if ttl <= timedelta(0):
            self._entries.pop(key, None)
            return
        self._entries[key] = _Entry(value, self._clock() + ttl)

    def replace(self, key: Any, value: V) -> bool:
        """Overwrite the value of a live entry, keeping its original deadline.

        Returns False (and stores nothing) if the key is absent or expired.
        """
        entry = self._live(key)
        if entry is None:
            return False
        self._entries[key] = _Entry(value, entry.expires_at)
        return True

    def get(self, key: Any) -> Optional[V]:
        entry = self._live(key)
        return entry.value if entry else None

    def pop(self, key: Any) -> Optional[V]:
        """Remove and return the value. Second and later calls for the same key return None."""
        entry = self._entries.pop(key, None)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.value

    def expires_at(self, key: Any) -> Optional[datetime]:
        entry = self._live(key)
        return entry.expires_at if entry else None

    def discard(self, key: Any) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number removed."""
        now = self._clock()
        expired = [k for k, e in list(self._entries.items()) if e.expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def _live(self, key: Any) -> Optional[_Entry[V]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry


class CredentialCache:
    def __init__(
        self,
        ttl: timedelta = _DEFAULT_TTL,
        buffer: timedelta = _DEFAULT_BUFFER,
        clock: Clock = utc_now,
    ) -> None:
        self.ttl = ttl
        self.buffer = buffer
        self._clock = clock
        self._store: ExpiringStore[CredentialBundle] = ExpiringStore(ttl, clock)

    def get(self, tenant_ref: str, client_ref: str) -> Optional[CredentialBundle]:
        """Return the cached bundle only if every populated tier is outside the refresh buffer."""
        key = (tenant_ref, client_ref)
        bundle = self._store.get(key)
        if bundle is None:
            return None
        threshold = self._clock() + self.buffer
        if any(t.expires_at <= threshold for t in bundle.populated()):
            self._store.discard(key)
            return None
        return bundle

    def put(
        self,
        tenant_ref: str,
        client_ref: str,
        bundle: CredentialBundle,
        ttl: Optional[timedelta] = None,
    ) -> timedelta:
        """Cache bundle for min(ttl, earliest expiry - now - buffer). Returns the effective TTL.

        A zero or negative effective TTL means the bundle is not cached at all.
        """
        effective = self.ttl if ttl is None else ttl
        earliest = bundle.earliest_expiry()
        if earliest is not None:
            effective = min(effective, earliest - self._clock() - self.buffer)
        effective = max(effective, timedelta(0))
        self._store.set((tenant_ref, client_ref), bundle, effective)
        return effective

    def invalidate(self, tenant_ref: str, client_ref: str) -> None:
        self._store.discard((tenant_ref, client_ref))

    def purge_expired(self) -> int:
        return self._store.purge_expired()

    def __len__(self) -> int:
        return len(self._store)
