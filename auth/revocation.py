"""
auth/revocation.py -- Registry of tokens that must be rejected even when their
signature and expiry are valid.

Two backends share one interface:

  InMemoryRevocationRegistry  -- process-local dict guarded by a lock. A
      process restart or a second instance forgets every entry, re-admitting
      a logged-out token until its natural expiry. Fine for a single process.

  RedisRevocationRegistry     -- one Redis key per token with a TTL equal to
      the token's remaining lifetime. Shared by every instance pointing at the
      same Redis, and entries disappear on their own once the token could no
      longer authenticate anyway.

Both key entries by expiry so the registry never grows beyond the set of
still-live revoked tokens. create_registry() picks the backend from settings.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from datetime import datetime
from typing import Protocol

from redis import Redis

from auth.tokens import token_expiry

logger = logging.getLogger("gsoauth.revocation")


class RevocationRegistry(Protocol):
    def add(self, token: str, expires_at: datetime | None = None) -> None: ...

    def contains(self, token: str) -> bool: ...

    def prune(self) -> int: ...

    def __len__(self) -> int: ...


def _expiry_epoch(token: str, expires_at: datetime | None, default_ttl: int) -> float:
    if expires_at is None:
        expires_at = token_expiry(token)
    if expires_at is None:
        return time.time() + default_ttl
    return expires_at.timestamp()


class InMemoryRevocationRegistry:
    """Thread-safe set of revoked tokens with expiry-based pruning.

    Usage:
        registry = InMemoryRevocationRegistry(default_ttl=3600)
        registry.add(token)
        registry.contains(token)  # True until the token's exp passes
    """

    def __init__(self, default_ttl: int = 3600, clock=time.time) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, float] = {}

    def add(self, token: str, expires_at: datetime | None = None) -> None:
        expiry = _expiry_epoch(token, expires_at, self.default_ttl)
        with self._lock:
            # Keep the later expiry if the same token is revoked twice.
            self._entries[token] = max(expiry, self._entries.get(token, 0.0))

    def contains(self, token: str) -> bool:
        with self._lock:
            expiry = self._entries.get(token)
            if expiry is None:
                return False
            if expiry <= self._clock():
                # Past its natural lifetime: signature verification rejects it now.
                del self._entries[token]
                return False
            return True

    def prune(self) -> int:
        """Drop entries whose token has expired. Returns the number removed."""
        now = self._clock()
        with self._lock:
            stale = [t for t, exp in self._entries.items() if exp <= now]
            for token in stale:
                del self._entries[token]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisRevocationRegistry:
    """Revocation entries stored in Redis with TTL = remaining token lifetime.

    Keys are SHA-256 digests of the token so raw bearer credentials never sit
    in the cache.
    """

    KEY_PREFIX = "gsoauth:revoked:"

    def __init__(self, client: Redis, default_ttl: int = 3600) -> None:
        self.client = client
        self.default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: str, default_ttl: int = 3600, socket_timeout: float = 5.0) -> "RedisRevocationRegistry":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, default_ttl=default_ttl)

    def _key(self, token: str) -> str:
        return self.KEY_PREFIX + hashlib.sha256(token.encode()).hexdigest()

    def add(self, token: str, expires_at: datetime | None = None) -> None:
        ttl = int(_expiry_epoch(token, expires_at, self.default_ttl) - time.time())
        if ttl <= 0:
            return
        self.client.set(self._key(token), "1", ex=ttl)

    def contains(self, token: str) -> bool:
        return bool(self.client.exists(self._key(token)))

    def prune(self) -> int:
        # Redis expires keys itself.
        return 0

    def __len__(self) -> int:
        return sum(1 for _ in self.client.scan_iter(match=self.KEY_PREFIX + "*"))

    def close(self) -> None:
        self.client.close()


def create_registry(redis_url: str, default_ttl: int) -> RevocationRegistry:
    """Return a Redis-backed registry when redis_url is set, else in-memory."""
    if redis_url:
        logger.info("Revocation registry: redis")
        return RedisRevocationRegistry.from_url(redis_url, default_ttl=default_ttl)
    logger.warning("Revocation registry: in-memory (revocations are not shared across instances)")
    return InMemoryRevocationRegistry(default_ttl=default_ttl)
