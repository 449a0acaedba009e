"""
OAuth State Registry

Single-use anti-CSRF state tokens shared across concurrent requests. A token is
either present-and-unused or absent; verifying a token removes it, so a replayed
callback never validates twice.

The registry delegates storage to an injectable backend:
- MemoryStateBackend: process-local dictionary, for single-instance deployments
- RedisStateBackend: shared Redis keys, for deployments running several workers

Backends own their own synchronization. Callers only ever see issue, contains,
verify_and_consume and discard.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from time import time
from typing import Callable, Dict, Optional

import redis.asyncio as redis

from datahub.broker.auth.errors import StateGenerationFailed

logger = logging.getLogger(__name__)

STATE_TOKEN_BYTES = 32
"""Random bytes per state token (256 bits of entropy)."""

DEFAULT_STATE_TTL = 600
"""Seconds a state token stays valid when nothing consumes it."""


def generate_state_token() -> str:
    """Generate a URL-safe random state token."""
    return secrets.token_urlsafe(STATE_TOKEN_BYTES)


class StateBackend(ABC):
    """Storage for pending state tokens."""

    @abstractmethod
    async def add(self, token: str, ttl: int) -> bool:
        """Register a token. Returns False if the token is already pending."""

    @abstractmethod
    async def contains(self, token: str) -> bool:
        pass

    @abstractmethod
    async def consume(self, token: str) -> bool:
        """Atomically remove a token, returning whether it was pending."""

    @abstractmethod
    async def discard(self, token: str) -> None:
        pass

    async def sweep(self) -> int:
        """Drop expired tokens. Returns the number removed."""
        return 0


class MemoryStateBackend(StateBackend):
    """
    In-process state storage.

    Mutations (add, consume, discard, sweep) run under an asyncio lock. Existence
    checks read the dictionary without taking it, since a read never suspends and
    cannot observe a half-applied mutation.
    """

    def __init__(self, clock: Callable[[], float] = time) -> None:
        self._tokens: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._tokens)

    async def add(self, token: str, ttl: int) -> bool:
        async with self._lock:
            now = self._clock()
            self._sweep_locked(now)
            if token in self._tokens:
                return False
            self._tokens[token] = now + ttl
            return True

    async def contains(self, token: str) -> bool:
        expires_at = self._tokens.get(token)
        return expires_at is not None and expires_at > self._clock()

    async def consume(self, token: str) -> bool:
        async with self._lock:
            expires_at = self._tokens.pop(token, None)
        return expires_at is not None and expires_at > self._clock()

    async def discard(self, token: str) -> None:
        async with self._lock:
            self._tokens.pop(token, None)

    async def sweep(self) -> int:
        async with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [token for token, expires_at in self._tokens.items() if expires_at <= now]
        for token in expired:
            del self._tokens[token]
        return len(expired)


class RedisStateBackend(StateBackend):
    """
    Redis-backed state storage.

    Each pending token is a key with a TTL. Consumption relies on DEL returning the
    number of removed keys, so exactly one of several racing consumers observes 1.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "oauth_state:") -> None:
        self._redis = redis_client
        self._prefix = prefix

    def _key(self, token: str) -> str:
        return f"{self._prefix}{token}"

    async def add(self, token: str, ttl: int) -> bool:
        return bool(await self._redis.set(self._key(token), "1", nx=True, ex=ttl))

    async def contains(self, token: str) -> bool:
        return bool(await self._redis.exists(self._key(token)))

    async def consume(self, token: str) -> bool:
        return await self._redis.delete(self._key(token)) == 1

    async def discard(self, token: str) -> None:
        await self._redis.delete(self._key(token))


class StateRegistry:
    """Issues and verifies single-use OAuth state tokens."""

    def __init__(
        self,
        backend: Optional[StateBackend] = None,
        ttl: int = DEFAULT_STATE_TTL,
        token_factory: Callable[[], str] = generate_state_token,
    ) -> None:
        self._backend = backend if backend is not None else MemoryStateBackend()
        self._ttl = ttl
        self._token_factory = token_factory

    @property
    def backend(self) -> StateBackend:
        return self._backend

    async def issue(self) -> str:
        """
        Mint a fresh state token and register it as pending.

        Raises:
            StateGenerationFailed: If the system could not supply randomness. This is
                fatal to the request and is not retried.
        """
        try:
            token = self._token_factory()
        except (OSError, NotImplementedError) as e:
            logger.exception("Unable to generate state token")
            raise StateGenerationFailed(details=str(e)) from e

        if not await self._backend.add(token, self._ttl):
            raise StateGenerationFailed(details="generated state token collided")
        return token

    async def contains(self, token: Optional[str]) -> bool:
        if not token:
            return False
        return await self._backend.contains(token)

    async def verify_and_consume(self, token: Optional[str]) -> bool:
        """Check that a token is pending and remove it in one step."""
        if not token:
            return False
        consumed = await self._backend.consume(token)
        if not consumed:
            logger.info("Rejected unknown or already consumed state token")
        return consumed

    async def discard(self, token: Optional[str]) -> None:
        if not token:
            return
        await self._backend.discard(token)

    async def sweep(self) -> int:
        return await self._backend.sweep()
