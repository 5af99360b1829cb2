"""
============================================================================
Execution Gate - Intent Context Store
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: Store failures logged with CTX-050

Keyed storage of IntentContext objects behind an async get/put/delete
interface:

    InMemoryContextStore - process-local, TTL evicted on access
    RedisContextStore    - shared across instances, SET ... EX ttl

Contexts are stored as serialized snapshots. A caller that mutates a
context must put() it back; nothing is shared by reference.

ERROR CODES:
    - CTX-050: Context store unavailable

============================================================================
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Tuple, Callable
import asyncio
import json
import logging
import random
import time

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.gate_config import GateConfig
from services.gate_models import IntentContext, GateJSONEncoder

# Configure module logger
logger = logging.getLogger(__name__)


DEFAULT_KEY_PREFIX = "gate:intent_ctx:"
DEFAULT_TTL_SECONDS = 3600


class ContextStoreErrorCode:
    UNAVAILABLE = "CTX-050"


class ContextStoreUnavailable(Exception):
    """Raised when the backing store cannot be reached."""

    def __init__(self, message: str) -> None:
        self.error_code = ContextStoreErrorCode.UNAVAILABLE
        self.message = message
        super().__init__(f"[{self.error_code}] {message}")


# =============================================================================
# Interface
# =============================================================================

class IntentContextStore(ABC):
    """Async keyed store of per-session IntentContext snapshots."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[IntentContext]:
        pass

    @abstractmethod
    async def put(self, context: IntentContext) -> None:
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        pass

    async def get_or_create(
        self,
        session_id: str,
        wallet_address: Optional[str] = None,
    ) -> IntentContext:
        """Load the session context, creating a fresh Research/Idle one on first use."""
        context = await self.get(session_id)
        if context is None:
            context = IntentContext(session_id=session_id, wallet_address=wallet_address)
            await self.put(context)
            logger.debug(f"[CONTEXT-STORE] Created context | session_id={session_id}")
        elif wallet_address and not context.wallet_address:
            context.wallet_address = wallet_address
        return context


# =============================================================================
# InMemoryContextStore
# =============================================================================

class InMemoryContextStore(IntentContextStore):
    """
    Process-local store with TTL eviction.

    Expired entries are dropped when read, and every write sweeps the whole
    map at most once per TTL period so abandoned sessions do not accumulate.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got: {ttl_seconds}")
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._next_sweep_at = clock() + ttl_seconds

    async def get(self, session_id: str) -> Optional[IntentContext]:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        payload, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[session_id]
            logger.debug(f"[CONTEXT-STORE] Evicted expired context | session_id={session_id}")
            return None
        return IntentContext.from_dict(json.loads(payload))

    async def put(self, context: IntentContext) -> None:
        payload = json.dumps(context.to_dict(), cls=GateJSONEncoder)
        now = self._clock()
        if now >= self._next_sweep_at:
            self.purge_expired()
        self._entries[context.session_id] = (payload, now + self._ttl_seconds)

    async def delete(self, session_id: str) -> None:
        self._entries.pop(session_id, None)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._next_sweep_at = now + self._ttl_seconds
        if expired:
            logger.debug(f"[CONTEXT-STORE] Purged expired contexts | count={len(expired)}")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# RedisContextStore
# =============================================================================

class RedisContextStore(IntentContextStore):
    """
    Redis-backed store shared by all gate instances.

    Each operation is retried once after a short jittered pause; a second
    failure raises ContextStoreUnavailable so the caller fails closed.
    """

    def __init__(
        self,
        client: "aioredis.Redis",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        retry_jitter_ms: int = 100,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got: {ttl_seconds}")
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._key_prefix = key_prefix
        self._retry_jitter_ms = retry_jitter_ms

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> "RedisContextStore":
        return cls(aioredis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, session_id: str) -> str:
        return f"{self._key_prefix}{session_id}"

    async def _run(self, op_name: str, op):
        for attempt in range(2):
            try:
                return await op()
            except RedisError as e:
                logger.warning(
                    f"[CONTEXT-STORE] Redis {op_name} failed | attempt={attempt + 1}/2 | error={e}"
                )
                if attempt == 0:
                    await asyncio.sleep(random.uniform(0, self._retry_jitter_ms) / 1000.0)
                    continue
                logger.error(
                    f"[{ContextStoreErrorCode.UNAVAILABLE}] Redis {op_name} failed after retry"
                )
                raise ContextStoreUnavailable(f"Redis {op_name} failed: {e}") from e

    async def get(self, session_id: str) -> Optional[IntentContext]:
        raw = await self._run("get", lambda: self._client.get(self._key(session_id)))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return IntentContext.from_dict(json.loads(raw))

    async def put(self, context: IntentContext) -> None:
        payload = json.dumps(context.to_dict(), cls=GateJSONEncoder)
        await self._run(
            "set",
            lambda: self._client.set(self._key(context.session_id), payload, ex=self._ttl_seconds),
        )

    async def delete(self, session_id: str) -> None:
        await self._run("delete", lambda: self._client.delete(self._key(session_id)))

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# Factory
# =============================================================================

def create_context_store(config: GateConfig) -> IntentContextStore:
    """Redis when INTENT_CONTEXT_REDIS_URL is set, otherwise in-memory."""
    if config.context_redis_url:
        logger.info(
            f"[CONTEXT-STORE] Using Redis store | ttl_seconds={config.context_ttl_seconds}"
        )
        return RedisContextStore.from_url(
            config.context_redis_url, ttl_seconds=config.context_ttl_seconds
        )
    logger.info(
        f"[CONTEXT-STORE] Using in-memory store | ttl_seconds={config.context_ttl_seconds}"
    )
    return InMemoryContextStore(ttl_seconds=config.context_ttl_seconds)


__all__ = [
    "ContextStoreErrorCode",
    "ContextStoreUnavailable",
    "IntentContextStore",
    "InMemoryContextStore",
    "RedisContextStore",
    "create_context_store",
]
