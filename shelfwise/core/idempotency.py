"""
Idempotency cache for deduplicating retried operations.

Results are stored under a caller-supplied key (preferred) or a key derived
from the operation name and its sorted parameters. The cache is allowed to
lose data: if the backing store is unreachable every lookup fails open and
the operation simply runs again.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from shelfwise.config import FeatureFlags
from shelfwise.core.kv_store import KeyValueStore
from shelfwise.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

KEY_PREFIX = "idempotency:"


class IdempotencyCache:
    """
    Caches successful operation results by idempotency key.

    Only successful results are stored; a failed operation may be retried
    with the same key.
    """

    def __init__(
        self,
        store: KeyValueStore,
        flags: FeatureFlags,
        default_ttl: int = 86400,
    ):
        """
        Initialize the cache.

        Args:
            store: Key-value backend
            flags: Feature flags (idempotency can be switched off)
            default_ttl: TTL in seconds when the caller does not pass one
        """
        self.kv = store
        self.flags = flags
        self.default_ttl = default_ttl

    @property
    def enabled(self) -> bool:
        return self.flags.idempotency_enabled

    @staticmethod
    def derive_key(operation: str, params: Dict[str, Any]) -> str:
        """
        Derive a deterministic key from an operation and its parameters.

        Args:
            operation: Operation name (e.g. "create_borrow_request")
            params: Operation parameters; order does not matter

        Returns:
            str: Key of the form "<operation>:<sha256>"
        """
        canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha256(f"{operation}:{canonical}".encode()).hexdigest()
        return f"{operation}:{digest}"

    async def check(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Look up a stored result.

        Args:
            key: Idempotency key

        Returns:
            Optional[Dict[str, Any]]: Stored result, or None on miss, when
            disabled, or when the store is unreachable
        """
        if not self.enabled:
            return None

        try:
            raw = await self.kv.get(f"{KEY_PREFIX}{key}")
        except Exception as e:
            logger.warning("idempotency_cache_error", error=str(e), idempotency_key=key)
            metrics.record_idempotency_cache_error("check")
            return None

        if raw is None:
            logger.debug("idempotency_cache_miss", idempotency_key=key)
            return None

        try:
            envelope = json.loads(raw)
            result = envelope["result"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("idempotency_cache_corrupt", error=str(e), idempotency_key=key)
            return None

        logger.info("idempotency_cache_hit", idempotency_key=key, source="cache")
        metrics.record_idempotency_cache_hit("cache")
        return result

    async def store(
        self,
        key: str,
        result: Dict[str, Any],
        ttl: Optional[int] = None,
        operation: Optional[str] = None,
    ) -> None:
        """
        Store a successful result.

        Args:
            key: Idempotency key
            result: JSON-serializable result
            ttl: TTL in seconds (defaults to the cache TTL)
            operation: Operation name kept alongside the result
        """
        if not self.enabled:
            return

        envelope = {
            "result": result,
            "operation": operation,
            "stored_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.kv.set(
                f"{KEY_PREFIX}{key}",
                json.dumps(envelope, default=str),
                ttl or self.default_ttl,
            )
            logger.info("idempotency_response_cached", idempotency_key=key, operation=operation)
        except Exception as e:
            logger.warning("idempotency_cache_store_error", error=str(e), idempotency_key=key)
            metrics.record_idempotency_cache_error("store")

    async def clear(self, key: str) -> None:
        """
        Invalidate a stored result (manual intervention).

        Args:
            key: Idempotency key
        """
        try:
            await self.kv.delete(f"{KEY_PREFIX}{key}")
            logger.info("idempotency_cache_invalidated", idempotency_key=key)
        except Exception as e:
            logger.warning("idempotency_cache_invalidate_error", error=str(e), idempotency_key=key)

    async def execute_idempotent(
        self,
        key: str,
        ttl: Optional[int],
        fn: Callable[[], Awaitable[Dict[str, Any]]],
        operation: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Return the stored result for key, or run fn and store its result.

        Exceptions raised by fn propagate and nothing is stored.

        Args:
            key: Idempotency key
            ttl: TTL in seconds for the stored result
            fn: Operation to run on a miss
            operation: Operation name for logging

        Returns:
            Dict[str, Any]: Stored or freshly computed result
        """
        cached = await self.check(key)
        if cached is not None:
            return cached

        result = await fn()
        await self.store(key, result, ttl, operation)
        return result
