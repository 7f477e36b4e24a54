"""
Key resolver: fetches, converts and caches signing keys per key set location.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

import httpx
from jose import jwk
from jose.backends.base import Key
from jose.constants import ALGORITHMS
from jose.exceptions import JWKError

from shared.config import get_settings
from shared.errors import ErrorKind, KeyResolutionError
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector

SUPPORTED_ALGORITHMS = frozenset(ALGORITHMS.RSA_DS | ALGORITHMS.EC_DS)

_EC_CURVE_ALGORITHMS = {
    "P-256": ALGORITHMS.ES256,
    "P-384": ALGORITHMS.ES384,
    "P-521": ALGORITHMS.ES512,
}

logger = get_logger("gate.jwks")


@dataclass(frozen=True)
class VerificationKey:
    """A public key ready for signature verification."""

    key_id: str
    algorithm: str
    key: Key
    fetched_at: float


@dataclass(frozen=True)
class KeyCacheEntry:
    """Converted keys of one key set, replaced as a whole on refresh."""

    key_set_location: str
    keys: Mapping[str, VerificationKey]
    fetched_at: float


def algorithm_for(descriptor: Mapping[str, Any]) -> Optional[str]:
    """Signature algorithm for a JWK descriptor, or None if unusable."""
    alg = descriptor.get("alg")
    if isinstance(alg, str) and alg:
        return alg if alg in SUPPORTED_ALGORITHMS else None

    kty = descriptor.get("kty")
    if kty == "RSA":
        return ALGORITHMS.RS256
    if kty == "EC":
        return _EC_CURVE_ALGORITHMS.get(descriptor.get("crv"))
    return None


def to_verification_key(descriptor: Any, fetched_at: float) -> Optional[VerificationKey]:
    """Convert one key set entry. Entries that cannot verify signatures yield None."""
    if not isinstance(descriptor, dict):
        return None

    kid = descriptor.get("kid")
    if not isinstance(kid, str) or not kid:
        logger.warning("Skipping key without kid", kty=descriptor.get("kty"))
        return None

    if descriptor.get("use") == "enc":
        return None

    algorithm = algorithm_for(descriptor)
    if algorithm is None:
        logger.warning("Skipping key with unsupported algorithm", kid=kid, alg=descriptor.get("alg"))
        return None

    try:
        key = jwk.construct(descriptor, algorithm).public_key()
    except (JWKError, ValueError, TypeError, KeyError) as exc:
        logger.warning("Skipping unparseable key", kid=kid, error=str(exc))
        return None

    return VerificationKey(key_id=kid, algorithm=algorithm, key=key, fetched_at=fetched_at)


class KeyResolver:
    """Resolves signing keys by key set location and key id.

    Entries live for ``cache_ttl`` seconds. At most one fetch per location is
    in flight; concurrent callers await it and get its key set or its
    FetchFailed. Other locations are unaffected.

    A resolver that creates its own HTTP client must be closed with
    ``close()``; for the process-wide one use ``close_key_resolver()``.
    """

    def __init__(
        self,
        cache_ttl: float = 300.0,
        fetch_timeout: float = 5.0,
        *,
        client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache_ttl = cache_ttl
        self.fetch_timeout = fetch_timeout
        self.metrics = metrics or get_metrics_collector()
        self._clock = clock

        self._entries: Dict[str, KeyCacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task[KeyCacheEntry]] = {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=fetch_timeout)

    async def close(self) -> None:
        """Close the underlying HTTP client if this resolver created it."""
        if self._owns_client:
            await self._client.aclose()

    async def resolve(self, key_set_location: str, key_id: str) -> VerificationKey:
        """Return the key ``key_id`` published at ``key_set_location``.

        Raises KeyResolutionError with kind FetchFailed or KeyNotFound.
        """
        entry = self._entries.get(key_set_location)
        if entry is not None and self._is_fresh(entry) and key_id in entry.keys:
            return entry.keys[key_id]

        entry = await self._refresh(key_set_location, seen=entry)
        key = entry.keys.get(key_id)
        if key is None:
            logger.warning("Key not found in key set", kid=key_id, jku=key_set_location)
            raise KeyResolutionError(
                ErrorKind.KEY_NOT_FOUND,
                f"No key '{key_id}' published at {key_set_location}",
                details={"kid": key_id, "jku": key_set_location},
            )
        return key

    def invalidate(self, key_set_location: str) -> None:
        """Drop the cached keys of one location; the next resolve refetches."""
        if self._entries.pop(key_set_location, None) is not None:
            logger.info("Key set invalidated", jku=key_set_location)

    def clear(self) -> None:
        """Drop every cached key set."""
        self._entries.clear()
        logger.info("Key set cache cleared")

    def is_cached(self, key_set_location: str, key_id: Optional[str] = None) -> bool:
        entry = self._entries.get(key_set_location)
        if entry is None or not self._is_fresh(entry):
            return False
        return key_id is None or key_id in entry.keys

    def _is_fresh(self, entry: KeyCacheEntry) -> bool:
        return (self._clock() - entry.fetched_at) < self.cache_ttl

    async def _refresh(self, key_set_location: str, *, seen: Optional[KeyCacheEntry]) -> KeyCacheEntry:
        # Another caller may have refreshed since this one last looked.
        current = self._entries.get(key_set_location)
        if current is not None and current is not seen and self._is_fresh(current):
            return current

        task = self._inflight.get(key_set_location)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(key_set_location))
            self._inflight[key_set_location] = task
            task.add_done_callback(lambda done: self._forget_inflight(key_set_location, done))
        # Shielded so a cancelled waiter leaves the shared fetch running.
        return await asyncio.shield(task)

    def _forget_inflight(self, key_set_location: str, task: asyncio.Task[KeyCacheEntry]) -> None:
        if self._inflight.get(key_set_location) is task:
            del self._inflight[key_set_location]
        if not task.cancelled():
            # Marks the exception retrieved when every waiter has gone away.
            task.exception()

    async def _fetch_and_store(self, key_set_location: str) -> KeyCacheEntry:
        entry = await self._fetch(key_set_location)
        self._entries[key_set_location] = entry
        return entry

    async def _fetch(self, key_set_location: str) -> KeyCacheEntry:
        started = time.perf_counter()
        try:
            response = await self._client.get(key_set_location, timeout=self.fetch_timeout)
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPError as exc:
            self.metrics.record_jwks_fetch("error", time.perf_counter() - started)
            logger.error("Key set fetch failed", jku=key_set_location, error=str(exc))
            raise KeyResolutionError(
                ErrorKind.FETCH_FAILED,
                f"Could not fetch key set from {key_set_location}",
                details={"jku": key_set_location, "error": str(exc)},
            ) from exc
        except ValueError as exc:
            self.metrics.record_jwks_fetch("error", time.perf_counter() - started)
            logger.error("Key set response is not JSON", jku=key_set_location)
            raise KeyResolutionError(
                ErrorKind.FETCH_FAILED,
                f"Key set at {key_set_location} is not valid JSON",
                details={"jku": key_set_location},
            ) from exc

        descriptors = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(descriptors, list):
            self.metrics.record_jwks_fetch("error", time.perf_counter() - started)
            raise KeyResolutionError(
                ErrorKind.FETCH_FAILED,
                f"Key set at {key_set_location} is missing a 'keys' array",
                details={"jku": key_set_location},
            )

        fetched_at = self._clock()
        keys: Dict[str, VerificationKey] = {}
        for descriptor in descriptors:
            key = to_verification_key(descriptor, fetched_at)
            if key is not None:
                keys[key.key_id] = key

        self.metrics.record_jwks_fetch("ok", time.perf_counter() - started)
        logger.info("Key set refreshed", jku=key_set_location, keys_count=len(keys))
        return KeyCacheEntry(
            key_set_location=key_set_location,
            keys=MappingProxyType(keys),
            fetched_at=fetched_at,
        )


@lru_cache()
def get_key_resolver() -> KeyResolver:
    """Process-wide resolver configured from settings."""
    settings = get_settings()
    return KeyResolver(
        cache_ttl=settings.jwks_cache_ttl,
        fetch_timeout=settings.jwks_fetch_timeout,
    )


async def close_key_resolver() -> None:
    """Close the process-wide resolver, if one was built, and forget it."""
    if get_key_resolver.cache_info().currsize:
        await get_key_resolver().close()
        get_key_resolver.cache_clear()
