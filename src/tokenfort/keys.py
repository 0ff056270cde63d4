"""Public key fetcher and cache: fetches the provider's signing keys.

Features:
- Expiry taken from the endpoint's Cache-Control max-age
- Refresh on expiry and on unknown kid (key rotation)
- Rate-limited unknown-kid refetch (max once per min_refetch_interval)
- Single in-flight refresh shared by all concurrent callers
- Copy-on-write swap: readers see the old set or the new one, never a mix
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import httpx
import jwt
from cryptography import x509
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from tokenfort.errors import KeyFetchError

logger = logging.getLogger("tokenfort.keys")

_MAX_AGE_RE = re.compile(r"max-age=(\d+)")


@dataclass(frozen=True, slots=True)
class CachedKeys:
    """An immutable snapshot of the provider's public keys."""

    keys: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    fetched_at: float = 0.0
    expires_at: float = 0.0


def parse_max_age(cache_control: str | None) -> int:
    """Extract max-age (seconds) from a Cache-Control header. Missing means 0."""
    if not cache_control:
        return 0
    match = _MAX_AGE_RE.search(cache_control)
    return int(match.group(1)) if match else 0


def parse_key_set(data: Any) -> dict[str, Any]:
    """Parse a key-set response body into {kid: public key}.

    Accepts a JWKS document ({"keys": [...]}) or a {kid: PEM} mapping of X.509
    certificates / public keys. Malformed entries are skipped.

    Raises:
        KeyFetchError: If the body has neither shape, or it lists keys but
            none of them parse.
    """
    if not isinstance(data, dict):
        raise KeyFetchError("Public key response is not a JSON object", "key_fetch_failed")

    keys: dict[str, Any] = {}
    if "keys" in data:
        entries = data["keys"]
        if not isinstance(entries, list):
            raise KeyFetchError("JWKS 'keys' member is not a list", "key_fetch_failed")
        for key_data in entries:
            if not isinstance(key_data, dict) or not key_data.get("kid"):
                continue
            try:
                keys[key_data["kid"]] = jwt.PyJWK(key_data).key
            except (jwt.PyJWKError, jwt.InvalidKeyError, KeyError, ValueError):
                logger.warning("Failed to parse JWK with kid=%s", key_data.get("kid"))
        if entries and not keys:
            raise KeyFetchError("JWKS contains no usable keys", "key_fetch_failed")
        return keys

    for kid, pem in data.items():
        try:
            keys[kid] = _load_pem(pem)
        except (TypeError, ValueError):
            logger.warning("Failed to parse public key with kid=%s", kid)
    if data and not keys:
        raise KeyFetchError("Public key response contains no usable keys", "key_fetch_failed")
    return keys


def _load_pem(pem: str):
    if not isinstance(pem, str):
        raise TypeError("PEM value must be a string")
    raw = pem.encode("utf-8")
    if b"BEGIN CERTIFICATE" in raw:
        return x509.load_pem_x509_certificate(raw).public_key()
    return load_pem_public_key(raw)


class PublicKeyFetcher:
    """Fetches and caches public signing keys from a key-set endpoint.

    Args:
        keys_url: URL of the key-set endpoint.
        http_timeout: HTTP request timeout in seconds (default 10).
        min_refetch_interval: Minimum seconds between unknown-kid refreshes (default 30).
        clock: Monotonic clock used for cache expiry (default time.monotonic).
    """

    def __init__(
        self,
        keys_url: str,
        *,
        http_timeout: float = 10.0,
        min_refetch_interval: float = 30.0,
        clock: Callable[[], float] | None = None,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._keys_url = keys_url
        self._http_timeout = http_timeout
        self._min_refetch_interval = min_refetch_interval
        self._clock = clock or time.monotonic
        self._transport = _transport
        self._cache: CachedKeys | None = None
        self._refresh_task: asyncio.Task | None = None
        self._last_forced_refresh: float | None = None

    @property
    def keys_url(self) -> str:
        return self._keys_url

    async def get_key(self, kid: str) -> Any | None:
        """Get a public key by kid.

        Refreshes when the cache is empty or expired, or when kid is unknown
        (rate limited). Returns None if the kid is still unknown afterwards.

        Raises:
            KeyFetchError: If no valid key set could be obtained.
        """
        cache = self._cache
        if cache is not None and not self._is_expired(cache):
            key = cache.keys.get(kid)
            if key is not None:
                return key
            if self._refresh_task is None:
                if not self._forced_refresh_allowed():
                    return None
                self._last_forced_refresh = self._clock()
        cache = await self._refresh()
        return cache.keys.get(kid)

    async def get_keys(self) -> Mapping[str, Any]:
        """Return the current key set, refreshing it first if it has expired."""
        cache = self._cache
        if cache is None or self._is_expired(cache):
            cache = await self._refresh()
        return cache.keys

    def invalidate(self) -> None:
        """Drop the cached key set; the next lookup fetches a fresh one."""
        self._cache = None

    def _is_expired(self, cache: CachedKeys) -> bool:
        return self._clock() >= cache.expires_at

    def _forced_refresh_allowed(self) -> bool:
        if self._last_forced_refresh is None:
            return True
        return (self._clock() - self._last_forced_refresh) >= self._min_refetch_interval

    async def _refresh(self) -> CachedKeys:
        """Join the in-flight refresh, or start one."""
        task = self._refresh_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._fetch_and_swap())
            task.add_done_callback(self._on_refresh_done)
            self._refresh_task = task
        return await asyncio.shield(task)

    def _on_refresh_done(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the result as retrieved even if every waiter went away.
            task.exception()

    async def _fetch_and_swap(self) -> CachedKeys:
        previous = self._cache
        try:
            keys, max_age = await self._fetch()
        except KeyFetchError:
            if previous is not None and not self._is_expired(previous):
                logger.warning(
                    "Key refresh from %s failed, serving cached keys until expiry",
                    self._keys_url,
                )
                return previous
            raise

        now = self._clock()
        cache = CachedKeys(
            keys=MappingProxyType(keys),
            fetched_at=now,
            expires_at=now + max_age,
        )
        self._cache = cache
        logger.debug("Public keys refreshed: %d keys loaded, max-age %ds", len(keys), max_age)
        return cache

    async def _fetch(self) -> tuple[dict[str, Any], int]:
        """Fetch the key set. Returns (keys, max_age_seconds)."""
        kwargs: dict = {"timeout": self._http_timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                response = await client.get(self._keys_url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.exception("Failed to fetch public keys from %s", self._keys_url)
            raise KeyFetchError(
                f"Failed to fetch public keys from {self._keys_url}: {e}",
                "key_fetch_failed",
                cause=e,
            ) from e

        keys = parse_key_set(data)
        return keys, parse_max_age(response.headers.get("cache-control"))
