from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

import redis
from pydantic import ValidationError

from config import DEFAULT_CACHE_KEY_PREFIX
from domain.errors import QuotationNotFoundError, TierUnavailableError
from domain.quotation import CACHE_TTL, Asset, AssetQuotation

logger = logging.getLogger(__name__)

CACHE_TIER = "cache"

# Compare-and-set for the latest-value slot: only write when the stored stamp is
# older than the incoming one. Stamps are epoch microseconds, exact in a Lua double.
_SET_IF_NEWER_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current then
    local ok, decoded = pcall(cjson.decode, current)
    if ok and decoded['stamp'] and tonumber(decoded['stamp']) >= tonumber(ARGV[2]) then
        return 0
    end
end
redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[3])
return 1
"""


class QuotationCache(Protocol):
    """Latest-value slot per asset.

    ``get`` raises ``QuotationNotFoundError`` when nothing is cached and
    ``TierUnavailableError`` when the store itself fails. A ``ttl`` passed to
    ``put`` can only shorten the lifetime of that entry, never extend it.
    """

    def put(
        self, quotation: AssetQuotation, *, enforce_freshness: bool = False, ttl: timedelta | None = None
    ) -> bool: ...

    def get(self, asset: Asset) -> AssetQuotation: ...


def cache_key(asset: Asset, prefix: str = DEFAULT_CACHE_KEY_PREFIX) -> str:
    return f"{prefix}{asset.blockchain}_{asset.address}"


def time_stamp(value: datetime) -> int:
    delta = value - datetime(1970, 1, 1, tzinfo=value.tzinfo)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def _millis(ttl: timedelta) -> int:
    return max(1, int(ttl / timedelta(milliseconds=1)))


def encode_cached(quotation: AssetQuotation) -> str:
    return json.dumps({"stamp": time_stamp(quotation.time), "quotation": quotation.model_dump(mode="json")})


def decode_cached(raw: str | bytes) -> AssetQuotation:
    try:
        payload = json.loads(raw)
        return AssetQuotation.model_validate(payload["quotation"])
    except (ValueError, KeyError, TypeError, ValidationError) as exc:
        raise TierUnavailableError(f"undecodable cached quotation: {exc}", tier=CACHE_TIER) from exc


class _FreshnessCheckedCache(ABC):
    """Read-then-conditional-write freshness protocol shared by cache backends.

    A missing entry counts as infinitely old, so the first write always lands.
    An entry at the same instant or later wins over the incoming quotation.
    """

    ttl: timedelta

    @abstractmethod
    def get(self, asset: Asset) -> AssetQuotation: ...

    @abstractmethod
    def _write(self, quotation: AssetQuotation, ttl: timedelta) -> None: ...

    def put(
        self, quotation: AssetQuotation, *, enforce_freshness: bool = False, ttl: timedelta | None = None
    ) -> bool:
        if enforce_freshness and self._has_fresher_entry(quotation):
            logger.debug(
                "skip cache write for %s at %s: a more recent quotation is cached",
                quotation.asset.identifier,
                quotation.time.isoformat(),
            )
            return False
        self._write(quotation, self._entry_ttl(ttl))
        return True

    def _entry_ttl(self, ttl: timedelta | None) -> timedelta:
        if ttl is None:
            return self.ttl
        if ttl <= timedelta(0):
            msg = "ttl must be positive"
            raise ValueError(msg)
        return min(ttl, self.ttl)

    def _has_fresher_entry(self, quotation: AssetQuotation) -> bool:
        try:
            current = self.get(quotation.asset)
        except QuotationNotFoundError:
            return False
        return current.time >= quotation.time


class RedisQuotationCache(_FreshnessCheckedCache, QuotationCache):
    def __init__(
        self,
        client: redis.Redis,
        *,
        key_prefix: str = DEFAULT_CACHE_KEY_PREFIX,
        ttl: timedelta = CACHE_TTL,
        atomic_freshness: bool = False,
    ) -> None:
        if ttl <= timedelta(0):
            msg = "ttl must be positive"
            raise ValueError(msg)
        self._client = client
        self.key_prefix = key_prefix
        self.ttl = ttl
        self.atomic_freshness = atomic_freshness
        self._set_if_newer: Callable[..., Any] | None = None

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 5.0, **kwargs: Any) -> RedisQuotationCache:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        return cls(client, **kwargs)

    def get(self, asset: Asset) -> AssetQuotation:
        key = cache_key(asset, self.key_prefix)
        try:
            raw = self._client.get(key)
        except redis.RedisError as exc:
            logger.error("get cached quotation for %s: %s", asset.name, exc)
            raise TierUnavailableError(f"redis get {key}: {exc}", tier=CACHE_TIER) from exc
        if raw is None:
            raise QuotationNotFoundError(f"no cached quotation for {asset.identifier}")
        return decode_cached(raw)

    def put(
        self, quotation: AssetQuotation, *, enforce_freshness: bool = False, ttl: timedelta | None = None
    ) -> bool:
        if enforce_freshness and self.atomic_freshness:
            return self._put_if_newer(quotation, self._entry_ttl(ttl))
        return super().put(quotation, enforce_freshness=enforce_freshness, ttl=ttl)

    def _write(self, quotation: AssetQuotation, ttl: timedelta) -> None:
        key = cache_key(quotation.asset, self.key_prefix)
        try:
            self._client.set(key, encode_cached(quotation), px=_millis(ttl))
        except redis.RedisError as exc:
            raise TierUnavailableError(f"redis set {key}: {exc}", tier=CACHE_TIER) from exc

    def _put_if_newer(self, quotation: AssetQuotation, ttl: timedelta) -> bool:
        if self._set_if_newer is None:
            self._set_if_newer = self._client.register_script(_SET_IF_NEWER_SCRIPT)
        key = cache_key(quotation.asset, self.key_prefix)
        args = [encode_cached(quotation), time_stamp(quotation.time), _millis(ttl)]
        try:
            written = self._set_if_newer(keys=[key], args=args)
        except redis.RedisError as exc:
            raise TierUnavailableError(f"redis set-if-newer {key}: {exc}", tier=CACHE_TIER) from exc
        return bool(written)


class InMemoryQuotationCache(_FreshnessCheckedCache, QuotationCache):
    """Process-local cache with the same TTL and freshness rules as the Redis one."""

    def __init__(self, *, ttl: timedelta = CACHE_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, AssetQuotation]] = {}

    def get(self, asset: Asset) -> AssetQuotation:
        entry = self._entries.get(asset.identifier)
        if entry is None:
            raise QuotationNotFoundError(f"no cached quotation for {asset.identifier}")
        expires_at, quotation = entry
        if expires_at <= self._clock():
            self._entries.pop(asset.identifier, None)
            raise QuotationNotFoundError(f"cached quotation for {asset.identifier} expired")
        return quotation

    def _write(self, quotation: AssetQuotation, ttl: timedelta) -> None:
        expires_at = self._clock() + ttl.total_seconds()
        self._entries[quotation.asset.identifier] = (expires_at, quotation)


__all__ = [
    "InMemoryQuotationCache",
    "QuotationCache",
    "RedisQuotationCache",
    "cache_key",
    "decode_cached",
    "encode_cached",
]
