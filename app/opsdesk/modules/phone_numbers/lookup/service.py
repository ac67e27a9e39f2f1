from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Mapping, TypeVar

from app.opsdesk.modules.phone_numbers.lookup.base import BatchResult, LookupResult, PhoneLookupError, failure
from app.opsdesk.modules.phone_numbers.lookup.providers import (
    ChahaobaProvider,
    OfflineProvider,
    PhoneProvider,
    ToolLuProvider,
)

logger = logging.getLogger(__name__)

ALL_FAILED = "所有查询提供商都失败了"
NO_PROVIDERS = "没有可用的查询提供商"

T = TypeVar("T")


class PhoneLookupService:
    """
    Carrier lookup across providers ordered by priority.

    Successful results are cached for `cache_ttl` seconds. Batch lookups go to
    batch-capable providers first, then fall back to single lookups per number.
    """

    def __init__(
        self,
        providers: list[PhoneProvider],
        *,
        cache_enabled: bool = True,
        cache_ttl: int = 3600,
        retry_attempts: int = 2,
        retry_delay: float = 1.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.providers = sorted(providers, key=lambda p: p.priority)
        self.cache_enabled = cache_enabled
        self.cache_ttl = cache_ttl
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep
        self._cache: dict[str, tuple[LookupResult, float]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PhoneLookupService":
        providers: list[PhoneProvider] = []
        if config.get("PHONE_LOOKUP_ONLINE", True):
            providers.append(ChahaobaProvider(config.get("CHAHAOBA_TOKEN") or ""))
            providers.append(ToolLuProvider())
        providers.append(OfflineProvider())
        return cls(providers, cache_ttl=int(config.get("PHONE_LOOKUP_CACHE_TTL") or 3600))

    @property
    def offline_only(self) -> bool:
        return all(isinstance(p, OfflineProvider) for p in self.providers)

    # ---------- cache ----------
    def _cached(self, phone_number: str) -> LookupResult | None:
        if not self.cache_enabled:
            return None
        with self._lock:
            hit = self._cache.get(phone_number)
            if hit is None:
                return None
            result, stored_at = hit
            if self._clock() - stored_at > self.cache_ttl:
                del self._cache[phone_number]
                return None
        return replace(result, provider=f"{result.provider}(cached)")

    def _remember(self, phone_number: str, result: LookupResult) -> None:
        if self.cache_enabled and result.success and result.data is not None:
            with self._lock:
                self._cache[phone_number] = (result, self._clock())

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        for p in self.providers:
            p.clear_cache()
        logger.info("Phone lookup caches cleared")

    # ---------- providers ----------
    def available_providers(self) -> list[PhoneProvider]:
        out = []
        for p in self.providers:
            try:
                if p.is_available():
                    out.append(p)
            except Exception as e:
                logger.warning("Availability check failed for %s: %s", p.name, e)
        return out

    def _retry(self, fn: Callable[[], T]) -> T:
        last_err: Exception | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return fn()
            except (PhoneLookupError, OSError) as e:
                last_err = e
                if attempt < self.retry_attempts:
                    logger.warning("Lookup failed, retrying in %ss (%s/%s): %s", self.retry_delay, attempt, self.retry_attempts, e)
                    self._sleep(self.retry_delay)
        assert last_err is not None
        raise last_err

    def set_tokens(self, tokens: Mapping[str, Any]) -> list[str]:
        updated = []
        for p in self.providers:
            token = tokens.get(p.name)
            if p.requires_token and isinstance(token, str) and token.strip():
                p.set_token(token)
                updated.append(p.name)
        if updated:
            logger.info("Lookup tokens updated for %s", ", ".join(updated))
        return updated

    # ---------- lookups ----------
    def lookup(self, phone_number: str) -> LookupResult:
        cached = self._cached(phone_number)
        if cached is not None:
            return cached

        providers = self.available_providers()
        if not providers:
            return failure(NO_PROVIDERS)

        for p in providers:
            try:
                if p.can_batch:
                    result = self._retry(lambda: p.lookup(phone_number))
                else:
                    # single-lookup providers are already throttled
                    result = p.lookup(phone_number)
            except (PhoneLookupError, OSError) as e:
                logger.error("%s lookup raised for %s: %s", p.name, phone_number, e)
                continue
            if result.success:
                result = result if result.provider else result.with_provider(p.name)
                self._remember(phone_number, result)
                return result
            logger.info("%s lookup failed for %s: %s", p.name, phone_number, result.error)
        return failure(ALL_FAILED)

    def batch_lookup(self, phone_numbers: list[str]) -> BatchResult:
        out = BatchResult()
        remaining: list[str] = []
        for n in dict.fromkeys(phone_numbers):
            cached = self._cached(n)
            if cached is not None:
                out.results[n] = cached
            else:
                remaining.append(n)
        if not remaining:
            out.provider = "cache"
            return out

        providers = self.available_providers()
        if not providers:
            for n in remaining:
                out.results[n] = failure(NO_PROVIDERS)
            return out

        batch_providers = [p for p in providers if p.can_batch]
        single_providers = [p for p in providers if not p.can_batch]

        for p in batch_providers:
            if not remaining:
                break
            pending = list(remaining)
            try:
                batch = self._retry(lambda: p.batch_lookup(pending))
            except (PhoneLookupError, OSError) as e:
                logger.error("%s batch lookup raised: %s", p.name, e)
                continue
            for n, result in batch.results.items():
                out.results[n] = result
                self._remember(n, result)
            remaining = [n for n in remaining if not (n in batch.results and batch.results[n].success)]
            out.provider = out.provider or p.name
            logger.info(
                "%s batch lookup: %s ok, %s failed, %s remaining",
                p.name,
                batch.success_count,
                batch.failure_count,
                len(remaining),
            )
            if batch.success_count > batch.failure_count:
                break

        for n in remaining:
            found = False
            for p in single_providers:
                try:
                    result = p.lookup(n)
                except (PhoneLookupError, OSError) as e:
                    logger.error("%s lookup raised for %s: %s", p.name, n, e)
                    continue
                if result.success:
                    out.results[n] = result
                    self._remember(n, result)
                    found = True
                    break
            if not found and not (n in out.results and out.results[n].success):
                out.results[n] = failure(ALL_FAILED)
        return out

    def status(self) -> dict[str, Any]:
        providers = []
        for p in self.providers:
            try:
                available = p.is_available()
            except Exception:
                available = False
            providers.append(
                {
                    "name": p.name,
                    "priority": p.priority,
                    "available": available,
                    "canBatch": p.can_batch,
                    "requiresToken": p.requires_token,
                }
            )
        with self._lock:
            size = len(self._cache)
        return {"providers": providers, "cache": {"size": size, "enabled": self.cache_enabled}}
