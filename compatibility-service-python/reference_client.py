"""
Shared HTTP plumbing for the remote reference services:
quota gate, timeout, usage recording and error classification.
"""
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional

import httpx

from config import QuotaLimits
from errors import (
    MalformedPayloadError, RateLimitExceededError, RemoteServiceError, RemoteTimeoutError,
)
from resilience import ResilienceService
from ttl_cache import TTLCache
from usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

USER_AGENT = "Medication-Compatibility-Service/1.0"


class ReferenceClient:
    service_name = "reference"

    def __init__(self, base_url: str, timeout: float, limits: QuotaLimits,
                 cache_ttl: float, cache_max_size: int,
                 resilience: ResilienceService,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.time):
        self.base_url = base_url
        self.timeout = timeout
        self.resilience = resilience
        self.cache = TTLCache(cache_ttl, max_size=cache_max_size, clock=clock)
        self.usage = UsageTracker(self.service_name, limits, clock=clock)
        self._transport = transport

    def check_quota(self):
        if not self.usage.can_make_call():
            retry_after = self.usage.retry_after()
            logger.warning(f"[{self.service_name}] quota exhausted, retry after {retry_after}s")
            raise RateLimitExceededError(self.service_name, retry_after)

    async def _get_json(self, endpoint: str, params: Dict[str, Any],
                        empty_statuses: Iterable[int] = ()) -> Optional[Any]:
        """
        One remote GET. Returns the decoded body, or None when the status is
        listed in empty_statuses. Every attempt is recorded against the quota.
        """
        self.check_quota()
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.get(
                    self.base_url,
                    params=params,
                    headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                )
        except httpx.TimeoutException as e:
            self.usage.record_call(endpoint, False, "TIMEOUT")
            raise RemoteTimeoutError(f"{self.service_name} {endpoint} timed out") from e
        except httpx.HTTPError as e:
            self.usage.record_call(endpoint, False, "NETWORK_ERROR")
            raise RemoteServiceError(f"{self.service_name} {endpoint} failed: {e}") from e

        elapsed_ms = round((time.perf_counter() - start) * 1000, 1)
        if response.status_code in empty_statuses:
            self.usage.record_call(endpoint, True, response_time_ms=elapsed_ms)
            return None
        if response.status_code >= 400:
            self.usage.record_call(endpoint, False, f"HTTP_{response.status_code}", elapsed_ms)
            raise RemoteServiceError(
                f"{self.service_name} {endpoint} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            self.usage.record_call(endpoint, False, "MALFORMED_PAYLOAD", elapsed_ms)
            raise MalformedPayloadError(
                f"{self.service_name} {endpoint} returned malformed JSON",
                status_code=response.status_code,
            ) from e

        self.usage.record_call(endpoint, True, response_time_ms=elapsed_ms)
        return payload

    def stats(self) -> Dict:
        stats = self.usage.detailed_stats(cache_size=len(self.cache))
        stats["health"] = self.resilience.service_health(self.service_name)
        return stats
