"""
Quota tracking for remote reference services.
Keeps a bounded history of calls and counts them over day/hour/minute windows.
"""
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional

from config import QuotaLimits

logger = logging.getLogger(__name__)

MIN_HISTORY = 2000
RECENT_ACTIVITY = 20


@dataclass
class UsageRecord:
    timestamp: float
    endpoint: str
    success: bool
    error_type: Optional[str] = None
    response_time_ms: Optional[float] = None


@dataclass
class UsageWindow:
    daily_count: int
    hourly_count: int
    minute_count: int


class UsageTracker:
    """Per-service call history. Every remote attempt counts against the quota."""

    def __init__(self, service: str, limits: QuotaLimits,
                 clock: Callable[[], float] = time.time):
        self.service = service
        self.limits = limits
        self._clock = clock
        # History must hold at least a full day of permitted calls
        self._history: Deque[UsageRecord] = deque(maxlen=max(MIN_HISTORY, limits.daily))
        self._lock = threading.Lock()

    def _day_start(self, now: float) -> float:
        midnight = datetime.fromtimestamp(now).replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.timestamp()

    def record_call(self, endpoint: str, success: bool, error_type: Optional[str] = None,
                    response_time_ms: Optional[float] = None):
        record = UsageRecord(
            timestamp=self._clock(),
            endpoint=endpoint,
            success=success,
            error_type=error_type,
            response_time_ms=response_time_ms,
        )
        with self._lock:
            self._history.append(record)

    def window(self) -> UsageWindow:
        now = self._clock()
        day_start = self._day_start(now)
        with self._lock:
            stamps = [r.timestamp for r in self._history]
        return UsageWindow(
            daily_count=sum(1 for t in stamps if t >= day_start),
            hourly_count=sum(1 for t in stamps if t > now - 3600),
            minute_count=sum(1 for t in stamps if t > now - 60),
        )

    def can_make_call(self) -> bool:
        usage = self.window()
        return (
            usage.daily_count < self.limits.daily
            and usage.hourly_count < self.limits.hourly
            and usage.minute_count < self.limits.minute
        )

    def retry_after(self) -> int:
        """Seconds until the most constrained window frees a slot."""
        now = self._clock()
        usage = self.window()
        with self._lock:
            stamps = sorted(r.timestamp for r in self._history)
        waits = []
        if usage.daily_count >= self.limits.daily:
            waits.append(self._day_start(now) + 86400 - now)
        if usage.hourly_count >= self.limits.hourly:
            in_hour = [t for t in stamps if t > now - 3600]
            waits.append(in_hour[len(in_hour) - self.limits.hourly] + 3600 - now)
        if usage.minute_count >= self.limits.minute:
            in_minute = [t for t in stamps if t > now - 60]
            waits.append(in_minute[len(in_minute) - self.limits.minute] + 60 - now)
        if not waits:
            return 0
        return max(1, int(math.ceil(max(waits))))

    def error_rate(self) -> float:
        now = self._clock()
        with self._lock:
            recent = [r for r in self._history if r.timestamp > now - 86400]
        if not recent:
            return 0.0
        failures = sum(1 for r in recent if not r.success)
        return round(failures / len(recent) * 100, 2)

    def recent_activity(self, limit: int = RECENT_ACTIVITY) -> List[Dict]:
        with self._lock:
            records = list(self._history)[-limit:]
        return [
            {
                "timestamp": datetime.fromtimestamp(r.timestamp).isoformat(),
                "endpoint": r.endpoint,
                "success": r.success,
                "error_type": r.error_type,
                "response_time_ms": r.response_time_ms,
            }
            for r in reversed(records)
        ]

    def detailed_stats(self, cache_size: int = 0) -> Dict:
        usage = self.window()
        with self._lock:
            last = self._history[-1] if self._history else None
        return {
            "service": self.service,
            "tier": self.limits.tier,
            "usage": {
                "daily": usage.daily_count,
                "hourly": usage.hourly_count,
                "minute": usage.minute_count,
            },
            "limits": {
                "daily": self.limits.daily,
                "hourly": self.limits.hourly,
                "minute": self.limits.minute,
            },
            "remaining": {
                "daily": max(0, self.limits.daily - usage.daily_count),
                "hourly": max(0, self.limits.hourly - usage.hourly_count),
                "minute": max(0, self.limits.minute - usage.minute_count),
            },
            "can_make_call": self.can_make_call(),
            "error_rate": self.error_rate(),
            "last_call": datetime.fromtimestamp(last.timestamp).isoformat() if last else None,
            "recent_activity": self.recent_activity(),
            "cache_size": cache_size,
        }
