# ============================================================================
#  throttle.py — Shopify Call Throttling
#  Version: 1.0.4
#  CHANGES: Ring buffer instead of ever-growing timestamp list
# ============================================================================
import logging
import time
from collections import deque
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 30.0
BUCKET_UTILIZATION_LIMIT = 0.85
QUOTA_HIGH = 0.90
QUOTA_WARN = 0.75
MIN_CALL_SPACING = 0.1


class LeakyBucket:
    """
    Sliding-window count of recent calls.
    Capacity is what the remote bucket can absorb over the window:
    the bucket size plus whatever leaks out while the window elapses.
    """

    def __init__(self, bucket_size: int = 40, leak_rate: float = 2.0,
                 window: float = WINDOW_SECONDS, max_events: int = 512):
        self.bucket_size = bucket_size
        self.leak_rate = leak_rate
        self.window = window
        self._events = deque(maxlen=max_events)

    @property
    def capacity(self) -> float:
        return self.bucket_size + self.leak_rate * self.window

    def record(self, now: float) -> None:
        self._events.append(now)

    def count(self, now: float) -> int:
        cutoff = now - self.window
        while self._events and self._events[0] <= cutoff:
            self._events.popleft()
        return len(self._events)

    def utilization(self, now: float) -> float:
        return self.count(now) / self.capacity


def parse_call_limit(header: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse ``X-Shopify-Shop-Api-Call-Limit`` ("used/total")."""
    if not header or "/" not in header:
        return None
    used, _, total = header.partition("/")
    try:
        used_i, total_i = int(used.strip()), int(total.strip())
    except ValueError:
        return None
    if total_i <= 0:
        return None
    return used_i, total_i


class QuotaThrottle:
    """Decides and performs the pause after each Shopify response."""

    def __init__(self, bucket: Optional[LeakyBucket] = None, min_spacing: float = MIN_CALL_SPACING):
        self.bucket = bucket or LeakyBucket()
        self.min_spacing = min_spacing
        self._last_call: Optional[float] = None

    def compute_delay(self, now: float, used: Optional[int] = None, total: Optional[int] = None) -> float:
        delay = 0.0

        utilization = self.bucket.utilization(now)
        if utilization > BUCKET_UTILIZATION_LIMIT:
            overshoot = (utilization - BUCKET_UTILIZATION_LIMIT) / (1.0 - BUCKET_UTILIZATION_LIMIT)
            delay = max(delay, 0.5 + 0.5 * min(1.0, overshoot))
            logger.debug(f"Leaky bucket at {utilization:.0%}, delaying {delay:.2f}s")

        if used is not None and total:
            quota = used / total
            if quota > QUOTA_HIGH:
                logger.warning(f"Approaching Shopify API rate limit: {used}/{total}")
                delay = max(delay, 0.5)
            elif quota >= QUOTA_WARN:
                delay = max(delay, 0.25)

        if self._last_call is not None:
            elapsed = now - self._last_call
            if elapsed < self.min_spacing:
                delay = max(delay, self.min_spacing - elapsed)

        return delay

    def after_response(self, limit_header: Optional[str] = None) -> float:
        """Record the call, sleep as needed and return the time slept."""
        now = time.monotonic()
        parsed = parse_call_limit(limit_header)
        used = total = None
        if parsed:
            used, total = parsed
            self.bucket.bucket_size = total
            logger.debug(f"Shopify API call limit: {used}/{total}")

        self.bucket.record(now)
        delay = self.compute_delay(now, used, total)
        if delay > 0:
            time.sleep(delay)
        self._last_call = time.monotonic()
        return delay
# ============================================================================
# End of throttle.py — Version: 1.0.4
# ============================================================================
