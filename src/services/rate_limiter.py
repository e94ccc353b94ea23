import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter


@dataclass
class RateLimitDecision:
    allowed: bool
    scope: str
    limit: int
    window_ms: int
    retry_after_ms: int = 0

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after_ms / 1000))

    def to_payload(self) -> Dict[str, object]:
        return {
            "error": "RATE_LIMITED",
            "scope": self.scope,
            "limit": self.limit,
            "windowMs": self.window_ms,
            "retryAfterMs": self.retry_after_ms,
        }


def client_address(headers: Mapping[str, str], peer_host: Optional[str]) -> str:
    """Caller address: first ``x-forwarded-for`` hop, then ``x-real-ip``, then the socket peer."""
    forwarded = (headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first[:128]
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip[:128]
    peer = (peer_host or "").strip()
    return peer[:128] if peer else "unknown"


def _normalize_scope(scope) -> str:
    return str(scope or "").strip().lower()[:64] or "global"


def _normalize_user(user_id) -> str:
    return str(user_id or "").strip()[:64] or "-"


def limit_item(limit, window_ms) -> RateLimitItemPerSecond:
    """``limit`` hits per window; windows are whole seconds, at least one."""
    amount = int(limit) if limit and limit > 0 else 1
    window_ms = int(window_ms) if window_ms and window_ms > 0 else 1000
    return RateLimitItemPerSecond(amount, max(1, math.ceil(window_ms / 1000)))


class RateLimiter:
    """Fixed-window counters per scope, user and caller address.

    Counters live in a ``limits`` memory storage owned by this object, so
    every application (and every test) gets its own table. Expired windows
    are dropped by the storage itself; beyond ``max_entries`` keys the
    least recently touched ones are cleared.
    """

    def __init__(self, storage: Optional[MemoryStorage] = None, max_entries: int = 20_000):
        self.storage = storage if storage is not None else MemoryStorage()
        self.strategy = FixedWindowRateLimiter(self.storage)
        self.max_entries = max(1, int(max_entries))
        self._touched: "OrderedDict[Tuple[str, str, str], RateLimitItemPerSecond]" = OrderedDict()

    def hit(self, scope, user_id, address: str, limit: int, window_ms: int) -> RateLimitDecision:
        """Count one request and decide whether it is within the limit."""
        scope = _normalize_scope(scope)
        item = limit_item(limit, window_ms)
        identifiers = (scope, _normalize_user(user_id), address)
        window_ms = item.get_expiry() * 1000
        self._touch(identifiers, item)

        if self.strategy.hit(item, *identifiers):
            return RateLimitDecision(True, scope, item.amount, window_ms)

        stats = self.strategy.get_window_stats(item, *identifiers)
        retry_after_ms = max(1, int(round((stats.reset_time - time.time()) * 1000)))
        return RateLimitDecision(False, scope, item.amount, window_ms, retry_after_ms)

    def _touch(self, identifiers: Tuple[str, str, str], item: RateLimitItemPerSecond) -> None:
        self._touched[identifiers] = item
        self._touched.move_to_end(identifiers)
        while len(self._touched) > self.max_entries:
            oldest, oldest_item = self._touched.popitem(last=False)
            self.strategy.clear(oldest_item, *oldest)

    def tracked_keys(self) -> int:
        return len(self._touched)

    def reset(self) -> None:
        self._touched.clear()
        self.storage.reset()
