"""
In-memory sliding-window rate limiter keyed by bucket and client IP.
Used on the credential-bearing /oauth endpoints to slow down guessing.

Keys whose window has emptied are evicted, at most once per window, so the map only
holds callers seen recently. All callers share one window length.
"""
import math
import threading
import time
from collections import deque

WINDOW_SECONDS = 60

_hits: dict[str, deque[float]] = {}
_lock = threading.Lock()
_clock = time.monotonic
_last_eviction = 0.0


def _evict_idle(now: float, window_seconds: int) -> None:
    global _last_eviction
    if now - _last_eviction < window_seconds:
        return
    _last_eviction = now
    cutoff = now - window_seconds
    for key in [k for k, hits in _hits.items() if not hits or hits[-1] <= cutoff]:
        del _hits[key]


def check_and_consume(key: str, limit: int, window_seconds: int = WINDOW_SECONDS) -> tuple[bool, int | None]:
    """
    Count one request against key when it is under limit for the window.

    Returns (allowed, retry_after). retry_after is None when allowed, else the whole
    seconds until the oldest hit in the window ages out (at least 1).
    """
    if limit <= 0:
        return True, None
    now = _clock()
    cutoff = now - window_seconds
    with _lock:
        _evict_idle(now, window_seconds)
        hits = _hits.setdefault(key, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= limit:
            return False, max(1, math.ceil(hits[0] - cutoff))
        hits.append(now)
        return True, None


def tracked_keys() -> set[str]:
    with _lock:
        return set(_hits)


def reset() -> None:
    global _last_eviction
    with _lock:
        _hits.clear()
        _last_eviction = 0.0
