"""Per-client request admission (fixed-window rate limiting)."""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Mapping, Optional, Tuple, TypeVar

from config import Config
from errors import AdmissionDenied
from models import RateLimitDecision, RateLimitEntry

logger = logging.getLogger(__name__)

R = TypeVar("R")

# (entry to store or None to delete, value returned to the caller)
Updater = Callable[[Optional[RateLimitEntry]], Tuple[Optional[RateLimitEntry], R]]


@dataclass(frozen=True)
class RateLimitOptions:
    window_ms: int       # Window length in milliseconds
    max_requests: int    # Requests allowed per window per identity


def rate_limits_from_config(config: Config) -> Dict[str, RateLimitOptions]:
    """Quotas for each boundary action."""
    return {
        "translate": RateLimitOptions(config.rate_limit_window_ms, config.translate_rate_limit),
        "upload": RateLimitOptions(config.rate_limit_window_ms, config.upload_rate_limit),
    }


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0          # Holders plus waiters


class RateLimitStore:
    """
    In-memory keyed store with atomic per-key read-modify-write.

    Each key gets its own lock, so concurrent updates to one identity are
    linearizable while different identities never contend. Entries live for
    the lifetime of the process and are evicted lazily by the updater.
    """

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}
        self._locks: Dict[str, _KeyLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        # A key's lock exists only while some caller holds or waits on it.
        with self._locks_guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = self._locks[key] = _KeyLock()
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._locks_guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._locks[key]

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def update(self, key: str, fn: Updater) -> R:
        """Apply ``fn`` to the entry for ``key`` atomically and return its result."""
        with self._locked(key):
            new_entry, result = fn(self._entries.get(key))
            if new_entry is None:
                self._entries.pop(key, None)
            else:
                self._entries[key] = new_entry
            return result

    def __len__(self) -> int:
        return len(self._entries)


class RateLimiter:
    """Fixed-window request counter keyed by client identity."""

    def __init__(
        self,
        options: RateLimitOptions,
        store: Optional[RateLimitStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.options = options
        self.store = store if store is not None else RateLimitStore()
        self._clock = clock or (lambda: time.time() * 1000)

    def check_and_consume(self, identity: str) -> RateLimitDecision:
        """Count one request for ``identity`` and decide whether it is admitted."""
        now = self._clock()
        window_ms = self.options.window_ms
        max_requests = self.options.max_requests

        def consume(entry: Optional[RateLimitEntry]):
            # Stale windows are discarded on lookup; there is no background sweep.
            if entry is not None and now > entry.reset_at:
                entry = None

            if entry is None:
                fresh = RateLimitEntry(count=1, reset_at=now + window_ms)
                return fresh, RateLimitDecision(True, max_requests - 1, fresh.reset_at)

            if entry.count >= max_requests:
                return entry, RateLimitDecision(False, 0, entry.reset_at)

            entry.count += 1
            return entry, RateLimitDecision(True, max_requests - entry.count, entry.reset_at)

        decision = self.store.update(identity, consume)
        if not decision.allowed:
            logger.info("Rate limit exceeded for %s (resets at %d)", identity, decision.reset_at)
        return decision

    def enforce(self, identity: str, message: str = "Too many requests. Please try again later.") -> RateLimitDecision:
        """Like check_and_consume, but raise AdmissionDenied when the request is refused."""
        decision = self.check_and_consume(identity)
        if not decision.allowed:
            raise AdmissionDenied(message, reset_at=decision.reset_at, limit=self.options.max_requests)
        return decision


def client_identity(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Best-effort client address for keying the rate limiter."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real = headers.get("x-real-ip")
    if real:
        return real.strip()
    return peer or "unknown"
