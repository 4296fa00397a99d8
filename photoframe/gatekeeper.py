"""Authentication, transport and rate checks run before any API handler."""

import hashlib
import threading
import time
from secrets import compare_digest
from typing import Callable, Dict, List, NamedTuple, Optional

from werkzeug.wrappers import Request

from .config import Configuration
from .errors import AmbiguousCredentials

# Past this many clients, expired records are pruned at most once per window.
PRUNE_THRESHOLD = 10_000


class RateDecision(NamedTuple):
    allowed: bool
    limit: int
    remaining: int
    retry_after: float


class ClientRateRecord:
    __slots__ = ("window_start", "count", "lock")

    def __init__(self, window_start: float) -> None:
        self.window_start = window_start
        self.count = 0
        self.lock = threading.Lock()


class FixedWindowRateLimiter:
    """Per-client fixed-window counter.

    Each client's window starts at its first request and lasts
    ``window_seconds``. Requests past ``max_requests`` inside a window are
    throttled; the counter keeps advancing but the window is never extended.
    The clock is injectable so tests can step time deterministically.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be greater than zero")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be greater than zero")
        self._max_requests = int(max_requests)
        self._window = float(window_seconds)
        self._clock = clock
        self._records: Dict[str, ClientRateRecord] = {}
        self._records_lock = threading.Lock()
        self._next_prune_at = float("-inf")

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> float:
        return self._window

    def _expired(self, record: ClientRateRecord, now: float) -> bool:
        return record.count == 0 or now > record.window_start + self._window

    def _record_for(self, client_id: str) -> ClientRateRecord:
        with self._records_lock:
            record = self._records.get(client_id)
            if record is None:
                if len(self._records) >= PRUNE_THRESHOLD:
                    now = self._clock()
                    if now >= self._next_prune_at:
                        self._prune_locked(now)
                        self._next_prune_at = now + self._window
                record = ClientRateRecord(self._clock())
                self._records[client_id] = record
            return record

    def _prune_locked(self, now: float) -> int:
        """Drop expired records; records busy in ``check`` are left alone."""

        stale: List[str] = []
        for client_id, record in self._records.items():
            if not record.lock.acquire(blocking=False):
                continue
            try:
                if self._expired(record, now):
                    stale.append(client_id)
            finally:
                record.lock.release()
        for client_id in stale:
            del self._records[client_id]
        return len(stale)

    def _is_current(self, client_id: str, record: ClientRateRecord) -> bool:
        with self._records_lock:
            return self._records.get(client_id) is record

    def check(self, client_id: str) -> RateDecision:
        while True:
            record = self._record_for(client_id)
            with record.lock:
                # Pruned between lookup and locking; count against the live record.
                if not self._is_current(client_id, record):
                    continue
                now = self._clock()
                if self._expired(record, now):
                    record.window_start = now
                    record.count = 1
                else:
                    record.count += 1

                remaining = max(self._max_requests - record.count, 0)
                retry_after = max(record.window_start + self._window - now, 0.0)
                allowed = record.count <= self._max_requests
                return RateDecision(allowed, self._max_requests, remaining, retry_after)

    def snapshot(self, client_id: str) -> Optional[Dict[str, float]]:
        """Return the current window state for *client_id*, if any."""

        with self._records_lock:
            record = self._records.get(client_id)
        if record is None:
            return None
        with record.lock:
            return {"window_start": record.window_start, "count": record.count}

    def reset(self) -> None:
        with self._records_lock:
            self._records.clear()
            self._next_prune_at = float("-inf")


def _hash_key(value: str) -> bytes:
    return hashlib.sha256(value.encode("utf-8")).digest()


def extract_api_key(request: Request) -> Optional[str]:
    """Return the API key supplied with *request*, if exactly one was given."""

    candidates: List[str] = []

    header_key = request.headers.get("X-API-Key")
    if header_key:
        candidates.append(header_key.strip())

    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        candidates.append(authorization[7:].strip())
    elif authorization.lower().startswith("token "):
        candidates.append(authorization[6:].strip())

    for param in ("api_key", "apiKey"):
        query_key = request.args.get(param)
        if query_key:
            candidates.append(query_key.strip())

    unique = {candidate for candidate in candidates if candidate}
    if len(unique) > 1:
        raise AmbiguousCredentials()
    return next(iter(unique)) if unique else None


class Gatekeeper:
    def __init__(self, config: Configuration, rate_limiter: FixedWindowRateLimiter) -> None:
        self._config = config
        self._expected_digest = _hash_key(config.api_key)
        self.rate_limiter = rate_limiter

    def authenticate(self, provided: Optional[str]) -> bool:
        if not provided:
            return False
        # Digests have a fixed length, so the comparison time does not
        # depend on the length of the supplied key.
        return compare_digest(_hash_key(provided), self._expected_digest)

    def enforce_transport(self, request: Request) -> bool:
        if not self._config.requires_https:
            return True
        return request.is_secure

    def check_rate(self, client_id: str) -> RateDecision:
        return self.rate_limiter.check(client_id)
