"""
sap_gw.webhook.replay - Replay protection for inbound webhooks
===============================================================

A bounded, time-bounded nonce store. Checking and storing are separate
steps so that signature verification can run in between:

    result = replay.check_nonce_with_timestamp(nonce, timestamp)
    if result.is_replay: reject
    verify signature
    replay.store_nonce(nonce, signature)

Expired entries are swept by a daemon thread every ``cleanup_interval``
seconds; ``destroy()`` stops it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Union
import logging
import secrets
import threading
import time


logger = logging.getLogger("sap_gw.replay")

# Numeric timestamps below this are Unix seconds, above it milliseconds.
_UNIX_MS_THRESHOLD = 10_000_000_000


@dataclass(frozen=True)
class ReplayConfig:
    """
    Replay protection settings, durations in seconds.

    Parameters
    ----------
    nonce_ttl : float
        How long a stored nonce blocks replays (default: 300)
    cleanup_interval : float
        Sweep period of the background cleanup (default: 60)
    max_nonces : int
        Hard ceiling on stored nonces (default: 10000)
    require_timestamp : bool
        Whether the webhook surface demands a timestamp header
    max_clock_skew : float
        How far in the future a timestamp may be (default: 60)
    """
    nonce_ttl: float = 5 * 60
    cleanup_interval: float = 60
    max_nonces: int = 10_000
    require_timestamp: bool = True
    max_clock_skew: float = 60


@dataclass(frozen=True)
class NonceEntry:
    nonce: str
    timestamp: float
    expires_at: float
    signature: Optional[str] = None


@dataclass(frozen=True)
class ReplayCheckResult:
    is_replay: bool
    error: Optional[str] = None
    age: Optional[float] = None
    is_expired: bool = False


@dataclass(frozen=True)
class ReplayStats:
    size: int
    max_size: int
    utilization_percent: float


def _truncate(nonce: str) -> str:
    if len(nonce) <= 16:
        return nonce
    return f"{nonce[:8]}...{nonce[-8:]}"


def parse_timestamp(value: Union[str, int, float]) -> Optional[float]:
    """
    Parse an ISO-8601 string or a Unix timestamp (seconds or ms) to
    seconds since the epoch. Returns None when unparseable.

    Examples
    --------
    >>> parse_timestamp("1700000000")
    1700000000.0
    >>> parse_timestamp(1700000000000)
    1700000000.0
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if "T" in text or "-" in text:
            try:
                return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
            except ValueError:
                return None
        try:
            number = float(text)
        except ValueError:
            return None
    return number / 1000.0 if number >= _UNIX_MS_THRESHOLD else number


class ReplayProtectionManager:
    """
    Detects replayed webhook requests by remembering recent nonces.

    Parameters
    ----------
    config : ReplayConfig, optional
        Store limits and timings
    clock : callable, optional
        Returns the current time in seconds (default: ``time.time``)
    start_cleanup : bool
        Start the background sweep immediately (default: True)

    Examples
    --------
    >>> replay = ReplayProtectionManager(ReplayConfig(nonce_ttl=120))
    >>> replay.check_nonce("abc").is_replay
    False
    >>> replay.store_nonce("abc")
    True
    >>> replay.check_nonce("abc").is_replay
    True
    >>> replay.destroy()
    """

    def __init__(
        self,
        config: Optional[ReplayConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        start_cleanup: bool = True,
    ) -> None:
        self.config = config or ReplayConfig()
        self.clock = clock
        self._store: Dict[str, NonceEntry] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        if start_cleanup:
            self.start_cleanup()

        logger.info(
            "Replay protection initialized (ttl=%ss, max_nonces=%d)",
            self.config.nonce_ttl, self.config.max_nonces,
        )

    # ---------------- lifecycle ----------------

    def start_cleanup(self) -> None:
        self.stop_cleanup()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._cleanup_loop,
            args=(self._stop,),
            name="sap-gw-replay-cleanup",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Nonce cleanup started (every %ss)", self.config.cleanup_interval)

    def stop_cleanup(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        logger.debug("Nonce cleanup stopped")

    @property
    def cleanup_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _cleanup_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.config.cleanup_interval):
            self.cleanup()

    def destroy(self) -> None:
        """Stop the background sweep and drop every stored nonce."""
        self.stop_cleanup()
        self.clear_all()
        logger.info("Replay protection destroyed")

    # ---------------- checks ----------------

    def check_nonce(self, nonce: str) -> ReplayCheckResult:
        """
        Report whether ``nonce`` was already seen and has not expired.

        Does not store the nonce; call ``store_nonce`` once the request
        has been validated. An empty nonce counts as a replay.
        """
        if not nonce:
            return ReplayCheckResult(is_replay=True, error="Nonce is required")

        with self._lock:
            entry = self._store.get(nonce)
        if entry is None:
            return ReplayCheckResult(is_replay=False)

        now = self.clock()
        age = now - entry.timestamp
        if entry.expires_at <= now:
            logger.debug("Expired nonce %s reused (allowed)", _truncate(nonce))
            return ReplayCheckResult(is_replay=False, is_expired=True, age=age)

        logger.warning("Replay detected for nonce %s (age %.0fs)", _truncate(nonce), age)
        return ReplayCheckResult(is_replay=True, error="Nonce already used", age=age)

    def validate_timestamp(
        self,
        timestamp: Union[str, int, float],
        tolerance: Optional[float] = None,
    ) -> Optional[str]:
        """Return an error message, or None when the timestamp is acceptable."""
        tolerance = tolerance or self.config.nonce_ttl
        ts = parse_timestamp(timestamp)
        if ts is None:
            return "Invalid timestamp format"

        age = self.clock() - ts
        if age > tolerance:
            return f"Timestamp too old: {int(age)}s (max {int(tolerance)}s)"
        if age < -self.config.max_clock_skew:
            return f"Timestamp in the future: {int(-age)}s"
        return None

    def check_nonce_with_timestamp(
        self,
        nonce: str,
        timestamp: Union[str, int, float],
        tolerance: Optional[float] = None,
    ) -> ReplayCheckResult:
        """
        Reject timestamps outside the allowed window, then check the nonce.

        Parameters
        ----------
        nonce : str
            Request nonce
        timestamp : str or number
            ISO-8601 string or Unix seconds/milliseconds
        tolerance : float, optional
            Maximum age in seconds (default: ``nonce_ttl``)
        """
        error = self.validate_timestamp(timestamp, tolerance)
        if error:
            return ReplayCheckResult(is_replay=True, error=error)
        return self.check_nonce(nonce)

    # ---------------- storage ----------------

    def store_nonce(
        self,
        nonce: str,
        signature: Optional[str] = None,
        ttl: Optional[float] = None,
    ) -> bool:
        """
        Remember ``nonce`` for ``ttl`` seconds.

        When the store is full and the nonce is new, expired entries are
        swept; if it is still full the nonce is refused (returns False).
        """
        if not nonce:
            logger.warning("Attempted to store an empty nonce")
            return False

        with self._lock:
            if nonce not in self._store and len(self._store) >= self.config.max_nonces:
                self._sweep_locked()
                if len(self._store) >= self.config.max_nonces:
                    logger.error(
                        "Nonce store at maximum capacity (%d/%d)",
                        len(self._store), self.config.max_nonces,
                    )
                    return False

            now = self.clock()
            effective_ttl = ttl or self.config.nonce_ttl
            self._store[nonce] = NonceEntry(
                nonce=nonce,
                timestamp=now,
                expires_at=now + effective_ttl,
                signature=signature,
            )
            size = len(self._store)

        logger.debug("Nonce %s stored for %ss (store size %d)", _truncate(nonce), effective_ttl, size)
        return True

    def _sweep_locked(self) -> int:
        now = self.clock()
        expired = [n for n, e in self._store.items() if e.expires_at <= now]
        for nonce in expired:
            del self._store[nonce]
        return len(expired)

    def cleanup(self) -> int:
        """Remove expired nonces; returns how many were removed."""
        with self._lock:
            removed = self._sweep_locked()
            remaining = len(self._store)
        if removed:
            logger.debug("Cleaned up %d expired nonce(s), %d remaining", removed, remaining)
        return removed

    def clear_all(self) -> None:
        with self._lock:
            count = len(self._store)
            self._store.clear()
        if count:
            logger.warning("All %d nonce(s) cleared", count)

    def get_stats(self) -> ReplayStats:
        with self._lock:
            size = len(self._store)
        max_size = self.config.max_nonces
        return ReplayStats(
            size=size,
            max_size=max_size,
            utilization_percent=round(size / max_size * 100, 2) if max_size else 0.0,
        )

    @staticmethod
    def generate_nonce(length: int = 32) -> str:
        """
        Return a cryptographically random hex nonce of ``length`` characters.
        """
        if length < 1:
            raise ValueError("length must be at least 1")
        return secrets.token_hex((length + 1) // 2)[:length]
