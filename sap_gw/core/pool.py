"""
sap_gw.core.pool - Shared HTTP/HTTPS connection pooling
========================================================

One ConnectionPoolManager owns the requests adapters (and the urllib3
pools behind them) used for every call toward SAP hosts. The manager is
constructed by the host application and passed to the transport; it is
not a module-level singleton.

Pools report connection checkouts back through a small tracker so that
the manager can expose created/reused counters and active/free/pending
gauges without reaching into socket internals.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple
import logging
import threading

from requests.adapters import HTTPAdapter
from urllib3 import PoolManager
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.util.retry import Retry


logger = logging.getLogger("sap_gw.pool")

EVENT_CREATED = "created"
EVENT_REUSED = "reused"

_FRESH_ATTR = "_sap_gw_fresh"


@dataclass(frozen=True)
class PoolConfig:
    """
    Connection pool configuration.

    Parameters
    ----------
    keep_alive : bool
        Keep connections open between requests (default: True)
    max_sockets : int
        Connections kept per host pool; the socket ceiling used by
        ``is_healthy`` (default: 10)
    max_host_pools : int
        Number of per-host pools cached per scheme (default: 10)
    block : bool
        Wait for a free connection instead of opening an extra one when
        ``max_sockets`` are in use (default: False)
    retries : int
        Retries for idempotent methods only (default: 0)
    backoff : float
        Backoff factor between retries (default: 0.5)
    """
    keep_alive: bool = True
    max_sockets: int = 10
    max_host_pools: int = 10
    block: bool = False
    retries: int = 0
    backoff: float = 0.5


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time pool gauges plus cumulative counters."""
    active_sockets: int
    free_sockets: int
    pending_requests: int
    total_requests: int
    total_connections_created: int
    total_connections_reused: int


class PoolTracker:
    """
    Gauges and listener registry shared by the pools of one adapter.

    Pools run on transport worker threads, so every mutation happens
    under a lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.in_use = 0
        self.waiting = 0
        self._listeners: Dict[str, List[Callable[[], None]]] = {
            EVENT_CREATED: [],
            EVENT_REUSED: [],
        }

    def add_listener(self, event: str, listener: Callable[[], None]) -> None:
        with self._lock:
            self._listeners[event].append(listener)

    def remove_listener(self, event: str, listener: Callable[[], None]) -> None:
        with self._lock:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

    def listener_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._listeners.values())

    def emit(self, event: str) -> None:
        with self._lock:
            listeners = list(self._listeners[event])
        for listener in listeners:
            listener()

    def adjust(self, gauge: str, delta: int) -> None:
        with self._lock:
            setattr(self, gauge, max(0, getattr(self, gauge) + delta))


class _TrackedPoolMixin:
    tracker: Optional[PoolTracker] = None

    def _new_conn(self):
        conn = super()._new_conn()  # type: ignore[misc]
        setattr(conn, _FRESH_ATTR, True)
        return conn

    def _get_conn(self, timeout=None):
        tracker = self.tracker
        if tracker is None:
            return super()._get_conn(timeout)  # type: ignore[misc]

        tracker.adjust("waiting", 1)
        try:
            conn = super()._get_conn(timeout)  # type: ignore[misc]
        finally:
            tracker.adjust("waiting", -1)

        if getattr(conn, _FRESH_ATTR, False):
            setattr(conn, _FRESH_ATTR, False)
            tracker.emit(EVENT_CREATED)
        else:
            tracker.emit(EVENT_REUSED)
        tracker.adjust("in_use", 1)
        return conn

    def _put_conn(self, conn) -> None:
        if self.tracker is not None:
            self.tracker.adjust("in_use", -1)
        super()._put_conn(conn)  # type: ignore[misc]

    def free_connections(self) -> int:
        queue = getattr(self, "pool", None)
        if queue is None:
            return 0
        return sum(1 for c in list(queue.queue) if c is not None)


class TrackedHTTPConnectionPool(_TrackedPoolMixin, HTTPConnectionPool):
    pass


class TrackedHTTPSConnectionPool(_TrackedPoolMixin, HTTPSConnectionPool):
    pass


class _TrackingPoolManager(PoolManager):
    def __init__(self, *args, tracker: PoolTracker, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.tracker = tracker
        self.pool_classes_by_scheme = {
            "http": TrackedHTTPConnectionPool,
            "https": TrackedHTTPSConnectionPool,
        }

    def _new_pool(self, scheme, host, port, request_context=None):
        pool = super()._new_pool(scheme, host, port, request_context)
        pool.tracker = self.tracker
        return pool

    def iter_pools(self):
        for key in list(self.pools.keys()):
            pool = self.pools.get(key)
            if pool is not None:
                yield pool


class PooledHTTPAdapter(HTTPAdapter):
    """requests adapter whose urllib3 pools report into a PoolTracker."""

    def __init__(self, config: PoolConfig) -> None:
        self.tracker = PoolTracker()
        self.keep_alive = config.keep_alive
        retry = Retry(
            total=config.retries,
            backoff_factor=config.backoff,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET", "HEAD", "OPTIONS"}),
            raise_on_status=False,
        )
        super().__init__(
            pool_connections=config.max_host_pools,
            pool_maxsize=config.max_sockets,
            max_retries=retry,
            pool_block=config.block,
        )

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        self._pool_connections = connections
        self._pool_maxsize = maxsize
        self._pool_block = block
        self.poolmanager = _TrackingPoolManager(
            num_pools=connections,
            maxsize=maxsize,
            block=block,
            tracker=self.tracker,
            **pool_kwargs,
        )

    def add_headers(self, request, **kwargs) -> None:
        if not self.keep_alive:
            request.headers["Connection"] = "close"

    def socket_counts(self) -> Tuple[int, int, int]:
        """Return (active, free, pending) for this adapter."""
        free = 0
        for pool in self.poolmanager.iter_pools():
            if isinstance(pool, _TrackedPoolMixin):
                free += pool.free_connections()
        return self.tracker.in_use, free, self.tracker.waiting


class ConnectionPoolManager:
    """
    Process-wide owner of the HTTP and HTTPS adapters.

    Parameters
    ----------
    config : PoolConfig, optional
        Initial configuration; defaults to ``PoolConfig()``

    Examples
    --------
    >>> pool = ConnectionPoolManager(PoolConfig(max_sockets=20))
    >>> adapter = pool.get_adapter("https")
    >>> pool.get_stats().total_requests
    1
    """

    def __init__(self, config: Optional[PoolConfig] = None) -> None:
        self._config = config or PoolConfig()
        self._lock = threading.Lock()
        self._adapters: Dict[str, PooledHTTPAdapter] = {}
        self._listeners: List[Tuple[PoolTracker, str, Callable[[], None]]] = []
        self._total_requests = 0
        self._created = 0
        self._reused = 0
        self._initialize_adapters()

    # ---------------- lifecycle ----------------

    def _initialize_adapters(self) -> None:
        for scheme in ("http", "https"):
            adapter = PooledHTTPAdapter(self._config)
            self._attach(adapter.tracker)
            self._adapters[scheme] = adapter
        logger.debug("Connection pools initialized: %s", asdict(self._config))

    def _attach(self, tracker: PoolTracker) -> None:
        def on_created() -> None:
            with self._lock:
                self._created += 1

        def on_reused() -> None:
            with self._lock:
                self._reused += 1

        tracker.add_listener(EVENT_CREATED, on_created)
        tracker.add_listener(EVENT_REUSED, on_reused)
        self._listeners.append((tracker, EVENT_CREATED, on_created))
        self._listeners.append((tracker, EVENT_REUSED, on_reused))

    def destroy(self) -> None:
        """Detach pool listeners, then close both adapters."""
        for tracker, event, listener in self._listeners:
            tracker.remove_listener(event, listener)
        self._listeners = []

        for adapter in self._adapters.values():
            adapter.close()
        self._adapters = {}

    # ---------------- access ----------------

    def get_adapter(self, scheme: str) -> PooledHTTPAdapter:
        """
        Return the adapter for ``scheme`` ("http" or "https", a trailing
        colon is accepted) and count the request.
        """
        key = scheme.lower().rstrip(":")
        if key not in ("http", "https"):
            raise ValueError(f"Unsupported scheme: {scheme!r}")
        adapter = self._adapters.get(key)
        if adapter is None:
            raise RuntimeError(f"{key.upper()} connection pool not initialized")
        with self._lock:
            self._total_requests += 1
        return adapter

    def get_config(self) -> PoolConfig:
        return self._config

    def update_config(self, **changes) -> bool:
        """
        Merge ``changes`` into the configuration and rebuild the adapters.

        Returns False without touching the adapters when the merged
        configuration equals the current one. In-flight connections keep
        using the adapter they were drawn from.
        """
        new_config = replace(self._config, **changes)
        if new_config == self._config:
            return False

        logger.info("Rebuilding connection pools with %s", changes)
        self.destroy()
        self._config = new_config
        self._initialize_adapters()
        return True

    # ---------------- telemetry ----------------

    def get_stats(self) -> PoolStats:
        active = free = pending = 0
        for adapter in self._adapters.values():
            a, f, p = adapter.socket_counts()
            active += a
            free += f
            pending += p
        with self._lock:
            return PoolStats(
                active_sockets=active,
                free_sockets=free,
                pending_requests=pending,
                total_requests=self._total_requests,
                total_connections_created=self._created,
                total_connections_reused=self._reused,
            )

    def reset_stats(self) -> None:
        with self._lock:
            self._total_requests = 0
            self._created = 0
            self._reused = 0

    def is_healthy(self) -> bool:
        stats = self.get_stats()
        if stats.pending_requests > self._config.max_sockets * 2:
            return False
        if stats.active_sockets > self._config.max_sockets:
            return False
        return True
