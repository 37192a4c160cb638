"""
Tests for sap_gw.core.pool.
"""

from unittest.mock import Mock

import pytest

from sap_gw.core.pool import (
    ConnectionPoolManager,
    PoolConfig,
    PooledHTTPAdapter,
    TrackedHTTPConnectionPool,
)


@pytest.fixture
def pool():
    manager = ConnectionPoolManager(PoolConfig(max_sockets=2))
    yield manager
    manager.destroy()


class TestPoolConfig:
    """Tests for PoolConfig defaults."""

    def test_defaults(self):
        cfg = PoolConfig()
        assert cfg.keep_alive is True
        assert cfg.max_sockets == 10
        assert cfg.retries == 0


class TestGetAdapter:
    """Tests for adapter lookup."""

    def test_scheme_lookup(self, pool):
        https = pool.get_adapter("https")
        assert isinstance(https, PooledHTTPAdapter)
        assert pool.get_adapter("HTTPS:") is https
        assert pool.get_adapter("http") is not https

    def test_counts_requests(self, pool):
        pool.get_adapter("https")
        pool.get_adapter("http")
        assert pool.get_stats().total_requests == 2

    def test_unknown_scheme(self, pool):
        with pytest.raises(ValueError):
            pool.get_adapter("ftp")

    def test_destroyed(self, pool):
        pool.destroy()
        with pytest.raises(RuntimeError):
            pool.get_adapter("https")

    def test_retries_only_idempotent_methods(self):
        adapter = PooledHTTPAdapter(PoolConfig(retries=2))
        assert adapter.max_retries.total == 2
        assert "POST" not in adapter.max_retries.allowed_methods
        assert "GET" in adapter.max_retries.allowed_methods

    def test_keep_alive_disabled_sends_close(self):
        adapter = PooledHTTPAdapter(PoolConfig(keep_alive=False))
        request = Mock()
        request.headers = {}
        adapter.add_headers(request)
        assert request.headers["Connection"] == "close"


class TestUpdateConfig:
    """Tests for reconfiguration."""

    def test_no_change_keeps_adapters(self, pool):
        adapter = pool.get_adapter("https")
        assert pool.update_config(max_sockets=2) is False
        assert pool.get_adapter("https") is adapter

    def test_no_change_keeps_connection_counters(self, pool):
        conn_pool = pool.get_adapter("http").poolmanager.connection_from_url("http://sap.example.com/")
        conn_pool._put_conn(conn_pool._get_conn())
        created = pool.get_stats().total_connections_created
        assert created == 1

        assert pool.update_config(max_sockets=pool.get_config().max_sockets) is False

        assert pool.get_stats().total_connections_created == created
        assert pool.get_stats().free_sockets == 1

    def test_change_rebuilds_adapters(self, pool):
        adapter = pool.get_adapter("https")
        assert pool.update_config(max_sockets=5, keep_alive=False) is True
        assert pool.get_adapter("https") is not adapter
        assert pool.get_config().max_sockets == 5
        assert pool.get_config().keep_alive is False

    def test_unknown_field(self, pool):
        with pytest.raises(TypeError):
            pool.update_config(bogus=1)


class TestStats:
    """Tests for pool telemetry."""

    def test_initial_stats(self, pool):
        stats = pool.get_stats()
        assert stats.active_sockets == 0
        assert stats.free_sockets == 0
        assert stats.pending_requests == 0
        assert stats.total_connections_created == 0

    def test_created_and_reused_counters(self, pool):
        adapter = pool.get_adapter("http")
        conn_pool = adapter.poolmanager.connection_from_url("http://sap.example.com/")
        assert isinstance(conn_pool, TrackedHTTPConnectionPool)

        conn = conn_pool._get_conn()
        assert pool.get_stats().active_sockets == 1
        conn_pool._put_conn(conn)
        conn_pool._get_conn()

        stats = pool.get_stats()
        assert stats.total_connections_created == 1
        assert stats.total_connections_reused == 1
        assert stats.active_sockets == 1

    def test_free_sockets(self, pool):
        adapter = pool.get_adapter("http")
        conn_pool = adapter.poolmanager.connection_from_url("http://sap.example.com/")
        conn_pool._put_conn(conn_pool._get_conn())
        assert pool.get_stats().free_sockets == 1

    def test_reset_stats(self, pool):
        pool.get_adapter("https")
        pool.reset_stats()
        assert pool.get_stats().total_requests == 0

    def test_destroy_detaches_listeners(self, pool):
        tracker = pool.get_adapter("https").tracker
        assert tracker.listener_count() == 2
        pool.destroy()
        assert tracker.listener_count() == 0


class TestIsHealthy:
    """Tests for the health verdict."""

    def test_idle_pool_is_healthy(self, pool):
        assert pool.is_healthy()

    def test_too_many_active_sockets(self, pool):
        pool.get_adapter("https").tracker.in_use = 3
        assert not pool.is_healthy()

    def test_too_many_pending(self, pool):
        pool.get_adapter("http").tracker.waiting = 5
        assert not pool.is_healthy()
