"""
Tests for sap_gw.core module.
"""

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import SimpleNamespace
import threading
from unittest.mock import patch

import pytest
import requests
from requests.structures import CaseInsensitiveDict
from urllib3._collections import HTTPHeaderDict

from sap_gw.core.connection import ConnectionContext
from sap_gw.core.pool import ConnectionPoolManager, PoolConfig, PooledHTTPAdapter
from sap_gw.core.transport import (
    ODataAuth,
    ODataConfig,
    ODataTransportError,
    ODataUpstreamError,
    RequestsTransport,
    TransportResponse,
    sanitize_error_message,
)
from sap_gw.gateway.messages import SapMessage
from sap_gw.gateway.session_state import ODataRequest, SessionStateManager
from sap_gw.odata.service import ODataService

ENV_VARS = (
    "S4_BASE_URL", "S4_USER", "S4_PASS", "S4_BEARER_TOKEN",
    "S4_SAP_CLIENT", "S4_VERIFY_TLS", "S4_TIMEOUT", "S4_POOL_MAX_SOCKETS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def pool():
    manager = ConnectionPoolManager()
    yield manager
    manager.destroy()


def _requests_response(status=200, headers=None, body=b"", raw=None):
    r = requests.Response()
    r.status_code = status
    r.headers = CaseInsensitiveDict(headers or {})
    r._content = body
    r.encoding = "utf-8"
    r.raw = raw
    return r


def _config(auth=None, **kwargs):
    return ODataConfig(
        base_url="https://test.com/sap/opu/odata/sap/",
        auth=auth or ODataAuth("basic", ("user", "pass")),
        **kwargs,
    )


class TestODataAuth:
    """Tests for ODataAuth dataclass."""

    def test_basic_auth(self):
        auth = ODataAuth("basic", ("user", "pass"))
        assert auth.kind == "basic"
        assert auth.username == "user"

    def test_bearer_auth(self):
        auth = ODataAuth("bearer", "token123")
        assert auth.value == "token123"
        assert auth.username == ""


class TestODataConfig:
    """Tests for ODataConfig dataclass."""

    def test_default_values(self):
        cfg = _config()
        assert cfg.lang == "EN"
        assert cfg.timeout == 120.0
        assert cfg.verify is True
        assert cfg.default_sap_client is None

    def test_custom_values(self):
        cfg = _config(ODataAuth("bearer", "token"), default_sap_client="200", lang="DE", timeout=30.0, verify=False)
        assert cfg.default_sap_client == "200"
        assert cfg.lang == "DE"
        assert cfg.timeout == 30.0
        assert cfg.verify is False


class TestErrors:
    """Tests for upstream and transport errors."""

    def test_upstream_error_attributes(self):
        message = SapMessage(code="X/1", message="boom")
        err = ODataUpstreamError(404, "Not found", "https://test.com/entity", {"x-request-id": "123"}, (message,))
        assert err.status == 404
        assert err.body == "Not found"
        assert err.url == "https://test.com/entity"
        assert err.headers == {"x-request-id": "123"}
        assert err.messages == (message,)

    def test_upstream_error_message_truncation(self):
        err = ODataUpstreamError(500, "x" * 2000, "https://test.com")
        assert len(str(err)) < 1500
        assert len(err.body) == 2000

    @pytest.mark.parametrize("raw, secret", [
        ("GET https://user:pw@host/x failed", "pw"),
        ("headers={'Authorization': 'Basic dXNlcjpwYXNz'}", "dXNlcjpwYXNz"),
        ("Authorization: Bearer eyJabc.def", "eyJabc.def"),
        ("/login?sap-password=hunter2&x=1", "hunter2"),
    ])
    def test_sanitize_error_message(self, raw, secret):
        cleaned = sanitize_error_message(raw)
        assert secret not in cleaned
        assert "***" in cleaned

    def test_transport_error_is_sanitized(self):
        err = ODataTransportError("refused https://user:pw@host/", "https://user:pw@host/")
        assert "pw" not in str(err)
        assert err.url == "https://***@host/"


class TestTransportResponse:
    """Tests for TransportResponse."""

    def test_ok(self):
        assert TransportResponse(204).ok
        assert not TransportResponse(403).ok


class TestRequestsTransport:
    """Tests for the requests-backed transport."""

    def test_basic_auth_session(self, pool):
        transport = RequestsTransport(_config(), pool)
        assert transport.session.auth == ("user", "pass")
        assert transport.session.headers["sap-language"] == "EN"
        assert transport.session.headers["Accept-Language"] == "en"

    def test_bearer_auth_session(self, pool):
        transport = RequestsTransport(_config(ODataAuth("bearer", "tok")), pool)
        assert transport.session.headers["Authorization"] == "Bearer tok"

    def test_invalid_auth_kind(self, pool):
        with pytest.raises(ValueError):
            RequestsTransport(_config(ODataAuth("digest", "x")), pool)

    def test_adapters_come_from_pool(self, pool):
        transport = RequestsTransport(_config(), pool)
        adapter = transport.session.get_adapter("https://test.com/x")
        assert isinstance(adapter, PooledHTTPAdapter)
        assert adapter is pool.get_adapter("https")

    @pytest.mark.asyncio
    async def test_call(self, pool):
        transport = RequestsTransport(_config(timeout=5), pool)
        response = _requests_response(201, {"Content-Type": "application/json"}, b'{"d":{}}')

        with patch.object(transport.session, "request", return_value=response) as request:
            result = await transport("post", "https://test.com/x", {"X-CSRF-Token": "t"}, '{"a":"ä"}')

        assert result.status == 201
        assert result.body == '{"d":{}}'
        assert result.headers["content-type"] == "application/json"
        kwargs = request.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["data"] == '{"a":"ä"}'.encode("utf-8")
        assert kwargs["timeout"] == 5.0
        assert kwargs["allow_redirects"] is False

    @pytest.mark.asyncio
    async def test_multiple_set_cookie_headers(self, pool):
        raw_headers = HTTPHeaderDict()
        raw_headers.add("Set-Cookie", "SAP_SESSIONID=abc; path=/")
        raw_headers.add("Set-Cookie", "sap-usercontext=sap-client=100; path=/")
        response = _requests_response(
            200,
            {"Set-Cookie": "SAP_SESSIONID=abc; path=/, sap-usercontext=sap-client=100; path=/"},
            raw=SimpleNamespace(headers=raw_headers),
        )
        transport = RequestsTransport(_config(), pool)

        with patch.object(transport.session, "request", return_value=response):
            result = await transport("GET", "https://test.com/x", {})

        assert result.headers["set-cookie"] == [
            "SAP_SESSIONID=abc; path=/",
            "sap-usercontext=sap-client=100; path=/",
        ]

    @pytest.mark.asyncio
    async def test_connection_error_wrapped(self, pool):
        transport = RequestsTransport(_config(), pool)
        failure = requests.ConnectionError("Max retries exceeded with url https://user:pw@test.com/x")

        with patch.object(transport.session, "request", side_effect=failure):
            with pytest.raises(ODataTransportError) as exc_info:
                await transport("GET", "https://test.com/x", {})

        assert "ConnectionError" in str(exc_info.value)
        assert "pw@" not in str(exc_info.value)
        assert exc_info.value.__cause__ is failure


class TestConnectionContext:
    """Tests for ConnectionContext class."""

    def test_init_with_params(self, clean_env):
        ctx = ConnectionContext(
            base_url="https://test.com/odata",
            user="testuser",
            password="testpass",
            sap_client="100",
        )
        assert ctx.base_url == "https://test.com/odata/"
        assert ctx.sap_client == "100"
        assert ctx.config.auth == ODataAuth("basic", ("testuser", "testpass"))
        assert ctx.config.timeout == 120.0

    def test_init_from_env(self, clean_env):
        clean_env.setenv("S4_BASE_URL", "https://env.com/odata/")
        clean_env.setenv("S4_BEARER_TOKEN", "tok")
        clean_env.setenv("S4_SAP_CLIENT", "200")
        clean_env.setenv("S4_VERIFY_TLS", "false")
        clean_env.setenv("S4_TIMEOUT", "30")
        clean_env.setenv("S4_POOL_MAX_SOCKETS", "4")

        ctx = ConnectionContext()

        cfg = ctx.config
        assert cfg.base_url == "https://env.com/odata/"
        assert cfg.auth == ODataAuth("bearer", "tok")
        assert cfg.default_sap_client == "200"
        assert cfg.verify is False
        assert cfg.timeout == 30.0
        assert ctx.pool.get_config().max_sockets == 4
        ctx.close()

    def test_missing_base_url(self, clean_env):
        with pytest.raises(ValueError, match="Missing base_url"):
            ConnectionContext(user="u", password="p")

    def test_missing_credentials(self, clean_env):
        with pytest.raises(ValueError, match="Missing credentials"):
            ConnectionContext(base_url="https://test.com/", user="u")

    def test_services_share_transport_and_sessions(self, clean_env, transport):
        ctx = ConnectionContext(
            base_url="https://test.com/sap/opu/odata/sap/",
            user="u",
            password="p",
            sap_client="100",
            transport=transport,
            pool_config=PoolConfig(max_sockets=2),
        )
        orders = ctx.get_service("API_SALES_ORDER_SRV")
        partners = ctx.get_service("API_BUSINESS_PARTNER")

        assert isinstance(orders, ODataService)
        assert orders.transport is transport
        assert orders.sessions is partners.sessions
        assert orders.default_sap_client == "100"
        assert orders.service_url == "https://test.com/sap/opu/odata/sap/API_SALES_ORDER_SRV/"
        assert ctx.sessions.auth.username == "u"

    def test_close(self, clean_env):
        with ConnectionContext(base_url="https://test.com/", user="u", password="p") as ctx:
            transport = ctx.transport
            pool = ctx.pool
            assert isinstance(transport, RequestsTransport)

        with pytest.raises(RuntimeError):
            pool.get_adapter("https")
        assert ctx.transport is not transport
        ctx.close()


class _CookieRecorder(BaseHTTPRequestHandler):
    seen = []

    def do_GET(self):
        self.seen.append((self.path, self.headers.get("Cookie")))
        self.send_response(200)
        if self.path == "/a/1":
            self.send_header("Set-Cookie", "SAP_SESSIONID=old; path=/")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format, *args):
        pass


@pytest.fixture
def cookie_server():
    _CookieRecorder.seen = []
    server = ThreadingHTTPServer(("127.0.0.1", 0), _CookieRecorder)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}", _CookieRecorder.seen
    server.shutdown()
    server.server_close()


class TestTransportCookies:
    """Cookies are owned by SessionStateManager, not by the requests session."""

    async def _get(self, transport, sessions, host, path):
        request = sessions.enhance_request(ODataRequest("GET", f"{host}{path}"), host, path.rsplit("/", 1)[0])
        response = await transport(request.method, request.url, request.headers)
        sessions.process_response(response, host, path.rsplit("/", 1)[0])

    @pytest.mark.asyncio
    async def test_cleared_session_sends_no_cookie(self, pool, cookie_server):
        host, seen = cookie_server
        transport = RequestsTransport(ODataConfig(host + "/", ODataAuth("basic", ("user", "pass"))), pool)
        sessions = SessionStateManager(transport, auth=transport.cfg.auth)

        await self._get(transport, sessions, host, "/a/1")
        assert sessions.get_cookie_header(host, "/a") == "SAP_SESSIONID=old"
        assert len(transport.session.cookies) == 0

        sessions.clear_session(host, "/a")
        await self._get(transport, sessions, host, "/a/2")
        await self._get(transport, sessions, host, "/b/1")
        transport.close()

        assert seen == [("/a/1", None), ("/a/2", None), ("/b/1", None)]

    @pytest.mark.asyncio
    async def test_session_cookie_still_sent_from_manager(self, pool, cookie_server):
        host, seen = cookie_server
        transport = RequestsTransport(ODataConfig(host + "/", ODataAuth("basic", ("user", "pass"))), pool)
        sessions = SessionStateManager(transport, auth=transport.cfg.auth)

        await self._get(transport, sessions, host, "/a/1")
        await self._get(transport, sessions, host, "/a/2")
        await self._get(transport, sessions, host, "/b/1")
        transport.close()

        assert seen[1] == ("/a/2", "SAP_SESSIONID=old")
        assert seen[2] == ("/b/1", None)
