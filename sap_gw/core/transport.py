"""
sap_gw.core.transport - HTTP transport for SAP Gateway calls
=============================================================

The protocol engine only needs an awaitable callable
``(method, url, headers, body) -> TransportResponse``. This module defines
that contract and a default implementation on top of requests:

- Basic and Bearer token authentication
- Adapters drawn from a shared ConnectionPoolManager
- TLS verification toggle
- Blocking I/O moved off the event loop
- Sanitized transport errors
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union
from http.cookiejar import DefaultCookiePolicy
import asyncio
import logging
import re
import time
from urllib.parse import urlsplit

import requests
from requests import Response, Session
from requests.structures import CaseInsensitiveDict

from sap_gw.core.pool import ConnectionPoolManager


logger = logging.getLogger("sap_gw.transport")

_URL_USERINFO = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")
_AUTH_VALUE = re.compile(r"(?i)(authorization['\"]?\s*[:=]\s*['\"]?)(basic|bearer)\s+[^\s'\",}]+")
_PASSWORD_PARAM = re.compile(r"(?i)((?:sap-)?password=)[^&\s]+")


class ODataUpstreamError(RuntimeError):
    """
    Exception raised when the SAP OData service returns an error.

    Attributes
    ----------
    status : int
        HTTP status code from SAP
    body : str
        Response body (or the formatted SAP messages)
    url : str
        The URL that was called
    headers : dict
        Response headers
    messages : tuple
        SapMessage entries extracted from the response
    """

    def __init__(
        self,
        status: int,
        body: str,
        url: str,
        headers: Optional[Mapping[str, Any]] = None,
        messages: Tuple[Any, ...] = (),
    ):
        snippet = (body or "")[:1200]
        super().__init__(f"OData upstream error {status} for {url}: {snippet}")
        self.status = status
        self.body = body or ""
        self.url = url
        self.headers = dict(headers or {})
        self.messages = tuple(messages)


class ODataTransportError(RuntimeError):
    """
    Connection-level failure (refused, timeout, DNS, TLS).

    The message is sanitized; the original exception is chained.
    """

    def __init__(self, message: str, url: str = ""):
        super().__init__(sanitize_error_message(message))
        self.url = sanitize_error_message(url)


def sanitize_error_message(text: str) -> str:
    """
    Mask credentials that requests/urllib3 may echo into error messages.

    Examples
    --------
    >>> sanitize_error_message("https://user:pw@host/x failed")
    'https://***@host/x failed'
    """
    text = _URL_USERINFO.sub(r"\g<scheme>***@", text or "")
    text = _AUTH_VALUE.sub(r"\1\2 ***", text)
    return _PASSWORD_PARAM.sub(r"\1***", text)


@dataclass
class ODataAuth:
    """
    Authentication configuration for SAP OData.

    Parameters
    ----------
    kind : str
        Either "basic" or "bearer"
    value : tuple or str
        For basic: (username, password) tuple
        For bearer: access token string

    Examples
    --------
    >>> auth = ODataAuth("basic", ("USER", "PASSWORD"))
    >>> auth = ODataAuth("bearer", "eyJ...")
    """
    kind: str  # "basic" | "bearer"
    value: Union[Tuple[str, str], str]  # (user, pass) or access_token

    @property
    def username(self) -> str:
        if self.kind == "basic" and isinstance(self.value, tuple):
            return self.value[0]
        return ""


@dataclass
class ODataConfig:
    """
    Connection configuration for SAP OData services.

    Parameters
    ----------
    base_url : str
        Base URL for OData services, e.g. "https://host/sap/opu/odata/sap/"
    auth : ODataAuth
        Authentication configuration
    default_sap_client : str, optional
        Default SAP client number (can be overridden per-request)
    lang : str
        Language for SAP (default: "EN")
    timeout : float
        Request timeout in seconds (default: 120.0)
    verify : bool or str
        SSL verification (True, False, or path to CA bundle)
    user_agent : str
        User-Agent header value
    """
    base_url: str
    auth: ODataAuth
    default_sap_client: Optional[str] = None
    lang: str = "EN"
    timeout: float = 120.0
    verify: Union[bool, str] = True
    user_agent: str = "sap-gw-client/0.1"


@dataclass
class TransportResponse:
    """
    Raw response handed back by a transport.

    ``headers`` is case-insensitive; a repeated ``Set-Cookie`` header is
    kept as a list of values.
    """
    status: int
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    async def __call__(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[Union[str, bytes]] = None,
    ) -> TransportResponse:
        ...


class _PooledSession(Session):
    """Session whose adapter lookup is delegated to the pool manager."""

    def __init__(self, pool: ConnectionPoolManager) -> None:
        super().__init__()
        self._pool = pool

    def get_adapter(self, url: str):
        return self._pool.get_adapter(urlsplit(url).scheme)


class RequestsTransport:
    """
    Default transport backed by a pooled requests session.

    Parameters
    ----------
    cfg : ODataConfig
        Connection configuration (auth, TLS, timeout)
    pool : ConnectionPoolManager
        Shared pool the session draws its adapters from

    Examples
    --------
    >>> transport = RequestsTransport(cfg, pool)
    >>> resp = await transport("GET", url, {"Accept": "application/json"})
    """

    def __init__(self, cfg: ODataConfig, pool: ConnectionPoolManager) -> None:
        self.cfg = cfg
        self.pool = pool
        self.timeout = float(cfg.timeout)
        self.verify = cfg.verify
        self.session = self._build_session()

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()

    def __enter__(self) -> "RequestsTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _build_session(self) -> Session:
        sess = _PooledSession(self.pool)
        # Cookies are owned by SessionStateManager; the session jar keeps none
        sess.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))

        if self.cfg.auth.kind == "basic":
            sess.auth = self.cfg.auth.value  # type: ignore[assignment]
        elif self.cfg.auth.kind == "bearer":
            sess.headers.update({"Authorization": f"Bearer {self.cfg.auth.value}"})
        else:
            raise ValueError("auth.kind must be 'basic' or 'bearer'")

        sess.headers.update({
            "Accept": "application/json",
            "Accept-Language": self.cfg.lang.lower(),
            "sap-language": self.cfg.lang.upper(),
            "User-Agent": self.cfg.user_agent,
        })
        return sess

    def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[Union[str, bytes]],
    ) -> Response:
        if isinstance(body, str):
            body = body.encode("utf-8")
        try:
            return self.session.request(
                method=method,
                url=url,
                headers=headers,
                data=body,
                timeout=self.timeout,
                verify=self.verify,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise ODataTransportError(f"{type(exc).__name__}: {exc}", url) from exc

    async def __call__(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[Union[str, bytes]] = None,
    ) -> TransportResponse:
        t0 = time.perf_counter()
        r = await asyncio.to_thread(self._send, method.upper(), url, dict(headers), body)
        dt = (time.perf_counter() - t0) * 1000.0
        logger.debug("%s %s -> %s %sms", method.upper(), url, r.status_code, round(dt, 1))
        return TransportResponse(
            status=r.status_code,
            headers=_collect_headers(r),
            body=r.text,
        )


def _collect_headers(r: Response) -> CaseInsensitiveDict:
    headers = CaseInsensitiveDict(r.headers)
    raw_headers = getattr(r.raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "getlist"):
        cookies: List[str] = raw_headers.getlist("Set-Cookie")
        if len(cookies) > 1:
            headers["Set-Cookie"] = cookies
    return headers
