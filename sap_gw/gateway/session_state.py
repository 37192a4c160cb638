"""
sap_gw.gateway.session_state - SAP Gateway session and CSRF handling
=====================================================================

Per-target session state for SAP Gateway:

- Session cookies (merged by name across responses)
- CSRF token caching with lazy fetch
- SAP-ContextId tracking for stateful services
- Request decoration and response harvesting

Sessions are keyed by (host, service path, user). One manager is created
by the host application and shared by reference with every caller.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from hashlib import sha256
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import asyncio
import base64
import json
import logging
import time

from requests.structures import CaseInsensitiveDict

from sap_gw.core.transport import ODataAuth, Transport, TransportResponse
from sap_gw.gateway.messages import SapMessage, extract_all_messages


logger = logging.getLogger("sap_gw.session")

# SAP answers "x-csrf-token: Required" when a write arrives without a
# valid token, and echoes "Fetch" on some fetch responses. Neither is a token.
CSRF_TOKEN_REQUIRED = "Required"
CSRF_TOKEN_FETCH = "Fetch"
CSRF_SENTINELS = frozenset({CSRF_TOKEN_REQUIRED.lower(), CSRF_TOKEN_FETCH.lower()})

CSRF_HEADER = "X-CSRF-Token"
CONTEXT_ID_HEADER = "SAP-ContextId"
ODATA_VERSION = "2.0"

SessionKey = Tuple[str, str, str]


def is_csrf_sentinel(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in CSRF_SENTINELS


@dataclass(frozen=True)
class SessionConfig:
    """
    Session timing, in seconds.

    Parameters
    ----------
    session_timeout : float
        Lifetime of a session after its last update (default: 30 minutes)
    csrf_timeout : float
        Age after which a cached CSRF token is no longer handed out
        (default: 10 minutes)
    """
    session_timeout: float = 30 * 60
    csrf_timeout: float = 10 * 60


@dataclass(frozen=True)
class GatewayOptions:
    """Switches for request decoration and response processing."""
    enable_session: bool = True
    enable_context_id: bool = True
    enable_message_parsing: bool = True
    prefer: str = "representation"  # "representation" | "minimal"
    batch_mode: bool = False


@dataclass
class ODataRequest:
    """An outgoing request before it is handed to the transport."""
    method: str
    url: str
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: Optional[Union[str, bytes]] = None

    def __post_init__(self) -> None:
        if not isinstance(self.headers, CaseInsensitiveDict):
            self.headers = CaseInsensitiveDict(self.headers or {})


@dataclass(frozen=True)
class Cookie:
    name: str
    value: str
    attributes: Mapping[str, str] = field(default_factory=dict)

    @property
    def pair(self) -> str:
        return f"{self.name}={self.value}"


class SessionState(str, Enum):
    NO_SESSION = "no_session"
    COOKIES_ONLY = "cookies_only"
    COOKIES_AND_CONTEXT = "cookies_and_context"
    CSRF_TOKEN = "csrf_token"


@dataclass
class GatewaySession:
    cookies: "OrderedDict[str, Cookie]" = field(default_factory=OrderedDict)
    csrf_token: Optional[str] = None
    context_id: Optional[str] = None
    last_activity: float = 0.0
    expires_at: float = 0.0

    @property
    def state(self) -> SessionState:
        if self.csrf_token:
            return SessionState.CSRF_TOKEN
        if self.context_id:
            return SessionState.COOKIES_AND_CONTEXT
        if self.cookies:
            return SessionState.COOKIES_ONLY
        return SessionState.NO_SESSION


@dataclass(frozen=True)
class SessionStatus:
    has_session: bool
    has_csrf_token: bool
    has_context_id: bool
    cookie_count: int
    state: SessionState
    expires_at: Optional[str] = None


@dataclass
class ProcessedResponse:
    """A transport response after session harvesting and message extraction."""
    status: int
    headers: CaseInsensitiveDict
    body: Any
    csrf_token: Optional[str] = None
    context_id: Optional[str] = None
    messages: List[SapMessage] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


RequestBuilder = Callable[[str, str], ODataRequest]


def parse_set_cookie(value: str) -> Optional[Cookie]:
    """
    Parse one ``Set-Cookie`` value into a Cookie.

    Examples
    --------
    >>> parse_set_cookie("SAP_SESSIONID_ABC_100=xyz; path=/; HttpOnly").pair
    'SAP_SESSIONID_ABC_100=xyz'
    """
    parts = [p.strip() for p in value.split(";")]
    if not parts or "=" not in parts[0]:
        return None
    name, _, cookie_value = parts[0].partition("=")
    name = name.strip()
    if not name:
        return None

    attributes: Dict[str, str] = {}
    for attr in parts[1:]:
        if not attr:
            continue
        key, _, attr_value = attr.partition("=")
        attributes[key.strip().lower()] = attr_value.strip()
    return Cookie(name=name, value=cookie_value.strip(), attributes=attributes)


def decode_body(response: TransportResponse) -> Any:
    """JSON-decode a response body when the content type says so."""
    ctype = str(response.headers.get("Content-Type") or "").lower()
    if "json" in ctype and response.body:
        try:
            return json.loads(response.body)
        except ValueError:
            pass
    return response.body


class SessionStateManager:
    """
    Owns SAP Gateway session state and the CSRF fetch protocol.

    Parameters
    ----------
    transport : Transport
        Transport used for the CSRF fetch round trip
    auth : ODataAuth, optional
        Credentials; the username isolates sessions between users and
        basic credentials are sent on the CSRF fetch
    config : SessionConfig, optional
        Session and token timeouts
    clock : callable, optional
        Returns the current time in seconds (default: ``time.time``)

    Notes
    -----
    State only moves forward (cookies, then context id, then token) until
    the session expires or is cleared as a whole. Writes to one key are
    serialized with a per-key ``asyncio.Lock``; reads never wait.

    Examples
    --------
    >>> sessions = SessionStateManager(transport, auth=cfg.auth)
    >>> token = await sessions.fetch_csrf_token(host, path, builder)
    >>> request = sessions.enhance_request(request, host, path)
    """

    def __init__(
        self,
        transport: Transport,
        *,
        auth: Optional[ODataAuth] = None,
        config: Optional[SessionConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.transport = transport
        self.auth = auth
        self.config = config or SessionConfig()
        self.clock = clock
        self._sessions: Dict[SessionKey, GatewaySession] = {}
        self._locks: Dict[SessionKey, asyncio.Lock] = {}

    # ---------------- keys & storage ----------------

    def _key(self, host: str, service_path: str) -> SessionKey:
        user_hash = ""
        username = self.auth.username if self.auth else ""
        if username:
            user_hash = sha256(username.encode("utf-8")).hexdigest()[:16]
        return (
            host.lower().rstrip("/"),
            service_path.lower().strip("/"),
            user_hash,
        )

    def _lock(self, key: SessionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def get_session(self, host: str, service_path: str) -> Optional[GatewaySession]:
        """Return the live session, dropping it first if it has expired."""
        key = self._key(host, service_path)
        session = self._sessions.get(key)
        if session is None:
            return None
        if self.clock() >= session.expires_at:
            logger.debug("Session for %s%s expired", host, service_path)
            self._forget(key)
            return None
        return session

    def _touch(self, host: str, service_path: str, **changes: Any) -> GatewaySession:
        key = self._key(host, service_path)
        now = self.clock()
        current = self.get_session(host, service_path) or GatewaySession()
        session = replace(
            current,
            last_activity=now,
            expires_at=now + self.config.session_timeout,
            **changes,
        )
        self._sessions[key] = session
        return session

    # ---------------- accessors ----------------

    def get_cookie_header(self, host: str, service_path: str) -> Optional[str]:
        session = self.get_session(host, service_path)
        if not session or not session.cookies:
            return None
        return "; ".join(c.pair for c in session.cookies.values())

    def get_context_id(self, host: str, service_path: str) -> Optional[str]:
        session = self.get_session(host, service_path)
        return session.context_id if session else None

    def get_csrf_token(self, host: str, service_path: str) -> Optional[str]:
        session = self.get_session(host, service_path)
        if not session or not session.csrf_token:
            return None
        if self.clock() - session.last_activity > self.config.csrf_timeout:
            logger.debug("Cached CSRF token for %s%s is stale", host, service_path)
            return None
        return session.csrf_token

    # ---------------- mutators ----------------

    def update_cookies(
        self,
        host: str,
        service_path: str,
        set_cookie: Union[str, Sequence[str]],
    ) -> None:
        values = [set_cookie] if isinstance(set_cookie, str) else list(set_cookie)
        parsed = [c for c in (parse_set_cookie(v) for v in values) if c is not None]
        if not parsed:
            return

        current = self.get_session(host, service_path)
        cookies: "OrderedDict[str, Cookie]" = OrderedDict(current.cookies if current else ())
        for cookie in parsed:
            cookies[cookie.name] = cookie
        self._touch(host, service_path, cookies=cookies)
        logger.debug("Session cookies updated (%d stored, %d new)", len(cookies), len(parsed))

    def update_context_id(self, host: str, service_path: str, context_id: str) -> None:
        if not context_id:
            return
        self._touch(host, service_path, context_id=context_id)
        logger.debug("SAP-ContextId updated: %s", context_id)

    def update_csrf_token(self, host: str, service_path: str, token: str) -> None:
        if not token or is_csrf_sentinel(token):
            return
        self._touch(host, service_path, csrf_token=token)
        logger.debug("CSRF token cached (%d chars)", len(token))

    def _forget(self, key: SessionKey) -> None:
        self._sessions.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def clear_session(self, host: str, service_path: str) -> None:
        self._forget(self._key(host, service_path))
        logger.info("SAP Gateway session cleared for %s%s", host, service_path)

    def cleanup_expired_sessions(self) -> int:
        now = self.clock()
        expired = [k for k, s in self._sessions.items() if s.expires_at <= now]
        for key in expired:
            self._forget(key)
        if expired:
            logger.debug("Removed %d expired session(s)", len(expired))
        return len(expired)

    def get_session_status(self, host: str, service_path: str) -> SessionStatus:
        session = self.get_session(host, service_path)
        if session is None:
            return SessionStatus(
                has_session=False,
                has_csrf_token=False,
                has_context_id=False,
                cookie_count=0,
                state=SessionState.NO_SESSION,
            )
        return SessionStatus(
            has_session=True,
            has_csrf_token=bool(session.csrf_token),
            has_context_id=bool(session.context_id),
            cookie_count=len(session.cookies),
            state=session.state,
            expires_at=datetime.fromtimestamp(session.expires_at, tz=timezone.utc).isoformat(),
        )

    # ---------------- request / response ----------------

    def enhance_request(
        self,
        request: ODataRequest,
        host: str,
        service_path: str,
        options: GatewayOptions = GatewayOptions(),
    ) -> ODataRequest:
        """
        Return a copy of ``request`` carrying session and protocol headers.

        Cookies and context id come from the cached session. Outside batch
        mode ``Prefer`` is set from ``options.prefer``; in batch mode any
        caller-chosen ``Prefer`` is left alone. ``DataServiceVersion`` and
        ``MaxDataServiceVersion`` are only added when absent.
        """
        headers = CaseInsensitiveDict(request.headers)

        if options.enable_session:
            cookie_header = self.get_cookie_header(host, service_path)
            if cookie_header:
                headers["Cookie"] = cookie_header

        if options.enable_context_id:
            context_id = self.get_context_id(host, service_path)
            if context_id:
                headers[CONTEXT_ID_HEADER] = context_id

        if not options.batch_mode:
            headers["Prefer"] = "return=minimal" if options.prefer == "minimal" else "return=representation"

        if options.enable_message_parsing:
            headers["sap-message-scope"] = "BusinessObject"

        headers.setdefault("DataServiceVersion", ODATA_VERSION)
        headers.setdefault("MaxDataServiceVersion", ODATA_VERSION)

        return replace(request, headers=headers)

    def process_response(
        self,
        response: TransportResponse,
        host: str,
        service_path: str,
        options: GatewayOptions = GatewayOptions(),
    ) -> ProcessedResponse:
        """Harvest cookies, context id and CSRF token, then extract messages."""
        headers = response.headers
        result = ProcessedResponse(
            status=response.status,
            headers=headers,
            body=decode_body(response),
        )

        set_cookie = headers.get("set-cookie")
        if options.enable_session and set_cookie:
            self.update_cookies(host, service_path, set_cookie)

        context_id = headers.get("sap-contextid")
        if options.enable_context_id and context_id:
            result.context_id = str(context_id)
            self.update_context_id(host, service_path, result.context_id)

        token = headers.get("x-csrf-token")
        if token and not is_csrf_sentinel(str(token)):
            result.csrf_token = str(token)
            self.update_csrf_token(host, service_path, result.csrf_token)
        elif token:
            logger.debug("x-csrf-token sentinel %r ignored", token)

        if options.enable_message_parsing:
            result.messages = extract_all_messages(headers, result.body)

        return result

    # ---------------- CSRF protocol ----------------

    def _basic_auth_header(self) -> Optional[str]:
        if not self.auth or self.auth.kind != "basic" or not isinstance(self.auth.value, tuple):
            return None
        user, password = self.auth.value
        if not user or not password:
            return None
        raw = f"{user}:{password}".encode("latin-1")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    async def fetch_csrf_token(
        self,
        host: str,
        service_path: str,
        request_builder: RequestBuilder,
    ) -> str:
        """
        Return a CSRF token for (host, service_path).

        A cached, non-stale token is returned without a network call.
        Otherwise one fetch round trip is made under the key's lock;
        concurrent callers wait for it and reuse its result. Failures
        return an empty string so the caller can decide whether to write
        without a token.
        """
        cached = self.get_csrf_token(host, service_path)
        if cached:
            return cached

        async with self._lock(self._key(host, service_path)):
            cached = self.get_csrf_token(host, service_path)
            if cached:
                return cached

            logger.debug("Fetching CSRF token for %s%s", host, service_path)
            try:
                request = self.enhance_request(
                    request_builder(host, service_path),
                    host,
                    service_path,
                    GatewayOptions(enable_message_parsing=False),
                )
                request.headers[CSRF_HEADER] = CSRF_TOKEN_FETCH
                auth_header = self._basic_auth_header()
                if auth_header and "Authorization" not in request.headers:
                    request.headers["Authorization"] = auth_header

                response = await self.transport(
                    request.method, request.url, request.headers, request.body
                )
                processed = self.process_response(
                    response,
                    host,
                    service_path,
                    GatewayOptions(enable_message_parsing=False),
                )
            except Exception as exc:
                logger.warning("Failed to fetch CSRF token for %s%s: %s", host, service_path, exc)
                return ""

            if processed.csrf_token:
                return processed.csrf_token

            logger.warning(
                "CSRF token not found in response (status %s) for %s%s",
                processed.status, host, service_path,
            )
            return ""
