"""
sap_gw.core.connection - High-level connection management
==========================================================

ConnectionContext is the composition root of the client: it owns one
ConnectionPoolManager, one transport and one SessionStateManager, and
hands them by reference to every ODataService it creates.
"""

from __future__ import annotations

import os
from typing import Optional

from sap_gw.core.pool import ConnectionPoolManager, PoolConfig
from sap_gw.core.transport import ODataAuth, ODataConfig, RequestsTransport, Transport
from sap_gw.gateway.session_state import GatewayOptions, SessionConfig, SessionStateManager
from sap_gw.odata.service import ODataService


class ConnectionContext:
    """
    High-level connection manager for SAP Gateway OData services.

    Supports environment variable configuration and context manager usage.

    Parameters
    ----------
    base_url : str, optional
        OData base URL. Falls back to S4_BASE_URL env var.
    user : str, optional
        Username for basic auth. Falls back to S4_USER env var.
    password : str, optional
        Password for basic auth. Falls back to S4_PASS env var.
    bearer_token : str, optional
        Bearer token for OAuth. Falls back to S4_BEARER_TOKEN env var.
    sap_client : str, optional
        Default SAP client. Falls back to S4_SAP_CLIENT env var.
    verify : bool, optional
        SSL verification. Falls back to S4_VERIFY_TLS env var.
    timeout : float, optional
        Request timeout in seconds. Falls back to S4_TIMEOUT env var (120).
    pool_config : PoolConfig, optional
        Connection pool settings; ``max_sockets`` falls back to
        S4_POOL_MAX_SOCKETS env var.
    session_config : SessionConfig, optional
        Session and CSRF token lifetimes
    transport : Transport, optional
        Replaces the default requests transport (not closed by ``close()``)

    Examples
    --------
    >>> # Using explicit credentials
    >>> conn = ConnectionContext(
    ...     base_url="https://s4.example.com/sap/opu/odata/sap/",
    ...     user="USER",
    ...     password="PASS",
    ...     sap_client="100"
    ... )

    >>> # Using environment variables
    >>> conn = ConnectionContext()  # reads from S4_* env vars

    >>> # As context manager
    >>> with ConnectionContext() as conn:
    ...     service = conn.get_service("API_SALES_ORDER_SRV")
    ...     await service.delete("A_SalesOrder", "4711")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        bearer_token: Optional[str] = None,
        sap_client: Optional[str] = None,
        verify: Optional[bool] = None,
        timeout: Optional[float] = None,
        *,
        pool_config: Optional[PoolConfig] = None,
        session_config: Optional[SessionConfig] = None,
        transport: Optional[Transport] = None,
    ) -> None:
        # Resolve from environment if not provided
        self._base_url = (base_url or os.environ.get("S4_BASE_URL", "")).rstrip("/") + "/"
        self._user = user or os.environ.get("S4_USER", "")
        self._password = password or os.environ.get("S4_PASS", "")
        self._bearer_token = bearer_token or os.environ.get("S4_BEARER_TOKEN", "")
        self._sap_client = sap_client or os.environ.get("S4_SAP_CLIENT")

        if verify is not None:
            self._verify = verify
        else:
            self._verify = os.environ.get("S4_VERIFY_TLS", "true").lower() != "false"

        if timeout is not None:
            self._timeout = float(timeout)
        else:
            self._timeout = float(os.environ.get("S4_TIMEOUT", "120"))

        if pool_config is None:
            pool_config = PoolConfig(max_sockets=int(os.environ.get("S4_POOL_MAX_SOCKETS", "10")))
        self._pool_config = pool_config
        self._session_config = session_config or SessionConfig()

        # Validate configuration
        if not self._base_url or self._base_url == "/":
            raise ValueError(
                "Missing base_url. Set S4_BASE_URL environment variable "
                "or pass base_url parameter."
            )

        if not self._bearer_token and not (self._user and self._password):
            raise ValueError(
                "Missing credentials. Set S4_USER/S4_PASS or S4_BEARER_TOKEN "
                "environment variables, or pass user/password or bearer_token parameters."
            )

        self._custom_transport = transport
        self._pool: Optional[ConnectionPoolManager] = None
        self._transport: Optional[Transport] = None
        self._sessions: Optional[SessionStateManager] = None

    @property
    def config(self) -> ODataConfig:
        if self._bearer_token:
            auth = ODataAuth("bearer", self._bearer_token)
        else:
            auth = ODataAuth("basic", (self._user, self._password))

        return ODataConfig(
            base_url=self._base_url,
            auth=auth,
            default_sap_client=self._sap_client,
            verify=self._verify,
            timeout=self._timeout,
        )

    @property
    def pool(self) -> ConnectionPoolManager:
        """Get or create the shared connection pool."""
        if self._pool is None:
            self._pool = ConnectionPoolManager(self._pool_config)
        return self._pool

    @property
    def transport(self) -> Transport:
        """Get or create the transport used by every service."""
        if self._transport is None:
            if self._custom_transport is not None:
                self._transport = self._custom_transport
            else:
                self._transport = RequestsTransport(self.config, self.pool)
        return self._transport

    @property
    def sessions(self) -> SessionStateManager:
        """Get or create the shared session manager."""
        if self._sessions is None:
            self._sessions = SessionStateManager(
                self.transport,
                auth=self.config.auth,
                config=self._session_config,
            )
        return self._sessions

    def close(self) -> None:
        """Close the transport and tear down the connection pools."""
        if isinstance(self._transport, RequestsTransport):
            self._transport.close()
        self._transport = None
        self._sessions = None
        if self._pool is not None:
            self._pool.destroy()
            self._pool = None

    def __enter__(self) -> "ConnectionContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_service(
        self,
        service_name: str,
        *,
        options: Optional[GatewayOptions] = None,
    ) -> ODataService:
        """
        Get an ODataService instance for the given service name.

        Parameters
        ----------
        service_name : str
            Technical name of the OData service, e.g. "API_SALES_ORDER_SRV"
        options : GatewayOptions, optional
            Request decoration switches for this service

        Returns
        -------
        ODataService
            Service client sharing this context's transport and sessions
        """
        return ODataService(
            self.transport,
            self.sessions,
            self._base_url,
            service_name,
            default_sap_client=self._sap_client,
            options=options,
        )

    @property
    def base_url(self) -> str:
        """The configured base URL."""
        return self._base_url

    @property
    def sap_client(self) -> Optional[str]:
        """The configured SAP client."""
        return self._sap_client
