"""
sap_gw.core - Core connectivity and authentication
===================================================

This module provides the foundational classes for connecting to SAP systems:

- ODataAuth: Authentication configuration (basic or bearer token)
- ODataConfig: Full connection configuration
- ConnectionPoolManager: Shared, instrumented HTTP/HTTPS connection pools
- RequestsTransport: Default awaitable transport on top of requests
- ConnectionContext: High-level connection manager (hana_ml style)

"""

from sap_gw.core.pool import ConnectionPoolManager, PoolConfig, PoolStats
from sap_gw.core.transport import (
    ODataAuth,
    ODataConfig,
    ODataTransportError,
    ODataUpstreamError,
    RequestsTransport,
    Transport,
    TransportResponse,
    sanitize_error_message,
)
from sap_gw.core.connection import ConnectionContext

__all__ = [
    "ConnectionPoolManager",
    "PoolConfig",
    "PoolStats",
    "ODataAuth",
    "ODataConfig",
    "ODataTransportError",
    "ODataUpstreamError",
    "RequestsTransport",
    "Transport",
    "TransportResponse",
    "sanitize_error_message",
    "ConnectionContext",
]
