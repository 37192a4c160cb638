"""
SAP Gateway OData client (sap_gw)
=================================

Protocol engine for SAP Gateway OData services: session cookies,
SAP-ContextId and CSRF token handling, SAP message extraction, $batch
encoding/decoding, shared connection pooling, and replay protection for
inbound webhooks.

Usage
-----
>>> from sap_gw import ConnectionContext, BatchOperation, BatchOperationType
>>>
>>> with ConnectionContext() as conn:
...     orders = conn.get_service("API_SALES_ORDER_SRV")
...     response = await orders.execute_batch([
...         BatchOperation(BatchOperationType.CREATE, "A_SalesOrder", data={"SalesOrderType": "OR"}),
...         BatchOperation(BatchOperationType.DELETE, "A_SalesOrder", entity_key="'4711'"),
...     ])

Subpackages
-----------
- sap_gw.core: Configuration, transport, connection pooling
- sap_gw.gateway: Session state and SAP message extraction
- sap_gw.odata: Service client and $batch codec
- sap_gw.webhook: Replay protection and HMAC signatures
- sap_gw.api: Optional FastAPI webhook receiver

"""

__version__ = "0.1.0"

# Core exports - available at package root
from sap_gw.core.transport import (
    ODataAuth,
    ODataConfig,
    ODataTransportError,
    ODataUpstreamError,
)
from sap_gw.core.pool import ConnectionPoolManager, PoolConfig
from sap_gw.core.connection import ConnectionContext

from sap_gw.gateway import GatewayOptions, SessionConfig, SessionStateManager
from sap_gw.odata import (
    BatchOperation,
    BatchOperationType,
    BatchValidationError,
    ODataService,
)
from sap_gw.webhook import ReplayConfig, ReplayProtectionManager, WebhookSignatureValidator

__all__ = [
    # Version
    "__version__",
    # Core
    "ODataAuth",
    "ODataConfig",
    "ODataTransportError",
    "ODataUpstreamError",
    "ConnectionPoolManager",
    "PoolConfig",
    "ConnectionContext",
    # Gateway
    "GatewayOptions",
    "SessionConfig",
    "SessionStateManager",
    # OData
    "BatchOperation",
    "BatchOperationType",
    "BatchValidationError",
    "ODataService",
    # Webhook
    "ReplayConfig",
    "ReplayProtectionManager",
    "WebhookSignatureValidator",
]
