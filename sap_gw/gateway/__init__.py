"""
sap_gw.gateway - SAP Gateway protocol state
============================================

- SessionStateManager: cookies, SAP-ContextId and CSRF token per target
- messages: ``sap-message`` header and OData error body extraction

"""

from sap_gw.gateway.messages import (
    MessageParseResult,
    SapMessage,
    Severity,
    extract_all_messages,
    format_error_message,
    format_messages,
    parse_error_body,
    parse_sap_message_header,
)
from sap_gw.gateway.session_state import (
    GatewayOptions,
    ODataRequest,
    ProcessedResponse,
    SessionConfig,
    SessionState,
    SessionStateManager,
    SessionStatus,
)

__all__ = [
    "MessageParseResult",
    "SapMessage",
    "Severity",
    "extract_all_messages",
    "format_error_message",
    "format_messages",
    "parse_error_body",
    "parse_sap_message_header",
    "GatewayOptions",
    "ODataRequest",
    "ProcessedResponse",
    "SessionConfig",
    "SessionState",
    "SessionStateManager",
    "SessionStatus",
]
