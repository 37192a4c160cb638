"""
sap_gw.gateway.messages - SAP Gateway message extraction
=========================================================

SAP Gateway reports diagnostics on two independent channels:

1. the ``sap-message`` response header (URL-encoded JSON)
2. the OData ``error`` object of a JSON response body (V2 ``innererror``
   details and V4 ``details``)

Both are normalized into an ordered list of SapMessage values. Parsing
never raises: a malformed diagnostic channel yields an empty
MessageParseResult carrying a warning, so it cannot mask the primary
response.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import unquote
import json
import logging
import re


logger = logging.getLogger("sap_gw.messages")


class Severity(str, Enum):
    """SAP message severity (ABAP message types S, I, W, E, A/X)."""
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    ABORT = "abort"


_SEVERITY_ALIASES: Dict[str, Severity] = {
    "success": Severity.SUCCESS,
    "s": Severity.SUCCESS,
    "info": Severity.INFO,
    "information": Severity.INFO,
    "i": Severity.INFO,
    "warning": Severity.WARNING,
    "w": Severity.WARNING,
    "error": Severity.ERROR,
    "e": Severity.ERROR,
    "abort": Severity.ABORT,
    "a": Severity.ABORT,
    "x": Severity.ABORT,
}

_SEVERITY_ICONS: Dict[Severity, str] = {
    Severity.SUCCESS: "✓",
    Severity.INFO: "ℹ",
    Severity.WARNING: "⚠",
    Severity.ERROR: "✗",
    Severity.ABORT: "⊗",
}

BUSINESS_ERROR_PATTERNS = (
    "/IWBEP/CX_MGW_BUSI_EXCEPTION",
    "/IWBEP/CM_MGW_APP",
    "/IWBEP/CM_MGW_BUSI",
)

TECHNICAL_ERROR_PATTERNS = (
    "/IWBEP/CX_MGW_TECH_EXCEPTION",
    "/IWBEP/CM_MGW_RT",
    "/IWFND/",
)

ERROR_DESCRIPTIONS: Dict[str, str] = {
    "/IWBEP/CM_MGW_RT/021": "The entity key is invalid or malformed",
    "/IWBEP/CM_MGW_RT/022": "The requested entity was not found",
    "/IWBEP/CM_MGW_RT/023": "The entity set does not exist in the service",
    "/IWBEP/CM_MGW_RT/024": "The property does not exist in the entity type",
    "/IWBEP/CM_MGW_RT/025": "Invalid filter expression syntax",
    "/IWBEP/CM_MGW_RT/026": "Invalid $orderby parameter",
    "/IWBEP/CM_MGW_RT/027": "Invalid $expand parameter",
    "/IWBEP/CM_MGW_RT/028": "Invalid $select parameter",
    "/IWBEP/CM_MGW_RT/029": "Invalid function import parameters",
    "/IWBEP/CM_MGW_RT/030": "Batch request processing failed",
    "/IWBEP/CM_MGW_RT/031": "CSRF token validation failed",
    "/IWBEP/CM_MGW_RT/042": "The content type is not supported",
    "/IWBEP/CM_MGW_RT/043": "The HTTP method is not allowed for this resource",
    "/IWFND/CM_MGW/005": "Authorization failed - check user permissions",
    "/IWFND/CM_MGW/006": "Service not found or not activated",
    "/IWFND/CM_MGW/007": "Backend system connection failed",
}

_MESSAGE_CLASS = re.compile(r"^(/[^/]+/[^/]+)")


@dataclass(frozen=True)
class SapMessage:
    """
    A single SAP Gateway message.

    Attributes
    ----------
    code : str
        SAP message code, e.g. "/IWBEP/CM_MGW_RT/021" (may be empty)
    message : str
        Human-readable text
    severity : Severity
        Normalized severity
    target : str, optional
        Field path the message refers to
    technical_details : dict, optional
        ``innererror`` payload for body-sourced errors
    """
    code: str
    message: str
    severity: Severity
    target: Optional[str] = None
    technical_details: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class MessageParseResult:
    """Messages from one channel, or none plus the reason parsing failed."""
    messages: Tuple[SapMessage, ...] = ()
    warning: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.warning is None

    def __iter__(self):
        return iter(self.messages)

    def __len__(self) -> int:
        return len(self.messages)


def map_severity(severity: Optional[str]) -> Severity:
    """
    Map a SAP severity word or single-letter type to a Severity.

    Unknown or empty input maps to ``Severity.INFO``.

    Examples
    --------
    >>> map_severity("E")
    <Severity.ERROR: 'error'>
    >>> map_severity("bogus")
    <Severity.INFO: 'info'>
    """
    if not severity:
        return Severity.INFO
    return _SEVERITY_ALIASES.get(str(severity).strip().lower(), Severity.INFO)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        return _text(value.get("value"))
    return str(value)


def _target(value: Any) -> Optional[str]:
    return str(value) if value else None


def parse_sap_message_header(header_value: str) -> MessageParseResult:
    """
    Parse a ``sap-message`` header value.

    The value is URL-decoded and JSON-parsed; the top-level ``message``
    becomes the first entry, each item of ``details`` adds one more.

    Parameters
    ----------
    header_value : str
        Raw header value

    Returns
    -------
    MessageParseResult
        Parsed messages, or an empty result with ``warning`` set
    """
    try:
        data = json.loads(unquote(header_value))
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")

        messages: List[SapMessage] = []
        if data.get("message"):
            messages.append(SapMessage(
                code=_text(data.get("code")),
                message=_text(data.get("message")),
                severity=map_severity(data.get("severity")),
                target=_target(data.get("target")),
            ))

        details = data.get("details")
        if isinstance(details, list):
            for detail in details:
                if not isinstance(detail, dict):
                    continue
                messages.append(SapMessage(
                    code=_text(detail.get("code")),
                    message=_text(detail.get("message")),
                    severity=map_severity(detail.get("severity")),
                    target=_target(detail.get("target")),
                ))

        logger.debug("Parsed %d SAP message(s) from sap-message header", len(messages))
        return MessageParseResult(tuple(messages))
    except (ValueError, TypeError, AttributeError) as exc:
        warning = f"Failed to parse sap-message header: {exc}"
        logger.warning("%s (value=%r)", warning, str(header_value)[:100])
        return MessageParseResult(warning=warning)


def _detail_messages(details: Iterable[Any]) -> List[SapMessage]:
    out: List[SapMessage] = []
    for detail in details:
        if not isinstance(detail, dict):
            continue
        out.append(SapMessage(
            code=_text(detail.get("code")),
            message=_text(detail.get("message")),
            severity=map_severity(detail.get("severity") or "error"),
            target=_target(detail.get("target")),
        ))
    return out


def parse_error_body(body: Any) -> MessageParseResult:
    """
    Parse an OData V2/V4 error body.

    Accepts the decoded JSON object or its text. Reads ``error.code``,
    ``error.message`` (string or ``{"value": ...}``),
    ``error.innererror.errordetails[]`` and ``error.details[]``.
    Body-sourced messages default to ``Severity.ERROR``.
    """
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except ValueError:
            return MessageParseResult()

    if not isinstance(body, dict):
        return MessageParseResult()

    error = body.get("error")
    if not isinstance(error, dict):
        return MessageParseResult()

    inner = error.get("innererror") or error.get("innerError")
    messages = [SapMessage(
        code=_text(error.get("code")),
        message=_text(error.get("message")),
        severity=Severity.ERROR,
        technical_details=inner if isinstance(inner, dict) else None,
    )]

    if isinstance(inner, dict) and isinstance(inner.get("errordetails"), list):
        messages.extend(_detail_messages(inner["errordetails"]))

    if isinstance(error.get("details"), list):
        messages.extend(_detail_messages(error["details"]))

    logger.debug("Parsed %d SAP message(s) from error body", len(messages))
    return MessageParseResult(tuple(messages))


def _header(headers: Optional[Mapping[str, Any]], name: str) -> Any:
    if not headers:
        return None
    lower = name.lower()
    for key, value in headers.items():
        if key.lower() == lower:
            return value
    return None


def extract_all_messages(headers: Optional[Mapping[str, Any]], body: Any) -> List[SapMessage]:
    """Header messages first, then body messages."""
    messages: List[SapMessage] = []

    header_value = _header(headers, "sap-message")
    if header_value:
        if isinstance(header_value, (list, tuple)):
            for value in header_value:
                messages.extend(parse_sap_message_header(str(value)))
        else:
            messages.extend(parse_sap_message_header(str(header_value)))

    if body:
        messages.extend(parse_error_body(body))

    return messages


def extract_message_class(code: str) -> str:
    """
    Return the ``/NAMESPACE/CLASS`` prefix of a SAP message code.

    Examples
    --------
    >>> extract_message_class("/IWBEP/CM_MGW_RT/021")
    '/IWBEP/CM_MGW_RT'
    """
    if not code:
        return ""
    match = _MESSAGE_CLASS.match(code)
    return match.group(1) if match else code


def is_business_error(message: SapMessage) -> bool:
    message_class = extract_message_class(message.code)
    return any(pattern in message_class for pattern in BUSINESS_ERROR_PATTERNS)


def is_technical_error(message: SapMessage) -> bool:
    message_class = extract_message_class(message.code)
    return any(pattern in message_class for pattern in TECHNICAL_ERROR_PATTERNS)


def format_messages(messages: Sequence[SapMessage]) -> str:
    """
    Render messages one per line as ``[n] <icon> <text> (<code>) - Target: <target>``.

    The ``[n]`` prefix is only used when there is more than one message.
    """
    if not messages:
        return ""

    lines = []
    for index, msg in enumerate(messages, start=1):
        prefix = f"[{index}] " if len(messages) > 1 else ""
        icon = _SEVERITY_ICONS.get(msg.severity, "•")
        code_text = f" ({msg.code})" if msg.code else ""
        target_text = f" - Target: {msg.target}" if msg.target else ""
        lines.append(f"{prefix}{icon} {msg.message}{code_text}{target_text}")
    return "\n".join(lines)


def get_error_description(message: SapMessage) -> str:
    code = message.code or ""

    if code in ERROR_DESCRIPTIONS:
        return ERROR_DESCRIPTIONS[code]

    for pattern, description in ERROR_DESCRIPTIONS.items():
        if code.startswith(pattern):
            return description

    if is_business_error(message):
        return "Business logic error - check the operation and data"

    if is_technical_error(message):
        return "Technical error in SAP Gateway - check system configuration"

    return "SAP Gateway error - see message for details"


def format_error_message(messages: Sequence[SapMessage], fallback: str) -> str:
    """
    Build a user-facing error string.

    Error and abort messages are preferred and followed by a
    ``Description:`` line for the first one; otherwise all messages are
    formatted; with no messages the fallback is returned.
    """
    if not messages:
        return fallback

    errors = [m for m in messages if m.severity in (Severity.ERROR, Severity.ABORT)]
    if errors:
        return f"{format_messages(errors)}\n\nDescription: {get_error_description(errors[0])}"

    return format_messages(messages)
