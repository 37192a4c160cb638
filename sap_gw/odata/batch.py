"""
sap_gw.odata.batch - OData $batch multipart codec
==================================================

Serializes write operations into an OData V2 ``multipart/mixed`` $batch
body and decodes the multipart response into one BatchResult per
operation, in submission order.

Layout of a request with a changeset::

    --batch_<uuid>
    Content-Type: multipart/mixed; boundary=changeset_<uuid>

    --changeset_<uuid>
    Content-Type: application/http
    Content-Transfer-Encoding: binary

    POST Orders HTTP/1.1
    Content-Type: application/json
    ...
    --changeset_<uuid>--
    --batch_<uuid>--
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode
import json
import logging
import re
import uuid

from sap_gw.gateway.messages import SapMessage, parse_error_body


logger = logging.getLogger("sap_gw.batch")

BATCH_BOUNDARY_PREFIX = "batch_"
CHANGESET_BOUNDARY_PREFIX = "changeset_"
DEFAULT_BATCH_SIZE = 100
CRLF = "\r\n"

_ENTITY_SET_NAME = re.compile(r"^[A-Za-z0-9_]+$")
_BOUNDARY_PARAM = re.compile(r'boundary="?([^";]+)"?', re.IGNORECASE)
_STATUS_LINE = re.compile(r"^HTTP/\d\.\d\s+(\d{3})")


class BatchOperationType(str, Enum):
    """Operation kind, valued with the HTTP method used inside the batch."""
    CREATE = "POST"
    UPDATE = "PATCH"
    DELETE = "DELETE"
    READ = "GET"

    @property
    def is_write(self) -> bool:
        return self is not BatchOperationType.READ


class BatchValidationError(ValueError):
    """Raised before any network call when a batch cannot be built."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("Batch validation failed: " + "; ".join(self.errors))


@dataclass(frozen=True)
class BatchOperation:
    """
    One unit of work inside a batch.

    Parameters
    ----------
    type : BatchOperationType
        create, update, delete (read is only accepted mixed with writes)
    entity_set : str
        Entity set name, e.g. "Orders"
    entity_key : str, optional
        Key predicate without parentheses, e.g. "1" or "OrderID='A1'"
    data : dict, optional
        Payload for create/update
    query_params : dict, optional
        Query options appended to the resource path
    headers : dict, optional
        Extra headers for the inner request
    """
    type: BatchOperationType
    entity_set: str
    entity_key: Optional[str] = None
    data: Optional[Mapping[str, Any]] = None
    query_params: Optional[Mapping[str, Any]] = None
    headers: Optional[Mapping[str, str]] = None


@dataclass(frozen=True)
class BatchRequest:
    """
    A serialized batch, ready to POST to ``<service>/$batch``.

    ``layout`` holds one entry per top-level part: the number of
    operations it carries and whether it is a changeset.
    """
    body: str
    content_type: str
    boundary: str
    layout: Tuple[Tuple[int, bool], ...] = ()
    service_path: str = ""

    @property
    def operation_count(self) -> int:
        return sum(count for count, _ in self.layout)


@dataclass(frozen=True)
class BatchResult:
    success: bool
    status_code: int
    data: Any = None
    error: Optional[str] = None
    messages: Tuple[SapMessage, ...] = ()


@dataclass
class BatchResponse:
    """
    Decoded $batch response.

    ``results[i]`` belongs to operation ``i``. A response that was cut
    short yields fewer results than operations; ``complete`` is then False
    and ``warnings`` says why.
    """
    results: List[BatchResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    expected: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.complete and all(r.success for r in self.results)

    @property
    def complete(self) -> bool:
        return self.expected is None or len(self.results) == self.expected


# ---------------------------------------------------------------------------
# validation & chunking
# ---------------------------------------------------------------------------

def validate_operations(operations: Sequence[BatchOperation]) -> List[str]:
    """
    Check every operation and return all problems found.

    Returns
    -------
    list of str
        Human-readable errors; empty when the batch is valid
    """
    errors: List[str] = []

    if not operations:
        return ["Batch contains no operations"]

    for index, op in enumerate(operations):
        if not isinstance(op.type, BatchOperationType):
            errors.append(f"Operation {index}: Missing or unknown type")
            continue
        if not op.entity_set:
            errors.append(f"Operation {index}: Missing entitySet")
        elif not _ENTITY_SET_NAME.match(op.entity_set):
            errors.append(f"Operation {index}: Invalid entitySet name '{op.entity_set}'")

        if op.type in (BatchOperationType.CREATE, BatchOperationType.UPDATE) and op.data is None:
            errors.append(f"Operation {index}: Missing data for {op.type.value}")

        if op.type is not BatchOperationType.CREATE and not op.entity_key:
            errors.append(f"Operation {index}: Missing entityKey for {op.type.value}")

    if all(isinstance(op.type, BatchOperationType) and not op.type.is_write for op in operations):
        errors.append("Batch contains only read operations; reads are not batched")

    return errors


def split_into_batches(
    operations: Sequence[BatchOperation],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> List[List[BatchOperation]]:
    """
    Partition operations into order-preserving chunks of ``batch_size``.

    Examples
    --------
    >>> [len(c) for c in split_into_batches(ops_250, 100)]
    [100, 100, 50]
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(operations[i:i + batch_size]) for i in range(0, len(operations), batch_size)]


# ---------------------------------------------------------------------------
# request building
# ---------------------------------------------------------------------------

def _new_boundary(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4()}"


def _operation_url(op: BatchOperation) -> str:
    url = op.entity_set
    if op.entity_key and op.type is not BatchOperationType.CREATE:
        url += f"({op.entity_key})"
    if op.query_params:
        url += "?" + urlencode({k: str(v) for k, v in op.query_params.items()})
    return url


def _operation_content(op: BatchOperation) -> List[str]:
    lines = [f"{op.type.value} {_operation_url(op)} HTTP/1.1"]

    headers: Dict[str, str] = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    headers.update(op.headers or {})
    lines.extend(f"{k}: {v}" for k, v in headers.items())

    lines.append("")
    if op.data is not None and op.type in (BatchOperationType.CREATE, BatchOperationType.UPDATE):
        lines.append(json.dumps(op.data, separators=(",", ":"), default=str))
    lines.append("")
    return lines


def _http_part(op: BatchOperation) -> List[str]:
    return [
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        "",
    ] + _operation_content(op)


def _changeset_part(operations: Sequence[BatchOperation]) -> List[str]:
    boundary = _new_boundary(CHANGESET_BOUNDARY_PREFIX)
    lines = [f"Content-Type: multipart/mixed; boundary={boundary}", ""]
    for op in operations:
        lines.append(f"--{boundary}")
        lines.extend(_http_part(op))
    lines.append(f"--{boundary}--")
    return lines


def _group(operations: Sequence[BatchOperation], use_change_set: bool) -> List[Tuple[List[BatchOperation], bool]]:
    if not use_change_set:
        return [([op], False) for op in operations]

    groups: List[Tuple[List[BatchOperation], bool]] = []
    for op in operations:
        if not op.type.is_write:
            groups.append(([op], False))
        elif groups and groups[-1][1]:
            groups[-1][0].append(op)
        else:
            groups.append(([op], True))
    return groups


def build_batch_request(
    operations: Sequence[BatchOperation],
    service_path: str = "",
    *,
    use_change_set: bool = True,
) -> BatchRequest:
    """
    Serialize operations into a $batch request body.

    Parameters
    ----------
    operations : sequence of BatchOperation
        Operations in the order results are expected back
    service_path : str
        Service path the batch is posted to (recorded on the request)
    use_change_set : bool
        Wrap consecutive writes in one changeset (all-or-nothing). When
        False every operation is an independent part.

    Returns
    -------
    BatchRequest

    Raises
    ------
    BatchValidationError
        With every validation problem, before anything is serialized
    """
    errors = validate_operations(operations)
    if errors:
        raise BatchValidationError(errors)

    boundary = _new_boundary(BATCH_BOUNDARY_PREFIX)
    lines: List[str] = []
    layout: List[Tuple[int, bool]] = []

    for group, is_changeset in _group(operations, use_change_set):
        lines.append(f"--{boundary}")
        lines.extend(_changeset_part(group) if is_changeset else _http_part(group[0]))
        layout.append((len(group), is_changeset))
    lines.append(f"--{boundary}--")
    lines.append("")

    logger.debug(
        "Built $batch with %d operation(s) in %d part(s)", len(operations), len(layout)
    )
    return BatchRequest(
        body=CRLF.join(lines),
        content_type=f"multipart/mixed; boundary={boundary}",
        boundary=boundary,
        layout=tuple(layout),
        service_path=service_path,
    )


# ---------------------------------------------------------------------------
# response parsing
# ---------------------------------------------------------------------------

def boundary_from_content_type(content_type: Optional[str]) -> Optional[str]:
    """
    Extract the boundary parameter from a multipart Content-Type value.

    SAP answers a $batch with its own boundary, announced in the response
    Content-Type; the request boundary is the fallback.
    """
    if not content_type:
        return None
    match = _BOUNDARY_PARAM.search(content_type)
    return match.group(1) if match else None


def _split_parts(text: str, boundary: str) -> Tuple[List[str], bool]:
    """
    Split a multipart payload into part texts.

    Returns the parts and whether the closing delimiter was found. Without
    it the last part is treated as truncated and dropped.
    """
    delimiter = f"--{boundary}"
    segments = text.split(delimiter)
    parts: List[str] = []
    closed = False
    for segment in segments[1:]:
        if segment.startswith("--"):
            closed = True
            break
        parts.append(segment)
    if not closed and parts:
        parts.pop()
    return parts, closed


def _split_head(text: str) -> Tuple[List[str], str]:
    text = text.lstrip("\n")
    head, sep, rest = text.partition("\n\n")
    if not sep:
        head, rest = text, ""
    return [line for line in head.split("\n") if line.strip()], rest


def _header_map(lines: Iterable[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in lines:
        name, sep, value = line.partition(":")
        if sep:
            out[name.strip().lower()] = value.strip()
    return out


def _parse_http_response(payload: str) -> Optional[BatchResult]:
    head, body_text = _split_head(payload)
    if not head:
        return None
    status_match = _STATUS_LINE.match(head[0].strip())
    if not status_match:
        return None

    status = int(status_match.group(1))
    success = 200 <= status < 300
    body_text = body_text.strip()

    parsed: Any = None
    if body_text:
        try:
            parsed = json.loads(body_text)
        except ValueError:
            parsed = None

    if success:
        return BatchResult(success=True, status_code=status, data=parsed)

    messages = parse_error_body(parsed).messages if parsed is not None else ()
    if messages and messages[0].message:
        error = messages[0].message
    elif parsed is None and body_text:
        error = body_text
    else:
        error = "Unknown error"
    return BatchResult(success=False, status_code=status, error=error, messages=messages)


def _parse_part(part: str, warnings: List[str]) -> Tuple[List[BatchResult], bool]:
    """Parse one top-level part; returns results and whether it was a changeset."""
    head, rest = _split_head(part)
    headers = _header_map(head)
    content_type = headers.get("content-type", "")

    if content_type.lower().startswith("multipart/mixed"):
        match = _BOUNDARY_PARAM.search(content_type)
        if not match:
            warnings.append("Changeset part without boundary")
            return [], True
        subparts, closed = _split_parts(rest, match.group(1))
        if not closed:
            warnings.append(f"Changeset {match.group(1)} is truncated")
        results = []
        for subpart in subparts:
            _, inner = _split_head(subpart)
            result = _parse_http_response(inner)
            if result is None:
                warnings.append("Changeset part without HTTP status line")
                continue
            results.append(result)
        return results, True

    result = _parse_http_response(rest)
    if result is None:
        warnings.append("Batch part without HTTP status line")
        return [], False
    return [result], False


def parse_batch_response(
    raw: str,
    boundary: str,
    layout: Optional[Sequence[Tuple[int, bool]]] = None,
) -> BatchResponse:
    """
    Decode a $batch response into ordered per-operation results.

    Parameters
    ----------
    raw : str
        Response body
    boundary : str
        Boundary of the response (taken from its Content-Type, or the
        request boundary when the server echoes it)
    layout : sequence, optional
        ``BatchRequest.layout``. When given, a changeset answered with a
        single error response (SAP rolls the whole changeset back) is
        expanded to one failure per operation, and the result count is
        checked against the operation count.

    Returns
    -------
    BatchResponse
        Never raises on malformed input; missing or truncated parts leave
        the result list short and add a warning.
    """
    expected = sum(count for count, _ in layout) if layout is not None else None
    response = BatchResponse(expected=expected)
    text = (raw or "").replace("\r\n", "\n")

    if not boundary or f"--{boundary}" not in text:
        warning = f"Boundary {boundary!r} not found in batch response"
        logger.warning(warning)
        response.warnings.append(warning)
        return response

    parts, closed = _split_parts(text, boundary)
    if not closed:
        response.warnings.append("Batch response is truncated (closing delimiter missing)")

    for index, part in enumerate(parts):
        results, is_changeset = _parse_part(part, response.warnings)
        if layout is not None and index < len(layout):
            count, sent_as_changeset = layout[index]
            if sent_as_changeset and not is_changeset and len(results) == 1 and not results[0].success:
                results = results * count
        response.results.extend(results)

    if not response.complete:
        response.warnings.append(
            f"Batch response has {len(response.results)} result(s) for {expected} operation(s)"
        )
    for warning in response.warnings:
        logger.warning("Batch response: %s", warning)
    return response
