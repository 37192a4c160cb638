"""
sap_gw.odata.service - OData Service Client
============================================

Service-scoped client that drives the protocol engine: session
decoration, CSRF fetch, SAP message extraction and $batch encoding.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Mapping, Optional, Sequence, Union
from urllib.parse import urlencode, urlsplit
import json
import logging

from requests.structures import CaseInsensitiveDict

from sap_gw.core.transport import ODataUpstreamError, Transport
from sap_gw.gateway.messages import format_error_message
from sap_gw.gateway.session_state import (
    CSRF_HEADER,
    GatewayOptions,
    ODataRequest,
    ProcessedResponse,
    SessionStateManager,
)
from sap_gw.odata.batch import (
    DEFAULT_BATCH_SIZE,
    BatchOperation,
    BatchResponse,
    BatchValidationError,
    boundary_from_content_type,
    build_batch_request,
    parse_batch_response,
    split_into_batches,
    validate_operations,
)


logger = logging.getLogger("sap_gw.service")

EntityKey = Union[str, int, Mapping[str, Any]]


def escape_odata_literal(value: str) -> str:
    """
    Escape a string value for use in OData literals.

    Parameters
    ----------
    value : str
        The value to escape

    Returns
    -------
    str
        Escaped value safe for keys and filters

    Examples
    --------
    >>> escape_odata_literal("O'Brien")
    "O''Brien"
    """
    return value.replace("'", "''")


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return f"'{escape_odata_literal(str(value))}'"


def format_entity_key(key: EntityKey) -> str:
    """
    Build a key predicate (without parentheses).

    Examples
    --------
    >>> format_entity_key("A1")
    "'A1'"
    >>> format_entity_key(42)
    '42'
    >>> format_entity_key({"Order": "A'1", "Item": 10})
    "Order='A''1',Item=10"
    """
    if isinstance(key, Mapping):
        if not key:
            raise ValueError("Entity key must not be empty")
        return ",".join(f"{name}={_literal(value)}" for name, value in key.items())
    if key is None or key == "":
        raise ValueError("Entity key must not be empty")
    return _literal(key)


def _entity_path(entity_set: str, key: Optional[EntityKey] = None) -> str:
    if key is None:
        return entity_set
    return f"{entity_set}({format_entity_key(key)})"


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict):
        if isinstance(body.get("d"), dict):
            d = body["d"]
            return d["results"] if "results" in d else d
        if "value" in body:
            return body["value"]
    return body


class ODataService:
    """
    Service-scoped OData client for writes and $batch.

    Parameters
    ----------
    transport : Transport
        Awaitable HTTP transport
    sessions : SessionStateManager
        Shared session manager (one per host application)
    base_url : str
        OData base URL, e.g. "https://host/sap/opu/odata/sap/"
    service : str
        Service technical name, e.g. "API_SALES_ORDER_SRV"
    default_sap_client : str, optional
        Value for the ``sap-client`` query parameter
    options : GatewayOptions, optional
        Request decoration switches

    Examples
    --------
    >>> with ConnectionContext() as conn:
    ...     orders = conn.get_service("API_SALES_ORDER_SRV")
    ...     created = await orders.create("A_SalesOrder", {"SalesOrderType": "OR"})
    ...     await orders.delete("A_SalesOrder", "4711")
    """

    def __init__(
        self,
        transport: Transport,
        sessions: SessionStateManager,
        base_url: str,
        service: str,
        *,
        default_sap_client: Optional[str] = None,
        options: Optional[GatewayOptions] = None,
    ) -> None:
        self.transport = transport
        self.sessions = sessions
        self.service = service.strip("/")
        self.default_sap_client = default_sap_client
        self.options = options or GatewayOptions()

        parts = urlsplit(base_url.rstrip("/") + "/")
        self.host = f"{parts.scheme}://{parts.netloc}"
        self.service_path = f"{parts.path}{self.service}"
        self.service_url = f"{self.host}{self.service_path}/"

    # ---------------- helpers ----------------

    def _params(self, params: Optional[Mapping[str, Any]], sap_client: Optional[str]) -> Dict[str, str]:
        p: Dict[str, str] = {}
        client = sap_client if sap_client is not None else self.default_sap_client
        if client:
            p["sap-client"] = str(client)
        if params:
            p.update({k: str(v) for k, v in params.items()})
        return p

    def _url(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        sap_client: Optional[str] = None,
    ) -> str:
        url = self.service_url + path.lstrip("/")
        query = self._params(params, sap_client)
        if query:
            url += "?" + urlencode(query)
        return url

    def _csrf_request(self, host: str, service_path: str) -> ODataRequest:
        return ODataRequest("GET", self._url(""), {"Accept": "application/json"})

    def _raise_for_error(self, processed: ProcessedResponse, url: str) -> None:
        if processed.status >= 400 or processed.status in (301, 302, 303, 307, 308):
            raw = processed.body if isinstance(processed.body, str) else json.dumps(processed.body)
            body = format_error_message(processed.messages, raw)
            raise ODataUpstreamError(
                processed.status, body, url, dict(processed.headers), tuple(processed.messages)
            )

    async def _send(self, request: ODataRequest, options: GatewayOptions) -> ProcessedResponse:
        request = self.sessions.enhance_request(request, self.host, self.service_path, options)
        response = await self.transport(request.method, request.url, request.headers, request.body)
        return self.sessions.process_response(response, self.host, self.service_path, options)

    async def _write(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        *,
        headers: Optional[Mapping[str, str]] = None,
        options: Optional[GatewayOptions] = None,
    ) -> ProcessedResponse:
        options = options or self.options
        processed: Optional[ProcessedResponse] = None

        for attempt in (1, 2):
            token = await self.sessions.fetch_csrf_token(self.host, self.service_path, self._csrf_request)
            request_headers = CaseInsensitiveDict(headers or {})
            if token:
                request_headers[CSRF_HEADER] = token
            else:
                logger.warning("Sending %s %s without CSRF token", method, url)

            processed = await self._send(ODataRequest(method, url, request_headers, body), options)
            if processed.status != 403 or attempt == 2:
                break
            logger.warning("%s %s returned 403, clearing session and retrying once", method, url)
            self.sessions.clear_session(self.host, self.service_path)

        self._raise_for_error(processed, url)
        return processed

    # ---------------- reads ----------------

    async def read(
        self,
        entity_set: str,
        key: Optional[EntityKey] = None,
        *,
        sap_client: Optional[str] = None,
        **query: str,
    ) -> Any:
        """GET an entity set or a single entity; no CSRF token is needed."""
        params = {"$format": "json"}
        params.update(query)
        url = self._url(_entity_path(entity_set, key), params, sap_client)
        processed = await self._send(ODataRequest("GET", url), self.options)
        self._raise_for_error(processed, url)
        return _unwrap(processed.body)

    # ---------------- writes ----------------

    async def create(
        self,
        entity_set: str,
        payload: Mapping[str, Any],
        *,
        sap_client: Optional[str] = None,
    ) -> Any:
        url = self._url(entity_set, sap_client=sap_client)
        processed = await self._write(
            "POST",
            url,
            json.dumps(payload, separators=(",", ":"), default=str),
            headers={"Content-Type": "application/json"},
        )
        if processed.body:
            return _unwrap(processed.body)
        return {"location": processed.headers.get("Location"), "etag": processed.headers.get("ETag")}

    async def update(
        self,
        entity_set: str,
        key: EntityKey,
        payload: Mapping[str, Any],
        *,
        etag: Optional[str] = None,
        sap_client: Optional[str] = None,
    ) -> Any:
        url = self._url(_entity_path(entity_set, key), sap_client=sap_client)
        headers = {"Content-Type": "application/json"}
        if etag:
            headers["If-Match"] = etag
        processed = await self._write(
            "PATCH",
            url,
            json.dumps(payload, separators=(",", ":"), default=str),
            headers=headers,
        )
        return _unwrap(processed.body) if processed.body else None

    async def delete(
        self,
        entity_set: str,
        key: EntityKey,
        *,
        etag: Optional[str] = None,
        sap_client: Optional[str] = None,
    ) -> None:
        url = self._url(_entity_path(entity_set, key), sap_client=sap_client)
        await self._write("DELETE", url, headers={"If-Match": etag} if etag else None)

    # ---------------- $batch ----------------

    async def execute_batch(
        self,
        operations: Sequence[BatchOperation],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        use_change_set: bool = True,
        sap_client: Optional[str] = None,
    ) -> BatchResponse:
        """
        Send operations as one or more $batch requests.

        The operation list is validated as a whole first; nothing is sent
        when it is invalid. Results of all chunks are concatenated, so
        ``results[i]`` still belongs to ``operations[i]`` when every
        response is complete.

        Raises
        ------
        BatchValidationError
            When any operation is invalid
        ODataUpstreamError
            When SAP rejects a $batch request as a whole
        """
        errors = validate_operations(operations)
        if errors:
            raise BatchValidationError(errors)

        merged = BatchResponse(expected=len(operations))
        options = replace(self.options, batch_mode=True)
        url = self._url("$batch", sap_client=sap_client)

        batches = [
            build_batch_request(chunk, self.service_path, use_change_set=use_change_set)
            for chunk in split_into_batches(operations, batch_size)
        ]
        for index, batch in enumerate(batches, start=1):
            logger.debug(
                "Sending $batch %d/%d with %d operation(s)", index, len(batches), batch.operation_count
            )
            processed = await self._write(
                "POST",
                url,
                batch.body,
                headers={"Content-Type": batch.content_type, "Accept": "multipart/mixed"},
                options=options,
            )
            boundary = boundary_from_content_type(processed.headers.get("Content-Type")) or batch.boundary
            raw = processed.body if isinstance(processed.body, str) else ""
            decoded = parse_batch_response(raw, boundary, batch.layout)
            merged.results.extend(decoded.results)
            merged.warnings.extend(decoded.warnings)

        return merged
