"""
sap_gw.odata - OData service access
====================================

- ODataService: writes with CSRF handling and $batch execution
- batch: multipart $batch request encoding and response decoding

"""

from sap_gw.odata.batch import (
    BatchOperation,
    BatchOperationType,
    BatchRequest,
    BatchResponse,
    BatchResult,
    BatchValidationError,
    build_batch_request,
    parse_batch_response,
    split_into_batches,
    validate_operations,
)
from sap_gw.odata.service import ODataService, escape_odata_literal, format_entity_key

__all__ = [
    "BatchOperation",
    "BatchOperationType",
    "BatchRequest",
    "BatchResponse",
    "BatchResult",
    "BatchValidationError",
    "build_batch_request",
    "parse_batch_response",
    "split_into_batches",
    "validate_operations",
    "ODataService",
    "escape_odata_literal",
    "format_entity_key",
]
