"""
sap_gw.api.models - Pydantic models for webhook requests/responses
===================================================================
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class WebhookEvent(BaseModel):
    """A verified inbound webhook, as handed to the event handler."""

    nonce: str = Field(
        description="Nonce sent by SAP; unique per delivery",
        json_schema_extra={"example": "4f7d2c9e0b1a4e6f8a3d5c7b9e1f2a4c"},
    )
    timestamp: Optional[str] = Field(
        default=None,
        description="Timestamp header value (ISO-8601 or Unix seconds/ms)",
        json_schema_extra={"example": "1735689600"},
    )
    payload: Any = Field(
        default=None,
        description="Decoded JSON body",
    )
    headers: Dict[str, str] = Field(default_factory=dict)


class WebhookAck(BaseModel):
    """Response for an accepted webhook."""

    accepted: bool = True
    nonce: str


class ReplayStatsModel(BaseModel):
    size: int = Field(description="Nonces currently stored")
    max_size: int = Field(description="Store capacity")
    utilization_percent: float


class HealthResponse(BaseModel):
    ok: bool = True
    version: str
    replay: ReplayStatsModel
