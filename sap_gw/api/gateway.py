"""
sap_gw.api.gateway - FastAPI webhook receiver
==============================================

Receives SAP event webhooks and rejects forged or replayed deliveries.

Pipeline for ``POST /webhook``:

1. HMAC signature of the raw body (401)
2. timestamp window (400)
3. nonce not seen before (409)
4. nonce stored (503 when the store is full)
5. event handed to the handler
"""

from __future__ import annotations

import inspect
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from fastapi import FastAPI, HTTPException, Request

from sap_gw import __version__
from sap_gw.api.models import HealthResponse, ReplayStatsModel, WebhookAck, WebhookEvent
from sap_gw.webhook.replay import ReplayConfig, ReplayProtectionManager
from sap_gw.webhook.signature import SignatureAlgorithm, SignatureFormat, WebhookSignatureValidator


logger = logging.getLogger("sap_gw.webhook")

EventHandler = Callable[[WebhookEvent], Any]


def _log_event(event: WebhookEvent) -> None:
    logger.info("Webhook event accepted (nonce=%s...)", event.nonce[:8])


class WebhookGateway:
    """
    Configuration for the webhook receiver.

    Reads configuration from environment variables by default.

    Parameters
    ----------
    secret : str, optional
        HMAC secret. Falls back to WEBHOOK_SECRET env var.
    signature_header : str, optional
        Falls back to WEBHOOK_SIGNATURE_HEADER (default "X-SAP-Signature")
    nonce_header : str, optional
        Falls back to WEBHOOK_NONCE_HEADER (default "X-SAP-Nonce")
    timestamp_header : str, optional
        Falls back to WEBHOOK_TIMESTAMP_HEADER (default "X-SAP-Timestamp")
    algorithm : str, optional
        Falls back to WEBHOOK_ALGORITHM (default "sha256")
    signature_format : str, optional
        Falls back to WEBHOOK_SIGNATURE_FORMAT (default "hex")
    replay_config : ReplayConfig, optional
        Nonce store settings
    handler : callable, optional
        Called with each accepted WebhookEvent; may be async
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        signature_header: Optional[str] = None,
        nonce_header: Optional[str] = None,
        timestamp_header: Optional[str] = None,
        algorithm: Optional[str] = None,
        signature_format: Optional[str] = None,
        replay_config: Optional[ReplayConfig] = None,
        handler: Optional[EventHandler] = None,
    ):
        self.secret = secret or os.environ.get("WEBHOOK_SECRET", "")
        self.signature_header = signature_header or os.environ.get("WEBHOOK_SIGNATURE_HEADER", "X-SAP-Signature")
        self.nonce_header = nonce_header or os.environ.get("WEBHOOK_NONCE_HEADER", "X-SAP-Nonce")
        self.timestamp_header = timestamp_header or os.environ.get("WEBHOOK_TIMESTAMP_HEADER", "X-SAP-Timestamp")
        self.algorithm = SignatureAlgorithm(
            algorithm or os.environ.get("WEBHOOK_ALGORITHM", SignatureAlgorithm.HMAC_SHA256.value)
        )
        self.signature_format = SignatureFormat(
            signature_format or os.environ.get("WEBHOOK_SIGNATURE_FORMAT", SignatureFormat.HEX.value)
        )
        self.replay_config = replay_config or ReplayConfig()
        self.handler = handler or _log_event

    def validate(self) -> None:
        """Validate configuration. Raises RuntimeError if invalid."""
        if not self.secret:
            raise RuntimeError("Missing WEBHOOK_SECRET - required to verify signatures")

    def build_validator(self) -> WebhookSignatureValidator:
        return WebhookSignatureValidator(self.secret, self.algorithm, self.signature_format)


def create_app(
    gateway: Optional[WebhookGateway] = None,
    *,
    replay: Optional[ReplayProtectionManager] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Parameters
    ----------
    gateway : WebhookGateway, optional
        Custom configuration. If None, reads from environment.
    replay : ReplayProtectionManager, optional
        Nonce store to use; one is created (with its cleanup thread) when
        omitted. It is destroyed when the application shuts down.

    Returns
    -------
    FastAPI
        Configured FastAPI application

    Raises
    ------
    RuntimeError
        When no webhook secret is configured
    """
    gw = gateway or WebhookGateway()
    gw.validate()

    validator = gw.build_validator()
    replay = replay or ReplayProtectionManager(gw.replay_config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        replay.destroy()

    app = FastAPI(
        title="SAP Gateway Webhook Receiver",
        description="Verifies and de-duplicates SAP event webhooks.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.gateway = gw
    app.state.replay = replay

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        """Health check endpoint with nonce store utilization."""
        stats = replay.get_stats()
        return HealthResponse(
            version=__version__,
            replay=ReplayStatsModel(
                size=stats.size,
                max_size=stats.max_size,
                utilization_percent=stats.utilization_percent,
            ),
        )

    @app.post("/webhook", response_model=WebhookAck)
    async def receive_webhook(request: Request) -> WebhookAck:
        """Verify, de-duplicate and dispatch one webhook delivery."""
        body = await request.body()
        headers = request.headers

        signature = headers.get(gw.signature_header)
        check = validator.validate(body, signature)
        if not check.is_valid:
            raise HTTPException(status_code=401, detail=check.error)

        nonce = headers.get(gw.nonce_header)
        if not nonce:
            raise HTTPException(status_code=400, detail=f"Missing {gw.nonce_header} header")

        timestamp = headers.get(gw.timestamp_header)
        if timestamp:
            error = replay.validate_timestamp(timestamp)
            if error:
                raise HTTPException(status_code=400, detail=error)
        elif gw.replay_config.require_timestamp:
            raise HTTPException(status_code=400, detail=f"Missing {gw.timestamp_header} header")

        seen = replay.check_nonce(nonce)
        if seen.is_replay:
            raise HTTPException(status_code=409, detail=seen.error)

        try:
            payload = json.loads(body) if body else None
        except ValueError:
            raise HTTPException(status_code=400, detail="Payload is not valid JSON")

        if not replay.store_nonce(nonce, signature):
            raise HTTPException(status_code=503, detail="Replay protection store is full")

        event = WebhookEvent(
            nonce=nonce,
            timestamp=timestamp,
            payload=payload,
            headers={k: v for k, v in headers.items() if k.lower() != gw.signature_header.lower()},
        )
        result = gw.handler(event)
        if inspect.isawaitable(result):
            await result

        return WebhookAck(nonce=nonce)

    return app
