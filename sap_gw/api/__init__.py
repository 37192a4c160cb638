"""
sap_gw.api - Optional webhook receiver
=======================================

A FastAPI application that verifies inbound SAP webhooks (HMAC
signature, timestamp window, nonce replay check) before handing them to
an event handler.

Usage
-----
>>> from sap_gw.api import create_app
>>> app = create_app()
>>> # Run with: uvicorn --factory sap_gw.api:create_app

Or run directly:
>>> python -m sap_gw.api

"""

from pathlib import Path

from dotenv import load_dotenv

# Load .env before the gateway reads its configuration
env_path = Path.cwd() / ".env"
if not env_path.exists():
    env_path = Path(__file__).resolve().parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from sap_gw.api.gateway import WebhookGateway, create_app

__all__ = [
    "WebhookGateway",
    "create_app",
]
