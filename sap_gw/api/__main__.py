"""
sap_gw.api - Run as module

Usage: python -m sap_gw.api
"""

import logging
import os

import uvicorn


def main():
    """Run the webhook receiver."""
    host = os.environ.get("WEBHOOK_HOST", "0.0.0.0")
    port = int(os.environ.get("WEBHOOK_PORT", "5050"))
    log_level = os.environ.get("WEBHOOK_LOG_LEVEL", "info")

    logging.basicConfig(level=log_level.upper())
    logging.getLogger("sap_gw.webhook").info("Starting SAP Gateway webhook receiver on %s:%s", host, port)

    uvicorn.run(
        "sap_gw.api:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=log_level,
    )


if __name__ == "__main__":
    main()
