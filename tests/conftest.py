"""
Pytest configuration and shared fixtures.
"""

import asyncio
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
from requests.structures import CaseInsensitiveDict

from sap_gw.core.transport import ODataAuth, TransportResponse


HOST = "https://test.example.com"
SERVICE_PATH = "/sap/opu/odata/sap/API_TEST_SRV"


def make_response(status: int = 200, headers: Optional[Dict[str, Any]] = None, body: str = "") -> TransportResponse:
    return TransportResponse(status=status, headers=CaseInsensitiveDict(headers or {}), body=body)


class FakeTransport:
    """In-memory transport: records calls and replays queued responses."""

    def __init__(self, responses=None, handler: Optional[Callable] = None):
        self.calls: List[SimpleNamespace] = []
        self.responses = list(responses or [])
        self.handler = handler

    def queue(self, *responses: TransportResponse) -> None:
        self.responses.extend(responses)

    async def __call__(self, method, url, headers, body=None):
        self.calls.append(SimpleNamespace(
            method=method,
            url=url,
            headers=CaseInsensitiveDict(headers),
            body=body,
        ))
        # Yield so that concurrent callers interleave
        await asyncio.sleep(0)
        if self.handler is not None:
            return self.handler(method, url, headers, body)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def basic_auth():
    return ODataAuth("basic", ("user", "pass"))


@pytest.fixture
def sample_sap_message_header():
    """URL-encoded ``sap-message`` header with one detail."""
    return (
        "%7B%22code%22%3A%22ZORDER%2F001%22%2C%22message%22%3A%22Order%20saved%22%2C"
        "%22severity%22%3A%22success%22%2C%22target%22%3A%22%22%2C%22details%22%3A"
        "%5B%7B%22code%22%3A%22ZORDER%2F002%22%2C%22message%22%3A%22Credit%20limit%20"
        "almost%20reached%22%2C%22severity%22%3A%22warning%22%2C%22target%22%3A%22NetAmount%22%7D%5D%7D"
    )


@pytest.fixture
def sample_error_body():
    """OData V2 error body with innererror details."""
    return {
        "error": {
            "code": "/IWBEP/CM_MGW_RT/022",
            "message": {"lang": "en", "value": "Resource not found for segment 'Order'"},
            "innererror": {
                "transactionid": "ABC123",
                "errordetails": [
                    {
                        "code": "/IWBEP/CM_MGW_RT/022",
                        "message": "Resource not found",
                        "severity": "error",
                        "target": "OrderID",
                    }
                ],
            },
        }
    }


@pytest.fixture
def sample_batch_response():
    """$batch response for create/update/delete in one changeset."""
    return "\r\n".join([
        "--batchresp_1",
        "Content-Type: multipart/mixed; boundary=changesetresp_1",
        "",
        "--changesetresp_1",
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        "",
        "HTTP/1.1 201 Created",
        "Content-Type: application/json",
        "",
        '{"d":{"OrderID":"10","Status":"NEW"}}',
        "--changesetresp_1",
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        "",
        "HTTP/1.1 204 No Content",
        "",
        "",
        "--changesetresp_1",
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        "",
        "HTTP/1.1 204 No Content",
        "",
        "",
        "--changesetresp_1--",
        "--batchresp_1--",
        "",
    ])


@pytest.fixture
def respond():
    """Factory for TransportResponse values."""
    return make_response
