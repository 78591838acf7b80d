"""Shared fixtures: fake identity page and fake authorization endpoint."""
import sys
from pathlib import Path

import httpx
import pytest

# Add project root to path so we can import the gate modules
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from indieauth import IndieAuth

ME = "https://me.example.com/"
CLIENT_ID = "http://testserver"
AUTH_ENDPOINT = "https://auth.example.com/auth"


def identity_page(endpoint: str = AUTH_ENDPOINT):
    """MockTransport handler serving an identity page that advertises ``endpoint``."""
    def handler(request: httpx.Request) -> httpx.Response:
        html = ""
        if endpoint:
            html = f'<html><head><link rel="authorization_endpoint" href="{endpoint}"></head></html>'
        return httpx.Response(200, html=html)
    return handler


class FakeAuthEndpoint:
    """Answers code verification POSTs and records every request it gets."""

    def __init__(self, status: int = 200, body=None):
        self.status = status
        self.body = body if body is not None else {"me": ME, "state": "", "scope": ""}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.body, Exception):
            raise self.body
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status, json=self.body)
        return httpx.Response(self.status, text=self.body)


@pytest.fixture
def auth_endpoint():
    return FakeAuthEndpoint()


@pytest.fixture
def make_auth(auth_endpoint):
    """Factory building an IndieAuth wired to the fake identity page and endpoint."""
    def _make(endpoint: str = AUTH_ENDPOINT, me: str = ME, client_id: str = CLIENT_ID, **kwargs):
        return IndieAuth(
            me,
            client_id,
            discovery_client=httpx.Client(
                transport=httpx.MockTransport(identity_page(endpoint)),
                follow_redirects=True,
            ),
            verify_client=httpx.AsyncClient(transport=httpx.MockTransport(auth_endpoint)),
            **kwargs,
        )
    return _make
