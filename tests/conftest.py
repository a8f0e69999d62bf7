"""Shared fixtures and utilities for mcp-oauth tests."""

import json
import socket
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import patch
from urllib.parse import parse_qsl

import httpx
import pytest

from mcp_oauth.store import FileTokenStorage

SERVER_URL = "https://mcp.example.com/mcp"
AUTH_BASE = "https://mcp.example.com"

METADATA = {
    "issuer": AUTH_BASE,
    "authorization_endpoint": f"{AUTH_BASE}/authorize",
    "token_endpoint": f"{AUTH_BASE}/token",
    "registration_endpoint": f"{AUTH_BASE}/register",
    "code_challenge_methods_supported": ["S256"],
}


# ============================================================================
# Keyring / storage
# ============================================================================


@pytest.fixture(autouse=True)
def memory_keyring() -> Generator[dict[tuple[str, str], str], None, None]:
    """Replace the OS keyring with a dict so tests never touch the real one."""
    secrets: dict[tuple[str, str], str] = {}

    def get_password(service: str, username: str) -> str | None:
        return secrets.get((service, username))

    def set_password(service: str, username: str, password: str) -> None:
        secrets[(service, username)] = password

    with patch("mcp_oauth.store.keyring.get_password", side_effect=get_password), patch(
        "mcp_oauth.store.keyring.set_password", side_effect=set_password
    ):
        yield secrets


@pytest.fixture
def storage(tmp_path: Path) -> FileTokenStorage:
    """Encrypted store rooted in a temporary directory."""
    return FileTokenStorage(config_dir=tmp_path / "oauth")


@pytest.fixture
def free_port() -> int:
    """A port nothing is listening on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port: int = s.getsockname()[1]
    return port


# ============================================================================
# Fake authorization server
# ============================================================================


class FakeAuthServer:
    """Authorization server behind httpx.MockTransport.

    Counts requests per path and records the bodies of token requests so
    tests can assert on what the client sent.
    """

    def __init__(self) -> None:
        self.metadata: dict[str, Any] = dict(METADATA)
        self.metadata_status = 200
        self.registration_status = 201
        self.registration_response: dict[str, Any] = {"client_id": "registered-client"}
        self.token_status = 200
        self.token_response: dict[str, Any] = {
            "access_token": "access-1",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "refresh-1",
        }
        self.calls: dict[str, int] = {}
        self.token_requests: list[dict[str, str]] = []
        self.registration_requests: list[dict[str, Any]] = []

    def count(self, path: str) -> int:
        return self.calls.get(path, 0)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] = self.calls.get(path, 0) + 1

        if path == "/.well-known/oauth-authorization-server":
            return httpx.Response(self.metadata_status, json=self.metadata)

        if path == "/register":
            self.registration_requests.append(json.loads(request.content))
            return httpx.Response(self.registration_status, json=self.registration_response)

        if path == "/token":
            self.token_requests.append(dict(parse_qsl(request.content.decode())))
            return httpx.Response(self.token_status, json=self.token_response)

        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def auth_server() -> FakeAuthServer:
    return FakeAuthServer()


