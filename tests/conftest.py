"""Gemeinsame Test-Fixtures."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from requests.structures import CaseInsensitiveDict


@pytest.fixture
def make_response():
    """Fabrik für echte requests.Response-Objekte ohne Netzwerk."""

    def _make(status_code=200, headers=None, body=b"", url="https://example.org/feed"):
        response = requests.Response()
        response.status_code = status_code
        response.headers = CaseInsensitiveDict(headers or {})
        response._content = body
        response.url = url
        response.encoding = "utf-8"
        return response

    return _make


@pytest.fixture
def mock_get():
    with patch("websub_client_lib.requests.get") as mocked:
        yield mocked


@pytest.fixture
def mock_post():
    with patch("websub_client_lib.requests.post") as mocked:
        yield mocked


@pytest.fixture
def mock_server():
    """Ersetzt den uvicorn-Server, damit der Listener keinen Port bindet."""
    with patch("listener.uvicorn.Server") as server_cls:
        server = MagicMock()
        server.started = True
        server_cls.return_value = server
        yield server
