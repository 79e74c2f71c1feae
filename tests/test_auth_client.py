"""Tests for the token and profile HTTP client."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

aiohttp = pytest.importorskip("aiohttp")

from sophi_chat.auth_client import AuthClient, AuthFailure, SessionExpiredError


class _DummyResponse:
    def __init__(self, status: int, payload: Any) -> None:
        self.status = status
        self._payload = payload

    async def json(self, content_type: Any = None) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def __aenter__(self) -> "_DummyResponse":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class _DummySession:
    responses: list[Any] = []
    requests: list[tuple[str, str, dict[str, Any]]] = []

    def __init__(self, **kwargs: Any) -> None:
        self.closed = False

    def _next(self, method: str, url: str, kwargs: dict[str, Any]) -> _DummyResponse:
        _DummySession.requests.append((method, url, kwargs))
        response = _DummySession.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url: str, **kwargs: Any) -> _DummyResponse:
        return self._next("POST", url, kwargs)

    def get(self, url: str, **kwargs: Any) -> _DummyResponse:
        return self._next("GET", url, kwargs)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def dummy_session(monkeypatch):
    _DummySession.responses = []
    _DummySession.requests = []
    monkeypatch.setattr("sophi_chat.auth_client.aiohttp.ClientSession", _DummySession)
    return _DummySession


def test_login_returns_access_token(dummy_session) -> None:
    dummy_session.responses = [_DummyResponse(200, {"access": "tok-1"})]
    client = AuthClient("http://chat.local:8000/")

    token = asyncio.run(client.login("ana", "secret"))

    assert token == "tok-1"
    method, url, kwargs = dummy_session.requests[0]
    assert (method, url) == ("POST", "http://chat.local:8000/token")
    assert kwargs["json"] == {"username": "ana", "password": "secret"}


def test_login_rejection_carries_server_message(dummy_session) -> None:
    dummy_session.responses = [_DummyResponse(401, {"detail": "Invalid credentials"})]
    client = AuthClient("http://chat.local:8000")

    with pytest.raises(AuthFailure) as excinfo:
        asyncio.run(client.login("ana", "wrong"))

    assert str(excinfo.value) == "Invalid credentials"
    assert excinfo.value.status == 401
    assert not isinstance(excinfo.value, SessionExpiredError)


def test_login_without_token_fails(dummy_session) -> None:
    dummy_session.responses = [_DummyResponse(200, {"refresh": "only"})]
    client = AuthClient("http://chat.local:8000")

    with pytest.raises(AuthFailure):
        asyncio.run(client.login("ana", "secret"))


def test_login_network_error_has_no_status(dummy_session) -> None:
    dummy_session.responses = [aiohttp.ClientConnectionError("refused")]
    client = AuthClient("http://chat.local:8000")

    with pytest.raises(AuthFailure) as excinfo:
        asyncio.run(client.login("ana", "secret"))

    assert excinfo.value.status is None


def test_user_info_sends_bearer_token(dummy_session) -> None:
    dummy_session.responses = [_DummyResponse(200, {"username": "ana"})]
    client = AuthClient("http://chat.local:8000")

    profile = asyncio.run(client.get_user_info("tok-1"))

    assert profile == {"username": "ana"}
    method, url, kwargs = dummy_session.requests[0]
    assert (method, url) == ("GET", "http://chat.local:8000/user/info")
    assert kwargs["headers"]["Authorization"] == "Bearer tok-1"


def test_user_info_401_means_session_expired(dummy_session) -> None:
    dummy_session.responses = [_DummyResponse(401, {"detail": "expired"})]
    client = AuthClient("http://chat.local:8000")

    with pytest.raises(SessionExpiredError):
        asyncio.run(client.get_user_info("stale"))


def test_user_info_server_error_is_auth_failure(dummy_session) -> None:
    dummy_session.responses = [_DummyResponse(500, ValueError("not json"))]
    client = AuthClient("http://chat.local:8000")

    with pytest.raises(AuthFailure) as excinfo:
        asyncio.run(client.get_user_info("tok-1"))

    assert excinfo.value.status == 500
    assert "HTTP 500" in str(excinfo.value)
