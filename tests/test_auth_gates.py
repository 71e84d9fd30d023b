import os

import pytest

from fastapi import Depends, FastAPI, Request
from starlette.middleware.sessions import SessionMiddleware
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from mcfleet.core.auth import decode_session_cookie, require_admin
from mcfleet.routers import console_ws
from mcfleet.services.broadcast import BroadcastHub
from mcfleet.services.console import ConsoleHistory


def _make_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(SessionMiddleware, secret_key=os.environ["SECRET_KEY"])

    @app.get("/__test/login/{email}")
    async def _test_login(email: str, request: Request):
        request.session["user_info"] = {"email": email, "name": "Test"}
        return {"ok": True}

    @app.get("/admin-only")
    async def _admin_gate(user_info: dict = Depends(require_admin)):
        return {"ok": True, "user": user_info.get("email")}

    app.include_router(console_ws.router)
    return app


@pytest.fixture(autouse=True)
def _fresh_hub(monkeypatch):
    hub = BroadcastHub(history=ConsoleHistory(capacity=10))
    monkeypatch.setattr(console_ws, "get_broadcast_hub", lambda: hub)
    return hub


def test_admin_route_unauthenticated_returns_401():
    client = TestClient(_make_app())
    resp = client.get("/admin-only")
    assert resp.status_code == 401


def test_admin_route_non_admin_returns_403():
    client = TestClient(_make_app())
    client.get("/__test/login/player@example.com")

    resp = client.get("/admin-only")
    assert resp.status_code == 403


def test_admin_route_admin_passes():
    client = TestClient(_make_app())
    client.get("/__test/login/Admin@Example.com")

    resp = client.get("/admin-only")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


@pytest.mark.parametrize("path", ["/ws/console/1", "/ws/install/alpha", "/ws/system"])
def test_websocket_without_session_is_rejected(path):
    client = TestClient(_make_app())

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(path):
            pass
    assert exc_info.value.code == 4003


def test_websocket_non_admin_is_rejected():
    client = TestClient(_make_app())
    client.get("/__test/login/player@example.com")

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws/system"):
            pass
    assert exc_info.value.code == 4003


def test_websocket_admin_receives_welcome():
    client = TestClient(_make_app())
    client.get("/__test/login/admin@example.com")

    with client.websocket_connect("/ws/install/alpha") as websocket:
        event = websocket.receive_json()

    assert event["type"] == "console"
    assert event["data"]["message"] == "WebSocket connected for installation."


def test_tampered_session_cookie_is_refused():
    assert decode_session_cookie("garbage.value.sig", "test-secret") is None
