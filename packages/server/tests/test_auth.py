"""
Tests for actor identification and HTTP middleware.

Covers:
- JWT creation, decoding, expiry and tampering
- Bearer token resolution, including the debug-mode bare user id
- Security headers and request id middleware
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import jwt as pyjwt
import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from app.core.auth import create_jwt, decode_jwt, get_current_actor, resolve_actor
from app.core.config import get_settings
from app.core.middleware import (
    SECURITY_HEADERS,
    RequestLogMiddleware,
    SecurityHeadersMiddleware,
)


# ---------------------------------------------------------------------------
# Unit Tests: JWT
# ---------------------------------------------------------------------------

class TestJWT:
    def test_create_and_decode(self):
        uid = uuid.uuid4()
        payload = decode_jwt(create_jwt(uid))
        assert payload["sub"] == str(uid)
        assert payload["exp"] > payload["iat"]
        assert payload["jti"]

    def test_expired_jwt_raises(self):
        token = create_jwt(uuid.uuid4(), expires_delta=timedelta(seconds=-1))
        with pytest.raises(pyjwt.ExpiredSignatureError):
            decode_jwt(token)

    def test_tampered_jwt_raises(self):
        token = create_jwt(uuid.uuid4())
        tampered = token[:-5] + "XXXXX"
        with pytest.raises(pyjwt.PyJWTError):
            decode_jwt(tampered)


# ---------------------------------------------------------------------------
# Unit Tests: actor resolution
# ---------------------------------------------------------------------------

class TestActor:
    @pytest.mark.asyncio
    async def test_bearer_token(self):
        uid = uuid.uuid4()
        assert await get_current_actor(f"Bearer {create_jwt(uid)}") == uid

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "Token abc", "Bearer "])
    async def test_rejected_headers(self, header):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_actor(header)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["code"] == "PGRST301"

    def test_expired_token_is_unauthorized(self):
        token = create_jwt(uuid.uuid4(), expires_delta=timedelta(seconds=-1))
        with pytest.raises(HTTPException) as exc_info:
            resolve_actor(token)
        assert exc_info.value.status_code == 401

    def test_subject_must_be_uuid(self):
        settings = get_settings()
        token = pyjwt.encode({"sub": "agent-7"}, settings.secret_key, algorithm=settings.jwt_algorithm)
        with pytest.raises(HTTPException):
            resolve_actor(token)

    def test_bare_user_id_only_in_debug(self, monkeypatch):
        uid = uuid.uuid4()
        with pytest.raises(HTTPException):
            resolve_actor(str(uid))
        monkeypatch.setattr(get_settings(), "debug", True)
        assert resolve_actor(str(uid)) == uid


# ---------------------------------------------------------------------------
# Integration Tests: Middleware
# ---------------------------------------------------------------------------

def _make_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLogMiddleware)

    @app.get("/test")
    async def test_endpoint():
        return {"ok": True}

    @app.get("/realtime/v1/test")
    async def stream_endpoint():
        return {"ok": True}

    return app


class TestMiddleware:
    def test_security_headers_present(self):
        resp = TestClient(_make_app()).get("/test")
        assert resp.status_code == 200
        for header, value in SECURITY_HEADERS.items():
            assert resp.headers.get(header) == value
        assert "X-Accel-Buffering" not in resp.headers

    def test_stream_paths_disable_buffering(self):
        resp = TestClient(_make_app()).get("/realtime/v1/test")
        assert resp.headers["X-Accel-Buffering"] == "no"

    def test_request_id_echoed(self):
        resp = TestClient(_make_app()).get("/test", headers={"X-Request-Id": "abc123"})
        assert resp.headers["X-Request-Id"] == "abc123"

    def test_request_id_generated(self):
        resp = TestClient(_make_app()).get("/test")
        assert len(resp.headers["X-Request-Id"]) == 12
