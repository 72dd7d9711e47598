"""Shared fixtures: test settings, fake upstreams and an app wired to them."""
import json
import time
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from presstospeak.config import Settings
from presstospeak.integrations.supabase_client import SupabaseAuthClient
from presstospeak.main import create_app
from presstospeak.rewrite_module import OpenAIRewriter
from presstospeak.stt_module import ElevenLabsTranscriber


SUPABASE_URL = "https://project.supabase.test"
SUPABASE_ISSUER = f"{SUPABASE_URL}/auth/v1"
PUBLISHABLE_KEY = "sb_publishable_test"
JWT_SECRET = "test-only-jwt-signing-secret-0123456789abcdef"
PROXY_KEY = "proxy-shared-secret"
VALID_PASSWORD = "correct-horse-battery"
VALID_REFRESH_TOKEN = "refresh-token-1"
VALID_ACCESS_TOKEN = "access-token-1"


def make_settings(**overrides) -> Settings:
    values: Dict[str, Any] = dict(
        app_env="test",
        log_level="silent",
        elevenlabs_api_key="server-elevenlabs-key",
        openai_api_key="server-openai-key",
        transcription_retry_base_delay_ms=0,
        user_auth_mode="off",
        supabase_url=SUPABASE_URL,
        supabase_publishable_key=PUBLISHABLE_KEY,
        supabase_jwt_secret=JWT_SECRET,
        supabase_jwt_issuer=SUPABASE_ISSUER,
        mac_app_latest_version="1.4.0",
        mac_app_minimum_supported_version="1.2",
        mac_app_download_url="https://downloads.presstospeak.test/PressToSpeak.dmg",
    )
    values.update(overrides)
    return Settings(**values)


def make_access_token(subject: str = "user-123", secret: str = JWT_SECRET, **claims) -> str:
    now = int(time.time())
    payload = {
        "sub": subject,
        "aud": "authenticated",
        "iss": SUPABASE_ISSUER,
        "iat": now,
        "exp": now + 3600,
        "email": "alice@example.com",
        "role": "authenticated",
    }
    payload.update(claims)
    return jwt.encode({k: v for k, v in payload.items() if v is not None}, secret, algorithm="HS256")


class FakeOpenAIClient:
    def __init__(self, create: AsyncMock):
        self.responses = SimpleNamespace(create=create)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeOpenAIFactory:
    """Records the API key each client was built with."""

    def __init__(self, create: Optional[AsyncMock] = None):
        self.create = create or AsyncMock(return_value={"output_text": "Hello world."})
        self.keys: List[str] = []
        self.clients: List[FakeOpenAIClient] = []

    def __call__(self, api_key: str) -> FakeOpenAIClient:
        self.keys.append(api_key)
        client = FakeOpenAIClient(self.create)
        self.clients.append(client)
        return client


class RecordingHandler:
    """httpx.MockTransport handler that keeps every request it saw."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def transcript_response(text: str = "um hello world") -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(200, json={"text": text, "language_code": "en"})


def make_user(email: str, name: Optional[str] = None) -> Dict[str, Any]:
    local_part = email.split("@")[0]
    return {
        "id": f"uid-{local_part}",
        "email": email,
        "app_metadata": {"tier": "pro"} if "+pro@" in email else {},
        "user_metadata": {"name": name} if name else {},
    }


def make_session(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "access_token": VALID_ACCESS_TOKEN,
        "refresh_token": VALID_REFRESH_TOKEN,
        "expires_at": 1_900_000_000,
        "token_type": "bearer",
        "user": user,
    }


def supabase_auth_upstream(request: httpx.Request) -> httpx.Response:
    if request.headers.get("apikey") != PUBLISHABLE_KEY:
        return httpx.Response(401, json={"message": "Invalid API key"})

    body = json.loads(request.content) if request.content else {}
    path = request.url.path

    if path == "/auth/v1/signup":
        user = make_user(body["email"], (body.get("data") or {}).get("name"))
        if body["email"].startswith("confirm."):
            return httpx.Response(200, json=user)
        return httpx.Response(200, json=make_session(user))

    if path == "/auth/v1/token":
        grant_type = request.url.params.get("grant_type")
        if grant_type == "password":
            if body.get("password") != VALID_PASSWORD:
                return httpx.Response(
                    400, json={"error": "invalid_grant", "error_description": "Invalid login credentials"}
                )
            return httpx.Response(200, json=make_session(make_user(body["email"])))
        if grant_type == "refresh_token":
            if body.get("refresh_token") != VALID_REFRESH_TOKEN:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid Refresh Token"})
            return httpx.Response(200, json=make_session(make_user("alice@example.com")))

    if path == "/auth/v1/logout":
        if request.headers.get("authorization") == f"Bearer {VALID_ACCESS_TOKEN}":
            return httpx.Response(204)
        return httpx.Response(401, json={"msg": "invalid JWT"})

    return httpx.Response(404, json={"msg": "not found"})


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def stt_handler() -> RecordingHandler:
    return RecordingHandler(transcript_response())


@pytest.fixture
def openai_factory() -> FakeOpenAIFactory:
    return FakeOpenAIFactory()


@pytest.fixture
def build_client(stt_handler, openai_factory):
    """Factory fixture: ``build_client(**settings_overrides)`` -> TestClient."""
    clients: List[TestClient] = []

    def _build(**overrides) -> TestClient:
        settings = make_settings(**overrides)
        app = create_app(
            settings,
            transcriber=ElevenLabsTranscriber.from_settings(settings, transport=httpx.MockTransport(stt_handler)),
            rewriter=OpenAIRewriter.from_settings(settings, client_factory=openai_factory),
            identity=SupabaseAuthClient.from_settings(
                settings, transport=httpx.MockTransport(supabase_auth_upstream)
            ),
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _build

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(build_client) -> TestClient:
    return build_client()


def audio_upload(name: str = "clip.wav", data: bytes = b"RIFF\x00\x00\x00\x00WAVEfmt "):
    return {"file": (name, data, "audio/wav")}
