"""HTTP tests for POST /v1/voice-to-text and the shared request plumbing."""
import logging

import httpx

from conftest import PROXY_KEY, audio_upload, make_access_token


class TestVoiceToText:
    def test_anonymous_request_when_auth_is_off(self, client, caplog):
        caplog.set_level(logging.INFO, logger="presstospeak.usage-metering")

        response = client.post("/v1/voice-to-text", files=audio_upload())

        assert response.status_code == 200
        body = response.json()
        assert body["transcript"] == {"raw_text": "um hello world", "clean_text": "Hello world."}
        assert body["provider"]["stt"] == {"name": "elevenlabs", "model_id": "scribe_v1"}
        assert body["provider"]["rewrite"] == {"name": "openai", "model_id": "gpt-5-mini", "status": "completed"}
        assert set(body["timing"]) == {"stt_latency_ms", "rewrite_latency_ms", "total_latency_ms"}
        assert body["warnings"] == []
        assert body["request_id"] == response.headers["x-request-id"]

        usage = [record.usage for record in caplog.records if hasattr(record, "usage")]
        assert usage and usage[0]["user_id"] == "anonymous"
        assert usage[0]["auth_source"] == "anonymous"

    def test_missing_bearer_when_auth_is_required(self, build_client):
        client = build_client(user_auth_mode="required")

        response = client.post("/v1/voice-to-text", files=audio_upload())

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Missing Bearer access token"

    def test_authenticated_request_uses_verified_subject(self, build_client, caplog):
        caplog.set_level(logging.INFO, logger="presstospeak.usage-metering")
        client = build_client(user_auth_mode="required")

        response = client.post(
            "/v1/voice-to-text",
            files=audio_upload(),
            headers={"Authorization": f"Bearer {make_access_token('user-42')}"},
        )

        assert response.status_code == 200
        usage = [record.usage for record in caplog.records if hasattr(record, "usage")]
        assert usage[0]["user_id"] == "user-42"
        assert usage[0]["is_authenticated"] is True
        assert "x-ratelimit-limit" not in response.headers

    def test_rewrite_failure_falls_back_to_raw_transcript(self, client, openai_factory):
        openai_factory.create.side_effect = RuntimeError("upstream exploded")

        response = client.post("/v1/voice-to-text", files=audio_upload())

        assert response.status_code == 200
        body = response.json()
        assert body["transcript"]["clean_text"] == body["transcript"]["raw_text"] == "um hello world"
        assert body["provider"]["rewrite"]["status"] == "fallback_raw"
        assert body["warnings"] == [{"code": "OPENAI_REWRITE_FALLBACK", "message": "Unexpected failure while calling OpenAI"}]

    def test_form_fields_are_coerced_and_forwarded(self, client, stt_handler):
        response = client.post(
            "/v1/voice-to-text",
            files=audio_upload(),
            data={
                "model_id": " scribe_v2 ",
                "language_code": "en",
                "temperature": "not-a-number",
                "diarize": "true",
                "tag_audio_events": "maybe",
            },
        )

        assert response.status_code == 200
        assert response.json()["provider"]["stt"]["model_id"] == "scribe_v2"
        sent = stt_handler.requests[0].content
        assert b'name="model_id"\r\n\r\nscribe_v2' in sent
        assert b'name="diarize"\r\n\r\ntrue' in sent
        assert b'name="temperature"' not in sent
        assert b'name="tag_audio_events"' not in sent

    def test_missing_file_field(self, client):
        response = client.post("/v1/voice-to-text", data={"model_id": "scribe_v1"})

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing multipart file field 'file'"

    def test_oversized_upload_is_rejected(self, build_client, stt_handler):
        client = build_client(transcription_max_file_bytes=8)

        response = client.post("/v1/voice-to-text", files=audio_upload(data=b"x" * 64))

        assert response.status_code == 413
        assert response.json()["error"]["details"] == {"max_bytes": 8}
        assert stt_handler.requests == []

    def test_stt_failure_is_returned_as_error(self, build_client, stt_handler):
        stt_handler.respond = lambda request: httpx.Response(400, json={"detail": "bad audio"})
        client = build_client()

        response = client.post("/v1/voice-to-text", files=audio_upload())

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "ElevenLabs transcription request failed"
        assert error["details"] == {"status": 400, "attempts": 1}


class TestProviderKeyOverrides:
    BYOK_HEADERS = {"x-elevenlabs-api-key": "user-eleven-key", "x-openai-api-key": "user-openai-key"}

    def test_authenticated_user_keys_reach_both_providers(self, build_client, stt_handler, openai_factory):
        client = build_client(user_auth_mode="required")

        response = client.post(
            "/v1/voice-to-text",
            files=audio_upload(),
            headers={"Authorization": f"Bearer {make_access_token()}", **self.BYOK_HEADERS},
        )

        assert response.status_code == 200
        assert stt_handler.requests[0].headers["xi-api-key"] == "user-eleven-key"
        assert openai_factory.keys == ["user-openai-key"]
        assert openai_factory.clients[0].closed is True

    def test_unauthenticated_keys_rejected_without_flag(self, build_client):
        client = build_client(user_auth_mode="required")

        response = client.post("/v1/voice-to-text", files=audio_upload(), headers=self.BYOK_HEADERS)

        assert response.status_code == 401

    def test_unauthenticated_keys_forbidden_when_auth_is_off(self, build_client):
        client = build_client(user_auth_mode="off")

        response = client.post("/v1/voice-to-text", files=audio_upload(), headers=self.BYOK_HEADERS)

        assert response.status_code == 403

    def test_unauthenticated_keys_allowed_with_flag(self, build_client, stt_handler):
        client = build_client(user_auth_mode="required", allow_unauthenticated_byok=True)

        response = client.post("/v1/voice-to-text", files=audio_upload(), headers=self.BYOK_HEADERS)

        assert response.status_code == 200
        assert stt_handler.requests[0].headers["xi-api-key"] == "user-eleven-key"
        assert response.headers["x-ratelimit-limit"] == "20"

    def test_half_a_key_pair_is_rejected(self, client):
        response = client.post(
            "/v1/voice-to-text",
            files=audio_upload(),
            headers={"x-openai-api-key": "user-openai-key"},
        )

        assert response.status_code == 400
        assert "Both x-elevenlabs-api-key and x-openai-api-key" in response.json()["error"]["message"]


class TestUnauthenticatedRateLimit:
    def test_limit_applies_and_reports_headers(self, build_client):
        client = build_client(unauth_rate_limit_max_requests=2, unauth_rate_limit_window_ms=60_000)

        first = client.post("/v1/voice-to-text", files=audio_upload())
        second = client.post("/v1/voice-to-text", files=audio_upload())
        third = client.post("/v1/voice-to-text", files=audio_upload())

        assert first.headers["x-ratelimit-remaining"] == "1"
        assert second.headers["x-ratelimit-remaining"] == "0"
        assert third.status_code == 429
        assert third.headers["x-ratelimit-remaining"] == "0"
        error = third.json()["error"]
        assert error["message"] == "Rate limit exceeded for unauthenticated requests"
        assert error["details"]["max_requests"] == 2
        assert error["details"]["window_ms"] == 60_000
        assert 0 < error["details"]["retry_after_ms"] <= 60_000


class TestProxyKey:
    def test_shared_secret_required_when_configured(self, build_client):
        client = build_client(proxy_shared_api_key=PROXY_KEY)

        rejected = client.post("/v1/voice-to-text", files=audio_upload())
        accepted = client.post("/v1/voice-to-text", files=audio_upload(), headers={"x-api-key": PROXY_KEY})
        as_bearer = client.post(
            "/v1/voice-to-text", files=audio_upload(), headers={"Authorization": f"Bearer {PROXY_KEY}"}
        )

        assert rejected.status_code == 401
        assert rejected.json()["error"]["message"] == "Missing or invalid proxy API key"
        assert accepted.status_code == 200
        assert as_bearer.status_code == 200


class TestRequestPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz", headers={"x-request-id": "req-abc"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["service"] == "press-to-speak-api"
        assert body["request_id"] == "req-abc"
        assert response.headers["x-request-id"] == "req-abc"

    def test_blank_request_id_is_replaced(self, client):
        response = client.get("/healthz", headers={"x-request-id": "   "})

        assert response.headers["x-request-id"].strip()
        assert response.headers["x-request-id"] == response.json()["request_id"]

    def test_unknown_route_uses_error_envelope(self, client):
        response = client.get("/v1/nope")

        assert response.status_code == 404
        body = response.json()
        assert body["error"]["message"] == "Route not found: GET /v1/nope"
        assert body["request_id"] == response.headers["x-request-id"]

    def test_unexpected_error_is_a_generic_500(self, client, stt_handler):
        def explode(request):
            raise ZeroDivisionError

        stt_handler.respond = explode

        response = client.post("/v1/voice-to-text", files=audio_upload())

        assert response.status_code == 500
        assert response.json()["error"] == {"message": "Unexpected server error"}
        assert response.headers["x-request-id"]
