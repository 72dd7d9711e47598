"""Speech-to-text module.

Forwards uploaded audio to the ElevenLabs speech-to-text endpoint. Transient
upstream failures are retried a fixed number of times with linear backoff;
everything else fails on the first attempt.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import backoff
import httpx

from .config import Settings, trim_to_none
from .errors import HttpError
from .integrations.base_client import BaseUpstreamClient


logger = logging.getLogger(__name__)

TEXT_KEYS = ("text", "transcript", "result", "output", "content")
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
MAX_ATTEMPTS = 3


@dataclass
class TranscriptionOptions:
    model_id: Optional[str] = None
    language_code: Optional[str] = None
    temperature: Optional[float] = None
    diarize: Optional[bool] = None
    tag_audio_events: Optional[bool] = None
    keyterms: Optional[str] = None


@dataclass
class TranscriptionResult:
    raw_text: str
    model_id: str
    provider_payload: Any


def extract_transcript_text(payload: Any) -> Optional[str]:
    """First non-blank string among the known transcript field names."""
    if not isinstance(payload, dict):
        return None
    for key in TEXT_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def linear_wait(step: float = 0.25):
    """Wait generator for ``backoff``: step, 2 x step, 3 x step, ..."""
    # backoff primes the generator with send(None) before the first wait
    yield
    n = 1
    while True:
        yield step * n
        n += 1


def _record_attempts(details) -> None:
    error = details["exception"]
    error.details = {**(error.details or {}), "attempts": details["tries"]}


def _form_value(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class ElevenLabsTranscriber(BaseUpstreamClient):
    provider_name = "elevenlabs"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model_id: str,
        timeout_ms: int,
        max_attempts: int = MAX_ATTEMPTS,
        retry_base_delay_ms: int = 250,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(base_url, timeout_ms, transport=transport, **kwargs)
        self.api_key = api_key
        self.model_id = model_id
        self.max_attempts = min(max(1, max_attempts), MAX_ATTEMPTS)
        self.retry_base_delay_ms = retry_base_delay_ms

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ElevenLabsTranscriber":
        return cls(
            api_key=settings.elevenlabs_api_key,
            base_url=settings.elevenlabs_api_base_url,
            model_id=settings.elevenlabs_model_id,
            timeout_ms=settings.transcription_request_timeout_ms,
            max_attempts=settings.transcription_max_attempts,
            retry_base_delay_ms=settings.transcription_retry_base_delay_ms,
            transport=transport,
            log_payloads=settings.log_provider_payloads,
            log_text_max_chars=settings.log_text_max_chars,
        )

    async def transcribe(
        self,
        audio_bytes: bytes,
        file_name: str,
        mime_type: Optional[str] = None,
        options: Optional[TranscriptionOptions] = None,
        api_key: Optional[str] = None,
    ) -> TranscriptionResult:
        options = options or TranscriptionOptions()
        model_id = options.model_id or self.model_id
        key = trim_to_none(api_key) or self.api_key
        if not key:
            raise HttpError(500, "ElevenLabs API key is not configured")

        files = {
            "file": (
                file_name or f"audio-{int(time.time() * 1000)}.wav",
                audio_bytes,
                mime_type or "application/octet-stream",
            )
        }
        form: Dict[str, str] = {"model_id": model_id}
        for field, value in (
            ("language_code", options.language_code),
            ("temperature", options.temperature),
            ("diarize", options.diarize),
            ("tag_audio_events", options.tag_audio_events),
            ("keyterms", options.keyterms),
        ):
            rendered = _form_value(value)
            if rendered is not None:
                form[field] = rendered

        retrying = backoff.on_exception(
            linear_wait,
            HttpError,
            max_tries=self.max_attempts,
            jitter=None,
            giveup=lambda error: not error.retryable,
            on_backoff=self._on_backoff,
            on_giveup=_record_attempts,
            step=self.retry_base_delay_ms / 1000,
        )(self._attempt)
        raw_text, payload = await retrying(key, files, form)
        return TranscriptionResult(raw_text=raw_text, model_id=model_id, provider_payload=payload)

    @staticmethod
    def _on_backoff(details) -> None:
        _record_attempts(details)
        error = details["exception"]
        logger.warning(
            "transcription attempt failed; retrying",
            extra={
                "attempt": details["tries"],
                "status_code": error.status_code,
                "retry_in_ms": round(details["wait"] * 1000),
            },
        )

    async def _attempt(self, api_key: str, files: dict, form: Dict[str, str]):
        endpoint = self.endpoint("/v1/speech-to-text")
        try:
            response = await self.http.post(
                endpoint,
                headers={"xi-api-key": api_key},
                data=form,
                files=files,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException:
            raise HttpError(
                504,
                "ElevenLabs transcription request timed out",
                details={"timeout_ms": self.timeout_ms},
                retryable=True,
            )
        except httpx.HTTPError as error:
            raise HttpError(
                502,
                "Unexpected failure while calling ElevenLabs",
                log_context={"endpoint": endpoint, "cause": str(error)},
            )

        payload = self.parse_payload(response)
        self.log_payload("elevenlabs response payload", payload)

        if not response.is_success:
            raise HttpError(
                response.status_code,
                "ElevenLabs transcription request failed",
                details={"status": response.status_code},
                log_context={"endpoint": endpoint, "payload": payload},
                retryable=response.status_code in RETRYABLE_STATUS_CODES,
            )

        raw_text = extract_transcript_text(payload)
        if not raw_text:
            raise HttpError(
                502,
                "ElevenLabs response did not include transcript text",
                log_context={"endpoint": endpoint, "payload": payload},
            )
        return raw_text, payload
