"""Transcript rewrite (cleanup) through the OpenAI Responses API.

This stage is a polish step on top of the raw transcript, so it runs under a
much tighter timeout than transcription and is never retried. Callers are
expected to fall back to the raw text when it fails.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from openai import APIStatusError, APITimeoutError, AsyncOpenAI

from .config import Settings, trim_to_none
from .errors import HttpError


logger = logging.getLogger(__name__)

CLEANUP_INSTRUCTIONS = " ".join(
    [
        "You are a transcript cleanup engine.",
        "Rewrite spoken transcript into clean written text.",
        "Fix punctuation, capitalization, and grammar.",
        "Remove filler words like 'uh', 'um', and 'hmm' when they add no meaning.",
        "Preserve the original meaning and tone.",
        "Return only the final cleaned text with no extra commentary.",
    ]
)


@dataclass
class RewriteResult:
    clean_text: str
    model: str
    skipped: bool = False
    provider_payload: Any = field(default=None, repr=False)


def extract_output_text(payload: Any) -> Optional[str]:
    """``output_text`` if present, else the joined text chunks of ``output``."""
    if not isinstance(payload, dict):
        return None

    direct = payload.get("output_text")
    if isinstance(direct, str) and direct.strip():
        return direct.strip()

    output = payload.get("output")
    if not isinstance(output, list):
        return None

    parts = []
    for item in output:
        if not isinstance(item, dict) or not isinstance(item.get("content"), list):
            continue
        for chunk in item["content"]:
            if not isinstance(chunk, dict):
                continue
            value = chunk.get("text")
            if not isinstance(value, str):
                value = chunk.get("output_text")
            if isinstance(value, str) and value.strip():
                parts.append(value.strip())

    if not parts:
        return None
    return re.sub(r"\s+", " ", " ".join(parts)).strip()


def _as_payload(response: Any) -> Any:
    if isinstance(response, dict):
        return response
    if hasattr(response, "model_dump"):
        return response.model_dump()
    return None


def max_output_tokens(transcript: str) -> int:
    return min(max(len(transcript) * 2, 120), 1000)


class OpenAIRewriter:
    provider_name = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout_ms: int,
        client_factory: Optional[Callable[[str], AsyncOpenAI]] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.timeout_ms = timeout_ms
        self.client_factory = client_factory or self._build_client
        self._default_client: Optional[AsyncOpenAI] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "OpenAIRewriter":
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_api_base_url,
            model=settings.openai_model,
            timeout_ms=settings.openai_rewrite_timeout_ms,
            **kwargs,
        )

    def _build_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=self.timeout_ms / 1000,
            max_retries=0,
        )

    async def aclose(self) -> None:
        if self._default_client is not None and hasattr(self._default_client, "close"):
            await self._default_client.close()
            self._default_client = None

    async def rewrite(
        self,
        raw_text: str,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> RewriteResult:
        transcript = (raw_text or "").strip()
        model = trim_to_none(model) or self.model
        if not transcript:
            return RewriteResult(clean_text="", model=model, skipped=True, provider_payload={"skipped": True})

        override_key = trim_to_none(api_key)
        if not override_key and not self.api_key:
            raise HttpError(500, "OpenAI API key is not configured")

        timeout_ms = timeout_ms or self.timeout_ms
        if override_key:
            client = self.client_factory(override_key)
        else:
            if self._default_client is None:
                self._default_client = self.client_factory(self.api_key)
            client = self._default_client

        try:
            response = await asyncio.wait_for(
                client.responses.create(
                    model=model,
                    instructions=CLEANUP_INSTRUCTIONS,
                    input=transcript,
                    max_output_tokens=max_output_tokens(transcript),
                    reasoning={"effort": "minimal"},
                    store=False,
                ),
                timeout=timeout_ms / 1000,
            )
        except (asyncio.TimeoutError, APITimeoutError):
            raise HttpError(504, "OpenAI rewrite request timed out", details={"timeout_ms": timeout_ms})
        except APIStatusError as error:
            raise HttpError(
                error.status_code,
                "OpenAI rewrite request failed",
                details={"status": error.status_code},
                log_context={"payload": getattr(error, "body", None)},
            )
        except Exception as error:
            raise HttpError(502, "Unexpected failure while calling OpenAI", log_context={"cause": str(error)})
        finally:
            if override_key and hasattr(client, "close"):
                await client.close()

        payload = _as_payload(response)
        clean_text = extract_output_text(payload)
        if not clean_text:
            raise HttpError(502, "OpenAI response did not include rewritten text", log_context={"payload": payload})

        logger.debug("rewrite completed", extra={"model": model, "input_chars": len(transcript), "output_chars": len(clean_text)})

        return RewriteResult(clean_text=clean_text, model=model, provider_payload=payload)
