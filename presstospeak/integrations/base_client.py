"""Base class for upstream provider HTTP clients.

Subclasses share one lazily created ``httpx.AsyncClient`` and the same
response-payload handling. Base URLs must be HTTPS unless they point at a
loopback host.
"""
import json
import logging
from typing import Any, Optional

import httpx

from ..config import ConfigError, is_secure_url
from ..errors import HttpError
from ..logging_setup import truncate_text


logger = logging.getLogger(__name__)


class BaseUpstreamClient:
    provider_name: str = "base"

    def __init__(
        self,
        base_url: Optional[str],
        timeout_ms: int,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        log_payloads: bool = False,
        log_text_max_chars: int = 1200,
    ):
        if base_url and not is_secure_url(base_url):
            raise ConfigError([f"{self.provider_name}: base URL must use https unless it targets a loopback host"])
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout_ms = timeout_ms
        self.transport = transport
        self.log_payloads = log_payloads
        self.log_text_max_chars = log_text_max_chars
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)
        return self._http

    def endpoint(self, path: str) -> str:
        if not self.base_url:
            raise HttpError(500, f"{self.provider_name} base URL is not configured")
        return f"{self.base_url}/{path.lstrip('/')}"

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def parse_payload(self, response: httpx.Response) -> Any:
        """JSON body when declared as JSON, otherwise ``{"text": body}``.

        An empty or unparseable JSON body yields ``None``.
        """
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            if not response.content.strip():
                return None
            try:
                return response.json()
            except json.JSONDecodeError:
                return None
        return {"text": response.text}

    def log_payload(self, message: str, payload: Any) -> None:
        if not self.log_payloads:
            return
        rendered = truncate_text(json.dumps(payload, default=str), self.log_text_max_chars)
        logger.debug(message, extra={"provider": self.provider_name, "payload": rendered})
