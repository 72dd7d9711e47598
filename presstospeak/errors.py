"""Typed HTTP error shared by every layer of the proxy.

``details`` are part of the client-facing envelope. ``log_context`` carries
upstream payloads and raw reasons that only belong in logs.
"""
from typing import Any, Dict, Optional


class HttpError(Exception):
    def __init__(
        self,
        status_code: int,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        log_context: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details
        self.log_context = log_context or {}
        self.headers = headers or {}
        self.retryable = retryable

    def __repr__(self) -> str:
        return f"HttpError(status_code={self.status_code}, message={self.message!r})"


def error_envelope(message: str, request_id: Optional[str], details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"message": message}
    if details is not None:
        error["details"] = details
    return {"error": error, "request_id": request_id}
