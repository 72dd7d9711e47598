import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import account_routes, update_routes
from .config import SERVICE_NAME, Settings, load_settings, trim_to_none
from .credentials import CredentialResolver, RequestUserContext
from .dependencies import Services, enforce_unauthenticated_rate_limit, get_services
from .errors import HttpError, error_envelope
from .integrations.supabase_client import SupabaseAuthClient
from .logging_setup import redact, request_id_context, setup_logging
from .parsing import parse_boolean, parse_number, parse_string
from .pipeline import RewriteStatus, VoiceToTextInput, VoiceToTextPipeline
from .rate_limit import RateLimiter
from .rewrite_module import OpenAIRewriter
from .stt_module import ElevenLabsTranscriber, TranscriptionOptions
from .usage import UsageEvent, record_usage_event


logger = logging.getLogger("presstospeak")
access_logger = logging.getLogger("presstospeak.access")

EXPOSED_HEADERS = ["x-request-id", "x-ratelimit-limit", "x-ratelimit-remaining", "x-ratelimit-reset-ms"]


def build_services(
    settings: Settings,
    transcriber: Optional[ElevenLabsTranscriber] = None,
    rewriter: Optional[OpenAIRewriter] = None,
    identity: Optional[SupabaseAuthClient] = None,
) -> Services:
    transcriber = transcriber or ElevenLabsTranscriber.from_settings(settings)
    rewriter = rewriter or OpenAIRewriter.from_settings(settings)
    identity = identity or SupabaseAuthClient.from_settings(settings)

    return Services(
        settings=settings,
        identity=identity,
        resolver=CredentialResolver(settings, identity),
        pipeline=VoiceToTextPipeline(
            transcriber,
            rewriter,
            log_pipeline_text=settings.log_pipeline_text,
            log_text_max_chars=settings.log_text_max_chars,
        ),
        unauthenticated_limiter=RateLimiter(
            settings.unauth_rate_limit_max_requests,
            settings.unauth_rate_limit_window_ms,
            name="unauthenticated",
        ),
        auth_route_limiter=RateLimiter(
            settings.auth_route_rate_limit_max_requests,
            settings.auth_route_rate_limit_window_ms,
            name="auth-routes",
        ),
    )


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or "unknown"


def create_app(
    settings: Optional[Settings] = None,
    transcriber: Optional[ElevenLabsTranscriber] = None,
    rewriter: Optional[OpenAIRewriter] = None,
    identity: Optional[SupabaseAuthClient] = None,
) -> FastAPI:
    settings = settings or load_settings()
    services = build_services(settings, transcriber=transcriber, rewriter=rewriter, identity=identity)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("%s listening", SERVICE_NAME, extra={"port": settings.port, "app_env": settings.app_env})
        yield
        await services.pipeline.transcriber.aclose()
        await services.pipeline.rewriter.aclose()
        await services.identity.aclose()
        logger.info("%s stopped", SERVICE_NAME)

    app = FastAPI(title="PressToSpeak API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = trim_to_none(request.headers.get("x-request-id")) or str(uuid4())
        request.state.request_id = request_id
        request.state.response_headers = {}
        token = request_id_context.set(request_id)
        started_at = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception("unhandled error", extra={"method": request.method, "path": request.url.path})
                response = JSONResponse(
                    status_code=500,
                    content=error_envelope("Unexpected server error", request_id),
                )

            for name, value in request.state.response_headers.items():
                response.headers[name] = value
            response.headers["x-request-id"] = request_id

            access_logger.info(
                "%s %s %s",
                request.method,
                request.url.path,
                response.status_code,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": int((time.perf_counter() - started_at) * 1000),
                    "headers": redact(dict(request.headers)),
                },
            )
            return response
        finally:
            request_id_context.reset(token)

    @app.exception_handler(HttpError)
    async def handle_http_error(request: Request, error: HttpError):
        log = logger.error if error.status_code >= 500 else logger.warning
        log(
            error.message,
            extra={
                "status_code": error.status_code,
                "details": error.details,
                "upstream": error.log_context or None,
                "path": request.url.path,
            },
        )
        return JSONResponse(
            status_code=error.status_code,
            content=error_envelope(error.message, _request_id(request), error.details),
            headers=error.headers or None,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, error: RequestValidationError):
        issues = [
            {"path": ".".join(str(part) for part in issue["loc"]), "message": issue["msg"]}
            for issue in error.errors()
        ]
        logger.warning("request validation failed", extra={"issues": issues, "path": request.url.path})
        return JSONResponse(
            status_code=400,
            content=error_envelope("Invalid request", _request_id(request), {"issues": issues}),
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_starlette_error(request: Request, error: StarletteHTTPException):
        if error.status_code == 404:
            message = f"Route not found: {request.method} {request.url.path}"
        else:
            message = str(error.detail)
        return JSONResponse(
            status_code=error.status_code,
            content=error_envelope(message, _request_id(request)),
            headers=getattr(error, "headers", None),
        )

    @app.get("/healthz")
    async def healthz(request: Request):
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "request_id": _request_id(request),
        }

    @app.post("/v1/voice-to-text")
    async def voice_to_text(
        request: Request,
        user: RequestUserContext = Depends(enforce_unauthenticated_rate_limit),
        services: Services = Depends(get_services),
    ):
        started_at = time.perf_counter()
        request_id = _request_id(request)
        max_bytes = services.settings.transcription_max_file_bytes

        async with request.form() as form:
            upload = form.get("file")
            if not isinstance(upload, UploadFile):
                raise HttpError(400, "Missing multipart file field 'file'")
            if upload.size is not None and upload.size > max_bytes:
                raise HttpError(413, "Audio file exceeds the maximum allowed size", details={"max_bytes": max_bytes})

            audio_bytes = await upload.read()
            if len(audio_bytes) > max_bytes:
                raise HttpError(413, "Audio file exceeds the maximum allowed size", details={"max_bytes": max_bytes})

            stt_options = TranscriptionOptions(
                model_id=parse_string(form.get("model_id")),
                language_code=parse_string(form.get("language_code")),
                temperature=parse_number(form.get("temperature")),
                diarize=parse_boolean(form.get("diarize")),
                tag_audio_events=parse_boolean(form.get("tag_audio_events")),
                keyterms=parse_string(form.get("keyterms")),
            )
            file_name = upload.filename or "audio.wav"
            mime_type = upload.content_type

        provider_keys = user.provider_keys
        result = await services.pipeline.process(
            VoiceToTextInput(
                audio_bytes=audio_bytes,
                file_name=file_name,
                mime_type=mime_type,
                request_id=request_id,
                user_id=user.user_id,
                stt_options=stt_options,
                elevenlabs_api_key=provider_keys.elevenlabs_api_key if provider_keys else None,
                openai_api_key=provider_keys.openai_api_key if provider_keys else None,
            )
        )
        total_latency_ms = int((time.perf_counter() - started_at) * 1000)

        await record_usage_event(
            UsageEvent(
                request_id=request_id,
                user_id=user.user_id,
                audio_bytes=len(audio_bytes),
                raw_characters=len(result.raw_text),
                clean_characters=len(result.clean_text),
                stt_latency_ms=result.stt_latency_ms,
                rewrite_latency_ms=result.rewrite_latency_ms,
                is_authenticated=user.is_authenticated,
                auth_source=user.auth_source.value,
            )
        )

        warnings = []
        if result.rewrite_status == RewriteStatus.FALLBACK_RAW and result.rewrite_error:
            warnings.append({"code": "OPENAI_REWRITE_FALLBACK", "message": result.rewrite_error})

        return {
            "request_id": request_id,
            "transcript": {"raw_text": result.raw_text, "clean_text": result.clean_text},
            "provider": {
                "stt": {"name": "elevenlabs", "model_id": result.stt_model_id},
                "rewrite": {
                    "name": "openai",
                    "model_id": result.rewrite_model,
                    "status": result.rewrite_status.value,
                },
            },
            "timing": {
                "stt_latency_ms": result.stt_latency_ms,
                "rewrite_latency_ms": result.rewrite_latency_ms,
                "total_latency_ms": total_latency_ms,
            },
            "warnings": warnings,
        }

    app.include_router(account_routes.router)
    app.include_router(update_routes.router)

    return app


def main() -> None:
    settings = load_settings()
    setup_logging(settings)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
