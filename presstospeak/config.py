"""Environment configuration for the voice-to-text proxy.

Values come from the process environment after ``.env`` has been loaded.
``load_settings`` validates everything up front so a misconfigured deployment
fails at startup instead of on the first request.
"""
import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from .parsing import is_dotted_numeric_version


SERVICE_NAME = "press-to-speak-api"

AUTH_MODES = ("off", "optional", "required")
APP_ENVIRONMENTS = ("development", "test", "production")
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


class ConfigError(Exception):
    """Raised when the environment cannot produce a usable configuration."""

    def __init__(self, issues: List[str]):
        self.issues = issues
        super().__init__("Invalid API environment configuration: " + "; ".join(issues))


@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    host: str = "0.0.0.0"
    port: int = 8787

    log_level: str = "info"
    log_pretty: bool = False
    log_pipeline_text: bool = False
    log_provider_payloads: bool = False
    log_text_max_chars: int = 1200

    elevenlabs_api_key: str = ""
    elevenlabs_api_base_url: str = "https://api.elevenlabs.io"
    elevenlabs_model_id: str = "scribe_v1"
    transcription_request_timeout_ms: int = 20_000
    transcription_max_attempts: int = 3
    transcription_retry_base_delay_ms: int = 250
    transcription_max_file_bytes: int = 25 * 1024 * 1024

    openai_api_key: str = ""
    openai_api_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-5-mini"
    openai_rewrite_timeout_ms: int = 800

    proxy_shared_api_key: Optional[str] = None
    user_auth_mode: str = "required"
    allow_unauthenticated_byok: bool = False
    byok_header_max_chars: int = 512
    unauth_rate_limit_window_ms: int = 60_000
    unauth_rate_limit_max_requests: int = 20
    auth_route_rate_limit_window_ms: int = 60_000
    auth_route_rate_limit_max_requests: int = 20

    supabase_url: Optional[str] = None
    supabase_publishable_key: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None
    supabase_jwt_audience: str = "authenticated"
    supabase_jwt_issuer: Optional[str] = None
    supabase_jwks_url: Optional[str] = None
    supabase_jwks_timeout_ms: int = 2000
    supabase_auth_timeout_ms: int = 5000

    mac_app_latest_version: str = "0.1.0"
    mac_app_minimum_supported_version: str = "0.1.0"
    mac_app_download_url: Optional[str] = None
    mac_app_release_notes_url: Optional[str] = None

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"


def trim_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def is_secure_url(url: str) -> bool:
    """HTTPS anywhere, plain HTTP only towards a loopback host."""
    parsed = urlparse(url)
    scheme = (parsed.scheme or "").lower()
    if scheme == "https":
        return bool(parsed.hostname)
    if scheme == "http":
        return (parsed.hostname or "").lower() in LOOPBACK_HOSTS
    return False


class _EnvReader:
    """Collects every problem instead of stopping at the first one."""

    def __init__(self, environ: Mapping[str, str]):
        self.environ = environ
        self.issues: List[str] = []

    def string(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = trim_to_none(self.environ.get(name))
        return value if value is not None else default

    def required(self, name: str) -> str:
        value = self.string(name)
        if value is None:
            self.issues.append(f"{name}: {name} is required")
            return ""
        return value

    def boolean(self, name: str, default: bool) -> bool:
        raw = self.environ.get(name)
        if raw is None:
            return default
        normalized = raw.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
        self.issues.append(f"{name}: {name} must be true/false/1/0/yes/no/on/off")
        return default

    def integer(self, name: str, default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
        raw = self.string(name)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            self.issues.append(f"{name}: expected an integer, got {raw!r}")
            return default
        if value < minimum or (maximum is not None and value > maximum):
            bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
            self.issues.append(f"{name}: must be {bounds}")
            return default
        return value

    def choice(self, name: str, default: str, choices: tuple) -> str:
        value = (self.string(name) or default).lower()
        if value not in choices:
            self.issues.append(f"{name}: must be one of {', '.join(choices)}")
            return default
        return value

    def version(self, name: str, default: str) -> str:
        value = self.string(name, default)
        if not is_dotted_numeric_version(value):
            self.issues.append(f"{name}: must use dotted numeric format (for example 1.2.3)")
            return default
        return value

    def url(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.string(name, default)
        if value is None:
            return None
        if not is_secure_url(value):
            self.issues.append(f"{name}: must be an https URL (http is allowed only for loopback hosts)")
        return value.rstrip("/")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build validated settings from ``environ`` (defaults to ``os.environ``)."""
    if environ is None:
        env_file = os.getenv("API_ENV_FILE")
        load_dotenv(os.path.abspath(env_file) if env_file else os.path.join(os.getcwd(), ".env"))
        environ = os.environ

    env = _EnvReader(environ)
    app_env = env.choice("APP_ENV", "development", APP_ENVIRONMENTS)
    is_dev = app_env == "development"

    values: Dict[str, object] = dict(
        app_env=app_env,
        host=env.string("HOST", "0.0.0.0"),
        port=env.integer("PORT", 8787, maximum=65535),
        log_level=env.string("LOG_LEVEL", "info").lower(),
        log_pretty=env.boolean("LOG_PRETTY", is_dev),
        log_pipeline_text=env.boolean("LOG_PIPELINE_TEXT", is_dev),
        log_provider_payloads=env.boolean("LOG_PROVIDER_PAYLOADS", is_dev),
        log_text_max_chars=env.integer("LOG_TEXT_MAX_CHARS", 1200),
        elevenlabs_api_key=env.required("ELEVENLABS_API_KEY"),
        elevenlabs_api_base_url=env.url("ELEVENLABS_API_BASE_URL", "https://api.elevenlabs.io"),
        elevenlabs_model_id=env.string("ELEVENLABS_MODEL_ID", "scribe_v1"),
        transcription_request_timeout_ms=env.integer("TRANSCRIPTION_REQUEST_TIMEOUT_MS", 20_000),
        transcription_max_attempts=env.integer("TRANSCRIPTION_MAX_ATTEMPTS", 3, maximum=3),
        transcription_retry_base_delay_ms=env.integer("TRANSCRIPTION_RETRY_BASE_DELAY_MS", 250, minimum=0),
        transcription_max_file_bytes=env.integer("TRANSCRIPTION_MAX_FILE_BYTES", 25 * 1024 * 1024),
        openai_api_key=env.required("OPENAI_API_KEY"),
        openai_api_base_url=env.url("OPENAI_API_BASE_URL", "https://api.openai.com/v1"),
        openai_model=env.string("OPENAI_MODEL", "gpt-5-mini"),
        openai_rewrite_timeout_ms=env.integer("OPENAI_REWRITE_TIMEOUT_MS", 800),
        proxy_shared_api_key=env.string("PROXY_SHARED_API_KEY"),
        user_auth_mode=env.choice("USER_AUTH_MODE", "required", AUTH_MODES),
        allow_unauthenticated_byok=env.boolean("ALLOW_UNAUTHENTICATED_BYOK", False),
        byok_header_max_chars=env.integer("BYOK_HEADER_MAX_CHARS", 512),
        unauth_rate_limit_window_ms=env.integer("UNAUTH_RATE_LIMIT_WINDOW_MS", 60_000),
        unauth_rate_limit_max_requests=env.integer("UNAUTH_RATE_LIMIT_MAX_REQUESTS", 20),
        auth_route_rate_limit_window_ms=env.integer("AUTH_ROUTE_RATE_LIMIT_WINDOW_MS", 60_000),
        auth_route_rate_limit_max_requests=env.integer("AUTH_ROUTE_RATE_LIMIT_MAX_REQUESTS", 20),
        supabase_publishable_key=env.string("SUPABASE_PUBLISHABLE_KEY"),
        supabase_jwt_secret=env.string("SUPABASE_JWT_SECRET"),
        supabase_jwt_audience=env.string("SUPABASE_JWT_AUDIENCE", "authenticated"),
        supabase_jwks_timeout_ms=env.integer("SUPABASE_JWKS_TIMEOUT_MS", 2000),
        supabase_auth_timeout_ms=env.integer("SUPABASE_AUTH_TIMEOUT_MS", 5000),
        mac_app_latest_version=env.version("MAC_APP_LATEST_VERSION", "0.1.0"),
        mac_app_minimum_supported_version=env.version("MAC_APP_MINIMUM_SUPPORTED_VERSION", "0.1.0"),
        mac_app_download_url=env.string("MAC_APP_DOWNLOAD_URL"),
        mac_app_release_notes_url=env.string("MAC_APP_RELEASE_NOTES_URL"),
    )

    supabase_url = env.url("SUPABASE_URL")
    values["supabase_url"] = supabase_url
    values["supabase_jwt_issuer"] = env.string("SUPABASE_JWT_ISSUER") or (
        f"{supabase_url}/auth/v1" if supabase_url else None
    )
    values["supabase_jwks_url"] = env.url("SUPABASE_JWKS_URL") or (
        f"{supabase_url}/auth/v1/.well-known/jwks.json" if supabase_url else None
    )

    if values["user_auth_mode"] != "off":
        jwt_secret = values["supabase_jwt_secret"]
        if jwt_secret and str(jwt_secret).startswith("sb_secret_"):
            env.issues.append(
                "SUPABASE_JWT_SECRET: expects the legacy JWT signing secret, not a secret API key "
                "(sb_secret_*). Remove SUPABASE_JWT_SECRET to use JWKS verification."
            )
        if not jwt_secret and not values["supabase_jwks_url"]:
            env.issues.append(
                "SUPABASE_URL: SUPABASE_URL (or SUPABASE_JWKS_URL) is required when USER_AUTH_MODE is "
                "optional/required and SUPABASE_JWT_SECRET is not set"
            )
        if not values["supabase_jwt_issuer"]:
            env.issues.append(
                "SUPABASE_JWT_ISSUER: required when USER_AUTH_MODE is optional/required and SUPABASE_URL is not set"
            )

    if env.issues:
        raise ConfigError(env.issues)

    return Settings(**values)
