"""FastAPI dependencies shared by the route modules."""
from dataclasses import dataclass
from typing import Dict

from fastapi import Depends, Request

from .config import Settings, trim_to_none
from .credentials import CredentialResolver, RequestUserContext, enforce_proxy_api_key
from .integrations.supabase_client import SupabaseAuthClient
from .pipeline import VoiceToTextPipeline
from .rate_limit import RateLimiter


TEST_RATE_LIMIT_KEY_HEADER = "x-test-rate-limit-key"


@dataclass
class Services:
    settings: Settings
    identity: SupabaseAuthClient
    resolver: CredentialResolver
    pipeline: VoiceToTextPipeline
    unauthenticated_limiter: RateLimiter
    auth_route_limiter: RateLimiter


def get_services(request: Request) -> Services:
    return request.app.state.services


def add_response_headers(request: Request, headers: Dict[str, str]) -> None:
    """Headers the request-context middleware copies onto the final response."""
    request.state.response_headers.update(headers)


def client_key(request: Request, settings: Settings, allow_test_key: bool = False) -> str:
    if allow_test_key and settings.is_test:
        test_key = trim_to_none(request.headers.get(TEST_RATE_LIMIT_KEY_HEADER))
        if test_key:
            return f"test:{test_key}"
    return request.client.host if request.client else "unknown"


async def authenticate_request(request: Request, services: Services = Depends(get_services)) -> RequestUserContext:
    user = await services.resolver.resolve(request.headers)
    request.state.user = user
    return user


async def enforce_unauthenticated_rate_limit(
    request: Request,
    user: RequestUserContext = Depends(authenticate_request),
    services: Services = Depends(get_services),
) -> RequestUserContext:
    if user.is_authenticated:
        return user
    decision = services.unauthenticated_limiter.enforce(
        client_key(request, services.settings),
        "Rate limit exceeded for unauthenticated requests",
    )
    add_response_headers(request, decision.headers())
    return user


async def require_proxy_api_key(request: Request, services: Services = Depends(get_services)) -> None:
    enforce_proxy_api_key(request.headers, services.settings)


async def enforce_auth_route_rate_limit(
    request: Request,
    services: Services = Depends(get_services),
    _: None = Depends(require_proxy_api_key),
) -> None:
    decision = services.auth_route_limiter.enforce(
        client_key(request, services.settings, allow_test_key=True),
        "Rate limit exceeded for auth requests",
    )
    add_response_headers(request, decision.headers())
