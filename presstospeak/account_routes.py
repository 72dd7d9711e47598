"""Account routes proxied to the identity provider."""
import json
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, StringConstraints, ValidationError
from typing_extensions import Annotated

from .credentials import try_extract_bearer_token
from .dependencies import Services, enforce_auth_route_rate_limit, get_services
from .errors import HttpError
from .integrations.supabase_client import Account, AccountSession


router = APIRouter(prefix="/v1/auth", dependencies=[Depends(enforce_auth_route_rate_limit)])

Email = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
]
Password = Annotated[str, StringConstraints(min_length=8, max_length=256)]
ProfileName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=80)]
Token = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=4096)]


class SignUpRequest(BaseModel):
    email: Email
    password: Password
    profile_name: Optional[ProfileName] = None


class SignInRequest(BaseModel):
    email: Email
    password: Password


class RefreshRequest(BaseModel):
    refresh_token: Token


class SignOutRequest(BaseModel):
    access_token: Optional[Token] = None


ModelT = TypeVar("ModelT", bound=BaseModel)


async def parse_body(request: Request, model: Type[ModelT], operation: str) -> ModelT:
    raw = await request.body()
    try:
        body: Any = json.loads(raw) if raw.strip() else {}
    except ValueError:
        body = None

    try:
        return model.model_validate(body)
    except ValidationError as error:
        raise HttpError(
            400,
            f"Invalid auth {operation} payload",
            details={
                "issues": [
                    {"path": ".".join(str(part) for part in issue["loc"]), "message": issue["msg"]}
                    for issue in error.errors()
                ]
            },
        )


def account_json(account: Account) -> Dict[str, Any]:
    return {
        "user_id": account.user_id,
        "email": account.email,
        "profile_name": account.profile_name,
        "tier": account.tier,
    }


def session_json(session: AccountSession) -> Dict[str, Any]:
    return {
        "access_token": session.access_token,
        "refresh_token": session.refresh_token,
        "expires_at": session.access_token_expires_at,
    }


def session_response(request: Request, session: AccountSession) -> Dict[str, Any]:
    return {
        "request_id": request.state.request_id,
        "account": account_json(session.account),
        "session": session_json(session),
        "requires_email_confirmation": False,
    }


@router.post("/signup")
async def sign_up(request: Request, response: Response, services: Services = Depends(get_services)):
    payload = await parse_body(request, SignUpRequest, "signup")
    result = await services.identity.sign_up(payload.email, payload.password, payload.profile_name)

    response.status_code = 200 if result.requires_email_confirmation else 201
    return {
        "request_id": request.state.request_id,
        "account": account_json(result.account),
        "session": session_json(result.session) if result.session else None,
        "requires_email_confirmation": result.requires_email_confirmation,
    }


@router.post("/login")
async def sign_in(request: Request, services: Services = Depends(get_services)):
    payload = await parse_body(request, SignInRequest, "login")
    session = await services.identity.sign_in(payload.email, payload.password)
    return session_response(request, session)


@router.post("/refresh")
async def refresh(request: Request, services: Services = Depends(get_services)):
    payload = await parse_body(request, RefreshRequest, "refresh")
    session = await services.identity.refresh(payload.refresh_token)
    return session_response(request, session)


@router.post("/logout")
async def sign_out(request: Request, services: Services = Depends(get_services)):
    payload = await parse_body(request, SignOutRequest, "logout")
    access_token = payload.access_token or try_extract_bearer_token(request.headers.get("authorization"))
    if not access_token:
        raise HttpError(400, "Missing access token for logout")

    await services.identity.sign_out(access_token)
    return {"request_id": request.state.request_id, "success": True}
