"""Supabase identity provider client.

Two jobs: verifying bearer tokens issued by Supabase Auth (HS256 shared
secret, or the project's JWKS) and proxying the account lifecycle calls
(sign up, sign in, refresh, sign out).

Upstream account payloads come in several shapes (flat session with a
``user`` object, nested ``session``, or a bare user for sign-ups that still
need email confirmation). ``normalize_account_payload`` is the only place
that looks at them.
"""
import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx
import jwt
from jwt import PyJWKClient

from ..config import Settings, trim_to_none
from ..errors import HttpError
from .base_client import BaseUpstreamClient


logger = logging.getLogger(__name__)

DEFAULT_PROFILE_NAME = "PressToSpeak User"
ACCOUNT_TIERS = ("free", "pro")
JWKS_ALGORITHMS = ["RS256", "ES256"]
JWKS_REQUESTS_PER_MINUTE = 10


@dataclass
class VerifiedUser:
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None


@dataclass
class Account:
    user_id: str
    email: Optional[str]
    profile_name: str
    tier: str = "free"


@dataclass
class AccountSession:
    access_token: str
    refresh_token: str
    user_id: str
    email: Optional[str]
    profile_name: str
    tier: str = "free"
    access_token_expires_at: Optional[int] = None

    @property
    def account(self) -> Account:
        return Account(user_id=self.user_id, email=self.email, profile_name=self.profile_name, tier=self.tier)

    def needs_refresh(self, now: Optional[float] = None, leeway_seconds: int = 60) -> bool:
        """True once the access token is within ``leeway_seconds`` of expiring."""
        if self.access_token_expires_at is None:
            return False
        now = time.time() if now is None else now
        return self.access_token_expires_at - now <= leeway_seconds


@dataclass
class SignUpResult:
    account: Account
    session: Optional[AccountSession]

    @property
    def requires_email_confirmation(self) -> bool:
        return self.session is None


class JwksRateLimitError(jwt.PyJWKClientError):
    pass


class RateLimitedJWKClient(PyJWKClient):
    """PyJWKClient that refuses to hit the JWKS endpoint too often.

    Unknown ``kid`` values force a refetch, so a stream of forged tokens could
    otherwise turn into a stream of upstream requests.
    """

    def __init__(self, uri: str, requests_per_minute: int = JWKS_REQUESTS_PER_MINUTE, **kwargs):
        super().__init__(uri, **kwargs)
        self.requests_per_minute = requests_per_minute
        self._fetches: deque = deque()
        self._lock = threading.Lock()

    def fetch_data(self) -> Any:
        with self._lock:
            now = time.monotonic()
            while self._fetches and now - self._fetches[0] >= 60:
                self._fetches.popleft()
            if len(self._fetches) >= self.requests_per_minute:
                raise JwksRateLimitError("Too many JWKS requests; try again later")
            self._fetches.append(now)
        return super().fetch_data()


def _string(value: Any) -> Optional[str]:
    return trim_to_none(value) if isinstance(value, str) else None


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def derive_profile_name(user: Dict[str, Any], subject: str, email: Optional[str]) -> str:
    app_metadata = _dict(user.get("app_metadata"))
    user_metadata = _dict(user.get("user_metadata"))
    candidates = [
        app_metadata.get("profile_name"),
        app_metadata.get("name"),
        user_metadata.get("profile_name"),
        user_metadata.get("name"),
        user_metadata.get("full_name"),
    ]
    for candidate in candidates:
        name = _string(candidate)
        if name:
            return name

    local_part = (email or "").split("@")[0].strip()
    if local_part:
        return local_part[:1].upper() + local_part[1:]
    if subject:
        return f"User {subject[:8]}"
    return DEFAULT_PROFILE_NAME


def derive_tier(user: Dict[str, Any]) -> str:
    """Tier comes from app-controlled metadata only; users cannot edit it."""
    app_metadata = _dict(user.get("app_metadata"))
    for key in ("tier", "plan"):
        value = _string(app_metadata.get(key))
        if value and value.lower() in ACCOUNT_TIERS:
            return value.lower()
    return "free"


def normalize_account_payload(payload: Any, now: Optional[float] = None) -> Tuple[Account, Optional[AccountSession]]:
    if not isinstance(payload, dict):
        raise HttpError(502, "Identity provider returned an invalid account payload")

    session_source = payload.get("session") if isinstance(payload.get("session"), dict) else payload
    user = payload.get("user")
    if not isinstance(user, dict):
        user = session_source.get("user")
    if not isinstance(user, dict):
        user = payload if "id" in payload else {}

    subject = _string(user.get("id")) or _string(user.get("sub"))
    if not subject:
        raise HttpError(502, "Identity provider response did not include an account id")

    email = _string(user.get("email"))
    account = Account(
        user_id=subject,
        email=email,
        profile_name=derive_profile_name(user, subject, email),
        tier=derive_tier(user),
    )

    access_token = _string(session_source.get("access_token"))
    refresh_token = _string(session_source.get("refresh_token"))
    if not access_token and not refresh_token:
        return account, None
    if not access_token or not refresh_token:
        raise HttpError(502, "Identity provider returned an incomplete session")

    expires_at = session_source.get("expires_at")
    if not isinstance(expires_at, int) or isinstance(expires_at, bool):
        expires_in = session_source.get("expires_in")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            expires_at = int((time.time() if now is None else now) + expires_in)
        else:
            expires_at = None

    session = AccountSession(
        access_token=access_token,
        refresh_token=refresh_token,
        user_id=account.user_id,
        email=account.email,
        profile_name=account.profile_name,
        tier=account.tier,
        access_token_expires_at=expires_at,
    )
    return account, session


def extract_upstream_reason(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("error_description", "msg", "message", "error", "detail"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def map_upstream_error(operation: str, status_code: int, payload: Any) -> HttpError:
    reason = extract_upstream_reason(payload)
    log_context = {"operation": operation, "status": status_code, "reason": reason}

    if status_code == 429:
        return HttpError(429, "Too many account auth requests; try again later", log_context=log_context)
    if 400 <= status_code < 500:
        if operation == "login":
            return HttpError(401, "Invalid email or password", log_context=log_context)
        if operation == "refresh":
            return HttpError(401, "Refresh token is invalid or expired", log_context=log_context)
        if operation == "logout":
            return HttpError(401, "Access token is invalid or expired", log_context=log_context)
    return HttpError(status_code, f"Account {operation} failed", log_context=log_context)


class SupabaseAuthClient(BaseUpstreamClient):
    provider_name = "supabase"

    def __init__(
        self,
        base_url: Optional[str],
        publishable_key: Optional[str] = None,
        jwt_secret: Optional[str] = None,
        jwt_audience: str = "authenticated",
        jwt_issuer: Optional[str] = None,
        jwks_url: Optional[str] = None,
        jwks_timeout_ms: int = 2000,
        auth_timeout_ms: int = 5000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        jwk_client: Optional[PyJWKClient] = None,
    ):
        super().__init__(base_url, auth_timeout_ms, transport=transport)
        self.publishable_key = publishable_key
        self.jwt_secret = jwt_secret
        self.jwt_audience = jwt_audience
        self.jwt_issuer = jwt_issuer
        self.jwks_url = jwks_url
        self.jwks_timeout_ms = jwks_timeout_ms
        self._jwk_client = jwk_client

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "SupabaseAuthClient":
        return cls(
            base_url=settings.supabase_url,
            publishable_key=settings.supabase_publishable_key,
            jwt_secret=settings.supabase_jwt_secret,
            jwt_audience=settings.supabase_jwt_audience,
            jwt_issuer=settings.supabase_jwt_issuer,
            jwks_url=settings.supabase_jwks_url,
            jwks_timeout_ms=settings.supabase_jwks_timeout_ms,
            auth_timeout_ms=settings.supabase_auth_timeout_ms,
            transport=transport,
        )

    @property
    def jwk_client(self) -> PyJWKClient:
        if self._jwk_client is None:
            if not self.jwks_url:
                raise HttpError(500, "SUPABASE_JWKS_URL is required for asymmetric JWT verification")
            self._jwk_client = RateLimitedJWKClient(
                self.jwks_url,
                cache_keys=True,
                max_cached_keys=5,
                cache_jwk_set=True,
                lifespan=600,
                timeout=max(1, round(self.jwks_timeout_ms / 1000)),
            )
        return self._jwk_client

    # Token verification

    async def verify_access_token(self, access_token: str) -> VerifiedUser:
        token = (access_token or "").strip()
        if not token:
            raise HttpError(401, "Missing access token")

        try:
            if self.jwt_secret:
                claims = self._verify_with_secret(token)
            else:
                claims = await asyncio.to_thread(self._verify_with_jwks, token)
        except HttpError:
            raise
        except (JwksRateLimitError, jwt.PyJWKClientConnectionError) as error:
            raise HttpError(
                503,
                "Token verification service is unavailable",
                log_context={"reason": str(error)},
            )
        except jwt.ExpiredSignatureError:
            raise HttpError(401, "Access token has expired")
        except jwt.ImmatureSignatureError:
            raise HttpError(401, "Access token is not active yet")
        except jwt.InvalidSignatureError:
            raise HttpError(401, "Access token signature is not trusted")
        except jwt.DecodeError as error:
            raise HttpError(401, "Access token is malformed", log_context={"reason": str(error)})
        except (jwt.InvalidTokenError, jwt.PyJWKClientError) as error:
            raise HttpError(401, "Access token is invalid", log_context={"reason": str(error)})

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise HttpError(401, "Access token is missing subject (sub)")

        return VerifiedUser(
            user_id=subject,
            email=claims.get("email") if isinstance(claims.get("email"), str) else None,
            role=claims.get("role") if isinstance(claims.get("role"), str) else None,
        )

    def _decode_options(self) -> Dict[str, Any]:
        return {"audience": self.jwt_audience, "issuer": self.jwt_issuer}

    def _verify_with_secret(self, token: str) -> Dict[str, Any]:
        return jwt.decode(token, self.jwt_secret, algorithms=["HS256"], **self._decode_options())

    def _verify_with_jwks(self, token: str) -> Dict[str, Any]:
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
        if not kid:
            raise jwt.InvalidTokenError("Token is missing key id (kid) header")
        signing_key = self.jwk_client.get_signing_key(kid)
        return jwt.decode(token, signing_key.key, algorithms=JWKS_ALGORITHMS, **self._decode_options())

    # Account lifecycle

    async def sign_up(self, email: str, password: str, profile_name: Optional[str] = None) -> SignUpResult:
        body: Dict[str, Any] = {"email": email, "password": password}
        if profile_name:
            body["data"] = {"name": profile_name}
        payload = await self._auth_request("signup", "/auth/v1/signup", json=body)
        account, session = normalize_account_payload(payload)
        return SignUpResult(account=account, session=session)

    async def sign_in(self, email: str, password: str) -> AccountSession:
        payload = await self._auth_request(
            "login",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return self._require_session(payload)

    async def refresh(self, refresh_token: str) -> AccountSession:
        payload = await self._auth_request(
            "refresh",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        return self._require_session(payload)

    async def sign_out(self, access_token: str) -> None:
        await self._auth_request("logout", "/auth/v1/logout", bearer_token=access_token)

    def _require_session(self, payload: Any) -> AccountSession:
        _, session = normalize_account_payload(payload)
        if session is None:
            raise HttpError(502, "Identity provider response did not include a session")
        return session

    async def _auth_request(
        self,
        operation: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        bearer_token: Optional[str] = None,
    ) -> Any:
        endpoint = self.endpoint(path)
        headers = {"Accept": "application/json"}
        if self.publishable_key:
            headers["apikey"] = self.publishable_key
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"

        try:
            response = await self.http.post(endpoint, headers=headers, params=params, json=json or {})
        except httpx.TimeoutException:
            raise HttpError(504, "Account auth request timed out", details={"timeout_ms": self.timeout_ms})
        except httpx.HTTPError as error:
            raise HttpError(503, "Account auth service is unavailable", log_context={"cause": str(error)})

        payload = self.parse_payload(response)
        if not response.is_success:
            raise map_upstream_error(operation, response.status_code, payload)

        logger.info("account %s succeeded", operation, extra={"operation": operation})
        return payload
