"""Per-request credential resolution.

``CredentialResolver.resolve`` is the single place that looks at the
authorization headers. Everything downstream works from the
``RequestUserContext`` it returns.
"""
import hmac
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from .config import Settings, trim_to_none
from .errors import HttpError
from .integrations.supabase_client import SupabaseAuthClient


logger = logging.getLogger(__name__)

ANONYMOUS_USER_ID = "anonymous"
OPEN_PROVIDER_KEYS_USER_ID = "byok-open"

ELEVENLABS_KEY_HEADER = "x-elevenlabs-api-key"
OPENAI_KEY_HEADER = "x-openai-api-key"


class AuthSource(str, Enum):
    PLATFORM_IDENTITY = "platform-identity"
    SHARED_SECRET = "shared-secret"
    OPEN_PROVIDER_KEYS = "open-provider-keys"
    LEGACY_HEADER = "legacy-header"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class ProviderKeyOverrides:
    elevenlabs_api_key: str
    openai_api_key: str


@dataclass(frozen=True)
class RequestUserContext:
    user_id: str
    is_authenticated: bool
    auth_source: AuthSource
    email: Optional[str] = None
    role: Optional[str] = None
    provider_keys: Optional[ProviderKeyOverrides] = None


ANONYMOUS_CONTEXT = RequestUserContext(
    user_id=ANONYMOUS_USER_ID,
    is_authenticated=False,
    auth_source=AuthSource.ANONYMOUS,
)


def safe_equals_secret(candidate: str, expected: str) -> bool:
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def _split_authorization(raw_authorization: Optional[str]):
    normalized = trim_to_none(raw_authorization)
    if normalized is None:
        return None, None
    scheme, _, rest = normalized.partition(" ")
    return scheme, re.sub(r"\s+", " ", rest).strip()


def try_extract_bearer_token(raw_authorization: Optional[str]) -> Optional[str]:
    scheme, token = _split_authorization(raw_authorization)
    if scheme is None or scheme.lower() != "bearer":
        return None
    return token or None


def extract_bearer_token(raw_authorization: Optional[str]) -> Optional[str]:
    """Like ``try_extract_bearer_token`` but a malformed header is a 401."""
    scheme, token = _split_authorization(raw_authorization)
    if scheme is None:
        return None
    if scheme.lower() != "bearer":
        raise HttpError(401, "Invalid Authorization header format; expected Bearer token")
    if not token:
        raise HttpError(401, "Missing Bearer token in Authorization header")
    return token


def extract_provider_overrides(headers: Mapping[str, str], max_chars: int) -> Optional[ProviderKeyOverrides]:
    elevenlabs_key = trim_to_none(headers.get(ELEVENLABS_KEY_HEADER))
    openai_key = trim_to_none(headers.get(OPENAI_KEY_HEADER))

    if not elevenlabs_key and not openai_key:
        return None
    if not elevenlabs_key or not openai_key:
        raise HttpError(
            400,
            f"Both {ELEVENLABS_KEY_HEADER} and {OPENAI_KEY_HEADER} headers are required "
            "when using bring-your-own-keys mode",
        )
    if len(elevenlabs_key) > max_chars or len(openai_key) > max_chars:
        raise HttpError(400, "Bring-your-own-keys header value is too long")

    return ProviderKeyOverrides(elevenlabs_api_key=elevenlabs_key, openai_api_key=openai_key)


def enforce_proxy_api_key(headers: Mapping[str, str], settings: Settings, allow_bearer: bool = False) -> bool:
    """Check the shared ingress secret. Returns True when one was presented."""
    expected = settings.proxy_shared_api_key
    if not expected:
        return False

    inbound = trim_to_none(headers.get("x-api-key"))
    if inbound and safe_equals_secret(inbound, expected):
        return True

    if allow_bearer:
        bearer = try_extract_bearer_token(headers.get("authorization"))
        if bearer and safe_equals_secret(bearer, expected):
            return True

    raise HttpError(401, "Missing or invalid proxy API key")


class CredentialResolver:
    def __init__(self, settings: Settings, identity: SupabaseAuthClient):
        self.settings = settings
        self.identity = identity

    def _is_shared_secret(self, token: str) -> bool:
        expected = self.settings.proxy_shared_api_key
        return bool(expected) and safe_equals_secret(token, expected)

    def _unauthenticated(
        self,
        legacy_user_id: Optional[str],
        overrides: Optional[ProviderKeyOverrides],
        presented_shared_secret: bool,
    ) -> RequestUserContext:
        if overrides is not None:
            if not self.settings.allow_unauthenticated_byok:
                raise HttpError(403, "Bring-your-own-keys requests require authentication in this environment")
            return RequestUserContext(
                user_id=OPEN_PROVIDER_KEYS_USER_ID,
                is_authenticated=False,
                auth_source=AuthSource.OPEN_PROVIDER_KEYS,
                provider_keys=overrides,
            )
        if presented_shared_secret:
            return RequestUserContext(
                user_id=legacy_user_id or ANONYMOUS_USER_ID,
                is_authenticated=False,
                auth_source=AuthSource.SHARED_SECRET,
            )
        if legacy_user_id:
            return RequestUserContext(
                user_id=legacy_user_id,
                is_authenticated=False,
                auth_source=AuthSource.LEGACY_HEADER,
            )
        return ANONYMOUS_CONTEXT

    async def resolve(self, headers: Mapping[str, str]) -> RequestUserContext:
        presented_shared_secret = enforce_proxy_api_key(headers, self.settings, allow_bearer=True)
        overrides = extract_provider_overrides(headers, self.settings.byok_header_max_chars)
        legacy_user_id = trim_to_none(headers.get("x-user-id"))
        mode = self.settings.user_auth_mode

        if mode == "off":
            return self._unauthenticated(legacy_user_id, overrides, presented_shared_secret)

        bearer_token = extract_bearer_token(headers.get("authorization"))
        if not bearer_token or self._is_shared_secret(bearer_token):
            if mode == "required":
                if overrides is not None and self.settings.allow_unauthenticated_byok:
                    return self._unauthenticated(None, overrides, presented_shared_secret)
                raise HttpError(401, "Missing Bearer access token")
            return self._unauthenticated(legacy_user_id, overrides, presented_shared_secret)

        verified = await self.identity.verify_access_token(bearer_token)
        logger.debug("bearer token verified", extra={"user_id": verified.user_id, "byok": overrides is not None})
        return RequestUserContext(
            user_id=verified.user_id,
            is_authenticated=True,
            auth_source=AuthSource.PLATFORM_IDENTITY,
            email=verified.email,
            role=verified.role,
            provider_keys=overrides,
        )
