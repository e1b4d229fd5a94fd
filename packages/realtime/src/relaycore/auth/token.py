"""Bearer credential handling — expiry checks without verification.

Learn: The hub verifies signatures; the client only needs the ``exp``
claim to avoid presenting a token that is already dead. PyJWT decodes
with ``verify_signature=False`` so no secret is needed here.

A provider may return:
- None / "" → no credential (AuthenticationError)
- a raw token string → decoded for ``exp``
- an AuthCredential → used as-is
Async providers are awaited.
"""

import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Union

import jwt

from relaycore.errors import AuthenticationError


@dataclass(frozen=True)
class AuthCredential:
    """An opaque bearer token and when it stops being valid."""

    token: str
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None, leeway_seconds: int = 0) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now + timedelta(seconds=leeway_seconds)

    @classmethod
    def from_token(cls, token: str) -> "AuthCredential":
        return cls(token=token, expires_at=decode_expiry(token))


ProviderResult = Union[str, AuthCredential, None]
TokenProvider = Callable[[], Union[ProviderResult, Awaitable[ProviderResult]]]


def decode_expiry(token: str) -> Optional[datetime]:
    """Read the ``exp`` claim of a JWT without verifying its signature.

    Returns None when the token carries no ``exp``.
    Raises AuthenticationError if the token is not a decodable JWT.
    """
    try:
        payload = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
        )
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {e}")

    exp = payload.get("exp")
    if exp is None:
        return None
    try:
        return datetime.fromtimestamp(float(exp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise AuthenticationError("Invalid token: malformed exp claim")


async def resolve_credential(
    provider: Optional[TokenProvider],
    leeway_seconds: int = 0,
) -> AuthCredential:
    """Ask the provider for a credential and refuse missing/expired ones."""
    if provider is None:
        raise AuthenticationError("No token provider configured")

    result = provider()
    if inspect.isawaitable(result):
        result = await result

    if not result:
        raise AuthenticationError("No authentication token available")

    credential = result if isinstance(result, AuthCredential) else AuthCredential.from_token(result)

    if credential.is_expired(leeway_seconds=leeway_seconds):
        raise AuthenticationError(
            f"Token expired at {credential.expires_at.isoformat()}"
        )
    return credential


def static_token_provider(token: str) -> TokenProvider:
    """Provider that always returns the same token (CLI, tests)."""
    return lambda: token
