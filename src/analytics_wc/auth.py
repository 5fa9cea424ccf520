"""
Bearer-token verification against the Supabase identity provider.
"""
import logging
from typing import Any, Optional, Protocol

import httpx

from .errors import AuthError, UpstreamUnavailable

logger = logging.getLogger(__name__)


class AuthVerifier(Protocol):
    async def verify(self, token: str) -> dict[str, Any]: ...


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the token from an `Authorization: Bearer <token>` header.

    Raises:
        AuthError: header missing or not a bearer credential
    """
    if not authorization:
        raise AuthError()
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthError()
    return token


class SupabaseAuthVerifier:
    """Asks Supabase Auth who owns a token. Any non-200 answer is a rejection."""

    def __init__(self, supabase_url: str, anon_key: str, timeout: float = 10.0):
        self.base_url = supabase_url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout

    async def verify(self, token: str) -> dict[str, Any]:
        """Return the authenticated user.

        Raises:
            AuthError: token rejected
            UpstreamUnavailable: identity provider unreachable or answering garbage
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/auth/v1/user",
                    headers={
                        "apikey": self.anon_key,
                        "Authorization": f"Bearer {token}",
                    },
                )
        except httpx.HTTPError as exc:
            logger.error(f"Auth provider request failed: {exc}")
            raise UpstreamUnavailable("Authentication service unavailable") from exc

        if response.status_code != 200:
            logger.warning(f"Rejected bearer token (status {response.status_code})")
            raise AuthError()

        try:
            user = response.json()
        except ValueError as exc:
            logger.error(f"Auth provider returned a non-JSON body: {exc}")
            raise UpstreamUnavailable("Authentication service unavailable") from exc
        if not isinstance(user, dict) or not user.get("id"):
            raise AuthError()
        return user
