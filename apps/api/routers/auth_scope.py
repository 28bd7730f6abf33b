"""Authentication dependencies resolving bearer tokens through the auth service."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from routers.service_clients import get_auth_client
from services.auth_provider import AuthServiceError, SupabaseAuthClient
from services.errors import Unauthorized


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


async def resolve_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials],
    auth_client: SupabaseAuthClient,
    *,
    missing_message: str = "No authorization header",
    invalid_message: str = "Invalid token",
) -> AuthContext:
    """Verify the bearer token; missing and invalid tokens are both 401."""
    if not credentials or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise Unauthorized(missing_message)

    try:
        user = await auth_client.verify_token(credentials.credentials)
    except AuthServiceError as exc:
        raise Unauthorized(invalid_message) from exc

    return AuthContext(user_id=user.id, email=user.email)


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
) -> AuthContext:
    """Resolve the authenticated user from the Authorization header."""
    return await resolve_auth_context(credentials, auth_client)
