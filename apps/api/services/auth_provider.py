"""Supabase Auth (GoTrue) client: registration, password login and token verification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from jose import JWTError, jwt

from config import settings

logger = logging.getLogger(__name__)


class AuthServiceError(RuntimeError):
    """Raised when the auth service rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class AuthSession:
    user: AuthUser
    access_token: str
    refresh_token: Optional[str] = None


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or response.reason_phrase or "Auth service error").strip()
    if isinstance(payload, dict):
        for key in ("msg", "message", "error_description", "error"):
            value = payload.get(key)
            if value:
                return str(value)
    return "Auth service error"


def _to_user(payload: Dict[str, Any]) -> AuthUser:
    user_id = str(payload.get("id") or "").strip()
    if not user_id:
        raise AuthServiceError("Auth service returned a user without id")
    return AuthUser(id=user_id, email=payload.get("email"))


class SupabaseAuthClient:
    """Thin async wrapper around the GoTrue REST API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: Optional[str] = None,
        service_role_key: Optional[str] = None,
        anon_key: Optional[str] = None,
        jwt_secret: Optional[str] = None,
    ) -> None:
        self.client = client
        self.base_url = (base_url if base_url is not None else settings.SUPABASE_URL).rstrip("/")
        self.service_role_key = service_role_key if service_role_key is not None else settings.SUPABASE_SERVICE_ROLE_KEY
        self.anon_key = anon_key if anon_key is not None else settings.SUPABASE_ANON_KEY
        self.jwt_secret = jwt_secret if jwt_secret is not None else settings.SUPABASE_JWT_SECRET

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise AuthServiceError("SUPABASE_URL is not configured")
        return f"{self.base_url}/auth/v1{path}"

    def _admin_headers(self) -> Dict[str, str]:
        return {"apikey": self.service_role_key, "Authorization": f"Bearer {self.service_role_key}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, self._url(path), **kwargs)
        except httpx.HTTPError as exc:
            raise AuthServiceError(f"Auth service unavailable: {exc}") from exc
        if response.status_code >= 400:
            raise AuthServiceError(_error_message(response), status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthServiceError("Auth service returned an invalid response", status_code=502) from exc
        if not isinstance(payload, dict):
            raise AuthServiceError("Auth service returned an invalid response", status_code=502)
        return payload

    async def register(self, email: str, password: str) -> AuthUser:
        """Create a confirmed user through the admin API."""
        payload = await self._request(
            "POST",
            "/admin/users",
            headers=self._admin_headers(),
            json={"email": email, "password": password, "email_confirm": True},
        )
        return _to_user(payload.get("user") or payload)

    async def login(self, email: str, password: str) -> AuthSession:
        payload = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            headers={"apikey": self.anon_key},
            json={"email": email, "password": password},
        )
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthServiceError("Auth service returned no session", status_code=401)
        return AuthSession(
            user=_to_user(payload.get("user") or {}),
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
        )

    def _decode_locally(self, token: str) -> AuthUser:
        try:
            claims = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[settings.JWT_ALGORITHM],
                audience=settings.JWT_AUDIENCE,
            )
        except JWTError as exc:
            raise AuthServiceError("Invalid or expired token", status_code=401) from exc
        subject = str(claims.get("sub") or "").strip()
        if not subject:
            raise AuthServiceError("Token missing subject", status_code=401)
        return AuthUser(id=subject, email=claims.get("email"))

    async def verify_token(self, token: str) -> AuthUser:
        """Resolve a bearer access token to its user, locally when the JWT secret is known."""
        if not token:
            raise AuthServiceError("Missing token", status_code=401)
        if self.jwt_secret:
            return self._decode_locally(token)
        payload = await self._request(
            "GET",
            "/user",
            headers={"apikey": self.anon_key, "Authorization": f"Bearer {token}"},
        )
        return _to_user(payload)

    async def list_users(self, per_page: int = 1000) -> List[AuthUser]:
        """All users via the paginated admin listing."""
        users: List[AuthUser] = []
        page = 1
        while True:
            payload = await self._request(
                "GET",
                "/admin/users",
                params={"page": page, "per_page": per_page},
                headers=self._admin_headers(),
            )
            batch = payload.get("users") or []
            users.extend(_to_user(item) for item in batch)
            if len(batch) < per_page:
                return users
            page += 1

    async def find_user_by_email(self, email: str) -> Optional[AuthUser]:
        target = email.strip().lower()
        for user in await self.list_users():
            if (user.email or "").lower() == target:
                return user
        return None
