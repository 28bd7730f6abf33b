"""
Authentication router: registration, login and credit balance actions on POST /auth.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import auth_scheme, resolve_auth_context
from routers.rate_limit import rate_limit
from routers.service_clients import get_auth_client
from services.auth_provider import AuthServiceError, SupabaseAuthClient
from services.credits import credit_idempotent, ensure_balance_record
from services.errors import InvalidAmount, InvalidInput, Unauthorized

router = APIRouter()
logger = logging.getLogger(__name__)


class AuthActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    credits: Optional[int] = None
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")


def _require_credentials(request: AuthActionRequest) -> tuple:
    email = (request.email or "").strip()
    if not email or not request.password:
        raise InvalidInput("Email and password required")
    return email, request.password


async def _register(request: AuthActionRequest, auth_client: SupabaseAuthClient) -> dict:
    email, password = _require_credentials(request)
    try:
        user = await auth_client.register(email, password)
    except AuthServiceError as exc:
        raise InvalidInput(exc.message) from exc
    logger.info("Registered user %s", user.id)
    return {
        "success": True,
        "message": "Registration successful! You can now log in.",
        "user": {"id": user.id, "email": user.email},
    }


async def _login(request: AuthActionRequest, auth_client: SupabaseAuthClient, db: AsyncSession) -> dict:
    email, password = _require_credentials(request)
    try:
        session = await auth_client.login(email, password)
    except AuthServiceError as exc:
        raise Unauthorized("Invalid email or password") from exc
    balance = await ensure_balance_record(session.user.id, db)
    return {
        "success": True,
        "user": {"id": session.user.id, "email": session.user.email},
        "session": {
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
        },
        "credits": balance,
    }


@router.post("")
async def auth_action(
    request: AuthActionRequest,
    _rate_limit: None = Depends(rate_limit("auth", limit=60, window_seconds=300)),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
    db: AsyncSession = Depends(get_db),
):
    """Dispatch on `action`: register | login | get_credits | add_credits."""
    action = request.action

    if action == "register":
        return await _register(request, auth_client)

    if action == "login":
        return await _login(request, auth_client, db)

    if action == "get_credits":
        auth = await resolve_auth_context(credentials, auth_client)
        return {"credits": await ensure_balance_record(auth.user_id, db)}

    if action == "add_credits":
        if not credentials:
            raise Unauthorized("No authorization header")
        if request.credits is None or request.credits <= 0:
            raise InvalidAmount("Invalid credit amount")
        auth = await resolve_auth_context(credentials, auth_client)
        result = await credit_idempotent(
            auth.user_id,
            db,
            amount=request.credits,
            transaction_id=request.transaction_id,
        )
        if not result["applied"]:
            return {
                "success": True,
                "message": "Transaction already processed",
                "credits": result["balance"],
            }
        return {"success": True, "credits": result["balance"]}

    raise InvalidInput("Invalid action")
