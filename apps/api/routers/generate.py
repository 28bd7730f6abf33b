"""Paid image generation router."""

from __future__ import annotations

import base64
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from routers.service_clients import get_orchestrator
from services.credits import get_balance
from services.errors import InsufficientCredit, InvalidInput
from services.generation import GenerationOrchestrator, decode_base64_image

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image: Optional[str] = None
    prompt: Optional[str] = None
    theme_name: Optional[str] = Field(default=None, alias="themeName")
    pipeline: Optional[str] = None


@router.post("")
async def generate_image(
    request: GenerateRequest,
    _rate_limit: None = Depends(rate_limit("generate", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """Generate a themed portrait from the caller's photo for one credit."""
    balance = await get_balance(auth.user_id, db)
    if balance < 1:
        raise InsufficientCredit("Insufficient credits. Please purchase credits.", balance=balance)

    if not request.image or not (request.prompt or "").strip():
        raise InvalidInput("Image and prompt are required")
    source_image = decode_base64_image(request.image)
    orchestrator.resolve_pipeline(request.pipeline)

    result = await orchestrator.run(
        user_id=auth.user_id,
        db=db,
        source_image=source_image,
        prompt=request.prompt,
        pipeline_name=request.pipeline,
        theme_name=request.theme_name,
    )
    logger.info(
        "Generated image user=%s pipeline=%s fallback=%s remaining=%s",
        auth.user_id,
        result.pipeline,
        result.used_fallback,
        result.remaining_credits,
    )

    payload = {
        "success": True,
        "output": result.output_url,
        "image": base64.b64encode(result.image).decode("ascii"),
        "remainingCredits": result.remaining_credits,
        "pipeline": result.pipeline,
        "usedFallback": result.used_fallback,
    }
    if result.credit_warning:
        payload["creditWarning"] = result.credit_warning
    return payload
