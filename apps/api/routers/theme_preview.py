"""Free theme preview router."""

import base64
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from routers.rate_limit import rate_limit
from routers.service_clients import get_orchestrator
from services.errors import UpstreamGenerationFailed
from services.generation import GenerationOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


class ThemePreviewRequest(BaseModel):
    prompt: Optional[str] = None


@router.post("")
async def theme_preview(
    request: ThemePreviewRequest,
    _rate_limit: None = Depends(rate_limit("theme_preview", limit=60, window_seconds=3600)),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Render a quick square preview for a theme prompt; no auth and no credit cost."""
    try:
        url, image = await orchestrator.preview(request.prompt)
    except UpstreamGenerationFailed as exc:
        logger.error("Theme preview generation error: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Preview generation failed", "details": exc.message},
        )
    logger.info("Theme preview generated: %s", url)
    return {
        "success": True,
        "image": base64.b64encode(image).decode("ascii"),
        "url": url,
    }
