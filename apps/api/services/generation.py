"""Generation orchestrator: provider steps with fallback, image fetch, then debit and usage log."""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services import credits
from services.errors import InsufficientCredit, InvalidInput, UpstreamGenerationFailed
from services.pipelines import PIPELINES, THEME_PREVIEW_PIPELINE, Pipeline, PipelineStep, StepContext
from services.providers import BaseImageProvider, ProviderError

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    STEP1_RUNNING = "step1_running"
    STEP2_RUNNING = "step2_running"
    FINALIZING = "finalizing"
    DEBITING = "debiting"
    DONE = "done"
    ABORTED = "aborted"


_TRANSITIONS: Dict[PipelineState, Tuple[PipelineState, ...]] = {
    PipelineState.IDLE: (PipelineState.STEP1_RUNNING,),
    PipelineState.STEP1_RUNNING: (PipelineState.STEP2_RUNNING, PipelineState.FINALIZING, PipelineState.ABORTED),
    PipelineState.STEP2_RUNNING: (PipelineState.FINALIZING,),
    # finalizing -> done only for previews, which are never charged
    PipelineState.FINALIZING: (PipelineState.DEBITING, PipelineState.DONE, PipelineState.ABORTED),
    PipelineState.DEBITING: (PipelineState.DONE,),
    PipelineState.DONE: (),
    PipelineState.ABORTED: (),
}


@dataclass
class PipelineRun:
    """Per-request progress through the generation state machine."""

    pipeline: str
    state: PipelineState = PipelineState.IDLE
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])

    def advance(self, target: PipelineState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {target.value}")
        logger.debug("pipeline=%s %s -> %s", self.pipeline, self.state.value, target.value)
        self.state = target
        self.history.append(target)


@dataclass
class GenerationResult:
    output_url: str
    image: bytes
    pipeline: str
    used_fallback: bool = False
    remaining_credits: Optional[int] = None
    credit_warning: Optional[str] = None
    states: List[PipelineState] = field(default_factory=list)


def _sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def to_data_uri(data: bytes) -> str:
    return f"data:{_sniff_mime(data)};base64,{base64.b64encode(data).decode('ascii')}"


def decode_base64_image(value: Optional[str], field_name: str = "image") -> bytes:
    """Decode a base64 (optionally data-URI) payload or raise InvalidInput."""
    raw = (value or "").strip()
    if raw.startswith("data:") and "," in raw:
        raw = raw.split(",", 1)[1]
    if not raw:
        raise InvalidInput(f"{field_name} is required")
    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInput(f"{field_name} is not valid base64") from exc
    if not decoded:
        raise InvalidInput(f"{field_name} is empty")
    return decoded


class GenerationOrchestrator:
    """Runs a named pipeline and settles credits once the final image is in hand."""

    def __init__(
        self,
        providers: Mapping[str, BaseImageProvider],
        http_client: httpx.AsyncClient,
        *,
        pipelines: Optional[Mapping[str, Pipeline]] = None,
        max_image_bytes: Optional[int] = None,
    ) -> None:
        self.providers = providers
        self.http_client = http_client
        self.pipelines = pipelines if pipelines is not None else PIPELINES
        self.max_image_bytes = max_image_bytes or settings.MAX_IMAGE_BYTES

    def resolve_pipeline(self, name: Optional[str]) -> Pipeline:
        pipeline_name = name or settings.DEFAULT_PIPELINE
        pipeline = self.pipelines.get(pipeline_name)
        if pipeline is None:
            raise InvalidInput(f"Unknown pipeline: {pipeline_name}")
        return pipeline

    async def _call_step(self, step: PipelineStep, ctx: StepContext) -> str:
        provider = self.providers.get(step.provider)
        if provider is None:
            raise ProviderError(step.provider, "provider is not registered")
        data = await provider.run(step.model, step.build_input(ctx))
        if not isinstance(data, dict):
            raise ProviderError(step.provider, f"{step.model} returned an unexpected response shape")
        try:
            url = step.extract_url(data)
        except (AttributeError, TypeError, KeyError) as exc:
            raise ProviderError(step.provider, f"{step.model} returned an unexpected response shape") from exc
        if not isinstance(url, str) or not url:
            raise ProviderError(step.provider, f"{step.model} returned no image")
        return url

    async def _run_steps(self, pipeline: Pipeline, ctx: StepContext, run: PipelineRun) -> Tuple[str, bool]:
        first, *rest = pipeline.steps
        run.advance(PipelineState.STEP1_RUNNING)
        logger.info("Step 1 (%s): %s via %s", first.name, first.model, first.provider)
        try:
            url = await self._call_step(first, ctx)
        except ProviderError as exc:
            run.advance(PipelineState.ABORTED)
            logger.error("Mandatory step %s failed: %s", first.name, exc)
            raise UpstreamGenerationFailed(first.name, exc.detail, provider_status=exc.status_code) from exc
        logger.info("Step 1 complete. url=%s", url)

        used_fallback = False
        for step in rest:
            run.advance(PipelineState.STEP2_RUNNING)
            step_ctx = StepContext(prompt=ctx.prompt, source_image_uri=ctx.source_image_uri, previous_url=url)
            try:
                url = await self._call_step(step, step_ctx)
                logger.info("Step 2 (%s) complete. url=%s", step.name, url)
            except ProviderError as exc:
                used_fallback = True
                logger.warning("Optional step %s failed, returning previous output: %s", step.name, exc)
        run.advance(PipelineState.FINALIZING)
        return url, used_fallback

    async def fetch_image(self, url: str, run: Optional[PipelineRun] = None) -> bytes:
        """Materialize the final image bytes; any failure is fatal for the request."""
        try:
            if url.startswith("data:"):
                return decode_base64_image(url, field_name="output")
            response = await self.http_client.get(url, timeout=settings.IMAGE_FETCH_TIMEOUT_SECONDS)
            if response.status_code >= 400:
                raise UpstreamGenerationFailed("fetch", f"could not download {url}", provider_status=response.status_code)
            content = response.content
            if not content:
                raise UpstreamGenerationFailed("fetch", "downloaded image is empty")
            if len(content) > self.max_image_bytes:
                raise UpstreamGenerationFailed("fetch", f"downloaded image exceeds {self.max_image_bytes} bytes")
            return content
        except (UpstreamGenerationFailed, InvalidInput, httpx.HTTPError) as exc:
            if run is not None:
                run.advance(PipelineState.ABORTED)
            if isinstance(exc, UpstreamGenerationFailed):
                raise
            raise UpstreamGenerationFailed("fetch", str(exc)) from exc

    async def run(
        self,
        *,
        user_id: str,
        db: AsyncSession,
        source_image: Optional[bytes],
        prompt: Optional[str],
        pipeline_name: Optional[str] = None,
        theme_name: Optional[str] = None,
    ) -> GenerationResult:
        """
        Generate an image for an already authenticated user with balance >= 1.

        One credit is debited and one usage row written only after the final
        image has been downloaded. A lost debit race still returns the image,
        flagged with `credit_warning`.
        """
        if not source_image or not (prompt or "").strip():
            raise InvalidInput("Image and prompt are required")
        pipeline = self.resolve_pipeline(pipeline_name)
        run = PipelineRun(pipeline=pipeline.name)

        ctx = StepContext(prompt=prompt.strip(), source_image_uri=to_data_uri(source_image))
        output_url, used_fallback = await self._run_steps(pipeline, ctx, run)
        image = await self.fetch_image(output_url, run)

        run.advance(PipelineState.DEBITING)
        result = GenerationResult(output_url=output_url, image=image, pipeline=pipeline.name, used_fallback=used_fallback)
        try:
            debited = await credits.debit_one(user_id, db)
            result.remaining_credits = debited["balance"]
        except InsufficientCredit as exc:
            result.remaining_credits = exc.balance
            result.credit_warning = "Image delivered but no credit could be charged: balance was already spent."
            logger.warning("Credit debit lost for user %s after delivery: %s", user_id, exc)
        except SQLAlchemyError as exc:
            await db.rollback()
            result.credit_warning = "Image delivered but the credit charge could not be recorded."
            logger.error("Credit update error for user %s: %s", user_id, exc)

        if result.credit_warning is None:
            await credits.log_usage(user_id, db, credits_used=1, theme_name=theme_name)

        run.advance(PipelineState.DONE)
        result.states = list(run.history)
        return result

    async def preview(self, prompt: Optional[str]) -> Tuple[str, bytes]:
        """Free, unauthenticated theme preview: returns (url, image bytes)."""
        if not (prompt or "").strip():
            raise InvalidInput("Prompt is required")
        pipeline = THEME_PREVIEW_PIPELINE
        run = PipelineRun(pipeline=pipeline.name)
        logger.info("Generating theme preview for prompt: %s...", prompt[:100])
        url, _ = await self._run_steps(pipeline, StepContext(prompt=prompt), run)
        image = await self.fetch_image(url, run)
        run.advance(PipelineState.DONE)
        return url, image
