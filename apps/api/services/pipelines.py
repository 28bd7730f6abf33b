"""Declarative generation pipelines: pipeline name -> ordered provider steps."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

SCENE_PROMPT_SUFFIX = "photorealistic, high quality, detailed, professional photography"


@dataclass(frozen=True)
class StepContext:
    prompt: str
    source_image_uri: Optional[str] = None
    previous_url: Optional[str] = None


@dataclass(frozen=True)
class PipelineStep:
    name: str
    provider: str
    model: str
    build_input: Callable[[StepContext], Dict[str, Any]]
    extract_url: Callable[[Dict[str, Any]], Optional[str]]
    mandatory: bool = True


@dataclass(frozen=True)
class Pipeline:
    name: str
    steps: Tuple[PipelineStep, ...]

    def __post_init__(self) -> None:
        if not 1 <= len(self.steps) <= 2:
            raise ValueError(f"Pipeline {self.name} must have one or two steps")
        if not self.steps[0].mandatory or any(step.mandatory for step in self.steps[1:]):
            raise ValueError(f"Pipeline {self.name} must have a mandatory first step and optional refinement")


def _scene_prompt(ctx: StepContext) -> str:
    return f"{ctx.prompt}, {SCENE_PROMPT_SUFFIX}"


def _first_url(value: Any) -> Optional[str]:
    """Pull the first URL out of the shapes providers use for image outputs."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, list):
        for item in value:
            url = _first_url(item)
            if url:
                return url
        return None
    if isinstance(value, dict):
        return _first_url(value.get("url"))
    return None


def fal_images_url(data: Dict[str, Any]) -> Optional[str]:
    return _first_url(data.get("images"))


def fal_single_image_url(data: Dict[str, Any]) -> Optional[str]:
    return _first_url(data.get("image")) or _first_url(data.get("output"))


def replicate_output_url(data: Dict[str, Any]) -> Optional[str]:
    return _first_url(data.get("output"))


FAL_FLUX_SCENE = PipelineStep(
    name="scene",
    provider="fal",
    model="fal-ai/flux/schnell",
    build_input=lambda ctx: {
        "prompt": _scene_prompt(ctx),
        "image_size": "portrait_4_3",
        "num_inference_steps": 4,
        "num_images": 1,
        "enable_safety_checker": False,
    },
    extract_url=fal_images_url,
)

FAL_FACE_SWAP = PipelineStep(
    name="face_swap",
    provider="fal",
    model="fal-ai/face-swap",
    build_input=lambda ctx: {
        "base_image_url": ctx.previous_url,
        "swap_image_url": ctx.source_image_uri,
    },
    extract_url=fal_single_image_url,
    mandatory=False,
)

FAL_PULID = PipelineStep(
    name="identity",
    provider="fal",
    model="fal-ai/flux-pulid",
    build_input=lambda ctx: {
        "prompt": _scene_prompt(ctx),
        "reference_image_url": ctx.source_image_uri,
        "image_size": "portrait_4_3",
        "num_inference_steps": 20,
    },
    extract_url=fal_images_url,
)

REPLICATE_FLUX_SCENE = PipelineStep(
    name="scene",
    provider="replicate",
    model="black-forest-labs/flux-schnell",
    build_input=lambda ctx: {
        "prompt": _scene_prompt(ctx),
        "num_outputs": 1,
        "aspect_ratio": "3:4",
        "output_format": "jpg",
    },
    extract_url=replicate_output_url,
)

REPLICATE_FACE_SWAP = PipelineStep(
    name="face_swap",
    provider="replicate",
    model="codeplugtech/face-swap",
    build_input=lambda ctx: {
        "input_image": ctx.previous_url,
        "swap_image": ctx.source_image_uri,
    },
    extract_url=replicate_output_url,
    mandatory=False,
)

REPLICATE_INSTANT_ID = PipelineStep(
    name="identity",
    provider="replicate",
    model="zsxkib/instant-id",
    build_input=lambda ctx: {
        "image": ctx.source_image_uri,
        "prompt": _scene_prompt(ctx),
        "num_outputs": 1,
    },
    extract_url=replicate_output_url,
)

REPLICATE_THEME_PREVIEW = PipelineStep(
    name="preview",
    provider="replicate",
    model="black-forest-labs/flux-schnell",
    build_input=lambda ctx: {
        "prompt": ctx.prompt,
        "num_outputs": 1,
        "aspect_ratio": "1:1",
        "output_format": "webp",
        "output_quality": 80,
    },
    extract_url=replicate_output_url,
)


PIPELINES: Dict[str, Pipeline] = {
    "fal_flux_faceswap": Pipeline("fal_flux_faceswap", (FAL_FLUX_SCENE, FAL_FACE_SWAP)),
    "fal_pulid": Pipeline("fal_pulid", (FAL_PULID,)),
    "replicate_flux_faceswap": Pipeline("replicate_flux_faceswap", (REPLICATE_FLUX_SCENE, REPLICATE_FACE_SWAP)),
    "replicate_instant_id": Pipeline("replicate_instant_id", (REPLICATE_INSTANT_ID,)),
}

THEME_PREVIEW_PIPELINE = Pipeline("theme_preview", (REPLICATE_THEME_PREVIEW,))
