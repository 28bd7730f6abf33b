from typing import Any, Dict, List, Tuple

import httpx
import pytest
from sqlalchemy.future import select

from models.usage_log import UsageLog
from services.credits import credit_idempotent, debit_one, get_balance
from services.errors import InvalidInput, UpstreamGenerationFailed
from services.generation import GenerationOrchestrator, PipelineState, decode_base64_image, to_data_uri
from services.pipelines import PIPELINES, Pipeline, PipelineStep, fal_images_url
from services.providers import BaseImageProvider, ProviderError


USER_ID = "orchestrator-user"
SOURCE_IMAGE = b"\xff\xd8\xff\xe0selfie-bytes"
SCENE_URL = "https://cdn.example/scene.jpg"
SWAP_URL = "https://cdn.example/swapped.jpg"
PREVIEW_URL = "https://cdn.example/preview.webp"
IMAGES = {
    SCENE_URL: b"scene-image",
    SWAP_URL: b"swapped-image",
    PREVIEW_URL: b"preview-image",
    "https://cdn.example/identity.jpg": b"identity-image",
}


class ScriptedProvider(BaseImageProvider):
    def __init__(self, name: str, responses: Dict[str, Any]):
        self.name = name
        self.responses = responses
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def run(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((model, payload))
        response = self.responses[model]
        if isinstance(response, Exception):
            raise response
        return response


def _image_client(missing: Tuple[str, ...] = ()) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in missing or url not in IMAGES:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=IMAGES[url])

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _fal(scene: Any = None, swap: Any = None, identity: Any = None) -> ScriptedProvider:
    return ScriptedProvider(
        "fal",
        {
            "fal-ai/flux/schnell": scene if scene is not None else {"images": [{"url": SCENE_URL}]},
            "fal-ai/face-swap": swap if swap is not None else {"image": {"url": SWAP_URL}},
            "fal-ai/flux-pulid": identity
            if identity is not None
            else {"images": [{"url": "https://cdn.example/identity.jpg"}]},
        },
    )


def _replicate() -> ScriptedProvider:
    return ScriptedProvider(
        "replicate",
        {"black-forest-labs/flux-schnell": {"status": "succeeded", "output": [PREVIEW_URL]}},
    )


async def _usage_rows(db) -> List[UsageLog]:
    return (await db.execute(select(UsageLog))).scalars().all()


@pytest.mark.asyncio
async def test_two_step_pipeline_swaps_face_and_debits_once(session_maker):
    fal = _fal()
    async with _image_client() as http_client, session_maker() as db:
        await credit_idempotent(USER_ID, db, amount=3)
        orchestrator = GenerationOrchestrator({"fal": fal}, http_client)

        result = await orchestrator.run(
            user_id=USER_ID,
            db=db,
            source_image=SOURCE_IMAGE,
            prompt="viking warrior on a ship",
            pipeline_name="fal_flux_faceswap",
            theme_name="Viking",
        )

        assert result.output_url == SWAP_URL
        assert result.image == b"swapped-image"
        assert result.used_fallback is False
        assert result.remaining_credits == 2
        assert result.credit_warning is None
        assert result.states == [
            PipelineState.IDLE,
            PipelineState.STEP1_RUNNING,
            PipelineState.STEP2_RUNNING,
            PipelineState.FINALIZING,
            PipelineState.DEBITING,
            PipelineState.DONE,
        ]

        scene_model, scene_payload = fal.calls[0]
        assert scene_model == "fal-ai/flux/schnell"
        assert scene_payload["prompt"].startswith("viking warrior on a ship, photorealistic")
        assert scene_payload["image_size"] == "portrait_4_3"
        swap_model, swap_payload = fal.calls[1]
        assert swap_model == "fal-ai/face-swap"
        assert swap_payload["base_image_url"] == SCENE_URL
        assert swap_payload["swap_image_url"] == to_data_uri(SOURCE_IMAGE)

        assert await get_balance(USER_ID, db) == 2
        rows = await _usage_rows(db)
        assert [(row.user_id, row.credits_used, row.theme_name) for row in rows] == [(USER_ID, 1, "Viking")]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "swap_outcome",
    [
        ProviderError("fal", "internal error", status_code=500),
        {"image": None},
        [],
        "not-an-object",
        {"image": 42},
    ],
)
async def test_optional_step_failure_falls_back_to_scene(session_maker, swap_outcome):
    fal = _fal(swap=swap_outcome)
    async with _image_client() as http_client, session_maker() as db:
        await credit_idempotent(USER_ID, db, amount=1)
        orchestrator = GenerationOrchestrator({"fal": fal}, http_client)

        result = await orchestrator.run(
            user_id=USER_ID,
            db=db,
            source_image=SOURCE_IMAGE,
            prompt="astronaut portrait",
            pipeline_name="fal_flux_faceswap",
            theme_name="Space",
        )

        assert result.output_url == SCENE_URL
        assert result.image == b"scene-image"
        assert result.used_fallback is True
        assert result.remaining_credits == 0
        assert PipelineState.ABORTED not in result.states
        assert result.states[-3:] == [PipelineState.FINALIZING, PipelineState.DEBITING, PipelineState.DONE]
        assert await get_balance(USER_ID, db) == 0
        assert len(await _usage_rows(db)) == 1


@pytest.mark.asyncio
async def test_mandatory_step_failure_aborts_without_debit(session_maker):
    fal = _fal(scene=ProviderError("fal", "model overloaded", status_code=503))
    async with _image_client() as http_client, session_maker() as db:
        await credit_idempotent(USER_ID, db, amount=1)
        orchestrator = GenerationOrchestrator({"fal": fal}, http_client)

        with pytest.raises(UpstreamGenerationFailed) as exc_info:
            await orchestrator.run(
                user_id=USER_ID,
                db=db,
                source_image=SOURCE_IMAGE,
                prompt="samurai",
                pipeline_name="fal_flux_faceswap",
            )

        assert exc_info.value.step == "scene"
        assert exc_info.value.provider_status == 503
        assert [model for model, _ in fal.calls] == ["fal-ai/flux/schnell"]
        assert await get_balance(USER_ID, db) == 1
        assert await _usage_rows(db) == []


@pytest.mark.asyncio
async def test_mandatory_step_without_image_aborts(session_maker):
    fal = _fal(scene={"images": []})
    async with _image_client() as http_client, session_maker() as db:
        await credit_idempotent(USER_ID, db, amount=1)
        orchestrator = GenerationOrchestrator({"fal": fal}, http_client)

        with pytest.raises(UpstreamGenerationFailed):
            await orchestrator.run(
                user_id=USER_ID, db=db, source_image=SOURCE_IMAGE, prompt="knight", pipeline_name="fal_flux_faceswap"
            )
        assert await get_balance(USER_ID, db) == 1


@pytest.mark.asyncio
async def test_image_fetch_failure_is_fatal_and_not_charged(session_maker):
    fal = _fal()
    async with _image_client(missing=(SWAP_URL,)) as http_client, session_maker() as db:
        await credit_idempotent(USER_ID, db, amount=1)
        orchestrator = GenerationOrchestrator({"fal": fal}, http_client)

        with pytest.raises(UpstreamGenerationFailed) as exc_info:
            await orchestrator.run(
                user_id=USER_ID, db=db, source_image=SOURCE_IMAGE, prompt="pirate", pipeline_name="fal_flux_faceswap"
            )

        assert exc_info.value.step == "fetch"
        assert exc_info.value.provider_status == 404
        assert await get_balance(USER_ID, db) == 1
        assert await _usage_rows(db) == []


@pytest.mark.asyncio
async def test_single_step_pipeline(session_maker):
    fal = _fal()
    async with _image_client() as http_client, session_maker() as db:
        await credit_idempotent(USER_ID, db, amount=1)
        orchestrator = GenerationOrchestrator({"fal": fal}, http_client)

        result = await orchestrator.run(
            user_id=USER_ID, db=db, source_image=SOURCE_IMAGE, prompt="elf", pipeline_name="fal_pulid"
        )

        assert result.output_url == "https://cdn.example/identity.jpg"
        assert PipelineState.STEP2_RUNNING not in result.states
        assert fal.calls[0][1]["reference_image_url"] == to_data_uri(SOURCE_IMAGE)
        assert result.remaining_credits == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "source_image, prompt, pipeline_name",
    [(None, "prompt", "fal_flux_faceswap"), (SOURCE_IMAGE, "  ", "fal_flux_faceswap"), (SOURCE_IMAGE, "x", "nope")],
)
async def test_invalid_input_fails_before_any_provider_call(session_maker, source_image, prompt, pipeline_name):
    fal = _fal()
    async with _image_client() as http_client, session_maker() as db:
        await credit_idempotent(USER_ID, db, amount=1)
        orchestrator = GenerationOrchestrator({"fal": fal}, http_client)

        with pytest.raises(InvalidInput):
            await orchestrator.run(
                user_id=USER_ID, db=db, source_image=source_image, prompt=prompt, pipeline_name=pipeline_name
            )
        assert fal.calls == []
        assert await get_balance(USER_ID, db) == 1


@pytest.mark.asyncio
async def test_lost_debit_race_still_returns_image_with_warning(session_maker):
    fal = _fal()
    async with _image_client() as http_client, session_maker() as db:
        await credit_idempotent(USER_ID, db, amount=1)

        class SpendingProvider(ScriptedProvider):
            async def run(self, model, payload):
                # a concurrent request spends the last credit mid-generation
                async with session_maker() as other_db:
                    await debit_one(USER_ID, other_db)
                return await super().run(model, payload)

        racing = SpendingProvider("fal", {"fal-ai/flux-pulid": {"images": [{"url": "https://cdn.example/identity.jpg"}]}})
        orchestrator = GenerationOrchestrator({"fal": racing}, http_client)

        result = await orchestrator.run(
            user_id=USER_ID, db=db, source_image=SOURCE_IMAGE, prompt="druid", pipeline_name="fal_pulid"
        )

        assert result.image == b"identity-image"
        assert result.remaining_credits == 0
        assert result.credit_warning
        assert result.states[-1] == PipelineState.DONE
        assert await get_balance(USER_ID, db) == 0
        assert await _usage_rows(db) == []


@pytest.mark.asyncio
async def test_preview_runs_without_credits():
    replicate = _replicate()
    async with _image_client() as http_client:
        orchestrator = GenerationOrchestrator({"replicate": replicate}, http_client)
        url, image = await orchestrator.preview("misty forest castle")

    assert url == PREVIEW_URL
    assert image == b"preview-image"
    model, payload = replicate.calls[0]
    assert model == "black-forest-labs/flux-schnell"
    assert payload == {
        "prompt": "misty forest castle",
        "num_outputs": 1,
        "aspect_ratio": "1:1",
        "output_format": "webp",
        "output_quality": 80,
    }


def test_pipeline_table_shapes():
    for pipeline in PIPELINES.values():
        assert pipeline.steps[0].mandatory
        assert all(not step.mandatory for step in pipeline.steps[1:])

    optional_step = PipelineStep("x", "fal", "m", lambda ctx: {}, fal_images_url, mandatory=False)
    with pytest.raises(ValueError):
        Pipeline("broken", (optional_step,))


def test_decode_base64_image_accepts_data_uri_and_rejects_garbage():
    assert decode_base64_image("data:image/jpeg;base64,aGVsbG8=") == b"hello"
    with pytest.raises(InvalidInput):
        decode_base64_image("not base64!!")
    with pytest.raises(InvalidInput):
        decode_base64_image("")
