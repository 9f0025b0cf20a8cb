import asyncio
import time
import uuid
from io import BytesIO
from types import SimpleNamespace

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from kombu.exceptions import OperationalError
from PIL import Image

from charhub.models import Character, CuratedImage, CurationStatus
from charhub.schemas.batch import BatchErrorType
from charhub.schemas.character import CharacterDraft, ImageAnalysis
from charhub.services.ai_service import CharacterAnalysisService, extract_json, normalize_image
from charhub.services.batch import BatchErrorHandler
from charhub.services.character_pipeline import CharacterGenerationPipeline, download_image
from charhub.tasks import avatar_tasks
from charhub.tasks.avatar_tasks import crop_avatar

pytestmark = pytest.mark.anyio

BOT_ID = "00000000-0000-0000-0000-000000000001"


def png_bytes(size=(64, 32), mode="RGBA") -> bytes:
    buf = BytesIO()
    Image.new(mode, size, (200, 100, 50, 255) if mode == "RGBA" else (200, 100, 50)).save(buf, format="PNG")
    return buf.getvalue()


class FakeAnalysisService:
    def __init__(self, draft=None, error=None):
        self.draft = draft or CharacterDraft(first_name="Aria", last_name="Vale", age=24, gender="Female",
                                             species="Elf", style="semi realistic", personality="Calm.")
        self.error = error
        self.analyzed = []

    async def analyze_image(self, img_bytes):
        self.analyzed.append(img_bytes)
        return ImageAnalysis(gender="female", species="elf", suggested_names=["Aria"])

    async def compile_character(self, analysis, *, tags=None, description=None):
        if self.error:
            raise self.error
        self.compiled_with = (tags, description)
        return self.draft


class FakeStorage:
    def __init__(self):
        self.saved = []

    def save_bytes(self, data, *, content_type=None, key_hint=None):
        self.saved.append((data, content_type, key_hint))
        return f"/static/{len(self.saved)}-{key_hint}"


async def add_curated(session_factory, **kwargs) -> str:
    row = CuratedImage(
        id=uuid.uuid4(),
        source_url="https://images.example.com/a.png",
        description="a quiet archer",
        status=CurationStatus.PROCESSING.value,
        age_rating="TWELVE",
        quality_score=4.2,
        tags=["fantasy", "anime"],
        content_tags=["violence"],
        **kwargs,
    )
    async with session_factory() as session:
        session.add(row)
        await session.commit()
    return str(row.id)


def make_pipeline(session_factory, *, analysis=None, enqueuer=None, downloader=None):
    enqueued = []

    def record(character_id):
        enqueued.append(character_id)
        return "job-1"

    async def fake_download(url):
        return png_bytes()

    pipeline = CharacterGenerationPipeline(
        session_factory,
        analysis or FakeAnalysisService(),
        FakeStorage(),
        downloader=downloader or fake_download,
        avatar_enqueuer=enqueuer or record,
        creator_id=BOT_ID,
    )
    return pipeline, enqueued


async def test_generate_creates_character_and_assigns_candidate(session_factory):
    image_id = await add_curated(session_factory)
    analysis = FakeAnalysisService()
    pipeline, enqueued = make_pipeline(session_factory, analysis=analysis)

    character_id = await pipeline.generate(image_id)

    async with session_factory() as session:
        character = await session.get(Character, uuid.UUID(character_id))
        curated = await session.get(CuratedImage, uuid.UUID(image_id))

    assert character.first_name == "Aria"
    assert (character.gender, character.species, character.style) == ("female", "elf", "SEMI_REALISTIC")
    assert character.age_rating == "TWELVE"
    assert character.content_tags == ["violence"]
    assert character.visibility == "PUBLIC"
    assert str(character.creator_id) == BOT_ID
    assert character.reference_image_url == "/static/1-ref.png"
    assert curated.generated_char_id == uuid.UUID(character_id)
    assert curated.status == CurationStatus.COMPLETED.value
    assert analysis.compiled_with == (["fantasy", "anime"], "a quiet archer")
    assert enqueued == [character_id]


async def test_already_assigned_candidate_is_reused(session_factory):
    existing = uuid.uuid4()
    image_id = await add_curated(session_factory, generated_char_id=existing)
    analysis = FakeAnalysisService()
    pipeline, enqueued = make_pipeline(session_factory, analysis=analysis)

    assert await pipeline.generate(image_id) == str(existing)
    assert analysis.analyzed == []
    assert enqueued == []


async def test_avatar_enqueue_failure_is_not_fatal(session_factory):
    image_id = await add_curated(session_factory)

    def broken(character_id):
        raise RuntimeError("broker unavailable")

    pipeline, _ = make_pipeline(session_factory, enqueuer=broken)

    assert await pipeline.generate(image_id)


async def test_broker_retries_do_not_block_event_loop(session_factory, monkeypatch):
    attempts = []

    def broker_down(*args, **kwargs):
        attempts.append(args)
        raise OperationalError("broker connection refused")

    monkeypatch.setattr(avatar_tasks, "generate_avatar", SimpleNamespace(apply_async=broker_down))
    image_id = await add_curated(session_factory)
    pipeline, _ = make_pipeline(session_factory, enqueuer=avatar_tasks.enqueue_avatar_generation)

    gaps = []
    running = True

    async def ticker():
        last = time.monotonic()
        while running:
            await asyncio.sleep(0.01)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    tick_task = asyncio.create_task(ticker())
    try:
        character_id = await pipeline.generate(image_id)
    finally:
        running = False
        await tick_task

    assert character_id
    assert len(attempts) == 3
    # 브로커 재시도 중에도 루프가 계속 돈다
    assert gaps and max(gaps) < 0.5


async def test_unknown_candidate_is_a_validation_error(session_factory):
    pipeline, _ = make_pipeline(session_factory)
    with pytest.raises(ValueError) as exc:
        await pipeline.generate(str(uuid.uuid4()))
    assert BatchErrorHandler.classify_error(exc.value) == BatchErrorType.VALIDATION


async def test_compile_failure_leaves_candidate_unassigned(session_factory):
    image_id = await add_curated(session_factory)
    pipeline, enqueued = make_pipeline(
        session_factory, analysis=FakeAnalysisService(error=ValueError("invalid character data"))
    )

    with pytest.raises(ValueError):
        await pipeline.generate(image_id)

    async with session_factory() as session:
        curated = await session.get(CuratedImage, uuid.UUID(image_id))
    assert curated.generated_char_id is None
    assert enqueued == []


@pytest.fixture
async def image_server(anyio_backend):
    async def ok(request):
        return web.Response(body=b"image-bytes", content_type="image/png")

    async def missing(request):
        return web.Response(status=404)

    async def throttled(request):
        return web.Response(status=429)

    async def broken(request):
        return web.Response(status=503)

    app = web.Application()
    app.router.add_get("/ok.png", ok)
    app.router.add_get("/missing.png", missing)
    app.router.add_get("/throttled.png", throttled)
    app.router.add_get("/broken.png", broken)
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


async def test_download_maps_http_status_to_error_types(image_server):
    assert await download_image(str(image_server.make_url("/ok.png"))) == b"image-bytes"

    expected = {
        "/missing.png": BatchErrorType.VALIDATION,
        "/throttled.png": BatchErrorType.API,
        "/broken.png": BatchErrorType.NETWORK,
    }
    for path, error_type in expected.items():
        with pytest.raises(Exception) as exc:
            await download_image(str(image_server.make_url(path)))
        assert BatchErrorHandler.classify_error(exc.value) == error_type


def test_extract_json_variants():
    assert extract_json('```json\n{"first_name": "Aria"}\n```') == {"first_name": "Aria"}
    assert extract_json('Sure! {"a": 1} hope this helps') == {"a": 1}
    with pytest.raises(ValueError, match="invalid"):
        extract_json("no json here")
    with pytest.raises(ValueError, match="invalid"):
        extract_json("[1, 2]")


def test_normalize_image_outputs_bounded_rgb_jpeg():
    out = Image.open(BytesIO(normalize_image(png_bytes((3000, 1000)))))
    assert out.format == "JPEG"
    assert out.mode == "RGB"
    assert max(out.size) == 1568


def test_crop_avatar_is_square():
    out = Image.open(BytesIO(crop_avatar(png_bytes((300, 600), mode="RGB"), size=128)))
    assert out.size == (128, 128)


class FakeMessages:
    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(text=self.replies.pop(0))])


async def test_analysis_service_parses_model_output():
    messages = FakeMessages([
        '{"gender": "female", "species": "elf", "visual_style": "anime", "suggested_names": ["Lia"]}',
        '```json\n{"age": 19, "personality": "<b>Bold</b> and kind"}\n```',
    ])
    service = CharacterAnalysisService(client=SimpleNamespace(messages=messages), model="test-model")

    analysis = await service.analyze_image(png_bytes())
    draft = await service.compile_character(analysis, tags=["anime"], description=None)

    assert analysis.species == "elf"
    assert draft.first_name == "Lia"
    assert draft.gender == "female"
    assert draft.personality == "Bold and kind"
    image_block = messages.requests[0]["messages"][0]["content"][0]
    assert image_block["source"]["media_type"] == "image/jpeg"
    assert messages.requests[1]["model"] == "test-model"


async def test_analysis_service_rejects_unusable_output():
    service = CharacterAnalysisService(
        client=SimpleNamespace(messages=FakeMessages(['{"age": "old"}'])), model="test-model"
    )
    with pytest.raises(ValueError) as exc:
        await service.compile_character(ImageAnalysis())
    assert BatchErrorHandler.classify_error(exc.value) == BatchErrorType.VALIDATION
