"""
큐레이션 이미지 1장 → 공개 캐릭터 1개 생성 파이프라인

1) 후보 로드 (이미 캐릭터가 연결돼 있으면 그 ID 재사용)
2) 원본 이미지 다운로드
3) 참조 이미지 저장 (Storage)
4) Claude Vision 분석
5) Claude 로 캐릭터 데이터 조합
6) 캐릭터 생성 + 후보 연결/COMPLETED 를 한 트랜잭션으로
7) 아바타 생성 작업 큐잉 (실패해도 캐릭터 생성은 성공)

에러 메시지는 배치 에러 분류기가 읽기 때문에 분류 키워드(network/api/invalid)를 담아 던진다.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import aiohttp
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from charhub.core.config import settings
from charhub.models import Character, CuratedImage, CurationStatus
from charhub.services.ai_service import CharacterAnalysisService
from charhub.services.storage import Storage

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 30


async def download_image(url: str, *, timeout: float = DOWNLOAD_TIMEOUT_SECONDS) -> bytes:
    """이미지 다운로드. HTTP 상태에 따라 분류 가능한 메시지로 변환"""
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
                if resp.status == 429:
                    raise RuntimeError("image source api rate limit (HTTP 429)")
                if 400 <= resp.status < 500:
                    raise ValueError(f"invalid image source: HTTP {resp.status}")
                if resp.status >= 500:
                    raise RuntimeError(f"network error downloading image: HTTP {resp.status}")
                return await resp.read()
    except aiohttp.ClientError as e:
        raise RuntimeError(f"network error downloading image: {e}") from e
    except asyncio.TimeoutError as e:
        raise RuntimeError(f"network timeout downloading image after {timeout}s") from e


def _guess_image_type(img_bytes: bytes) -> tuple[str, str]:
    if img_bytes.startswith(b"\x89PNG"):
        return "image/png", "ref.png"
    if img_bytes[:4] == b"RIFF" and img_bytes[8:12] == b"WEBP":
        return "image/webp", "ref.webp"
    return "image/jpeg", "ref.jpg"


def enqueue_avatar_generation(character_id: str) -> str:
    from charhub.tasks.avatar_tasks import enqueue_avatar_generation as _enqueue

    return _enqueue(character_id)


class CharacterGenerationPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        analysis_service: CharacterAnalysisService,
        storage: Storage,
        *,
        downloader: Callable = download_image,
        avatar_enqueuer: Optional[Callable[[str], str]] = enqueue_avatar_generation,
        creator_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.analysis_service = analysis_service
        self.storage = storage
        self.downloader = downloader
        self.avatar_enqueuer = avatar_enqueuer
        self.creator_id = uuid.UUID(str(creator_id or settings.OFFICIAL_BOT_USER_ID))

    async def generate(self, curated_image_id: str) -> str:
        image_uuid = uuid.UUID(str(curated_image_id))

        # 1) 로드
        async with self.session_factory() as session:
            curated = await session.get(CuratedImage, image_uuid)
            if curated is None:
                logger.warning(f"큐레이션 이미지 없음: {curated_image_id}")
                raise ValueError("invalid curated image: not found")
            if curated.generated_char_id:
                logger.info(f"이미 캐릭터가 연결된 이미지: {curated_image_id} → {curated.generated_char_id}")
                return str(curated.generated_char_id)
            source_url = curated.source_url
            tags = list(curated.tags or [])
            description = curated.description

        # 2) 다운로드
        img_bytes = await self.downloader(source_url)
        if not img_bytes:
            raise ValueError("invalid image: empty body")

        # 3) 참조 이미지 저장 (boto3 는 동기라 스레드로)
        content_type, key_hint = _guess_image_type(img_bytes)
        reference_url = await asyncio.to_thread(
            self.storage.save_bytes, img_bytes, content_type=content_type, key_hint=key_hint
        )

        # 4) 분석 / 5) 조합
        analysis = await self.analysis_service.analyze_image(img_bytes)
        draft = await self.analysis_service.compile_character(analysis, tags=tags, description=description)

        # 6) 저장
        character_id = await self._persist(image_uuid, draft, reference_url)

        # 7) 아바타 큐잉 (브로커 재시도가 동기 sleep 이라 스레드에서)
        if self.avatar_enqueuer is not None:
            try:
                job_id = await asyncio.to_thread(self.avatar_enqueuer, character_id)
                logger.info(f"아바타 생성 작업 큐잉: character={character_id} job={job_id}")
            except Exception as e:
                logger.warning(f"아바타 생성 작업 큐잉 실패(무시): character={character_id} error={e}")

        return character_id

    async def _persist(self, image_uuid: uuid.UUID, draft, reference_url: str) -> str:
        async with self.session_factory() as session:
            async with session.begin():
                # 동시 배치에서 같은 후보를 두 번 연결하지 않도록 행 잠금 (SQLite 에서는 무시됨)
                curated = (await session.execute(
                    select(CuratedImage).where(CuratedImage.id == image_uuid).with_for_update()
                )).scalar_one()
                if curated.generated_char_id:
                    return str(curated.generated_char_id)

                character = Character(
                    creator_id=self.creator_id,
                    first_name=draft.first_name,
                    last_name=draft.last_name,
                    age=draft.age,
                    gender=draft.gender or curated.gender,
                    species=draft.species or curated.species,
                    style=draft.style,
                    physical_characteristics=draft.physical_characteristics,
                    personality=draft.personality,
                    history=draft.history,
                    visibility="PUBLIC",
                    age_rating=curated.age_rating,
                    content_tags=list(curated.content_tags or []),
                    reference_image_url=reference_url,
                )
                session.add(character)
                await session.flush()

                curated.generated_char_id = character.id
                curated.status = CurationStatus.COMPLETED.value
                curated.processed_at = datetime.now(timezone.utc)
                character_id = str(character.id)

        logger.info(f"캐릭터 생성 완료: {character_id} ({draft.first_name})")
        return character_id
