"""
아바타 생성 태스크 - 원본 큐레이션 이미지에서 정사각형 아바타를 잘라 저장
"""
import asyncio
import logging
import uuid
from io import BytesIO

import backoff
from kombu.exceptions import OperationalError
from PIL import Image, ImageOps
from sqlalchemy import select

from charhub.core.celery_app import celery_app
from charhub.core.database import AsyncSessionLocal, engine
from charhub.models import Character, CuratedImage
from charhub.services.storage import get_storage

logger = logging.getLogger(__name__)

AVATAR_SIZE = 512


def crop_avatar(img_bytes: bytes, size: int = AVATAR_SIZE) -> bytes:
    """가운데 위쪽(얼굴 위치) 기준 정사각형 크롭"""
    img = Image.open(BytesIO(img_bytes))
    if img.mode != 'RGB':
        img = img.convert('RGB')
    avatar = ImageOps.fit(img, (size, size), method=Image.LANCZOS, centering=(0.5, 0.3))
    buf = BytesIO()
    avatar.save(buf, format='JPEG', quality=90)
    return buf.getvalue()


async def _generate_avatar(character_id: str, session_factory=AsyncSessionLocal) -> str | None:
    from charhub.services.character_pipeline import download_image

    char_uuid = uuid.UUID(character_id)
    async with session_factory() as session:
        source_url = (await session.execute(
            select(CuratedImage.source_url).where(CuratedImage.generated_char_id == char_uuid)
        )).scalar_one_or_none()
    if not source_url:
        logger.warning(f"아바타 원본 이미지 없음: character={character_id}")
        return None

    img_bytes = await download_image(source_url)
    avatar_bytes = crop_avatar(img_bytes)
    url = await asyncio.to_thread(get_storage().save_bytes, avatar_bytes, content_type="image/jpeg", key_hint="avatar.jpg")

    async with session_factory() as session:
        character = await session.get(Character, char_uuid)
        if character is None:
            return None
        character.avatar_url = url
        await session.commit()
    logger.info(f"아바타 생성 완료: character={character_id} url={url}")
    return url


@celery_app.task(
    name="charhub.tasks.avatar_tasks.generate_avatar",
    autoretry_for=(RuntimeError,),
    retry_backoff=True,
    max_retries=3,
)
def generate_avatar(character_id: str) -> str | None:
    async def _run():
        try:
            return await _generate_avatar(character_id)
        finally:
            await engine.dispose()

    return asyncio.run(_run())


# 브로커 일시 장애만 재시도
@backoff.on_exception(backoff.expo, OperationalError, max_tries=3, max_time=30)
def enqueue_avatar_generation(character_id: str) -> str:
    result = generate_avatar.apply_async(args=[character_id])
    return result.id
