"""
캐릭터 자동 생성용 AI 서비스 (Claude)
- 이미지 분석: Vision 으로 외형/스타일/성별/종족 추출
- 캐릭터 조합: 분석 결과 + 큐레이션 메타데이터 → CharacterDraft
"""
import base64
import json
import logging
import re
from io import BytesIO
from typing import Any, Dict, List, Optional

import anthropic
from PIL import Image
from pydantic import ValidationError

from charhub.core.config import settings
from charhub.schemas.character import CharacterDraft, ImageAnalysis

logger = logging.getLogger(__name__)

# Claude Vision 권장 최대 변 길이
MAX_IMAGE_SIDE = 1568


def normalize_image(img_bytes: bytes, max_side: int = MAX_IMAGE_SIDE) -> bytes:
    """RGB JPEG 로 변환하고 긴 변을 max_side 로 줄인다 (알파 채널/팔레트 이미지 대응)"""
    img = Image.open(BytesIO(img_bytes))
    if img.mode != 'RGB':
        img = img.convert('RGB')
    img.thumbnail((max_side, max_side))
    buf = BytesIO()
    img.save(buf, format='JPEG', quality=90)
    return buf.getvalue()


def extract_json(text: str) -> Dict[str, Any]:
    """응답에서 JSON 객체를 꺼낸다 (```json 펜스/앞뒤 잡담 허용)"""
    raw = (text or "").strip()
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", raw, re.DOTALL)
    if fenced:
        raw = fenced.group(1)
    else:
        start, end = raw.find("{"), raw.rfind("}")
        if start != -1 and end > start:
            raw = raw[start:end + 1]
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON from model: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("invalid JSON from model: object expected")
    return data


ANALYSIS_PROMPT = (
    "You are analyzing a character illustration for a roleplay platform.\n"
    "Describe only what is visible. Respond with a single JSON object with keys:\n"
    '  "physical_characteristics": string (hair, eyes, body, distinctive features),\n'
    '  "visual_style": one of anime, realistic, semi-realistic, fantasy, sci-fi, cartoon, 3d, painterly,\n'
    '  "clothing": string, "mood": string, "setting": string,\n'
    '  "gender": one of male, female, non-binary, unknown,\n'
    '  "species": short lowercase word (human, elf, demon, robot, beast, ...),\n'
    '  "suggested_names": array of 3 first names fitting the character.\n'
    "No markdown, JSON only."
)


def build_compile_prompt(analysis: ImageAnalysis, *, tags: List[str], description: Optional[str]) -> str:
    return (
        "Create an original roleplay character from the image analysis below.\n"
        f"Image analysis: {analysis.model_dump_json()}\n"
        f"Curator tags: {', '.join(tags) if tags else '(none)'}\n"
        f"Curator description: {description or '(none)'}\n\n"
        "Respond with a single JSON object with keys:\n"
        '  "first_name" (required), "last_name", "age" (integer), "gender", "species",\n'
        '  "style" (ANIME, REALISTIC, SEMI_REALISTIC, FANTASY, SCI_FI, CARTOON, 3D, PAINTERLY),\n'
        '  "physical_characteristics", "personality" (3-5 sentences), "history" (one paragraph).\n'
        "Keep gender and species consistent with the analysis. No markdown, JSON only."
    )


class CharacterAnalysisService:
    def __init__(self, client: Optional[anthropic.AsyncAnthropic] = None, model: Optional[str] = None):
        self.client = client or anthropic.AsyncAnthropic(api_key=settings.CLAUDE_API_KEY)
        self.model = model or settings.CLAUDE_MODEL

    async def _complete(self, content: Any, *, max_tokens: int, temperature: float) -> str:
        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as e:
            # 메시지에 "api" 가 들어가야 재시도 대상(api)으로 분류된다
            raise RuntimeError(f"Claude API 호출 실패: {e}") from e

        if not getattr(message, "content", None):
            raise ValueError("invalid response from model: empty content")
        return getattr(message.content[0], "text", "") or ""

    async def analyze_image(self, img_bytes: bytes) -> ImageAnalysis:
        image_b64 = base64.b64encode(normalize_image(img_bytes)).decode('utf-8')
        text = await self._complete(
            [
                {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": image_b64}},
                {"type": "text", "text": ANALYSIS_PROMPT},
            ],
            max_tokens=1024,
            temperature=0.2,
        )
        data = extract_json(text)
        try:
            analysis = ImageAnalysis.model_validate(data)
        except ValidationError as e:
            logger.warning(f"이미지 분석 결과 검증 실패: {e}")
            raise ValueError(f"invalid image analysis: {e.error_count()} field error(s)") from e
        logger.info(f"이미지 분석 완료: gender={analysis.gender} species={analysis.species} style={analysis.visual_style}")
        return analysis

    async def compile_character(
        self,
        analysis: ImageAnalysis,
        *,
        tags: Optional[List[str]] = None,
        description: Optional[str] = None,
    ) -> CharacterDraft:
        text = await self._complete(
            build_compile_prompt(analysis, tags=list(tags or []), description=description),
            max_tokens=1800,
            temperature=0.7,
        )
        data = extract_json(text)
        # 분석 단계 값으로 빈칸 보정
        data.setdefault("gender", analysis.gender)
        data.setdefault("species", analysis.species)
        if not data.get("first_name") and analysis.suggested_names:
            data["first_name"] = analysis.suggested_names[0]
        try:
            return CharacterDraft.model_validate(data)
        except ValidationError as e:
            logger.warning(f"캐릭터 데이터 검증 실패: {e}")
            raise ValueError(f"invalid character data: {e.error_count()} field error(s)") from e
