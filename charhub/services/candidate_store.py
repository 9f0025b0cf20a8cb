"""
후보(큐레이션 이미지) 저장소 / 최근 생성 캐릭터 조회

선택 알고리즘과 배치 오케스트레이터는 아래 Protocol 에만 의존한다.
운영에서는 SQLAlchemy 구현을, 테스트에서는 인메모리 구현을 주입한다.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Protocol, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from charhub.models import Character, CuratedImage, CurationStatus


@dataclass(frozen=True)
class Candidate:
    """선택 대상 후보 (읽기 전용 스냅샷)"""
    id: str
    status: str
    age_rating: str
    quality_score: Optional[float] = None
    tags: Tuple[str, ...] = ()
    gender: Optional[str] = None
    species: Optional[str] = None
    generated_char_id: Optional[str] = None

    @property
    def is_eligible(self) -> bool:
        return self.status == CurationStatus.APPROVED.value and self.generated_char_id is None


@dataclass(frozen=True)
class CandidateFilter:
    """기본값: 승인(APPROVED) + 미할당(generated_char_id is null)"""
    age_rating: Optional[str] = None
    exclude_ids: Tuple[str, ...] = ()
    limit: Optional[int] = None
    quality_not_null: bool = False


@dataclass(frozen=True)
class RecentCharacter:
    gender: Optional[str] = None
    species: Optional[str] = None


@dataclass
class QualityAggregate:
    avg: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None


GROUPABLE_FIELDS = ("age_rating", "gender", "species")


class CandidateStore(Protocol):
    async def find_many(self, flt: CandidateFilter) -> List[Candidate]: ...

    async def count(self, flt: CandidateFilter) -> int: ...

    async def group_by(self, field_name: str, flt: CandidateFilter) -> Dict[Optional[str], int]: ...

    async def aggregate_quality(self, flt: CandidateFilter) -> QualityAggregate: ...

    async def mark_processing(self, candidate_id: str) -> None: ...

    async def mark_failed(self, candidate_id: str, reason: Optional[str]) -> None: ...


class RecentHistorySource(Protocol):
    async def find_recent(self, limit: int) -> List[RecentCharacter]: ...


def _to_candidate(row: CuratedImage) -> Candidate:
    return Candidate(
        id=str(row.id),
        status=row.status,
        age_rating=row.age_rating,
        quality_score=row.quality_score,
        tags=tuple(row.tags or ()),
        gender=row.gender,
        species=row.species,
        generated_char_id=str(row.generated_char_id) if row.generated_char_id else None,
    )


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class SqlCandidateStore:
    """curated_images 테이블 기반 후보 저장소"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def _conditions(self, flt: CandidateFilter) -> list:
        conds = [
            CuratedImage.status == CurationStatus.APPROVED.value,
            CuratedImage.generated_char_id.is_(None),
        ]
        if flt.age_rating is not None:
            conds.append(CuratedImage.age_rating == flt.age_rating)
        if flt.exclude_ids:
            conds.append(CuratedImage.id.notin_([_as_uuid(i) for i in flt.exclude_ids]))
        if flt.quality_not_null:
            conds.append(CuratedImage.quality_score.isnot(None))
        return conds

    async def find_many(self, flt: CandidateFilter) -> List[Candidate]:
        stmt = (
            select(CuratedImage)
            .where(*self._conditions(flt))
            .order_by(
                CuratedImage.quality_score.desc().nulls_last(),
                CuratedImage.created_at.asc(),
                CuratedImage.id.asc(),
            )
        )
        if flt.limit is not None:
            stmt = stmt.limit(flt.limit)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_candidate(r) for r in rows]

    async def count(self, flt: CandidateFilter) -> int:
        stmt = select(func.count()).select_from(CuratedImage).where(*self._conditions(flt))
        async with self.session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def group_by(self, field_name: str, flt: CandidateFilter) -> Dict[Optional[str], int]:
        if field_name not in GROUPABLE_FIELDS:
            raise ValueError(f"invalid group field: {field_name}")
        column = getattr(CuratedImage, field_name)
        stmt = select(column, func.count()).where(*self._conditions(flt)).group_by(column)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return {value: int(n) for value, n in rows}

    async def aggregate_quality(self, flt: CandidateFilter) -> QualityAggregate:
        stmt = select(
            func.avg(CuratedImage.quality_score),
            func.min(CuratedImage.quality_score),
            func.max(CuratedImage.quality_score),
        ).where(*self._conditions(flt), CuratedImage.quality_score.isnot(None))
        async with self.session_factory() as session:
            avg_, min_, max_ = (await session.execute(stmt)).one()
        return QualityAggregate(
            avg=float(avg_) if avg_ is not None else None,
            min=float(min_) if min_ is not None else None,
            max=float(max_) if max_ is not None else None,
        )

    async def mark_processing(self, candidate_id: str) -> None:
        await self._set_status(candidate_id, status=CurationStatus.PROCESSING.value)

    async def mark_failed(self, candidate_id: str, reason: Optional[str]) -> None:
        await self._set_status(
            candidate_id,
            status=CurationStatus.FAILED.value,
            rejection_reason=reason,
            processed_at=datetime.now(timezone.utc),
        )

    async def _set_status(self, candidate_id: str, **values) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(CuratedImage)
                .where(CuratedImage.id == _as_uuid(candidate_id), CuratedImage.generated_char_id.is_(None))
                .values(**values)
            )
            await session.commit()


class SqlRecentHistorySource:
    """최근 공개 캐릭터의 (gender, species) 윈도우"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_recent(self, limit: int) -> List[RecentCharacter]:
        stmt = (
            select(Character.gender, Character.species)
            .where(Character.visibility == "PUBLIC")
            .order_by(Character.created_at.desc(), Character.id.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [RecentCharacter(gender=g, species=s) for g, s in rows]

