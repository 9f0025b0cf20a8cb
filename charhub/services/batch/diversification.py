"""
다양화 선택 알고리즘 - 승인된 큐레이션 이미지 중 캐릭터 생성 대상을 고른다.

점수 = 정규화 품질
     + 성별 과소대표 보너스 (gender_balance)
     + 종족 과소대표 보너스 (species_diversity)
     + 태그 신규성 보너스 (tag_diversity, 이번 호출에서 이미 고른 태그 기준)
     + 스타일 균형 보너스 (style_balance, 이번 호출에서 이미 고른 스타일 기준)

높은 점수부터 탐욕적으로 고르되, 최근 K개 선택이 모두 같은 성별/종족이면
해당 후보는 건너뛴다. 한 바퀴 돌고도 모자라면 제약을 풀고 품질 순으로 채운다.
랜덤 요소 없음: 같은 풀 스냅샷 + 같은 조건 → 같은 결과.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence

from charhub.schemas.batch import SelectionCriteria, SelectionStats, QualityStats
from charhub.services.candidate_store import (
    Candidate,
    CandidateFilter,
    CandidateStore,
    RecentCharacter,
    RecentHistorySource,
)

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

STYLE_VOCABULARY = frozenset({
    "anime", "realistic", "semi-realistic", "fantasy", "sci-fi", "cartoon", "3d", "painterly",
})

WEIGHT_QUALITY = 1.0
WEIGHT_GENDER = 1.0
WEIGHT_SPECIES = 1.0
WEIGHT_TAG_NOVELTY = 1.0
WEIGHT_STYLE = 0.5

DEFAULT_POOL_MULTIPLIER = 5
DEFAULT_HISTORY_WINDOW = 50


def bucket(value: Optional[str]) -> str:
    text = (value or "").strip().lower()
    return text or UNKNOWN


def style_of(tags: Sequence[str]) -> str:
    for tag in tags:
        t = tag.strip().lower()
        if t in STYLE_VOCABULARY:
            return t
    return UNKNOWN


def underrepresentation_bonus(key: str, counts: Counter, total: int, n_buckets: int) -> float:
    """균등 분포 기대치 대비 부족한 만큼 +, 넘치는 만큼 - ([-1, 1])"""
    if total <= 0 or n_buckets <= 0:
        return 0.0
    expected = 1.0 / n_buckets
    freq = counts.get(key, 0) / total
    return max(-1.0, min(1.0, (expected - freq) / expected))


def would_exceed_consecutive(recent: List[str], value: str, limit: int) -> bool:
    """최근 limit 개가 모두 value 이면 하나 더 고를 때 limit 초과"""
    if len(recent) < limit:
        return False
    return all(v == value for v in recent[-limit:])


@dataclass
class _Scored:
    candidate: Candidate
    index: int  # 풀 순서 (동점 처리)
    gender: str
    species: str
    style: str
    tags: FrozenSet[str]
    base_score: float

    @property
    def quality_key(self) -> float:
        q = self.candidate.quality_score
        return q if q is not None else float("-inf")


@dataclass
class _History:
    gender_counts: Counter
    species_counts: Counter
    total: int

    @classmethod
    def from_recent(cls, recent: Sequence[RecentCharacter]) -> "_History":
        return cls(
            gender_counts=Counter(bucket(r.gender) for r in recent),
            species_counts=Counter(bucket(r.species) for r in recent),
            total=len(recent),
        )


class DiversificationAlgorithm:
    def __init__(
        self,
        candidate_store: CandidateStore,
        history_source: RecentHistorySource,
        *,
        pool_multiplier: int = DEFAULT_POOL_MULTIPLIER,
        history_window: int = DEFAULT_HISTORY_WINDOW,
    ):
        self.candidate_store = candidate_store
        self.history_source = history_source
        self.pool_multiplier = max(1, pool_multiplier)
        self.history_window = history_window

    async def select_images(self, criteria: SelectionCriteria) -> List[str]:
        """다양성 조건을 반영해 후보 ID 목록(최대 criteria.count개)을 반환"""
        if criteria.count == 0:
            return []

        logger.info(f"이미지 선택 시작: {criteria.model_dump(exclude_none=True)}")

        pool = await self._build_pool(criteria)
        if not pool:
            logger.warning("선택 가능한 승인 이미지가 없습니다")
            return []

        history = _History(Counter(), Counter(), 0)
        if criteria.gender_balance or criteria.species_diversity:
            recent = await self.history_source.find_recent(self.history_window)
            history = _History.from_recent(recent)
            logger.info(
                f"최근 분포(n={history.total}): gender={dict(history.gender_counts)} "
                f"species={dict(history.species_counts)}"
            )

        scored = self._score_pool(pool, criteria, history)
        selected, relaxed = self._select(scored, criteria)
        result = [s.candidate.id for s in selected]

        logger.info(
            f"이미지 선택 완료: requested={criteria.count} selected={len(result)} relaxed={relaxed} "
            f"gender={dict(Counter(s.gender for s in selected))} "
            f"species={dict(Counter(s.species for s in selected))}"
        )
        return result

    async def _build_pool(self, criteria: SelectionCriteria) -> List[Candidate]:
        if criteria.age_rating_distribution:
            raw: List[Candidate] = []
            for rating, n in criteria.age_rating_distribution.items():
                if n <= 0:
                    continue
                raw.extend(await self.candidate_store.find_many(
                    CandidateFilter(age_rating=rating.value, limit=n)
                ))
        else:
            raw = await self.candidate_store.find_many(
                CandidateFilter(limit=criteria.count * self.pool_multiplier)
            )

        seen: set[str] = set()
        pool: List[Candidate] = []
        for c in raw:
            if c.id in seen or not c.is_eligible:
                continue
            seen.add(c.id)
            pool.append(c)
        return pool

    def _score_pool(self, pool: List[Candidate], criteria: SelectionCriteria, history: _History) -> List[_Scored]:
        qualities = [c.quality_score for c in pool if c.quality_score is not None]
        q_min = min(qualities) if qualities else 0.0
        q_max = max(qualities) if qualities else 0.0

        genders = [bucket(c.gender) for c in pool]
        species = [bucket(c.species) for c in pool]
        gender_buckets = len(set(genders) | set(history.gender_counts))
        species_buckets = len(set(species) | set(history.species_counts))

        scored: List[_Scored] = []
        for i, c in enumerate(pool):
            if c.quality_score is None:
                quality = 0.0
            elif q_max > q_min:
                quality = (c.quality_score - q_min) / (q_max - q_min)
            else:
                quality = 1.0

            score = WEIGHT_QUALITY * quality
            if criteria.gender_balance:
                score += WEIGHT_GENDER * underrepresentation_bonus(
                    genders[i], history.gender_counts, history.total, gender_buckets
                )
            if criteria.species_diversity:
                score += WEIGHT_SPECIES * underrepresentation_bonus(
                    species[i], history.species_counts, history.total, species_buckets
                )

            scored.append(_Scored(
                candidate=c,
                index=i,
                gender=genders[i],
                species=species[i],
                style=style_of(c.tags),
                tags=frozenset(t.strip().lower() for t in c.tags if t and t.strip()),
                base_score=score,
            ))
        return scored

    def _select(self, scored: List[_Scored], criteria: SelectionCriteria) -> tuple[List[_Scored], bool]:
        selected: List[_Scored] = []
        remaining = list(scored)
        used_tags: set[str] = set()
        used_styles: Counter = Counter()

        def composite(s: _Scored) -> float:
            score = s.base_score
            if criteria.tag_diversity:
                novelty = 1.0 if not s.tags else 1.0 - len(s.tags & used_tags) / len(s.tags)
                score += WEIGHT_TAG_NOVELTY * novelty
            if criteria.style_balance:
                share = used_styles[s.style] / len(selected) if selected else 0.0
                score += WEIGHT_STYLE * (1.0 - share)
            return score

        while len(selected) < criteria.count and remaining:
            ranked = sorted(remaining, key=lambda s: (-composite(s), -s.quality_key, s.index))
            recent_genders = [s.gender for s in selected]
            recent_species = [s.species for s in selected]
            pick: Optional[_Scored] = None
            for s in ranked:
                if criteria.gender_balance and would_exceed_consecutive(
                    recent_genders, s.gender, criteria.max_consecutive_same_gender
                ):
                    continue
                if criteria.species_diversity and would_exceed_consecutive(
                    recent_species, s.species, criteria.max_consecutive_same_species
                ):
                    continue
                pick = s
                break
            if pick is None:
                break
            selected.append(pick)
            remaining.remove(pick)
            used_tags.update(pick.tags)
            used_styles[pick.style] += 1

        relaxed = False
        if len(selected) < criteria.count and remaining:
            # 제약 해제: 순수 품질 순으로 남은 자리 채우기
            relaxed = True
            fill = sorted(remaining, key=lambda s: (-s.quality_key, s.index))
            selected.extend(fill[: criteria.count - len(selected)])
        return selected, relaxed

    async def get_selection_stats(self) -> SelectionStats:
        """승인 + 미할당 풀 전체에 대한 통계 (선택 호출과 무관)"""
        flt = CandidateFilter()
        total, by_rating, by_gender, by_species, quality = await asyncio.gather(
            self.candidate_store.count(flt),
            self.candidate_store.group_by("age_rating", flt),
            self.candidate_store.group_by("gender", flt),
            self.candidate_store.group_by("species", flt),
            self.candidate_store.aggregate_quality(CandidateFilter(quality_not_null=True)),
        )
        return SelectionStats(
            total_approved=total,
            by_age_rating=_merge_buckets(by_rating, lower=False),
            by_gender=_merge_buckets(by_gender),
            by_species=_merge_buckets(by_species),
            recent_quality=QualityStats(
                avg=quality.avg or 0.0,
                min=quality.min or 0.0,
                max=quality.max or 0.0,
            ),
        )


def _merge_buckets(counts: Dict[Optional[str], int], lower: bool = True) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for key, n in counts.items():
        name = bucket(key) if lower else (key or UNKNOWN)
        out[name] = out.get(name, 0) + n
    return out
