"""
캐릭터 자동 생성 배치 수동 실행

  python -m charhub.scripts.run_batch --count 5
  python -m charhub.scripts.run_batch --stats
"""
import argparse
import asyncio
import json
import logging

from charhub.core.config import settings
from charhub.core.database import check_db_connection, engine, init_models


async def _print_stats() -> None:
    from charhub.tasks.population_tasks import build_selector
    from charhub.services.batch_log_service import SqlBatchLogRepository
    from charhub.core.database import AsyncSessionLocal

    selection = await build_selector().get_selection_stats()
    batches = await SqlBatchLogRepository(AsyncSessionLocal).get_batch_stats()
    print("📊 선택 풀 통계")
    print(json.dumps(selection.model_dump(), ensure_ascii=False, indent=2))
    print("📊 배치 통계")
    print(json.dumps(batches.model_dump(), ensure_ascii=False, indent=2))


async def _run(args) -> None:
    from charhub.tasks.population_tasks import run_population_batch

    try:
        await init_models()
        if not await check_db_connection():
            raise SystemExit("❌ 데이터베이스에 연결할 수 없습니다")
        if args.stats:
            await _print_stats()
            return
        summary = await run_population_batch(args.count, delay_between_ms=args.delay_ms)
        print(f"✅ 배치 종료: {summary['status']} ({summary['success_count']}/{summary['target_count']})")
        print(json.dumps(summary, ensure_ascii=False, indent=2))
    finally:
        await engine.dispose()


def main():
    p = argparse.ArgumentParser(description="캐릭터 자동 생성 배치 수동 실행")
    p.add_argument("--count", type=int, default=None, help=f"생성 개수 (기본 {settings.BATCH_SIZE_PER_RUN}, 설정 최대치로 제한)")
    p.add_argument("--delay-ms", type=int, default=None, help="아이템 사이 대기(ms)")
    p.add_argument("--stats", action="store_true", help="생성하지 않고 선택 풀/배치 통계만 출력")
    args = p.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
