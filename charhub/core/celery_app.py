"""
Celery 백그라운드 작업 설정
"""

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from charhub.core.config import settings

celery_app = Celery(
    "charhub",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_ignore_result=False,
    result_expires=3600,
    # 배치는 한 번에 하나만 처리 (외부 API 레이트리밋)
    worker_prefetch_multiplier=1,
    # 태스크 자동 발견
    imports=('charhub.tasks.population_tasks', 'charhub.tasks.avatar_tasks'),
    beat_schedule={
        'daily-character-population': {
            'task': 'charhub.tasks.population_tasks.run_batch_generation',
            'schedule': crontab(hour=settings.BATCH_DAILY_HOUR, minute=0),
        },
    },
)


@setup_logging.connect
def _configure_logging(**kwargs):
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
