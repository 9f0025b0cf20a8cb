import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

from charhub.schemas.batch import BatchRunSummary, BatchStatus
from charhub.tasks import population_tasks


class LoopBoundRedis:
    """만들어진 이벤트 루프에서만 동작하는 redis.asyncio 클라이언트 대역"""

    def __init__(self, url, **kwargs):
        self.url = url
        self.kwargs = kwargs
        self.loop = asyncio.get_running_loop()
        self.closed = False
        self.keys = []

    async def incr(self, key):
        if self.closed or asyncio.get_running_loop() is not self.loop:
            raise RuntimeError("Event loop is closed")
        self.keys.append(key)
        return len(self.keys)

    async def aclose(self):
        self.closed = True


class MetricsWritingGenerator:
    def __init__(self, redis_client):
        self.redis_client = redis_client

    async def run_batch(self, target, options):
        await self.redis_client.incr("metrics:counter:batch_item_success")
        now = datetime.now(timezone.utc)
        return BatchRunSummary(
            status=BatchStatus.COMPLETED,
            scheduled_at=now,
            completed_at=now,
            target_count=target,
            success_count=target,
        )


def test_each_run_gets_its_own_redis_client(monkeypatch):
    clients = []
    disposed = []

    def from_url(url, **kwargs):
        client = LoopBoundRedis(url, **kwargs)
        clients.append(client)
        return client

    async def dispose():
        disposed.append(True)

    monkeypatch.setattr(population_tasks, "aioredis", SimpleNamespace(from_url=from_url))
    monkeypatch.setattr(population_tasks, "build_generator", lambda redis_client=None: MetricsWritingGenerator(redis_client))
    monkeypatch.setattr(population_tasks, "engine", SimpleNamespace(dispose=dispose))

    # 워커 프로세스 하나에서 배치가 두 번 도는 상황
    first = asyncio.run(population_tasks.run_population_batch(2, delay_between_ms=0))
    second = asyncio.run(population_tasks.run_population_batch(2, delay_between_ms=0))

    assert first["success_count"] == 2
    assert second["success_count"] == 2
    assert len(clients) == 2
    assert clients[0] is not clients[1]
    assert all(c.closed for c in clients)
    assert all(c.keys == ["metrics:counter:batch_item_success"] for c in clients)
    assert all(c.kwargs == {"decode_responses": True} for c in clients)
    assert len(disposed) == 2


def test_disabled_batch_is_skipped_unless_forced(monkeypatch):
    monkeypatch.setattr(population_tasks.settings, "BATCH_GENERATION_ENABLED", False)
    calls = []

    async def fake_run(count=None, **kwargs):
        calls.append(count)
        return {"status": "COMPLETED"}

    monkeypatch.setattr(population_tasks, "run_population_batch", fake_run)

    assert population_tasks.run_batch_generation.run(3) == {"skipped": True}
    assert population_tasks.run_batch_generation.run(3, force=True) == {"status": "COMPLETED"}
    assert calls == [3]
