import asyncio
from datetime import datetime, timezone

import pytest

from charhub.schemas.batch import BatchErrorType, BatchOptions, BatchStats, BatchStatus, SelectionCriteria
from charhub.services.batch import BatchCharacterGenerator, BatchErrorHandler
from charhub.services.batch_config_service import BatchConfig
from tests.fakes import (
    FakeSelector,
    InMemoryBatchLogs,
    InMemoryCandidateStore,
    RecordingMetrics,
    RecordingSleep,
    ScriptedPipeline,
    StaticConfigSource,
    approved,
)

pytestmark = pytest.mark.anyio


def build(ids, script=None, *, config=None, selector=None, handler=None, with_logs=True):
    selector = selector or FakeSelector(ids)
    pipeline = ScriptedPipeline(script)
    store = InMemoryCandidateStore([approved(i) for i in ids])
    logs = InMemoryBatchLogs() if with_logs else None
    metrics = RecordingMetrics()
    sleep = RecordingSleep()
    generator = BatchCharacterGenerator(
        selector,
        handler or BatchErrorHandler(),
        pipeline,
        config_source=StaticConfigSource(config),
        candidate_store=store,
        batch_logs=logs,
        metrics=metrics,
        sleep=sleep,
    )
    return generator, pipeline, store, logs, metrics, sleep


async def test_successful_batch():
    generator, pipeline, store, logs, metrics, sleep = build(["a", "b", "c"])

    summary = await generator.run_batch(3)

    assert summary.status == BatchStatus.COMPLETED
    assert summary.success_count == 3
    assert summary.failure_count == 0
    assert summary.selected_images == ["a", "b", "c"]
    assert summary.generated_char_ids == ["char-a", "char-b", "char-c"]
    assert pipeline.calls == ["a", "b", "c"]
    assert store.processing == ["a", "b", "c"]
    assert [r.attempts for r in summary.results] == [1, 1, 1]
    assert summary.executed_at is not None and summary.completed_at >= summary.executed_at
    assert sleep.calls == []

    assert logs.created[0]["selected_images"] == ["a", "b", "c"]
    assert logs.finalized[summary.batch_id] == summary
    assert [name for name, _ in metrics.counters] == ["batch_item_success"] * 3
    assert len(metrics.timings) == 3


async def test_default_criteria_enable_every_diversity_toggle():
    generator, *_ = build(["a"])
    await generator.run_batch(1)
    criteria = generator.selector.criteria[0]
    assert criteria.count == 1
    assert criteria.gender_balance and criteria.species_diversity
    assert criteria.tag_diversity and criteria.style_balance


async def test_criteria_override_uses_batch_target():
    generator, *_ = build(["a", "b"])
    await generator.run_batch(2, BatchOptions(criteria=SelectionCriteria(count=99, gender_balance=True)))
    criteria = generator.selector.criteria[0]
    assert criteria.count == 2
    assert criteria.gender_balance is True
    assert criteria.tag_diversity is False


async def test_negative_target_is_rejected():
    generator, *_ = build([])
    with pytest.raises(ValueError):
        await generator.run_batch(-1)


async def test_target_is_capped_by_configured_batch_size():
    generator, pipeline, *_ = build([f"c{i}" for i in range(10)], config=BatchConfig(batch_size=4))

    summary = await generator.run_batch(10)

    assert summary.target_count == 4
    assert generator.selector.criteria[0].count == 4
    assert len(pipeline.calls) == 4


async def test_empty_selection_completes_immediately():
    generator, pipeline, _, logs, _, _ = build([])
    scheduled = datetime(2025, 1, 1, 3, tzinfo=timezone.utc)

    summary = await generator.run_batch(5, BatchOptions(scheduled_at=scheduled))

    assert summary.status == BatchStatus.COMPLETED
    assert summary.success_count == 0
    assert summary.executed_at is None
    assert summary.scheduled_at == scheduled
    assert summary.duration == 0
    assert pipeline.calls == []
    assert summary.batch_id in logs.finalized


async def test_selection_errors_propagate():
    generator, *_ = build([], selector=FakeSelector(error=RuntimeError("candidate query failed")))
    with pytest.raises(RuntimeError, match="candidate query failed"):
        await generator.run_batch(3)


async def test_retryable_error_is_retried_with_backoff():
    generator, pipeline, _, _, metrics, sleep = build(
        ["a"], {"a": [RuntimeError("network unreachable"), "char-a"]}
    )

    summary = await generator.run_batch(1)

    assert summary.status == BatchStatus.COMPLETED
    assert summary.success_count == 1
    assert summary.results[0].attempts == 2
    assert pipeline.calls == ["a", "a"]
    assert sleep.calls == [1.0]
    assert ("batch_item_error", {"type": "network", "severity": "low"}) in metrics.counters


async def test_retries_stop_at_max_and_item_is_marked_failed():
    network = RuntimeError("network unreachable")
    generator, pipeline, store, _, _, sleep = build(
        ["ok-1", "ok-2", "bad"], {"bad": [network, network, network, "never"]}
    )

    summary = await generator.run_batch(3)

    assert summary.status == BatchStatus.COMPLETED
    assert (summary.success_count, summary.failure_count) == (2, 1)
    failed = summary.results[2]
    assert failed.success is False
    assert failed.attempts == 3
    assert failed.error == "network unreachable"
    assert failed.error_type == BatchErrorType.NETWORK
    assert pipeline.calls.count("bad") == 3
    assert sleep.calls == [1.0, 2.0]
    assert store.failed == {"bad": "network unreachable"}


async def test_validation_errors_are_not_retried():
    generator, pipeline, _, _, _, sleep = build(
        ["ok", "bad"], {"bad": [ValueError("invalid character data")]}
    )

    summary = await generator.run_batch(2)

    assert summary.results[1].attempts == 1
    assert summary.results[1].error_type == BatchErrorType.VALIDATION
    assert pipeline.calls == ["ok", "bad"]
    assert sleep.calls == []


async def test_max_retries_option_overrides_config():
    generator, pipeline, *_ = build(
        ["ok", "bad"], {"bad": [RuntimeError("api overloaded"), "char-bad"]}
    )

    summary = await generator.run_batch(2, BatchOptions(max_retries=1))

    assert summary.results[1].success is False
    assert pipeline.calls == ["ok", "bad"]


async def test_aborts_when_error_rate_exceeds_half():
    invalid = ValueError("invalid")
    generator, pipeline, _, logs, metrics, _ = build(
        ["s1", "f1", "f2", "s2"], {"f1": [invalid], "f2": [invalid]}
    )

    summary = await generator.run_batch(4)

    assert summary.status == BatchStatus.ABORTED
    assert (summary.success_count, summary.failure_count) == (1, 2)
    assert "s2" not in pipeline.calls
    assert summary.abort_reason
    assert logs.finalized[summary.batch_id].status == BatchStatus.ABORTED
    assert ("batch_aborted", {}) in metrics.counters


async def test_first_item_failure_aborts():
    generator, pipeline, *_ = build(["f1", "s1"], {"f1": [ValueError("invalid")]})

    summary = await generator.run_batch(2)

    assert summary.status == BatchStatus.ABORTED
    assert pipeline.calls == ["f1"]


async def test_aborts_after_ten_consecutive_failures():
    ids = [f"s{i}" for i in range(10)] + [f"f{i}" for i in range(12)]
    script = {f"f{i}": [ValueError("invalid")] for i in range(12)}
    generator, pipeline, *_ = build(ids, script, config=BatchConfig(batch_size=100))

    summary = await generator.run_batch(len(ids))

    assert summary.status == BatchStatus.ABORTED
    assert (summary.success_count, summary.failure_count) == (10, 10)
    assert "f10" not in pipeline.calls


async def test_success_resets_consecutive_failures():
    ids = ["s0", "s1", "f0", "s2", "f1", "s3"]
    script = {"f0": [ValueError("invalid")], "f1": [ValueError("invalid")]}
    generator, *_ = build(ids, script)

    summary = await generator.run_batch(len(ids))

    assert summary.status == BatchStatus.COMPLETED
    assert (summary.success_count, summary.failure_count) == (4, 2)


async def test_item_timeout_is_classified_as_timeout():
    async def slow():
        await asyncio.sleep(5)
        return "too-late"

    generator, _, _, _, metrics, _ = build(["a"], {"a": [slow, "char-a"]})

    summary = await generator.run_batch(1, BatchOptions(timeout_minutes=0.001))

    assert summary.success_count == 1
    assert summary.results[0].attempts == 2
    assert ("batch_item_error", {"type": "timeout", "severity": "low"}) in metrics.counters


async def test_delay_between_items_skips_last():
    generator, _, _, _, _, sleep = build(["a", "b", "c"])
    await generator.run_batch(3, BatchOptions(delay_between_ms=500))
    assert sleep.calls == [0.5, 0.5]


async def test_error_tracking_is_reset_per_batch():
    handler = BatchErrorHandler()
    handler.handle_error(RuntimeError("network"), item_id="stale")
    generator, *_ = build(["a"], handler=handler)

    await generator.run_batch(1)

    assert handler.get_error_stats().total_errors == 0


async def test_status_update_failure_does_not_escape():
    class BrokenStore(InMemoryCandidateStore):
        async def mark_processing(self, candidate_id):
            raise RuntimeError("database is locked")

    generator, *_ = build(["a"])
    generator.candidate_store = BrokenStore()

    summary = await generator.run_batch(1)

    assert summary.success_count == 1


async def test_batch_history_queries():
    generator, *_ = build(["a"])
    await generator.run_batch(1)
    assert len(await generator.get_recent_batches()) == 1
    assert (await generator.get_batch_stats()).total_batches == 1

    no_logs, *_ = build(["a"], with_logs=False)
    assert await no_logs.get_recent_batches() == []
    assert await no_logs.get_batch_stats() == BatchStats()
