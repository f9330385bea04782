from __future__ import annotations

import asyncio
import random
import time

import pytest

from tokbench.engine.aggregator import CompletionAggregator, DrainResult
from tokbench.engine.request import Outcome


def test_every_index_counted_exactly_once_under_concurrent_posts():
    async def _run():
        n = 50
        agg = CompletionAggregator(n, generation=1)

        async def job(i: int):
            await asyncio.sleep(random.random() * 0.02)
            agg.record(i, Outcome.success(i, 1, 2, 3))
            # A late duplicate must not be counted again.
            if i % 10 == 0:
                agg.record(i, Outcome.success(i, 1, 2, 3))

        tasks = [asyncio.create_task(job(i)) for i in range(n)]
        result = await agg.drain(0.01)
        await asyncio.gather(*tasks)
        return agg, result

    agg, result = asyncio.run(_run())
    assert result is DrainResult.COMPLETED
    assert agg.completed == 50
    assert agg.prompt_tokens == 100
    assert agg.completion_tokens == 150


def test_completed_count_never_exceeds_dataset_length():
    async def _run():
        agg = CompletionAggregator(2, generation=1)
        for i in (0, 1, 1, 0, 1):
            agg.record(i, Outcome.success(i, 1, 1, 1))
        agg.record(7, Outcome.success(7, 1, 1, 1))
        result = await agg.drain(0.01)
        return agg, result

    agg, result = asyncio.run(_run())
    assert result is DrainResult.COMPLETED
    assert agg.completed == 2
    assert agg.prompt_tokens == 2


def test_stale_generation_outcomes_are_dropped():
    async def _run():
        agg = CompletionAggregator(1, generation=2)
        agg.record(0, Outcome.success(0, 1, 100, 100))
        agg.record(0, Outcome.success(0, 2, 1, 1))
        await agg.drain(0.01)
        return agg

    agg = asyncio.run(_run())
    assert agg.stale_dropped == 1
    assert agg.prompt_tokens == 1
    assert agg.completion_tokens == 1


def test_schema_failure_aborts_before_completion():
    async def _run():
        agg = CompletionAggregator(3, generation=1)
        agg.record(0, Outcome.success(0, 1, 1, 1))
        agg.record(1, Outcome.schema_failure(1, 1, "response has no token usage"))
        result = await agg.drain(0.01)
        return agg, result

    agg, result = asyncio.run(_run())
    assert result is DrainResult.ABNORMAL
    assert agg.abnormal
    assert "request 1" in agg.abnormal_reason


def test_transport_failure_counts_zero_tokens_and_is_not_abnormal_by_default():
    async def _run():
        agg = CompletionAggregator(2, generation=1)
        agg.record(0, Outcome.transport_failure(0, 1, "ConnectError"))
        agg.record(1, Outcome.success(1, 1, 4, 6))
        result = await agg.drain(0.01)
        return agg, result

    agg, result = asyncio.run(_run())
    assert result is DrainResult.COMPLETED
    assert agg.transport_failures == 1
    assert agg.prompt_tokens == 4
    assert agg.completion_tokens == 6


def test_transport_failures_escalate_when_threshold_set():
    async def _run():
        agg = CompletionAggregator(5, generation=1, transport_failure_threshold=2)
        agg.record(0, Outcome.transport_failure(0, 1, "ConnectError"))
        agg.record(1, Outcome.transport_failure(1, 1, "ReadError"))
        return await agg.drain(0.01)

    assert asyncio.run(_run()) is DrainResult.ABNORMAL


def test_drain_waits_for_late_outcomes_and_tracks_last_completion():
    async def _run():
        agg = CompletionAggregator(2, generation=1)

        async def late(i: int, delay: float):
            await asyncio.sleep(delay)
            agg.record(i, Outcome.success(i, 1, 1, 1))

        t0 = time.perf_counter()
        tasks = [asyncio.create_task(late(0, 0.01)), asyncio.create_task(late(1, 0.1))]
        result = await agg.drain(0.02)
        await asyncio.gather(*tasks)
        return agg, result, t0

    agg, result, t0 = asyncio.run(_run())
    assert result is DrainResult.COMPLETED
    assert agg.last_completion_at - t0 >= 0.09


def test_explicit_index_set_and_mismatched_record():
    agg = CompletionAggregator([0, 2], generation=1)
    assert agg.total == 2
    with pytest.raises(ValueError):
        agg.record(1, Outcome.success(0, 1, 1, 1))
    with pytest.raises(ValueError):
        CompletionAggregator(-1, generation=1)
