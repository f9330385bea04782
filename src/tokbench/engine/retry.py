"""Bounded-retry driver for one dataset.

A failed attempt is taken to mean the service itself is in a bad state, so the
whole attempt is thrown away: outstanding requests are cancelled, the results
of this dataset and every later dataset in the configuration are deleted, and
the service is restarted before the dataset is run again from index 0.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from tokbench.common.config import RetryPolicy, RunConfiguration
from tokbench.common.errors import (
    EmptyDataset,
    MalformedEntry,
    RetryExhausted,
    ServiceBinaryNotFound,
    StartupFailed,
)
from tokbench.engine.aggregator import CompletionAggregator, DrainResult
from tokbench.engine.dataset import Dataset
from tokbench.engine.dispatcher import Dispatcher
from tokbench.engine.metrics import RunSummary, summarize
from tokbench.engine.request import JobState, RequestJob
from tokbench.engine.results import ResultStore

logger = logging.getLogger(__name__)

CANCEL_WAIT_S = 5.0


class RetryState(enum.Enum):
    RUNNING = "running"
    ABORTING = "aborting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


class Restartable(Protocol):
    def restart(self, variant: str, batch_size: int, model_path: Path): ...


@dataclass
class AttemptResult:
    attempt: int
    generation: int
    result: DrainResult
    jobs: list[RequestJob]
    completed: int
    prompt_tokens: int
    completion_tokens: int
    started_at: float
    finished_at: float
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.result is DrainResult.COMPLETED


class RetryController:
    def __init__(
        self,
        service: Restartable,
        dispatcher: Dispatcher,
        store: ResultStore,
        policy: RetryPolicy,
        *,
        drop_caches: Optional[Callable[[], object]] = None,
    ):
        self.service = service
        self.dispatcher = dispatcher
        self.store = store
        self.policy = policy
        self.drop_caches = drop_caches
        self.state = RetryState.SUCCEEDED
        self.history: list[AttemptResult] = []
        self._generation = 0

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    @staticmethod
    def build_jobs(dataset: Dataset, generation: int) -> list[RequestJob]:
        jobs = []
        for i in range(dataset.length()):
            try:
                jobs.append(RequestJob(i, dataset.descriptor_at(i), generation))
            except MalformedEntry as e:
                logger.warning("%s: skipping malformed %s", dataset.name, e)
                jobs.append(RequestJob(i, None, generation, state=JobState.FAILED, error=e.reason))
        return jobs

    async def run_attempt(self, run: RunConfiguration, dataset_path: Path, attempt: int) -> AttemptResult:
        generation = self._next_generation()
        dataset = Dataset(dataset_path)
        jobs = self.build_jobs(dataset, generation)
        live = [job for job in jobs if job.descriptor is not None]
        if not live:
            raise EmptyDataset(f"no usable entries in {dataset_path}")

        trace = self.store.begin_attempt(run, attempt, self.policy.max_attempts, generation)
        # Malformed entries are never dispatched and never awaited.
        agg = CompletionAggregator(
            [job.index for job in live],
            generation,
            transport_failure_threshold=self.policy.transport_failure_threshold,
        )
        logger.info(
            "attempt %d/%d: %s batch=%d dataset=%s (%d requests, all in flight)",
            attempt, self.policy.max_attempts, run.variant, run.batch_size, run.dataset, len(live),
        )

        started_at = time.perf_counter()
        tasks = [self.dispatcher.dispatch(job, agg, trace) for job in live]
        try:
            result = await agg.drain(self.policy.drain_interval_s)
        finally:
            outstanding = [t for t in tasks if not t.done()]
            if outstanding:
                trace.close()
                for t in outstanding:
                    t.cancel()
                await asyncio.wait(outstanding, timeout=CANCEL_WAIT_S)
            elif tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        finished_at = agg.last_completion_at if agg.last_completion_at is not None else started_at
        return AttemptResult(
            attempt=attempt,
            generation=generation,
            result=result,
            jobs=jobs,
            completed=agg.completed,
            prompt_tokens=agg.prompt_tokens,
            completion_tokens=agg.completion_tokens,
            started_at=started_at,
            finished_at=finished_at,
            reason=agg.abnormal_reason,
        )

    async def run_dataset(
        self,
        run: RunConfiguration,
        dataset_path: Path,
        *,
        discard_on_abort: Optional[list[RunConfiguration]] = None,
    ) -> RunSummary:
        """Run one dataset to success or raise ``RetryExhausted``.

        ``discard_on_abort`` lists the result namespaces wiped when an attempt
        aborts; it defaults to ``[run]``.
        """
        discard = discard_on_abort if discard_on_abort is not None else [run]
        attempt = 1
        while True:
            self.state = RetryState.RUNNING
            result = await self.run_attempt(run, dataset_path, attempt)
            self.history.append(result)

            if result.succeeded:
                self.state = RetryState.SUCCEEDED
                return summarize(
                    variant=run.variant,
                    batch_size=run.batch_size,
                    model=str(run.model_path),
                    dataset=run.dataset_name,
                    prompt_tokens=result.prompt_tokens,
                    completion_tokens=result.completion_tokens,
                    started_at=result.started_at,
                    finished_at=result.finished_at,
                    attempts=attempt,
                )

            self.state = RetryState.ABORTING
            logger.warning(
                "service abnormal on %s (attempt %d/%d): %s",
                run.dataset, attempt, self.policy.max_attempts, result.reason,
            )
            self.store.discard(discard)
            if self.drop_caches is not None:
                self.drop_caches()

            attempt += 1
            if attempt > self.policy.max_attempts:
                self.state = RetryState.EXHAUSTED
                raise RetryExhausted(run.dataset, attempt - 1, result.reason)
            # Any restart failure, a vanished build included, ends the run.
            try:
                self.service.restart(run.variant, run.batch_size, run.model_path)
            except (StartupFailed, ServiceBinaryNotFound) as e:
                self.state = RetryState.EXHAUSTED
                raise RetryExhausted(run.dataset, attempt - 1, f"restart failed: {e}") from e

