"""Fan-in of request outcomes for one attempt.

Jobs post outcomes to a mailbox; the coordinator drains it with a bounded
wait. Each index is counted at most once, and outcomes from an older attempt
generation are dropped on receipt.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Iterable, Optional, Union

from tokbench.engine.request import Outcome, OutcomeKind

logger = logging.getLogger(__name__)


class DrainResult(enum.Enum):
    COMPLETED = "completed"
    ABNORMAL = "abnormal"


class CompletionAggregator:
    def __init__(
        self,
        expected: Union[int, Iterable[int]],
        generation: int,
        *,
        transport_failure_threshold: Optional[int] = None,
    ):
        if isinstance(expected, int):
            if expected < 0:
                raise ValueError("expected count must be >= 0")
            expected = range(expected)
        self.expected = frozenset(expected)
        self.total = len(self.expected)
        self.generation = generation
        self.transport_failure_threshold = transport_failure_threshold

        self._mailbox: asyncio.Queue[Outcome] = asyncio.Queue()
        self._outcomes: dict[int, Outcome] = {}

        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.transport_failures = 0
        self.stale_dropped = 0
        self.duplicates_dropped = 0
        self.abnormal = False
        self.abnormal_reason = ""
        self.last_completion_at: Optional[float] = None

    @property
    def completed(self) -> int:
        return len(self._outcomes)

    def record(self, index: int, outcome: Outcome) -> None:
        """Post an outcome from a job. Non-blocking; consumed by ``drain``."""
        if outcome.index != index:
            raise ValueError(f"outcome for index {outcome.index} posted as {index}")
        self._mailbox.put_nowait(outcome)

    def outcome_for(self, index: int) -> Optional[Outcome]:
        return self._outcomes.get(index)

    def pending(self) -> int:
        """Outcomes posted but not yet consumed."""
        return self._mailbox.qsize()

    def _mark_abnormal(self, reason: str) -> None:
        if not self.abnormal:
            self.abnormal = True
            self.abnormal_reason = reason
            logger.warning("attempt generation %d marked abnormal: %s", self.generation, reason)

    def _consume(self, outcome: Outcome) -> None:
        if outcome.generation != self.generation:
            self.stale_dropped += 1
            logger.debug("dropping stale outcome for index %d (generation %d)", outcome.index, outcome.generation)
            return
        if outcome.index in self._outcomes:
            self.duplicates_dropped += 1
            return
        if outcome.index not in self.expected:
            logger.warning("dropping outcome for unexpected index %d", outcome.index)
            return

        self._outcomes[outcome.index] = outcome
        self.last_completion_at = outcome.finished_at
        if outcome.kind is OutcomeKind.SUCCESS:
            self.prompt_tokens += outcome.prompt_tokens
            self.completion_tokens += outcome.completion_tokens
            logger.debug(
                "request %d done: prompt=%d completion=%d",
                outcome.index, outcome.prompt_tokens, outcome.completion_tokens,
            )
        elif outcome.kind is OutcomeKind.SCHEMA_FAILURE:
            self._mark_abnormal(f"request {outcome.index}: {outcome.detail}")
        else:
            self.transport_failures += 1
            logger.warning("request %d transport failure: %s", outcome.index, outcome.detail)
            threshold = self.transport_failure_threshold
            if threshold is not None and self.transport_failures >= threshold:
                self._mark_abnormal(f"{self.transport_failures} transport failures")

    def _finished(self) -> Optional[DrainResult]:
        if self.abnormal:
            return DrainResult.ABNORMAL
        if self.completed >= self.total:
            return DrainResult.COMPLETED
        return None

    async def drain(self, interval_s: float = 0.05) -> DrainResult:
        """Consume outcomes until every index is in or the attempt turns abnormal."""
        while True:
            done = self._finished()
            if done is not None:
                return done
            try:
                outcome = await asyncio.wait_for(self._mailbox.get(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue
            self._consume(outcome)
            while not self.abnormal:
                try:
                    self._consume(self._mailbox.get_nowait())
                except asyncio.QueueEmpty:
                    break
