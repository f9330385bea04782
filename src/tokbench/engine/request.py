from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class RequestDescriptor:
    prompt: str
    max_tokens: int


class JobState(enum.Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeKind(enum.Enum):
    SUCCESS = "success"
    TRANSPORT_FAILURE = "transport_failure"
    SCHEMA_FAILURE = "schema_failure"


@dataclass(frozen=True)
class Outcome:
    """What one request job reports back. Tagged with the attempt generation."""

    index: int
    generation: int
    kind: OutcomeKind
    prompt_tokens: int = 0
    completion_tokens: int = 0
    detail: str = ""
    finished_at: float = field(default_factory=time.perf_counter)

    @classmethod
    def success(cls, index: int, generation: int, prompt_tokens: int, completion_tokens: int) -> "Outcome":
        return cls(index, generation, OutcomeKind.SUCCESS, prompt_tokens, completion_tokens)

    @classmethod
    def transport_failure(cls, index: int, generation: int, detail: str) -> "Outcome":
        return cls(index, generation, OutcomeKind.TRANSPORT_FAILURE, detail=detail)

    @classmethod
    def schema_failure(cls, index: int, generation: int, detail: str) -> "Outcome":
        return cls(index, generation, OutcomeKind.SCHEMA_FAILURE, detail=detail)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


@dataclass
class RequestJob:
    index: int
    descriptor: Optional[RequestDescriptor]
    generation: int
    state: JobState = JobState.PENDING
    outcome: Optional[Outcome] = None
    error: Optional[str] = None     # set when the entry was malformed
