from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any


def throughput(total_tokens: int, duration_s: float) -> float:
    return total_tokens / duration_s if duration_s > 0 else 0.0


@dataclass(frozen=True)
class RunSummary:
    variant: str
    batch_size: int
    model: str
    dataset: str
    prompt_tokens: int
    completion_tokens: int
    duration_s: float
    attempts: int = 1

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def throughput(self) -> float:
        return throughput(self.total_tokens, self.duration_s)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        # Key names shared with the infer.txt trace.
        d["batch"] = d.pop("batch_size")
        d["prompt_n"] = d.pop("prompt_tokens")
        d["predicted_n"] = d.pop("completion_tokens")
        d["throughput"] = self.throughput
        return d


def summarize(
    *,
    variant: str,
    batch_size: int,
    model: str,
    dataset: str,
    prompt_tokens: int,
    completion_tokens: int,
    started_at: float,
    finished_at: float,
    attempts: int = 1,
) -> RunSummary:
    """Build the summary for one finished attempt.

    ``started_at``/``finished_at`` are ``time.perf_counter()`` marks for the
    first dispatch and the last recorded outcome. A clock that reads backwards
    is clamped to zero duration.
    """
    duration = max(0.0, finished_at - started_at)
    return RunSummary(
        variant=variant,
        batch_size=batch_size,
        model=model,
        dataset=dataset,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        duration_s=duration,
        attempts=attempts,
    )


def format_table(summaries: list[RunSummary]) -> str:
    lines = [
        "| batch | variant | model | dataset | prompt_n | predicted_n | time (s) | tokens/sec |",
        "|-------|---------|-------|---------|----------|-------------|----------|------------|",
    ]
    for s in summaries:
        lines.append(
            f"| {s.batch_size:5} | {s.variant} | {Path(s.model).stem} | {s.dataset} | {s.prompt_tokens:8} | "
            f"{s.completion_tokens:11} | {s.duration_s:8.3f} | {s.throughput:10.1f} |"
        )
    return "\n".join(lines)
