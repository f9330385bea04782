"""On-disk result artifacts for one benchmark configuration."""
from __future__ import annotations

import json
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Optional

from tokbench.common.config import RunConfiguration
from tokbench.engine.metrics import RunSummary

logger = logging.getLogger(__name__)

TRACE_FILE = "infer.txt"
SUMMARY_FILE = "summary.json"
REQUESTS_DIR = "requests"


def _now() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


class AttemptTrace:
    """Per-attempt writer for the request/response trace and per-request artifacts.

    Once closed, further writes are dropped; jobs that outlive a cancelled
    attempt cannot recreate discarded files.
    """

    def __init__(self, result_dir: Path, generation: int):
        self.result_dir = result_dir
        self.generation = generation
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def record(
        self,
        index: int,
        request: dict[str, Any],
        response_text: str,
        *,
        status: str,
        tokens: Optional[tuple[int, int]] = None,
    ) -> None:
        # Called on the event loop thread only; request blocks never interleave.
        if self._closed:
            return
        try:
            self.result_dir.mkdir(parents=True, exist_ok=True)
            with (self.result_dir / TRACE_FILE).open("a", encoding="utf-8") as f:
                f.write(f"==== REQUEST {index} ====\n")
                f.write(f"REQ: {json.dumps(request, ensure_ascii=False)}\n")
                f.write(f"RESP: {response_text}\n\n")
            req_dir = self.result_dir / REQUESTS_DIR
            req_dir.mkdir(exist_ok=True)
            artifact = {
                "index": index,
                "generation": self.generation,
                "status": status,
                "prompt_tokens": tokens[0] if tokens else 0,
                "completion_tokens": tokens[1] if tokens else 0,
                "response": response_text,
            }
            (req_dir / f"{index}.json").write_text(json.dumps(artifact, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            # Trace output is best-effort.
            logger.warning("could not write trace for request %d: %s", index, e)


class ResultStore:
    def __init__(self, results_dir: Path):
        self.results_dir = Path(results_dir)

    def dir_for(self, run: RunConfiguration) -> Path:
        return run.result_dir(self.results_dir)

    def _append(self, run: RunConfiguration, lines: list[str]) -> None:
        d = self.dir_for(run)
        d.mkdir(parents=True, exist_ok=True)
        with (d / TRACE_FILE).open("a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")

    def write_header(self, run: RunConfiguration) -> None:
        self._append(
            run,
            [
                "====================",
                f"VARIANT: {run.variant}",
                f"BATCH: {run.batch_size}",
                f"DATASET: {run.dataset}",
                f"MODEL: {run.model_path}",
                f"TIME: {_now()}",
                "====================",
            ],
        )

    def begin_attempt(self, run: RunConfiguration, attempt: int, max_attempts: int, generation: int) -> AttemptTrace:
        # The directory may have been discarded by a previous attempt.
        if not (self.dir_for(run) / TRACE_FILE).exists():
            self.write_header(run)
        self._append(run, [f"---- ATTEMPT {attempt}/{max_attempts} ----", f"TIME: {_now()}"])
        return AttemptTrace(self.dir_for(run), generation)

    def write_summary(self, run: RunConfiguration, summary: RunSummary) -> Path:
        self._append(
            run,
            [
                f"SUMMARY: prompt_n={summary.prompt_tokens} predicted_n={summary.completion_tokens}",
                f"TIME_S: {summary.duration_s:.6f}",
                f"THROUGHPUT: {summary.throughput:.6f} tokens/s",
                "",
            ],
        )
        path = self.dir_for(run) / SUMMARY_FILE
        path.write_text(json.dumps(summary.to_dict(), indent=2), encoding="utf-8")
        return path

    def discard(self, runs: list[RunConfiguration]) -> None:
        for run in runs:
            d = self.dir_for(run)
            if d.exists():
                logger.info("discarding results in %s", d)
                shutil.rmtree(d, ignore_errors=True)


def load_summaries(results_dir: Path) -> list[dict[str, Any]]:
    out = []
    for path in sorted(Path(results_dir).rglob(SUMMARY_FILE)):
        out.append(json.loads(path.read_text(encoding="utf-8")))
    return out
