from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import httpx

from tokbench.engine.aggregator import CompletionAggregator
from tokbench.engine.backends import Backend, extract_usage
from tokbench.engine.request import JobState, Outcome, RequestJob
from tokbench.engine.results import AttemptTrace

logger = logging.getLogger(__name__)


def make_client(request_timeout_s: Optional[float], *, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """HTTP client for a full fan-out: no pool cap, the job timeout is the only timeout."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(request_timeout_s),
        limits=httpx.Limits(max_connections=None, max_keepalive_connections=None),
        transport=transport,
    )


class Dispatcher:
    """Turns request jobs into independent HTTP calls against the service."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        backend: Backend,
        base_url: str,
        variant: str,
        *,
        request_timeout_s: Optional[float] = None,
    ):
        self.client = client
        self.backend = backend
        self.url = f"{base_url.rstrip('/')}{backend.endpoint}"
        self.variant = variant
        self.request_timeout_s = request_timeout_s

    def dispatch(self, job: RequestJob, aggregator: CompletionAggregator, trace: AttemptTrace) -> asyncio.Task:
        """Start ``job`` without waiting for it. Must be called from the event loop."""
        job.state = JobState.DISPATCHED
        return asyncio.create_task(self._run(job, aggregator, trace), name=f"request-{job.index}")

    def _classify(self, job: RequestJob, resp: httpx.Response) -> Outcome:
        if resp.status_code >= 400:
            return Outcome.schema_failure(job.index, job.generation, f"HTTP {resp.status_code}")
        try:
            body = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return Outcome.schema_failure(job.index, job.generation, "response is not JSON")

        usage = extract_usage(body)
        if usage is None:
            if self.backend.validate_usage:
                return Outcome.schema_failure(job.index, job.generation, "response has no token usage")
            usage = (0, 0)
        return Outcome.success(job.index, job.generation, *usage)

    async def _run(self, job: RequestJob, aggregator: CompletionAggregator, trace: AttemptTrace) -> Outcome:
        payload = self.backend.build_payload(job.descriptor, self.variant)
        response_text = ""
        try:
            resp = await asyncio.wait_for(
                self.client.post(self.url, json=payload, headers=self.backend.headers()),
                timeout=self.request_timeout_s,
            )
        except asyncio.TimeoutError:
            outcome = Outcome.transport_failure(job.index, job.generation, f"timed out after {self.request_timeout_s}s")
            response_text = outcome.detail
        except httpx.HTTPError as e:
            outcome = Outcome.transport_failure(job.index, job.generation, f"{type(e).__name__}: {e}")
            response_text = outcome.detail
        except Exception as e:
            # Every job reports exactly one outcome, whatever went wrong.
            logger.exception("request %d failed unexpectedly", job.index)
            outcome = Outcome.transport_failure(job.index, job.generation, f"{type(e).__name__}: {e}")
            response_text = outcome.detail
        else:
            response_text = resp.text
            outcome = self._classify(job, resp)

        tokens = (outcome.prompt_tokens, outcome.completion_tokens) if outcome.ok else None
        trace.record(job.index, payload, response_text, status=outcome.kind.value, tokens=tokens)
        job.state = JobState.COMPLETED if outcome.ok else JobState.FAILED
        job.outcome = outcome
        aggregator.record(job.index, outcome)
        return outcome
