from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

import httpx

from tokbench.common.config import BenchConfig, RunConfiguration
from tokbench.common.errors import ConfigurationError, ServiceBinaryNotFound
from tokbench.engine import environment
from tokbench.engine.backends import Backend
from tokbench.engine.dispatcher import Dispatcher, make_client
from tokbench.engine.metrics import RunSummary
from tokbench.engine.results import ResultStore
from tokbench.engine.retry import RetryController
from tokbench.engine.service import ServiceController

logger = logging.getLogger(__name__)


class BenchmarkRunner:
    """Walks the (batch, variant, model) grid and every dataset under it, one at a time."""

    def __init__(
        self,
        cfg: BenchConfig,
        service: ServiceController,
        *,
        backend: Optional[Backend] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        drop_caches: Optional[Callable[[], object]] = None,
    ):
        self.cfg = cfg
        self.service = service
        self.backend = backend or service.backend
        self.store = ResultStore(cfg.results_dir)
        self._transport = transport
        if drop_caches is None and cfg.drop_caches:
            drop_caches = environment.drop_caches
        self._drop_caches = drop_caches

    def _drop(self) -> None:
        if self._drop_caches is not None:
            self._drop_caches()

    def runs_for(self, variant: str, batch_size: int, model_path: Path) -> list[RunConfiguration]:
        return [
            RunConfiguration(
                variant=variant,
                batch_size=batch_size,
                model_path=model_path,
                dataset=ds,
            )
            for ds in self.cfg.datasets
        ]

    async def run(self) -> list[RunSummary]:
        summaries: list[RunSummary] = []
        for batch_size in self.cfg.batch_sizes:
            for variant in self.cfg.variants:
                for model_path in self.cfg.models:
                    summaries.extend(await self.run_configuration(variant, batch_size, model_path))
        logger.info("all configurations done (%d summaries)", len(summaries))
        return summaries

    async def run_configuration(self, variant: str, batch_size: int, model_path: Path) -> list[RunSummary]:
        """Benchmark every dataset against one service configuration.

        A missing service build skips the configuration. ``StartupFailed`` and
        ``RetryExhausted`` propagate and end the run.
        """
        runs = self.runs_for(variant, batch_size, model_path)
        try:
            self.service.start(variant, batch_size, model_path)
        except ServiceBinaryNotFound as e:
            logger.error("skipping variant=%s batch=%d model=%s: %s", variant, batch_size, model_path.name, e)
            return []

        summaries: list[RunSummary] = []
        try:
            async with make_client(self.cfg.retry.request_timeout_s, transport=self._transport) as client:
                dispatcher = Dispatcher(
                    client,
                    self.backend,
                    self.cfg.server.base_url,
                    variant,
                    request_timeout_s=self.cfg.retry.request_timeout_s,
                )
                retry = RetryController(
                    self.service,
                    dispatcher,
                    self.store,
                    self.cfg.retry,
                    drop_caches=self._drop_caches,
                )
                for idx, run in enumerate(runs):
                    path = self.cfg.datasets_dir / run.dataset
                    try:
                        summary = await retry.run_dataset(run, path, discard_on_abort=runs[idx:])
                    except ConfigurationError as e:
                        logger.warning("skipping dataset: %s", e)
                        continue
                    self.store.write_summary(run, summary)
                    logger.info(
                        "%s batch=%d %s %s: prompt_n=%d predicted_n=%d time=%.3fs throughput=%.1f tok/s",
                        variant, batch_size, run.model_name, run.dataset_name, summary.prompt_tokens,
                        summary.completion_tokens, summary.duration_s, summary.throughput,
                    )
                    summaries.append(summary)
                    self._drop()
        finally:
            self.service.stop()
        return summaries
