#!/usr/bin/env python3
"""Batch throughput benchmark: replay each dataset as one burst of concurrent requests
against a freshly started local inference server, for every (batch width, build, model) triple.

Reports prompt/completion token totals, wall time, and aggregate tokens/sec per dataset.
A dataset whose responses stop carrying token usage is rerun on a restarted server,
up to --max-attempts times.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from tokbench.common.config import BenchConfig
from tokbench.common.errors import BenchError, RetryExhausted, StartupFailed
from tokbench.engine.backends import make_backend
from tokbench.engine.metrics import format_table
from tokbench.engine.runner import BenchmarkRunner
from tokbench.engine.service import ServiceController

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def _build_config(args: argparse.Namespace) -> BenchConfig:
    cfg = BenchConfig.from_file(args.config) if args.config else BenchConfig()
    data = cfg.model_dump()
    overrides = {
        "backend": args.backend,
        "datasets_dir": args.datasets_dir,
        "datasets": args.dataset,
        "results_dir": args.results_dir,
        "server_base": args.server_base,
        "venv_root": args.venv_root,
        "models": args.model,
        "variants": args.variant,
        "batch_sizes": args.batch,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    if args.no_drop_caches:
        data["drop_caches"] = False
    if args.no_validate_usage:
        data["validate_usage"] = False

    server_overrides = {"port": args.port, "settle_delay_s": args.settle_delay}
    data["server"].update({k: v for k, v in server_overrides.items() if v is not None})
    retry_overrides = {
        "max_attempts": args.max_attempts,
        "transport_failure_threshold": args.transport_failure_threshold,
        "request_timeout_s": args.request_timeout,
    }
    data["retry"].update({k: v for k, v in retry_overrides.items() if v is not None})
    return BenchConfig.model_validate(data)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Batch throughput benchmark for a local inference server")
    parser.add_argument("--config", type=Path, default=None, help="JSON config file (flags override it)")
    parser.add_argument("--backend", choices=["llama.cpp", "fastllm"], default=None)
    parser.add_argument("--batch", type=int, nargs="+", default=None, help="Batch widths to test (default: 8 16)")
    parser.add_argument("--variant", type=str, nargs="+", default=None, help="Server builds / env names")
    parser.add_argument("--dataset", type=str, nargs="+", default=None, help="Dataset files under --datasets-dir")
    parser.add_argument("--datasets-dir", type=Path, default=None)
    parser.add_argument("--results-dir", type=Path, default=None)
    parser.add_argument("--server-base", type=Path, default=None, help="llama.cpp builds: <base>/<variant>/build/bin")
    parser.add_argument("--venv-root", type=Path, default=None, help="fastllm envs: <root>/<variant>")
    parser.add_argument("--model", type=Path, nargs="+", default=None, help="Model files, one service run per model")
    parser.add_argument("--port", type=int, default=None, help="Server port (default: 8080)")
    parser.add_argument("--settle-delay", type=float, default=None, help="Seconds to wait after the server answers")
    parser.add_argument("--max-attempts", type=int, default=None, help="Attempts per dataset (default: 3)")
    parser.add_argument(
        "--transport-failure-threshold",
        type=int,
        default=None,
        help="Treat N transport failures in one attempt as a service failure (default: never)",
    )
    parser.add_argument("--request-timeout", type=float, default=None, help="Per-request timeout in seconds")
    parser.add_argument("--no-drop-caches", action="store_true", help="Do not drop the page cache between datasets")
    parser.add_argument(
        "--no-validate-usage",
        action="store_true",
        help="Count responses without token usage as zero tokens instead of failing the attempt",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    log = logging.getLogger("bench_batch")

    try:
        cfg = _build_config(args)
        cfg.results_dir.mkdir(parents=True, exist_ok=True)
    except (ValidationError, OSError) as e:
        log.error("invalid configuration: %s", e)
        return EXIT_CONFIG

    with ServiceController(make_backend(cfg), cfg.server) as service:
        runner = BenchmarkRunner(cfg, service)
        try:
            summaries = asyncio.run(runner.run())
        except StartupFailed as e:
            log.error("service did not start: %s", e)
            return EXIT_FATAL
        except RetryExhausted as e:
            log.error("%s", e)
            return EXIT_FATAL
        except BenchError as e:
            log.error("benchmark aborted: %s", e)
            return EXIT_FATAL

    print()
    print(format_table(summaries))
    log.info("all experiments finished; results in %s", cfg.results_dir)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
