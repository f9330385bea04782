"""Service variants: how to launch them, what to send, where the token counts live."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from tokbench.common.config import BenchConfig, ServerConfig
from tokbench.common.errors import ServiceBinaryNotFound
from tokbench.engine.request import RequestDescriptor

# (prompt key, completion key) pairs, tried in order.
_TOP_LEVEL_USAGE_KEYS = (
    ("prompt_n", "predicted_n"),
    ("tokens_evaluated", "tokens_predicted"),
)


def _as_count(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def extract_usage(body: Any) -> Optional[tuple[int, int]]:
    """Return ``(prompt_tokens, completion_tokens)`` or None if the body carries no usage.

    Looks at an OpenAI-style ``usage`` object first, then llama.cpp's top-level
    counters, then llama.cpp's ``timings`` block.
    """
    if not isinstance(body, dict):
        return None

    usage = body.get("usage")
    if isinstance(usage, dict):
        p = _as_count(usage.get("prompt_tokens"))
        c = _as_count(usage.get("completion_tokens"))
        if p is not None and c is not None:
            return p, c

    for p_key, c_key in _TOP_LEVEL_USAGE_KEYS:
        p = _as_count(body.get(p_key))
        c = _as_count(body.get(c_key))
        if p is not None and c is not None:
            return p, c

    timings = body.get("timings")
    if isinstance(timings, dict):
        p = _as_count(timings.get("prompt_n"))
        c = _as_count(timings.get("predicted_n"))
        if p is not None and c is not None:
            return p, c
    return None


@dataclass(frozen=True)
class LaunchSpec:
    argv: list[str]
    cwd: Optional[Path] = None


class Backend:
    name = "base"
    endpoint = "/completion"
    validate_usage = True

    def launch_spec(self, variant: str, batch_size: int, model_path: Path, server: ServerConfig) -> LaunchSpec:
        raise NotImplementedError

    def build_payload(self, desc: RequestDescriptor, variant: str) -> dict[str, Any]:
        raise NotImplementedError

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}


class LlamaCppBackend(Backend):
    name = "llama.cpp"
    endpoint = "/completion"

    def __init__(self, server_base: Path, *, validate_usage: bool = True):
        self.server_base = Path(server_base)
        self.validate_usage = validate_usage

    def launch_spec(self, variant: str, batch_size: int, model_path: Path, server: ServerConfig) -> LaunchSpec:
        bin_dir = self.server_base / variant / "build" / "bin"
        binary = bin_dir / "llama-server"
        if not binary.is_file():
            raise ServiceBinaryNotFound(f"llama-server not found at {binary}")
        argv = [
            str(binary),
            "-m", str(model_path),
            "-c", str(server.ctx_size),
            "--batch-size", str(batch_size),
            "-np", str(batch_size),
            "--port", str(server.port),
            "--host", server.bind_host,
        ]
        return LaunchSpec(argv=argv, cwd=bin_dir)

    def build_payload(self, desc: RequestDescriptor, variant: str) -> dict[str, Any]:
        del variant
        return {"prompt": desc.prompt, "n_predict": desc.max_tokens, "stream": False}


class FastLLMBackend(Backend):
    name = "fastllm"
    endpoint = "/v1/chat/completions"

    def __init__(self, venv_root: Path, *, validate_usage: bool = True):
        self.venv_root = Path(venv_root)
        self.validate_usage = validate_usage

    def launch_spec(self, variant: str, batch_size: int, model_path: Path, server: ServerConfig) -> LaunchSpec:
        python = self.venv_root / variant / "bin" / "python"
        if not python.is_file():
            raise ServiceBinaryNotFound(f"no python interpreter in venv {self.venv_root / variant}")
        argv = [
            str(python), "-m", "ftllm.server",
            "--dtype", "int8",
            "--atype", "float16",
            "-t", str(server.threads),
            "--max_batch", str(batch_size),
            "-p", str(model_path),
            "--port", str(server.port),
            "--model_name", variant,
        ]
        return LaunchSpec(argv=argv)

    def build_payload(self, desc: RequestDescriptor, variant: str) -> dict[str, Any]:
        return {"model": variant, "prompt": desc.prompt, "max_tokens": desc.max_tokens, "stream": False}

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": "Bearer something"}


def make_backend(cfg: BenchConfig) -> Backend:
    if cfg.backend == "fastllm":
        return FastLLMBackend(cfg.venv_root, validate_usage=cfg.validate_usage)
    return LlamaCppBackend(cfg.server_base, validate_usage=cfg.validate_usage)
