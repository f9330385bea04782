from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_DATASETS = [
    "short2short.json",
    "short2long.json",
    "long2short.json",
    "long2long.json",
]


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"        # address the client probes and dispatches to
    bind_host: str = "0.0.0.0"     # address the service binds
    port: int = Field(default=8080, gt=0, lt=65536)
    ctx_size: int = 32000
    threads: int = 4
    probe_attempts: int = Field(default=60, ge=1)
    probe_interval_s: float = Field(default=1.0, ge=0.0)
    probe_timeout_s: float = Field(default=1.0, gt=0.0)
    settle_delay_s: float = Field(default=30.0, ge=0.0)
    stop_grace_s: float = Field(default=2.0, ge=0.0)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    # None keeps transport failures out of the retry path entirely.
    transport_failure_threshold: Optional[int] = Field(default=None, ge=1)
    request_timeout_s: Optional[float] = Field(default=600.0, gt=0.0)
    drain_interval_s: float = Field(default=0.05, gt=0.0)


class BenchConfig(BaseModel):
    backend: Literal["llama.cpp", "fastllm"] = "llama.cpp"
    datasets_dir: Path = Path("/opt/infer/datasets")
    datasets: list[str] = Field(default_factory=lambda: list(DEFAULT_DATASETS))
    results_dir: Path = Path("/opt/infer/results/batch")
    server_base: Path = Path("/opt/llm")   # llama.cpp builds: <base>/<variant>/build/bin
    venv_root: Path = Path("/root/envs")   # fastllm envs: <root>/<variant>/bin/python
    models: list[Path] = Field(
        default_factory=lambda: [Path("/opt/models/Qwen2.5-0.5B-Instruct-int8.gguf")],
        min_length=1,
    )
    variants: list[str] = Field(default_factory=lambda: ["llama.cpp-b4977-auto-gccO2"])
    batch_sizes: list[int] = Field(default_factory=lambda: [8, 16])
    drop_caches: bool = True
    # False: a response without usage counts as zero tokens instead of failing the attempt.
    validate_usage: bool = True
    server: ServerConfig = Field(default_factory=ServerConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @classmethod
    def from_file(cls, path: str | Path) -> "BenchConfig":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))


class RunConfiguration(BaseModel):
    """One (variant, batch, model, dataset) cell of the benchmark grid."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    variant: str
    batch_size: int
    model_path: Path
    dataset: str

    @property
    def model_name(self) -> str:
        return self.model_path.stem

    @property
    def dataset_name(self) -> str:
        return Path(self.dataset).stem

    def result_dir(self, results_dir: Path) -> Path:
        return Path(results_dir) / str(self.batch_size) / self.variant / self.model_name / self.dataset_name
