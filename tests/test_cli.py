from __future__ import annotations

from pathlib import Path

import bench_batch


def test_flags_override_config_file(tmp_path):
    cfg_path = tmp_path / "bench.json"
    cfg_path.write_text('{"batch_sizes": [4], "retry": {"max_attempts": 5}}')
    args = bench_batch._parser().parse_args(
        [
            "--config", str(cfg_path),
            "--model", "/m/a.gguf", "/m/b.gguf",
            "--port", "9090",
            "--no-drop-caches",
        ]
    )
    cfg = bench_batch._build_config(args)

    assert cfg.batch_sizes == [4]
    assert cfg.retry.max_attempts == 5
    assert cfg.models == [Path("/m/a.gguf"), Path("/m/b.gguf")]
    assert cfg.server.port == 9090
    assert cfg.drop_caches is False


def test_invalid_value_exits_with_config_code(tmp_path):
    code = bench_batch.main(["--port", "0", "--results-dir", str(tmp_path / "r")])
    assert code == bench_batch.EXIT_CONFIG


def test_unusable_results_dir_exits_with_config_code(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    code = bench_batch.main(["--results-dir", str(blocker / "results")])
    assert code == bench_batch.EXIT_CONFIG
