from __future__ import annotations

import json

import pytest

from tokbench.common.errors import ConfigurationError, DatasetNotFound, EmptyDataset, MalformedEntry
from tokbench.engine.dataset import DEFAULT_MAX_TOKENS, Dataset, detect_format


def _write(tmp_path, name: str, text: str):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_detect_format_uses_first_non_blank_char():
    assert detect_format('\n\n  [{"prompt": "a"}]') == "array"
    assert detect_format('\n{"prompt": "a"}\n') == "jsonl"


def test_array_dataset_maps_field_names(tmp_path):
    path = _write(
        tmp_path,
        "mixed.json",
        json.dumps(
            [
                {"prompt": "a", "max_tokens": 5},
                {"input": "b", "n_predict": 7},
                {"text": "c"},
            ]
        ),
    )
    ds = Dataset(path)

    assert ds.format == "array"
    assert ds.length() == 3
    assert len(ds) == 3
    assert ds.name == "mixed"
    assert ds.descriptor_at(0).prompt == "a"
    assert ds.descriptor_at(0).max_tokens == 5
    assert ds.descriptor_at(1).prompt == "b"
    assert ds.descriptor_at(1).max_tokens == 7
    assert ds.descriptor_at(2).max_tokens == DEFAULT_MAX_TOKENS == 128


def test_jsonl_trailing_blank_line_is_not_an_entry(tmp_path):
    path = _write(tmp_path, "lines.jsonl", '{"prompt": "a"}\n{"prompt": "b", "max_tokens": 3}\n\n')
    ds = Dataset(path)

    assert ds.format == "jsonl"
    assert ds.length() == 2
    assert ds.descriptor_at(1).max_tokens == 3


def test_jsonl_handles_crlf_and_interior_blank_lines(tmp_path):
    path = _write(tmp_path, "crlf.jsonl", '{"prompt": "a"}\r\n\r\n{"prompt": "b"}\r\n')
    ds = Dataset(path)

    assert ds.length() == 2
    assert ds.descriptor_at(1).prompt == "b"


def test_entry_without_prompt_is_malformed_but_others_still_load(tmp_path):
    path = _write(tmp_path, "bad.json", json.dumps([{"prompt": "ok"}, {"max_tokens": 4}, {"prompt": "ok2"}]))
    ds = Dataset(path)

    with pytest.raises(MalformedEntry) as exc:
        ds.descriptor_at(1)
    assert exc.value.index == 1
    assert ds.descriptor_at(2).prompt == "ok2"


def test_invalid_jsonl_line_is_malformed_entry(tmp_path):
    path = _write(tmp_path, "broken.jsonl", '{"prompt": "a"}\n{not json}\n')
    ds = Dataset(path)

    assert ds.length() == 2
    with pytest.raises(MalformedEntry):
        ds.descriptor_at(1)


def test_non_integer_budget_is_malformed(tmp_path):
    path = _write(tmp_path, "budget.json", json.dumps([{"prompt": "a", "max_tokens": "lots"}]))
    with pytest.raises(MalformedEntry):
        Dataset(path).descriptor_at(0)


def test_missing_and_empty_datasets_are_configuration_errors(tmp_path):
    with pytest.raises(DatasetNotFound):
        Dataset(tmp_path / "nope.json")
    with pytest.raises(EmptyDataset):
        Dataset(_write(tmp_path, "empty.json", "[]"))
    with pytest.raises(EmptyDataset):
        Dataset(_write(tmp_path, "blank.jsonl", "\n\n"))
    with pytest.raises(ConfigurationError):
        Dataset(_write(tmp_path, "obj.json", "[{"))


def test_descriptor_at_out_of_range(tmp_path):
    ds = Dataset(_write(tmp_path, "one.json", '[{"prompt": "a"}]'))
    with pytest.raises(IndexError):
        ds.descriptor_at(1)


def test_undecodable_file_is_configuration_error(tmp_path):
    path = tmp_path / "latin1.json"
    path.write_bytes(b'\xff\xfe[{"prompt": "caf\xe9"}]')
    with pytest.raises(ConfigurationError):
        Dataset(path)
