"""Dataset reader for prompt files.

Two encodings are accepted and normalized to the same indexed view:

  * a single JSON array of objects:    ``[{"prompt": ..., "max_tokens": ...}, ...]``
  * one JSON object per line (JSONL):  blank lines are not entries

The encoding is picked by the first non-blank character of the file. Entries may
name the prompt ``prompt``, ``input`` or ``text`` and the budget ``max_tokens`` or
``n_predict``; a missing budget falls back to ``DEFAULT_MAX_TOKENS``.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from tokbench.common.errors import ConfigurationError, DatasetNotFound, EmptyDataset, MalformedEntry
from tokbench.engine.request import RequestDescriptor


DEFAULT_MAX_TOKENS = 128
PROMPT_FIELDS = ("prompt", "input", "text")
BUDGET_FIELDS = ("max_tokens", "n_predict")


def detect_format(text: str) -> str:
    """Return ``"array"`` or ``"jsonl"``."""
    stripped = text.lstrip()
    return "array" if stripped.startswith("[") else "jsonl"


class Dataset:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        if not self.path.is_file():
            raise DatasetNotFound(f"dataset not found: {self.path}")

        try:
            text = self.path.read_text(encoding="utf-8-sig")
        except UnicodeDecodeError as e:
            raise ConfigurationError(f"dataset is not valid UTF-8: {self.path}: {e.reason}") from e
        self.format = detect_format(text)
        self._entries: list[Any] = []
        if self.format == "array":
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"dataset is not valid JSON: {self.path}: {e.msg}") from e
            if not isinstance(data, list):
                raise ConfigurationError(f"dataset top-level value is not an array: {self.path}")
            self._entries = data
        else:
            # Lines are kept raw so one bad line only breaks its own entry.
            self._entries = [line for line in text.replace("\r", "").split("\n") if line.strip()]

        if not self._entries:
            raise EmptyDataset(f"dataset is empty: {self.path}")

    @property
    def name(self) -> str:
        return self.path.stem

    def __len__(self) -> int:
        return len(self._entries)

    def length(self) -> int:
        return len(self._entries)

    def _raw(self, index: int) -> Any:
        raw = self._entries[index]
        if self.format == "jsonl":
            try:
                return json.loads(raw)
            except json.JSONDecodeError as e:
                raise MalformedEntry(index, f"invalid JSON: {e.msg}") from e
        return raw

    def descriptor_at(self, index: int) -> RequestDescriptor:
        if index < 0 or index >= len(self._entries):
            raise IndexError(f"dataset index out of range: {index}")
        item = self._raw(index)
        if not isinstance(item, dict):
            raise MalformedEntry(index, "entry is not a JSON object")

        prompt = None
        for key in PROMPT_FIELDS:
            value = item.get(key)
            if isinstance(value, str) and value:
                prompt = value
                break
        if prompt is None:
            raise MalformedEntry(index, "no prompt/input/text field")

        max_tokens = DEFAULT_MAX_TOKENS
        for key in BUDGET_FIELDS:
            if item.get(key) is not None:
                try:
                    max_tokens = int(item[key])
                except (TypeError, ValueError) as e:
                    raise MalformedEntry(index, f"{key} is not an integer: {item[key]!r}") from e
                break
        return RequestDescriptor(prompt=prompt, max_tokens=max_tokens)

