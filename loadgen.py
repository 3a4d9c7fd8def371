from __future__ import annotations

import glob
import json
import math
import random
from pathlib import Path
from typing import Any, Optional, Protocol


class PromptSource(Protocol):
    def get_content(self) -> str:
        ...


def _flatten_message_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    text_parts: list[str] = []
    for part in content:
        if isinstance(part, str):
            text_parts.append(part)
        elif isinstance(part, dict) and isinstance(part.get("text"), str):
            text_parts.append(part["text"])
    return "".join(text_parts)


def _prompt_from_row(obj: Any) -> str:
    if isinstance(obj, str):
        return obj
    if not isinstance(obj, dict):
        return ""
    for key in ("prompt", "text"):
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value

    messages = obj.get("messages")
    if not isinstance(messages, list):
        return ""
    parts: list[str] = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        content = _flatten_message_content(message.get("content"))
        if content:
            parts.append(f"{message.get('role', '')}: {content}".strip())
    return "\n".join(parts)


def load_prompts_from_jsonl(prompt_file: Path) -> list[str]:
    """Read one prompt per line; JSON rows may carry prompt, text or messages."""
    prompts: list[str] = []
    with prompt_file.open("r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            value = line.strip()
            if not value:
                continue
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                prompts.append(value)
                continue
            prompt = _prompt_from_row(parsed)
            if not prompt:
                raise ValueError(f"Unsupported prompt row at line {line_number} in {prompt_file}")
            prompts.append(prompt)
    if not prompts:
        raise ValueError(f"No usable prompts found in {prompt_file}")
    return prompts


def build_synthetic_prompt(target_chars: int) -> str:
    target_chars = max(32, target_chars)
    base_block = (
        "Synthetic benchmark prompt block for repeatable measurements. "
        "Describe the trade-offs of streaming responses from a language model API. "
    )
    repeats = math.ceil(target_chars / len(base_block))
    body = (base_block * repeats)[:target_chars]
    return f"{body}\nAnswer in concise bullet points."


class FixedPromptSource:
    def __init__(self, prompts: list[str], rng: Optional[random.Random] = None) -> None:
        if not prompts:
            raise ValueError("at least one prompt is required")
        self.prompts = list(prompts)
        self._rng = rng or random.Random()

    def get_content(self) -> str:
        if len(self.prompts) == 1:
            return self.prompts[0]
        return self._rng.choice(self.prompts)


class FilePromptSource:
    """Prompts read from a file or a glob of files.

    Plain files are read on each call so large prompt sets are not held in
    memory; ``.jsonl`` files are loaded once and sampled row by row.
    """

    def __init__(self, pattern: str, rng: Optional[random.Random] = None) -> None:
        self.pattern = pattern
        self._rng = rng or random.Random()
        if any(char in pattern for char in "*?["):
            matches = sorted(glob.glob(pattern))
            if not matches:
                raise ValueError(f"No files match {pattern}")
        else:
            matches = [pattern]
        self.paths = [Path(match) for match in matches if Path(match).is_file()]
        if not self.paths:
            raise ValueError(f"No prompt files found for {pattern}")
        self._jsonl_rows: dict[Path, list[str]] = {
            path: load_prompts_from_jsonl(path) for path in self.paths if path.suffix == ".jsonl"
        }

    def get_content(self) -> str:
        path = self._rng.choice(self.paths)
        rows = self._jsonl_rows.get(path)
        if rows is not None:
            return self._rng.choice(rows)
        return path.read_text(encoding="utf-8")


class SyntheticPromptSource:
    def __init__(self, target_chars: int) -> None:
        if target_chars <= 0:
            raise ValueError(f"target size must be > 0, got {target_chars}")
        self._prompt = build_synthetic_prompt(target_chars)

    def get_content(self) -> str:
        return self._prompt
