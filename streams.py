"""Incremental decoders for the two streaming wire formats.

Each decoder is fed one line of the response body at a time and returns the
events found on that line. Deltas are modelled as one small class per payload
shape, so callers dispatch on the type instead of probing optional fields.
Malformed JSON on a ``data:`` line is skipped: keep-alives and partial
fragments are routine on these streams.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union


logger = logging.getLogger(__name__)


# ---- OpenAI-compatible delta shapes ----


@dataclass(frozen=True)
class ContentDelta:
    text: str

    def has_content(self) -> bool:
        return bool(self.text)


@dataclass(frozen=True)
class ReasoningDelta:
    text: str

    def has_content(self) -> bool:
        return bool(self.text)


# ---- Anthropic-compatible delta shapes ----


@dataclass(frozen=True)
class TextDelta:
    text: str

    def has_content(self) -> bool:
        return bool(self.text)


@dataclass(frozen=True)
class ThinkingDelta:
    thinking: str

    def has_content(self) -> bool:
        return bool(self.thinking)


@dataclass(frozen=True)
class PartialJSONDelta:
    partial_json: str

    def has_content(self) -> bool:
        return bool(self.partial_json)


OpenAIDelta = Union[ContentDelta, ReasoningDelta]
AnthropicDelta = Union[TextDelta, ThinkingDelta, PartialJSONDelta]


@dataclass(frozen=True)
class Usage:
    """Token counts reported by the server; ``None`` means "not in this event"."""

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    thinking_tokens: Optional[int] = None


@dataclass(frozen=True)
class StreamEnd:
    pass


StreamEvent = Union[ContentDelta, ReasoningDelta, TextDelta, ThinkingDelta, PartialJSONDelta, Usage, StreamEnd]


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _flatten_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    text_parts: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if isinstance(text, str):
            text_parts.append(text)
    return "".join(text_parts)


def _data_payload(line: str) -> Optional[str]:
    if not line.startswith("data:"):
        return None
    payload_text = line[5:].strip()
    return payload_text or None


def _load_chunk(payload_text: str) -> Optional[dict[str, Any]]:
    try:
        chunk = json.loads(payload_text)
    except json.JSONDecodeError:
        logger.debug("Skipping undecodable stream chunk: %.200s", payload_text)
        return None
    if not isinstance(chunk, dict):
        return None
    return chunk


class OpenAIStreamDecoder:
    """Decodes ``data: {json}`` lines terminated by ``data: [DONE]``."""

    def __init__(self) -> None:
        self.done = False
        self.chunks: list[str] = []

    def decode_line(self, line: str) -> list[StreamEvent]:
        payload_text = _data_payload(line)
        if payload_text is None or self.done:
            return []
        self.chunks.append(payload_text)
        if payload_text == "[DONE]":
            self.done = True
            return [StreamEnd()]

        chunk = _load_chunk(payload_text)
        if chunk is None:
            return []

        events: list[StreamEvent] = []
        choices = chunk.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            delta = choices[0].get("delta")
            if isinstance(delta, dict):
                reasoning = delta.get("reasoning_content")
                if reasoning is None:
                    reasoning = delta.get("reasoning")
                if isinstance(reasoning, str):
                    events.append(ReasoningDelta(reasoning))
                content = delta.get("content")
                if content is not None:
                    events.append(ContentDelta(_flatten_text(content)))

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            events.append(openai_usage(usage))
        return events


def openai_usage(usage: dict[str, Any]) -> Usage:
    thinking_tokens = None
    details = usage.get("completion_tokens_details")
    if isinstance(details, dict):
        thinking_tokens = _safe_int(details.get("reasoning_tokens"))
    return Usage(
        prompt_tokens=_safe_int(usage.get("prompt_tokens")),
        completion_tokens=_safe_int(usage.get("completion_tokens")),
        thinking_tokens=thinking_tokens,
    )


class AnthropicStreamDecoder:
    """Decodes typed ``event:``/``data:`` pairs of the messages stream."""

    def __init__(self) -> None:
        self.done = False
        self.chunks: list[str] = []
        self._event_name: Optional[str] = None

    def decode_line(self, line: str) -> list[StreamEvent]:
        if line.startswith("event:"):
            self._event_name = line[6:].strip() or None
            return []
        payload_text = _data_payload(line)
        if payload_text is None or self.done:
            return []
        self.chunks.append(payload_text)

        chunk = _load_chunk(payload_text)
        if chunk is None:
            return []
        event_type = chunk.get("type") or self._event_name
        self._event_name = None

        if event_type == "content_block_delta":
            delta = _anthropic_delta(chunk.get("delta"))
            return [delta] if delta is not None else []
        if event_type == "message_start":
            message = chunk.get("message")
            if isinstance(message, dict) and isinstance(message.get("usage"), dict):
                return [anthropic_usage(message["usage"])]
            return []
        if event_type == "message_delta":
            usage = chunk.get("usage")
            if isinstance(usage, dict):
                return [anthropic_usage(usage)]
            return []
        if event_type == "message_stop":
            self.done = True
            return [StreamEnd()]
        return []


def _anthropic_delta(delta: Any) -> Optional[AnthropicDelta]:
    if not isinstance(delta, dict):
        return None
    if isinstance(delta.get("text"), str):
        return TextDelta(delta["text"])
    if isinstance(delta.get("thinking"), str):
        return ThinkingDelta(delta["thinking"])
    if isinstance(delta.get("partial_json"), str):
        return PartialJSONDelta(delta["partial_json"])
    return None


def anthropic_usage(usage: dict[str, Any]) -> Usage:
    return Usage(
        prompt_tokens=_safe_int(usage.get("input_tokens")),
        completion_tokens=_safe_int(usage.get("output_tokens")),
    )
