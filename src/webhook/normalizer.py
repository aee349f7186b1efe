"""Payload normalizer — extracts the AI answer from heterogeneous webhook shapes.

Rules are evaluated top to bottom and the first matching predicate wins.
Every rule set ends in a catch-all, so ``normalize_answer`` is total over
JSON values: unknown shapes degrade to their serialized form.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

Predicate = Callable[[Any], bool]
Extractor = Callable[[Any], Any]


def serialize(value: Any) -> str:
    """Compact JSON serialization used for the degraded string answer."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def _choices_content(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    choices = value.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def _wrapped_choices_content(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    return _choices_content(value.get("response"))


def _response_text(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    text = value.get("response")
    if isinstance(text, str) and text:
        return text
    return None


def _conversational_text(value: Any) -> str | None:
    return (
        _choices_content(value)
        or _wrapped_choices_content(value)
        or _response_text(value)
    )


def is_structured(value: Any) -> bool:
    """A plain object without envelope fields is already the final answer."""
    return (
        isinstance(value, dict)
        and "choices" not in value
        and "response" not in value
    )


def _is_structured_array(value: Any) -> bool:
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(item, dict) for item in value)
        and _conversational_text(value[0]) is None
    )


def _first_item_text(value: Any) -> str | None:
    if isinstance(value, list) and value:
        return _conversational_text(value[0])
    return None


ANSWER_RULES: list[tuple[Predicate, Extractor]] = [
    (lambda v: v is None, serialize),
    (is_structured, lambda v: v),
    (lambda v: _choices_content(v) is not None, _choices_content),
    (lambda v: _wrapped_choices_content(v) is not None, _wrapped_choices_content),
    (lambda v: _response_text(v) is not None, _response_text),
    (lambda v: _first_item_text(v) is not None, _first_item_text),
    (_is_structured_array, lambda v: v),
    (lambda v: isinstance(v, str), lambda v: v),
    (lambda v: True, serialize),
]


def normalize_answer(payload: Any) -> Any:
    """Return a structured answer verbatim, or the best-effort answer string."""
    for predicate, extract in ANSWER_RULES:
        if predicate(payload):
            return extract(payload)
    return serialize(payload)


def _event_data(body: dict[str, Any]) -> Any:
    event = body.get("event")
    if isinstance(event, dict):
        return event.get("data")
    return None


# Locations that may carry the answer in an inbound webhook body.
DATA_LOCATIONS: list[tuple[str, Extractor]] = [
    ("ai_response", lambda body: body.get("ai_response")),
    ("data", lambda body: body.get("data")),
    ("event.data", _event_data),
    ("response", lambda body: body.get("response")),
]


def select_answer_source(body: dict[str, Any]) -> tuple[str | None, Any]:
    """Pick the first populated data location in the webhook body."""
    for name, locate in DATA_LOCATIONS:
        value = locate(body)
        if value is not None:
            return name, value
    return None, None


def extract_usage(body: dict[str, Any], data: Any) -> dict[str, Any] | None:
    """Token/cost accounting from ``meta.usage`` or the answer's own ``usage``."""
    meta = body.get("meta")
    if isinstance(meta, dict) and isinstance(meta.get("usage"), dict):
        return meta["usage"]
    if isinstance(data, dict) and isinstance(data.get("usage"), dict):
        return data["usage"]
    return None
