"""Callback address resolution and structural validation."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import parse_qs, urlsplit

logger = logging.getLogger(__name__)

CALLBACK_FIELD = "callback_url"


class CallbackSource(str, Enum):
    BODY = "body"
    DATA = "data"
    HEADER = "header"


@dataclass(frozen=True)
class ResolvedCallback:
    url: str
    source: CallbackSource
    valid: bool
    channel_mismatch: str | None = None

    @property
    def rejection_reason(self) -> str | None:
        if self.valid:
            return None
        return "callback address must start with http"


def callback_header_name(engine_name: str) -> str:
    return f"x-{engine_name.lower()}-callback-url"


def _candidates(
    body: Mapping[str, Any],
    headers: Mapping[str, str],
    engine_name: str,
) -> list[tuple[CallbackSource, Any]]:
    data = body.get("data")
    nested = data.get(CALLBACK_FIELD) if isinstance(data, Mapping) else None
    return [
        (CallbackSource.BODY, body.get(CALLBACK_FIELD)),
        (CallbackSource.DATA, nested),
        (CallbackSource.HEADER, headers.get(callback_header_name(engine_name))),
    ]


def channel_segment(url: str) -> str | None:
    """Channel id encoded in a callback address, if any.

    Recognizes ``.../callback/<channel>`` path segments and a
    ``channel_id`` query parameter.
    """
    parts = urlsplit(url)
    segments = [s for s in parts.path.split("/") if s]
    for i, segment in enumerate(segments[:-1]):
        if segment == "callback":
            return segments[i + 1]
    query = parse_qs(parts.query).get("channel_id")
    if query:
        return query[0]
    return None


def resolve_callback(
    body: Mapping[str, Any],
    headers: Mapping[str, str],
    correlation_id: str | None,
    engine_name: str = "modelriver",
) -> ResolvedCallback | None:
    """Find the callback address by precedence: body, then data, then header.

    Returns ``None`` when no source carries a non-empty string. An address
    that does not start with ``http`` is returned with ``valid=False`` so
    the caller can record the rejection instead of dispatching.
    """
    for source, value in _candidates(body, headers, engine_name):
        if not isinstance(value, str) or not value.strip():
            continue
        url = value.strip()
        valid = url.startswith("http")
        mismatch = None
        if valid and correlation_id:
            segment = channel_segment(url)
            if segment and segment != correlation_id:
                mismatch = segment
                logger.warning(
                    "Callback address channel %s does not match webhook channel %s",
                    segment, correlation_id,
                )
        return ResolvedCallback(
            url=url, source=source, valid=valid, channel_mismatch=mismatch,
        )
    return None
