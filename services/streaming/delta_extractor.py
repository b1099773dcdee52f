"""Extract text deltas from chat-completion stream records.

Real streams mix content chunks with role markers, empty deltas, and
finish markers. Anything that is not a text delta is a no-op; malformed
records are logged and skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ValidationError

from services.streaming.frame_decoder import Frame

LOGGER = logging.getLogger(__name__)


class DeltaKind(str, Enum):
    TEXT = "text"
    NOOP = "noop"
    END = "end"


@dataclass(frozen=True)
class Delta:
    kind: DeltaKind
    text: str = ""


NOOP = Delta(DeltaKind.NOOP)
END = Delta(DeltaKind.END)


class _ChoiceDelta(BaseModel):
    content: Optional[str] = None


class _StreamChoice(BaseModel):
    delta: Optional[_ChoiceDelta] = None


class _StreamChunk(BaseModel):
    choices: List[_StreamChoice] = []


def extract_delta(frame: Frame) -> Delta:
    """Classify one decoded record as text, no-op, or end of stream."""
    if frame.done:
        return END

    try:
        chunk = _StreamChunk.model_validate_json(frame.data)
    except ValidationError as exc:
        LOGGER.warning(
            "Skipping malformed stream record %.80r (%d validation errors)",
            frame.data,
            exc.error_count(),
        )
        return NOOP

    if not chunk.choices:
        LOGGER.debug("Stream record without choices")
        return NOOP

    delta = chunk.choices[0].delta
    if delta is None or not delta.content:
        return NOOP
    return Delta(DeltaKind.TEXT, delta.content)
