"""Split a chunked server-sent-event byte stream into complete records.

Network reads rarely line up with event boundaries: a single `data:` line
may arrive across several chunks (even mid-prefix), and one chunk may hold
several lines. `FrameDecoder` keeps the unterminated tail between reads
and only emits a record once its terminating newline has arrived.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional

from models.errors import StreamReadError

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Frame:
    """One decoded event record.

    Attributes:
        data: Payload following the `data:` prefix.
        done: True when the record was the terminal sentinel.
    """

    data: str
    done: bool = False


END_OF_STREAM = Frame(data=DONE_SENTINEL, done=True)


class FrameDecoder:
    """Incremental decoder for `data: <payload>` lines."""

    def __init__(self) -> None:
        self._pending = b""
        self._finished = False

    @property
    def finished(self) -> bool:
        """True once the terminal sentinel has been decoded."""
        return self._finished

    def feed(self, chunk: bytes) -> List[Frame]:
        """Add one raw chunk and return the records it completes.

        Bytes after the last newline are held back and prepended to the
        next chunk. Nothing is returned once the sentinel has been seen.
        """
        if self._finished or not chunk:
            return []

        buffer = self._pending + chunk
        *lines, self._pending = buffer.split(b"\n")

        frames: List[Frame] = []
        for raw_line in lines:
            frame = self._decode_line(raw_line)
            if frame is None:
                continue
            frames.append(frame)
            if frame.done:
                self._finished = True
                self._pending = b""
                break
        return frames

    async def frames(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[Frame]:
        """Lazily decode records from an async byte source.

        Stops after yielding `END_OF_STREAM`. Any I/O failure of the source
        surfaces as `StreamReadError`.
        """
        try:
            async for chunk in chunks:
                for frame in self.feed(chunk):
                    yield frame
                    if frame.done:
                        return
        except StreamReadError:
            raise
        except OSError as exc:
            raise StreamReadError(f"Failed reading response stream: {exc}") from exc

        if self._pending.strip():
            LOGGER.debug("Dropping unterminated trailing fragment of %d bytes", len(self._pending))
        self._pending = b""

    @staticmethod
    def _decode_line(raw_line: bytes) -> Optional[Frame]:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            if line:
                LOGGER.debug("Ignoring non-data line: %.80s", line)
            return None

        payload = line[len(DATA_PREFIX):]
        if payload.startswith(" "):
            payload = payload[1:]
        if payload.strip() == DONE_SENTINEL:
            return END_OF_STREAM
        return Frame(data=payload)
