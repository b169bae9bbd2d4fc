"""Decoding of multiplexed container log streams.

Container engines deliver a container's stdout and stderr over one byte
stream, split into frames. Each frame starts with an 8-byte header whose first
byte names the origin stream (1 = stdout, 2 = stderr), followed by the
payload. The LogStreamTranscoder turns an async iterator of such frames into
an async iterator of LogLine objects.

Example:
    >>> transcoder = LogStreamTranscoder(api.logs(container_id, follow=True), filter_text="ERROR")
    >>> async for line in transcoder:
    ...     print(line.message)
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator

import structlog

from devflow.models.domain import LogLine

log = structlog.get_logger(__name__)

HEADER_SIZE = 8
STDOUT = 1
STDERR = 2

TIMESTAMP_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2}))\s+(.*)$",
    re.DOTALL,
)


def split_timestamp(text: str) -> tuple[str | None, str]:
    """Split a leading RFC3339 timestamp from a log message.

    Returns:
        ``(timestamp, message)``; the timestamp is None when the text does not
        start with one.
    """
    match = TIMESTAMP_PATTERN.match(text)
    if not match:
        return None, text
    return match.group(1), match.group(2)


def decode_frame(frame: bytes, timestamps: bool = False) -> LogLine | None:
    """Decode one frame into a LogLine.

    Args:
        frame: Header plus payload
        timestamps: Split a leading timestamp from the message

    Returns:
        The decoded line, or None for a frame too short to carry a header.
    """
    if len(frame) < HEADER_SIZE:
        log.debug("log_frame_truncated", size=len(frame))
        return None

    text = frame[HEADER_SIZE:].decode("utf-8", errors="replace").strip()
    timestamp = None
    if timestamps:
        timestamp, text = split_timestamp(text)
    return LogLine(message=text, is_error=frame[0] == STDERR, timestamp=timestamp)


class LogStreamTranscoder:
    """Lazy async iterator of decoded log lines.

    Frames are pulled from upstream only as lines are consumed. The iterator
    cannot be restarted: once it ends (upstream EOF or ``stop``) it stays
    exhausted.

    Args:
        frames: Upstream frames, one frame per item
        filter_text: Only frames whose payload contains this text are emitted
        timestamps: Split leading timestamps into ``LogLine.timestamp``
    """

    def __init__(
        self,
        frames: AsyncIterator[bytes],
        filter_text: str | None = None,
        timestamps: bool = False,
    ) -> None:
        self._frames = frames
        self.filter_text = filter_text
        self.timestamps = timestamps
        self._finished = False

    def __aiter__(self) -> LogStreamTranscoder:
        return self

    async def __anext__(self) -> LogLine:
        while not self._finished:
            try:
                frame = await self._frames.__anext__()
            except StopAsyncIteration:
                self._finished = True
                break

            if self.filter_text and self.filter_text not in frame[HEADER_SIZE:].decode("utf-8", errors="replace"):
                continue
            line = decode_frame(frame, timestamps=self.timestamps)
            if line is not None:
                return line

        raise StopAsyncIteration

    @property
    def finished(self) -> bool:
        return self._finished

    async def stop(self) -> None:
        """Disconnect from upstream and end iteration. Never raises."""
        if self._finished:
            return
        self._finished = True
        aclose = getattr(self._frames, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except RuntimeError as e:
            # Generator is mid-iteration in another task
            log.debug("log_stream_close_deferred", error=str(e))
        log.debug("log_stream_stopped")
