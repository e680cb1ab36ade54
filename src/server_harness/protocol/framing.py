"""Content-Length framing for worker output.

The worker writes each message as an ASCII header followed by the JSON body
and a single end-of-line byte:

    Content-Length: 33\\r\\n
    \\r\\n
    {"request_seq":1,"body":"ok",...}\\n

The trailing terminator is always counted as exactly one byte, even on
platforms whose native line ending is two bytes.

Messages sent to the worker use a simpler format, one JSON object per line:

    {"seq":1,"type":"request","command":"echo"}\\n
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator, Iterator
from typing import Any

from ..errors import ProtocolError

logger = logging.getLogger(__name__)

ENCODING = "utf-8"

# Always LF on the outbound side
NEWLINE = "\n"

HEADER_PATTERN = re.compile(rb"Content-Length: (\d+)")

# Length of the end-of-line byte the worker writes after every body
TERMINATOR_LENGTH = 1

BODY_OPENER = b"{"

DEFAULT_CHUNK_SIZE = 64 * 1024


class FrameDecoder:
    """Incrementally turns a byte stream into decoded JSON messages.

    Feed chunks in arrival order; each call to feed() returns a lazy iterator
    over the frames completed so far. Frames are never reordered and a partial
    frame is never emitted.

    Usage:
        decoder = FrameDecoder()
        for chunk in chunks:
            for message in decoder.feed(chunk):
                handle(message)
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._content_length = -1
        self._body_start = -1

    @property
    def buffered(self) -> int:
        """Number of bytes received but not yet consumed by a frame."""
        return len(self._buffer)

    @property
    def awaiting_header(self) -> bool:
        """True when no frame header has been located yet."""
        return self._content_length < 0

    def feed(self, chunk: bytes) -> Iterator[Any]:
        """Append a chunk and return an iterator over newly completed frames.

        The chunk is buffered immediately; frames are parsed as the iterator
        is consumed. Leaving the iterator unfinished is safe, the next call
        picks up where it stopped.

        Raises:
            ProtocolError: While iterating, if a header is malformed or a body
                is not valid UTF-8 JSON.
        """
        self._buffer += chunk
        return self._frames()

    def _frames(self) -> Iterator[Any]:
        while True:
            if self._content_length < 0 and not self._locate_header():
                return

            frame_end = self._body_start + self._content_length + TERMINATOR_LENGTH
            if len(self._buffer) < frame_end:
                return

            body = bytes(self._buffer[self._body_start : self._body_start + self._content_length])
            del self._buffer[:frame_end]
            self._reset()

            yield decode_body(body)

    def _locate_header(self) -> bool:
        """Find the next header and body offset; commit them only when both are present."""
        match = HEADER_PATTERN.search(self._buffer)
        if match is None:
            return False

        body_start = self._buffer.find(BODY_OPENER, match.end())
        if body_start < 0:
            # Header digits may still be arriving, search again on the next chunk
            return False

        if self._buffer[match.end() : body_start].strip():
            raise ProtocolError(
                f"Malformed frame header: {bytes(self._buffer[match.start() : body_start])!r}"
            )

        if match.start() > 0:
            logger.debug(f"Skipping {match.start()} bytes before frame header")

        self._content_length = int(match.group(1))
        self._body_start = body_start
        return True

    def _reset(self) -> None:
        self._content_length = -1
        self._body_start = -1


def decode_body(body: bytes) -> Any:
    """Parse a frame body as UTF-8 JSON."""
    try:
        return json.loads(body.decode(ENCODING))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Unparsable frame body: {e}") from e


def encode_request(request: Any) -> bytes:
    """Serialize an outbound message as one JSON line."""
    return (json.dumps(request, ensure_ascii=False) + NEWLINE).encode(ENCODING)


def encode_frame(message: Any) -> bytes:
    """Serialize a message in the inbound Content-Length format."""
    body = json.dumps(message, ensure_ascii=False).encode(ENCODING)
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body + NEWLINE.encode(ENCODING)


async def iter_frames(
    reader: asyncio.StreamReader,
    decoder: FrameDecoder | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[Any]:
    """Read a stream until EOF, yielding each decoded frame in order."""
    decoder = decoder or FrameDecoder()

    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            # EOF - worker closed its output
            break

        for message in decoder.feed(chunk):
            yield message

    if decoder.buffered:
        logger.debug(f"Stream ended with {decoder.buffered} unconsumed bytes")
