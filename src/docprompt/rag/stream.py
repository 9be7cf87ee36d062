"""Wire format of streamed answers and of the response data header.

A streamed body starts with a header: the JSON array of reference paths
followed by ``STREAM_SEPARATOR``. Everything after the separator is answer
text. Non-streamed and error responses carry references and the query id in
the ``x-docprompt-data`` header instead.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

STREAM_SEPARATOR = "___START_RESPONSE_STREAM___"
DATA_HEADER = "x-docprompt-data"


def encode_stream_header(reference_paths: list[str]) -> bytes:
    return (json.dumps(reference_paths) + STREAM_SEPARATOR).encode("utf-8")


def encode_header_data(references: list[dict], prompt_id: str | None) -> str:
    """Encode header data as the comma-joined decimal values of its UTF-8 bytes.

    HTTP header values must be ASCII; this keeps non-ASCII paths and titles
    intact.
    """
    payload = json.dumps({"references": references, "promptId": prompt_id})
    return ",".join(str(b) for b in payload.encode("utf-8"))


def decode_header_data(value: str) -> dict:
    """Inverse of ``encode_header_data``. Returns ``{}`` for an empty value."""
    if not value:
        return {}
    raw = bytes(int(part) for part in value.split(","))
    return json.loads(raw.decode("utf-8"))


class StreamDecoder:
    """Incrementally split a streamed body into references and answer text.

    Feed raw body chunks in order; each call returns the answer fragments
    that became available. The result does not depend on where the chunk
    boundaries fall, including inside the separator or a multi-byte character.
    """

    def __init__(self) -> None:
        self.references: list[str] = []
        self.header_received = False
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, data: bytes) -> list[str]:
        return self._push(self._utf8.decode(data))

    def close(self) -> list[str]:
        """Flush the decoder at end of stream."""
        fragments = self._push(self._utf8.decode(b"", final=True))
        if not self.header_received and self._buffer:
            logger.warning("Stream ended before the references header")
        return fragments

    def _push(self, text: str) -> list[str]:
        if not text:
            return []
        if self.header_received:
            return [text]

        self._buffer += text
        prefix, separator, rest = self._buffer.partition(STREAM_SEPARATOR)
        if not separator:
            return []

        self.header_received = True
        self._buffer = ""
        try:
            parsed = json.loads(prefix)
            self.references = parsed if isinstance(parsed, list) else []
        except ValueError:
            self.references = []
        return [rest] if rest else []


def decode_stream(chunks: Iterable[bytes], decoder: StreamDecoder | None = None) -> Iterator[str]:
    """Yield the answer fragments of a streamed body.

    Pass a *decoder* to read its ``references`` once the header has arrived.
    """
    decoder = decoder or StreamDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.close()
