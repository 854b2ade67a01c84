"""Payload sources and inline content encoding."""

import asyncio
import base64
import json
import os
from abc import ABC, abstractmethod

ENCODING_BASE64 = "base64"
ENCODING_TEXT = "text"


class PayloadSource(ABC):
    """Random-access byte source for an outgoing transfer."""

    size: int

    @abstractmethod
    async def read(self, offset: int, length: int) -> bytes:
        ...

    async def read_all(self) -> bytes:
        return await self.read(0, self.size)


class BytesSource(PayloadSource):
    def __init__(self, data: bytes) -> None:
        self._data = data
        self.size = len(data)

    async def read(self, offset: int, length: int) -> bytes:
        return self._data[offset:offset + length]


class FileSource(PayloadSource):
    """Reads ranges of a file on disk without blocking the event loop."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.size = os.path.getsize(path)

    def _read_range(self, offset: int, length: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(offset)
            return f.read(length)

    async def read(self, offset: int, length: int) -> bytes:
        return await asyncio.to_thread(self._read_range, offset, length)


def is_text_payload(mime_type: str, is_clipboard: bool) -> bool:
    return is_clipboard or mime_type.startswith("text/")


def base64_length(size: int) -> int:
    return 4 * ((size + 2) // 3)


def encode_content(data: bytes, text: bool) -> tuple[str, str]:
    """Encode bytes for embedding in a JSON message. Returns (content, encoding).

    Text stays raw unless JSON escaping would make it larger on the wire than
    base64, so an inline message is never bigger than its base64 form.
    """
    if text:
        try:
            decoded = data.decode("utf-8")
        except UnicodeDecodeError:
            decoded = None
        if decoded is not None:
            escaped = json.dumps(decoded, ensure_ascii=False).encode("utf-8")
            if len(escaped) - 2 <= base64_length(len(data)):
                return decoded, ENCODING_TEXT
    return base64.b64encode(data).decode("ascii"), ENCODING_BASE64


def decode_content(content: str, encoding: str) -> bytes:
    if encoding == ENCODING_TEXT:
        return content.encode("utf-8")
    # tolerate data: URLs produced by browser clients
    if content.startswith("data:") and "," in content:
        content = content.split(",", 1)[1]
    return base64.b64decode(content)
