"""Request bodies and response decoding shared by both executor variants."""

from __future__ import annotations

import io
import os
import threading
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Tuple
from urllib.parse import urlencode

import requests

from authfetch.errors import TransferAborted


FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

RESPONSE_TYPES = ("bytes", "text", "json", "response")

ProgressCallback = Callable[[float], None]


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


class UploadBody:
    """Re-iterable request body that reports upload progress.

    Iterating yields the payload in chunks. A file-like payload is rewound
    first, so the same body can be sent again after a 401. Progress is
    reported only when the total size is known.
    """

    def __init__(
        self,
        data: Any,
        chunk_size: int = 64 * 1024,
        progress_callback: Optional[ProgressCallback] = None,
        abort_event: Optional[threading.Event] = None,
    ):
        if isinstance(data, str):
            data = data.encode()
        self._data = data
        self._chunk_size = chunk_size
        self._progress_callback = progress_callback
        self._abort_event = abort_event
        self.total = self._measure(data)
        self.loaded = 0

    @staticmethod
    def _measure(data: Any) -> Optional[int]:
        if isinstance(data, (bytes, bytearray)):
            return len(data)
        try:
            position = data.tell()
            end = data.seek(0, os.SEEK_END)
            data.seek(position)
            return end
        except (AttributeError, OSError, io.UnsupportedOperation):
            return None

    def __len__(self) -> int:
        # requests sends Content-Length when this is non-zero, chunked otherwise
        return self.total or 0

    def _chunks(self) -> Iterator[bytes]:
        if isinstance(self._data, (bytes, bytearray)):
            for start in range(0, len(self._data), self._chunk_size):
                yield bytes(self._data[start:start + self._chunk_size])
            return
        if hasattr(self._data, "seek"):
            self._data.seek(0)
        while True:
            chunk = self._data.read(self._chunk_size)
            if not chunk:
                break
            yield chunk.encode() if isinstance(chunk, str) else chunk

    def __iter__(self) -> Iterator[bytes]:
        self.loaded = 0
        for chunk in self._chunks():
            if self._abort_event is not None and self._abort_event.is_set():
                raise TransferAborted()
            yield chunk
            self.loaded += len(chunk)
            if self._progress_callback and self.total:
                self._progress_callback(self.loaded / self.total * 100)


def encode_body(
    body: Any,
    headers: Dict[str, str],
    streaming: bool = False,
    chunk_size: int = 64 * 1024,
    progress_callback: Optional[ProgressCallback] = None,
    abort_event: Optional[threading.Event] = None,
) -> Tuple[Any, Dict[str, str]]:
    """Turn a request body into something requests can send more than once.

    Mappings become form-encoded bytes and strings become UTF-8 bytes.
    File-like objects, and any non-empty payload when ``streaming`` is set,
    are wrapped in an ``UploadBody``.

    Args:
        body: None, bytes, str, mapping or file-like object
        headers: Caller headers; a form Content-Type is added for mappings
        streaming: Send in chunks so progress and abort can be observed
        chunk_size: Chunk size for streamed bodies
        progress_callback: Receives the uploaded percentage
        abort_event: Stops the upload at the next chunk when set

    Returns:
        Tuple of (data, headers)

    Raises:
        TypeError: For unsupported body types
    """
    if isinstance(body, Mapping):
        headers = dict(headers)
        headers.setdefault("Content-Type", FORM_CONTENT_TYPE)
        body = urlencode(body).encode()
    elif isinstance(body, str):
        body = body.encode()

    if body is None or isinstance(body, UploadBody):
        return body, headers
    if isinstance(body, (bytes, bytearray)) and (not streaming or not body):
        return body, headers
    if isinstance(body, (bytes, bytearray)) or hasattr(body, "read"):
        upload = UploadBody(
            body,
            chunk_size=chunk_size,
            progress_callback=progress_callback,
            abort_event=abort_event,
        )
        return upload, headers
    raise TypeError(f"Unsupported request body type: {type(body).__name__}")


def read_response(response: requests.Response, response_type: str = "bytes") -> Any:
    """Extract the payload of a successful response.

    Args:
        response: Completed response
        response_type: One of "bytes", "text", "json", "response"

    Returns:
        Body as bytes, str, parsed JSON, or the response itself
    """
    if response_type == "response":
        return response
    if response_type == "text":
        return response.text
    if response_type == "json":
        return response.json() if response.content else None
    return response.content
