"""Shared fixtures: canned responses and a scripted HTTP session."""

import threading
from typing import Any, Dict, List, Optional

import pytest
import requests

from authfetch.config import ClientConfig
from authfetch.executor import AuthFetcher
from authfetch.session import SessionState


def make_response(
    status_code: int = 200,
    content: bytes = b"",
    headers: Optional[Dict[str, str]] = None,
    reason: str = "",
) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.reason = reason
    response._content = content
    response._content_consumed = True
    response.headers.update(headers or {})
    return response


class ScriptedSession:
    """Stand-in for requests.Session answering from a list of responses.

    Streamed bodies are consumed the way a real transport would, so
    upload progress callbacks fire.
    """

    def __init__(self, *responses: Any):
        self.responses: List[Any] = list(responses)
        self.calls: List[Dict[str, Any]] = []
        self.closed = False
        self._lock = threading.Lock()

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def _next(self) -> requests.Response:
        with self._lock:
            item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        data = kwargs.get("data")
        sent = data
        if data is not None and not isinstance(data, (bytes, bytearray, str, dict)):
            sent = b"".join(data)
        with self._lock:
            self.calls.append({"method": method, "url": url, "sent": sent, **kwargs})
        return self._next()

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def config():
    return ClientConfig(base_url="https://files.example.com")


@pytest.fixture
def session_state():
    return SessionState()


@pytest.fixture
def http():
    return ScriptedSession()


@pytest.fixture
def fetcher(config, session_state, http):
    fetcher = AuthFetcher(config=config, session_state=session_state, http=http)
    yield fetcher
    fetcher.close()
