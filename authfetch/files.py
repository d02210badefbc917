"""Directory operations on the file server's files root."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional
from urllib.parse import quote

import requests

from authfetch.executor import AuthFetcher, RequestOptions, Transfer
from authfetch.paths import ensure_absolute
from authfetch.transport import ProgressCallback

logger = logging.getLogger(__name__)

# Punctuation left unescaped in move action paths
URI_SAFE = "!~*'()"


class FileOperations:
    """mkdir, remove, rename and upload under the configured files root.

    Paths are relative to the files root and start with "/".
    """

    def __init__(self, fetcher: AuthFetcher):
        self._fetcher = fetcher
        self._root = fetcher.config.files_root.rstrip("/")

    def _path(self, path: str) -> str:
        return self._root + path

    def mkdir(self, path: str) -> requests.Response:
        return self._fetcher.fetch(
            self._path(path),
            method="PUT",
            headers={"X-FZ-Action": "mkdir"},
        )

    def remove(self, path: str, recursive: bool = True) -> requests.Response:
        headers = {"X-FZ-Recursive": "true"} if recursive else {}
        return self._fetcher.fetch(self._path(path), method="DELETE", headers=headers)

    def rename(self, source: str, target: str) -> requests.Response:
        """Move ``source`` to ``target``.

        The request goes to the parent directory of ``source`` and names the
        entry relative to it.

        Raises:
            ValueError: If ``source`` is not absolute
        """
        ensure_absolute(source)
        parent = source[: source.rfind("/")]
        name = source[len(parent) + 1:]
        action = f"move-from; path={quote(name, safe=URI_SAFE)}, move-to; path={quote(target, safe=URI_SAFE)}"
        return self._fetcher.fetch(
            self._path(parent),
            method="POST",
            headers={"X-FZ-Action": action},
        )

    def upload(
        self,
        path: str,
        data: Any,
        progress_callback: Optional[ProgressCallback] = None,
        on_unauthorized: Optional[Callable[[], None]] = None,
    ) -> Transfer:
        """Start uploading ``data`` to ``path``.

        Args:
            path: Destination file path
            data: bytes, str or a binary file object
            progress_callback: Receives the uploaded percentage
            on_unauthorized: Called before the single retry after a 401;
                defaults to a token refresh

        Returns:
            Transfer handle; its result is the response body
        """
        logger.debug("Uploading to %s", path)
        return self._fetcher.xhr(
            self._path(path),
            RequestOptions(
                method="PUT",
                headers={"Content-Type": "application/octet-stream"},
                body=data,
                progress_callback=progress_callback,
                on_unauthorized=on_unauthorized or self._fetcher.refresh,
            ),
        )
