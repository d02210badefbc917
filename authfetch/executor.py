"""Authenticated request execution.

``AuthFetcher`` attaches credentials to requests under the protected root
and recovers from an expired access token by refreshing it and resending
the request once. It offers two ways to run a call:

- ``fetch``: blocks the calling thread and returns the final response
- ``xhr``: runs on a worker thread with upload progress and abort, and
  returns a ``Transfer`` handle

Both go through the same ``_run`` loop, so the 401 handling is identical.
Concurrent calls that hit an expired token each refresh on their own.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

from authfetch.config import CONFIG_FILE, ClientConfig, get_secret_key, load_config, load_settings
from authfetch.credentials import CookieCredentials, CredentialProvider, build_bearer_auth_header, is_basic_challenge
from authfetch.errors import AuthError, AuthErrorKind, RequestFailed, TransferAborted, TransportError
from authfetch.flows import PasswordFlow, RefreshTokenFlow, RevokeFlow
from authfetch.paths import ensure_absolute
from authfetch.session import FileStore, KeyValueStore, MemoryStore, SessionState
from authfetch.transport import RESPONSE_TYPES, ProgressCallback, encode_body, is_success, read_response

logger = logging.getLogger(__name__)

NO_CACHE = "no-store"


class CallState(Enum):
    IDLE = "idle"
    SENT = "sent"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNAUTHORIZED = "unauthorized"


@dataclass
class RequestOptions:
    """Everything about a request except its path.

    Attributes:
        method: HTTP method
        headers: Extra request headers
        body: None, bytes, str, file-like, or a mapping sent form-encoded
        progress_callback: Upload percentage observer (``xhr`` only)
        on_unauthorized: Called before the single retry after a 401
        response_type: Result of a successful ``xhr``: "bytes", "text",
            "json" or "response"
        stream: Leave the response body unread (``fetch`` only)
    """

    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    progress_callback: Optional[ProgressCallback] = None
    on_unauthorized: Optional[Callable[[], None]] = None
    response_type: str = "bytes"
    stream: bool = False


@dataclass
class Call:
    """State of one outer request, retries included."""

    path: str
    url: str
    options: RequestOptions
    needs_authorization: bool
    state: CallState = CallState.IDLE
    has_retried: bool = False
    attempts: int = 0
    abort_event: threading.Event = field(default_factory=threading.Event)


class Transfer:
    """Handle on a call running on a worker thread.

    ``result()`` returns the decoded body or raises the call's failure:
    ``AuthError``, ``RequestFailed``, ``TransportError`` or ``TransferAborted``.
    """

    def __init__(self, call: Call, future: Future):
        self._call = call
        self._future = future

    @property
    def call(self) -> Call:
        return self._call

    @property
    def state(self) -> CallState:
        return self._call.state

    @property
    def aborted(self) -> bool:
        return self._call.abort_event.is_set()

    def abort(self) -> None:
        """Stop the transfer at the next chunk or response boundary."""
        self._call.abort_event.set()
        if self._future.cancel():
            self._call.state = CallState.FAILED
            logger.debug("Cancelled %s before it started", self._call.path)

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> Any:
        return self._future.result(timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self._future.exception(timeout)

    def add_done_callback(self, fn: Callable[["Transfer"], None]) -> None:
        self._future.add_done_callback(lambda _future: fn(self))


class AuthFetcher:
    """Authenticated HTTP requests against the file server.

    Attributes:
        config: Endpoints and tuning
        http: Transport; its cookie jar holds the server-issued tokens
        credentials: Source of the values sent as access and refresh tokens
        session_state: The "logged in" hint
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        credentials: Optional[CredentialProvider] = None,
        session_state: Optional[SessionState] = None,
        http: Optional[requests.Session] = None,
    ):
        self.config = config or ClientConfig()
        self.http = http if http is not None else requests.Session()
        self.credentials = credentials or CookieCredentials()
        self.session_state = session_state or SessionState()
        self._rule = self.config.path_rule()

        flow_args = (self.http, self.config, self.credentials, self.session_state)
        self._password_flow = PasswordFlow(*flow_args)
        self._refresh_flow = RefreshTokenFlow(*flow_args)
        self._revoke_flow = RevokeFlow(*flow_args)

        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        secret_key: Optional[str] = None,
        credentials: Optional[CredentialProvider] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> "AuthFetcher":
        """Create a fetcher whose session flag is kept where config says.

        Args:
            config: Client configuration
            secret_key: Key for the encrypted session file; defaults to
                AUTHFETCH_SECRET_KEY, then ``settings["secret_key"]``
            credentials: Credential provider (cookies by default)
            settings: Raw settings the config was loaded from
        """
        if secret_key is None:
            secret_key = get_secret_key(settings)
        store: KeyValueStore
        if config.session_file and secret_key:
            store = FileStore(config.session_file, secret_key)
        else:
            if config.session_file:
                logger.warning("No secret key configured, keeping session state in memory")
            store = MemoryStore()
        return cls(config=config, credentials=credentials, session_state=SessionState(store))

    @classmethod
    def from_file(
        cls,
        file_path: str = CONFIG_FILE,
        credentials: Optional[CredentialProvider] = None,
    ) -> "AuthFetcher":
        """Create a fetcher from a YAML config file and the environment."""
        return cls.from_config(
            load_config(file_path),
            credentials=credentials,
            settings=load_settings(file_path),
        )

    def __enter__(self) -> "AuthFetcher":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Wait for running transfers and release connections."""
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)
        self.http.close()

    # =========================================================================
    # Session operations
    # =========================================================================

    def login(self, username: str, password: str) -> None:
        self._password_flow.login(username, password)

    def logout(self) -> None:
        self._revoke_flow.logout()

    def refresh(self) -> None:
        self._refresh_flow.refresh()

    def is_logged_in(self) -> bool:
        return self.session_state.is_logged_in()

    def requires_authorization(self, path: str) -> bool:
        return self._rule.requires_authorization(path)

    # =========================================================================
    # Requests
    # =========================================================================

    def fetch(
        self,
        path: str,
        options: Optional[RequestOptions] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send a request and return its response.

        A 401 on a protected path triggers one token refresh (or the
        ``on_unauthorized`` callback when given) and one resend, whose
        response is returned whatever its status.

        Args:
            path: Absolute request path
            options: Request options; alternatively pass them as keywords

        Returns:
            The final response; statuses other than 401 are not interpreted

        Raises:
            ValueError: If ``path`` is not absolute
            AuthError: TOKEN_REFRESH if the refresh fails, BASIC if a public
                path answers with a Basic challenge
            requests.RequestException: On network failures
        """
        options = self._options(options, kwargs)
        call = self._start(path, options)
        data, headers = encode_body(options.body, options.headers)
        return self._run(call, data, headers, options.on_unauthorized or self.refresh)

    def xhr(
        self,
        path: str,
        options: Optional[RequestOptions] = None,
        **kwargs: Any,
    ) -> Transfer:
        """Start a request on a worker thread.

        The request is resent once after a 401 on a protected path only if
        ``on_unauthorized`` is given; the callback is expected to refresh
        the credentials.

        Args:
            path: Absolute request path
            options: Request options; alternatively pass them as keywords

        Returns:
            Transfer handle for the running call

        Raises:
            ValueError: If ``path`` is not absolute or the response type is unknown
        """
        options = self._options(options, kwargs)
        if options.response_type not in RESPONSE_TYPES:
            raise ValueError(f"Unknown response type: {options.response_type}")
        call = self._start(path, options)
        future = self._executor().submit(self._transfer, call)
        return Transfer(call, future)

    def _options(self, options: Optional[RequestOptions], kwargs: Dict[str, Any]) -> RequestOptions:
        if options is None:
            return RequestOptions(**kwargs)
        if kwargs:
            raise TypeError("Pass either options or keyword arguments, not both")
        return options

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.config.max_transfers,
                    thread_name_prefix="authfetch",
                )
            return self._pool

    def _start(self, path: str, options: RequestOptions) -> Call:
        ensure_absolute(path)
        needs_authorization = self._rule.requires_authorization(path)
        logger.debug(
            "%s %s (authorization %s)",
            options.method,
            path,
            "required" if needs_authorization else "not required",
        )
        return Call(
            path=path,
            url=self.config.url_for(path),
            options=options,
            needs_authorization=needs_authorization,
        )

    def _transfer(self, call: Call) -> Any:
        options = call.options
        data, headers = encode_body(
            options.body,
            options.headers,
            streaming=True,
            chunk_size=self.config.chunk_size,
            progress_callback=options.progress_callback,
            abort_event=call.abort_event,
        )

        try:
            response = self._run(call, data, headers, options.on_unauthorized)
        except requests.RequestException as e:
            call.state = CallState.FAILED
            raise TransportError(f"Network error: {e}") from e
        except TransferAborted:
            call.state = CallState.FAILED
            logger.debug("Transfer of %s aborted", call.path)
            raise

        if not is_success(response.status_code):
            raise RequestFailed(response.status_code, response.reason)
        return read_response(response, options.response_type)

    def _send(self, call: Call, data: Any, headers: Dict[str, str]) -> requests.Response:
        if call.abort_event.is_set():
            raise TransferAborted()

        headers = dict(headers)
        if call.needs_authorization:
            headers["Authorization"] = build_bearer_auth_header(self.credentials.access_token())
            headers["Cache-Control"] = NO_CACHE

        call.state = CallState.SENT
        call.attempts += 1
        response = self.http.request(
            call.options.method,
            call.url,
            headers=headers,
            data=data,
            timeout=self.config.timeout,
            stream=call.options.stream,
        )

        if call.abort_event.is_set():
            response.close()
            raise TransferAborted()
        return response

    def _run(
        self,
        call: Call,
        data: Any,
        headers: Dict[str, str],
        recover: Optional[Callable[[], None]],
    ) -> requests.Response:
        while True:
            response = self._send(call, data, headers)

            if response.status_code != 401:
                call.state = CallState.SUCCEEDED if is_success(response.status_code) else CallState.FAILED
                return response

            call.state = CallState.UNAUTHORIZED

            if not call.needs_authorization:
                call.state = CallState.FAILED
                if is_basic_challenge(response.headers.get("WWW-Authenticate")):
                    logger.warning("%s requires Basic authentication", call.path)
                    raise AuthError(AuthErrorKind.BASIC)
                return response

            if recover is None or call.has_retried:
                call.state = CallState.FAILED
                return response

            call.has_retried = True
            logger.debug("Unauthorized on %s, renewing credentials and retrying once", call.path)
            response.close()
            try:
                recover()
            except Exception:
                call.state = CallState.FAILED
                raise
