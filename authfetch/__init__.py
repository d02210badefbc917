"""Authenticated request layer for the file server's web API.

This package provides:
- Classification of request paths that need an access token
- Login, logout and token refresh against the auth endpoints
- A request executor that attaches credentials and retries once after a
  token refresh, in blocking and progress-reporting variants
- Session state ("logged in" hint) in memory or an encrypted file
- Directory operations built on the executor
"""

from authfetch.config import ClientConfig, load_config
from authfetch.credentials import (
    CookieCredentials,
    CredentialProvider,
    StaticCredentials,
    build_basic_auth_header,
    build_bearer_auth_header,
)
from authfetch.errors import (
    AuthError,
    AuthErrorKind,
    RequestFailed,
    TransferAborted,
    TransportError,
)
from authfetch.executor import AuthFetcher, Call, CallState, RequestOptions, Transfer
from authfetch.files import FileOperations
from authfetch.flows import PasswordFlow, RefreshTokenFlow, RevokeFlow, TokenFlow
from authfetch.paths import PathRule, ensure_absolute, requires_authorization
from authfetch.session import FileStore, KeyValueStore, MemoryStore, SessionState

__version__ = "0.1.0"

__all__ = [
    # Config
    "ClientConfig",
    "load_config",
    # Credentials
    "CredentialProvider",
    "CookieCredentials",
    "StaticCredentials",
    "build_basic_auth_header",
    "build_bearer_auth_header",
    # Errors
    "AuthError",
    "AuthErrorKind",
    "RequestFailed",
    "TransferAborted",
    "TransportError",
    # Executor
    "AuthFetcher",
    "Call",
    "CallState",
    "RequestOptions",
    "Transfer",
    # Files
    "FileOperations",
    # Flows
    "TokenFlow",
    "PasswordFlow",
    "RefreshTokenFlow",
    "RevokeFlow",
    # Paths
    "PathRule",
    "ensure_absolute",
    "requires_authorization",
    # Session
    "KeyValueStore",
    "MemoryStore",
    "FileStore",
    "SessionState",
]
