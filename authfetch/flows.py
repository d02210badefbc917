"""Token endpoint operations: login, refresh and logout.

Each flow posts a form-encoded body to the file server's auth endpoints:
- Resource Owner Password Credentials (RFC 6749 Section 4.3) for login
- Refresh Token (RFC 6749 Section 6) for refresh
- Token Revocation (RFC 7009) for logout

Tokens themselves are never read from the responses. The server keeps them
in httpOnly cookies scoped by ``cookie_path``; the flows only update the
session flag and report failures as ``AuthError``.
"""

from __future__ import annotations

import logging
from typing import Dict

import requests

from authfetch.config import ClientConfig
from authfetch.credentials import CredentialProvider
from authfetch.errors import AuthError, AuthErrorKind
from authfetch.session import SessionState
from authfetch.transport import FORM_CONTENT_TYPE, is_success

logger = logging.getLogger(__name__)


class TokenFlow:
    """Base class for calls to the auth endpoints."""

    def __init__(
        self,
        http: requests.Session,
        config: ClientConfig,
        credentials: CredentialProvider,
        session_state: SessionState,
    ):
        self._http = http
        self._config = config
        self._credentials = credentials
        self._session_state = session_state

    def _post(self, path: str, data: Dict[str, str]) -> requests.Response:
        return self._http.post(
            self._config.url_for(path),
            data=data,
            headers={"Content-Type": FORM_CONTENT_TYPE},
            timeout=self._config.timeout,
        )


class PasswordFlow(TokenFlow):
    """Log in with a username and password."""

    def login(self, username: str, password: str) -> None:
        """Exchange username and password for session cookies.

        Args:
            username: Account name
            password: Account password

        Raises:
            AuthError: LOGIN if the token endpoint rejects the credentials
        """
        response = self._post(
            self._config.token_path,
            {
                "grant_type": "password",
                "username": username,
                "password": password,
                "cookie_path": self._config.cookie_path,
            },
        )

        if not is_success(response.status_code):
            logger.info("Login failed with status %d", response.status_code)
            raise AuthError(AuthErrorKind.LOGIN)

        self._session_state.mark_logged_in()
        logger.info("Logged in")


class RefreshTokenFlow(TokenFlow):
    """Obtain a new access token with the refresh token."""

    def refresh(self) -> None:
        """Exchange the refresh token for a new access token.

        A success leaves the session flag as it is; a failure clears it.

        Raises:
            AuthError: TOKEN_REFRESH if the token endpoint rejects the request
        """
        response = self._post(
            self._config.token_path,
            {
                "grant_type": "refresh_token",
                "refresh_token": self._credentials.refresh_token(),
                "cookie_path": self._config.cookie_path,
            },
        )

        if not is_success(response.status_code):
            self._session_state.clear()
            logger.warning("Token refresh failed with status %d", response.status_code)
            raise AuthError(AuthErrorKind.TOKEN_REFRESH)

        logger.info("Access token refreshed")


class RevokeFlow(TokenFlow):
    """Log out by revoking the refresh token."""

    def logout(self) -> None:
        """Revoke the refresh token and its access token.

        On failure the session flag is left set.

        Raises:
            AuthError: LOGOUT if the revoke endpoint rejects the request
        """
        response = self._post(
            self._config.revoke_path,
            {
                "token": self._credentials.refresh_token(),
                "hint": "access_token",
            },
        )

        if not is_success(response.status_code):
            logger.info("Logout failed with status %d", response.status_code)
            raise AuthError(AuthErrorKind.LOGOUT)

        self._session_state.clear()
        logger.info("Logged out")
