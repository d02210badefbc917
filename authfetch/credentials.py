"""Credential providers and Authorization header helpers.

The request layer never parses or stores tokens. It asks a
``CredentialProvider`` for the literal values to forward and places them in
headers or form bodies as-is.
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)

# Placeholders the file server substitutes with its httpOnly cookies
ACCESS_TOKEN_COOKIE = "cookie:access_token"
REFRESH_TOKEN_COOKIE = "cookie:refresh_token"


class CredentialProvider(ABC):
    """Source of the access and refresh credentials."""

    @abstractmethod
    def access_token(self) -> str:
        """Return the value to send as the bearer token."""
        pass

    @abstractmethod
    def refresh_token(self) -> str:
        """Return the value to exchange for a new access token."""
        pass


class CookieCredentials(CredentialProvider):
    """Credentials held by the server-issued cookies.

    Login and refresh responses set ``access_token`` and ``refresh_token``
    as httpOnly cookies, which the HTTP session keeps in its cookie jar.
    The client only sends placeholders that tell the server to read the
    real values from those cookies.
    """

    def access_token(self) -> str:
        return ACCESS_TOKEN_COOKIE

    def refresh_token(self) -> str:
        return REFRESH_TOKEN_COOKIE


class StaticCredentials(CredentialProvider):
    """Credentials supplied explicitly by the application."""

    def __init__(self, access_token: str = "", refresh_token: str = ""):
        self._access_token = access_token
        self._refresh_token = refresh_token

    def access_token(self) -> str:
        return self._access_token

    def refresh_token(self) -> str:
        return self._refresh_token

    def update(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        """Replace one or both values."""
        if access_token is not None:
            self._access_token = access_token
        if refresh_token is not None:
            self._refresh_token = refresh_token


def build_bearer_auth_header(token: str) -> str:
    """Authorization value for a protected call.

    ``token`` is usually the cookie placeholder from a CredentialProvider;
    the server swaps it for the cookie it names.
    """
    return f"Bearer {token}"


def build_basic_auth_header(username: str, password: str) -> str:
    """Authorization value answering a share's Basic challenge.

    Share passwords are checked on their own, so any ``username`` will do.
    The pair is UTF-8 encoded, matching decode_basic_credentials.
    """
    pair = f"{username}:{password}".encode("utf-8")
    return "Basic " + base64.b64encode(pair).decode("ascii")


def challenge_scheme(www_authenticate: Optional[str]) -> str:
    """Return the scheme token of a WWW-Authenticate header value.

    ``'Basic realm="x"'`` gives ``"Basic"``; a missing header gives ``""``.
    """
    if not www_authenticate:
        return ""
    return www_authenticate.split(" ")[0]


def is_basic_challenge(www_authenticate: Optional[str]) -> bool:
    return challenge_scheme(www_authenticate) == "Basic"


def parse_authorization(value: Optional[str]) -> tuple[str, str]:
    """Split an Authorization header into (scheme, credentials).

    Values with anything other than exactly two space-separated parts
    yield an empty credentials string.
    """
    if not value:
        return "", ""
    parts = value.split()
    if len(parts) != 2:
        return (parts[0] if parts else ""), ""
    return parts[0], parts[1]


def decode_basic_credentials(encoded: str) -> Optional[tuple[str, str]]:
    """Decode the credentials part of a Basic Authorization header.

    Returns:
        (username, password) or None if the value is malformed
    """
    try:
        decoded = base64.b64decode(encoded, validate=True).decode()
    except (ValueError, UnicodeDecodeError):
        logger.debug("Malformed Basic credentials")
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password
