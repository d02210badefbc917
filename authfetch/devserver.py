"""Development server for the file server's auth and files protocol.

Implements the endpoints the client talks to, backed by memory:
- token endpoint with password and refresh_token grants (RFC 6749)
- revoke endpoint (RFC 7009)
- the protected files root, bearer tokens resolved from httpOnly cookies
- public shares, optionally guarded by a Basic password

Run ``authfetch-devserver --user alice:secret`` and point the client's
``base_url`` at it.
"""

from __future__ import annotations

import argparse
import logging
import posixpath
import re
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import unquote

from flask import Flask, Response, jsonify, request

from authfetch.config import ClientConfig
from authfetch.credentials import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    decode_basic_credentials,
    parse_authorization,
)
from authfetch.transport import FORM_CONTENT_TYPE

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_TOKEN_TIMEOUT = 5 * 60
DEFAULT_REFRESH_TOKEN_TIMEOUT = 24 * 60 * 60

MOVE_ACTION_RE = re.compile(r"^\s*move-from;\s*path=([^,]*),\s*move-to;\s*path=(.*)$")


@dataclass
class Grant:
    username: str
    expires_at: float


class TokenStore:
    """Issued access and refresh tokens.

    Every refresh token is paired with one access token; revoking or
    rotating the refresh token drops its access token too.
    """

    def __init__(
        self,
        access_timeout: float = DEFAULT_ACCESS_TOKEN_TIMEOUT,
        refresh_timeout: float = DEFAULT_REFRESH_TOKEN_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.access_timeout = access_timeout
        self.refresh_timeout = refresh_timeout
        self._clock = clock
        self._access: Dict[str, Grant] = {}
        self._refresh: Dict[str, Grant] = {}
        self._pairs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def issue(self, username: str, previous_refresh: Optional[str] = None) -> Tuple[str, str]:
        """Create a token pair, retiring ``previous_refresh`` if given.

        Returns:
            Tuple of (access_token, refresh_token)
        """
        now = self._clock()
        access = secrets.token_urlsafe(32)
        refresh = secrets.token_urlsafe(32)
        with self._lock:
            self._prune(now)
            if previous_refresh:
                self._drop_refresh(previous_refresh)
            self._access[access] = Grant(username, now + self.access_timeout)
            self._refresh[refresh] = Grant(username, now + self.refresh_timeout)
            self._pairs[refresh] = access
        return access, refresh

    def _prune(self, now: float) -> None:
        for token in [t for t, grant in self._refresh.items() if grant.expires_at <= now]:
            self._drop_refresh(token)
        for token in [t for t, grant in self._access.items() if grant.expires_at <= now]:
            del self._access[token]

    def _valid(self, grants: Dict[str, Grant], token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        with self._lock:
            grant = grants.get(token)
            if grant is None or grant.expires_at <= self._clock():
                return None
            return grant.username

    def check_access(self, token: Optional[str]) -> Optional[str]:
        """Return the user an access token belongs to, None if invalid."""
        return self._valid(self._access, token)

    def check_refresh(self, token: Optional[str]) -> Optional[str]:
        return self._valid(self._refresh, token)

    def _drop_refresh(self, token: str) -> bool:
        if self._refresh.pop(token, None) is None:
            return False
        access = self._pairs.pop(token, None)
        if access:
            self._access.pop(access, None)
        return True

    def revoke_refresh(self, token: str) -> bool:
        with self._lock:
            revoked = self._drop_refresh(token)
        if revoked:
            logger.debug("Revoked refresh token")
        return revoked

    def revoke_access(self, token: str) -> bool:
        with self._lock:
            revoked = self._access.pop(token, None) is not None
        if revoked:
            logger.debug("Revoked access token")
        return revoked

    def expire_access_tokens(self) -> None:
        """Make every issued access token expired, keeping refresh tokens."""
        with self._lock:
            for grant in self._access.values():
                grant.expires_at = 0


class FileTree:
    """In-memory directory tree."""

    def __init__(self):
        self.dirs: Set[str] = {"/"}
        self.files: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    @staticmethod
    def normalize(path: str) -> str:
        return posixpath.normpath("/" + path.lstrip("/")) if path.strip("/") else "/"

    def _children(self, path: str) -> List[str]:
        prefix = path.rstrip("/") + "/"
        entries = [p for p in self.dirs | set(self.files) if p != path and p.startswith(prefix)]
        return [p for p in entries if "/" not in p[len(prefix):]]

    def listing(self, path: str) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            if path not in self.dirs:
                return None
            return [
                {
                    "name": posixpath.basename(child),
                    "type": "dir" if child in self.dirs else "file",
                    "size": len(self.files.get(child, b"")),
                }
                for child in sorted(self._children(path))
            ]

    def read(self, path: str) -> Optional[bytes]:
        with self._lock:
            return self.files.get(path)

    def mkdir(self, path: str) -> int:
        with self._lock:
            if path in self.dirs or path in self.files:
                return 409
            if posixpath.dirname(path) not in self.dirs:
                return 404
            self.dirs.add(path)
            return 201

    def write(self, path: str, data: bytes) -> int:
        with self._lock:
            if path in self.dirs:
                return 409
            if posixpath.dirname(path) not in self.dirs:
                return 404
            created = path not in self.files
            self.files[path] = data
            return 201 if created else 204

    def remove(self, path: str, recursive: bool) -> int:
        with self._lock:
            if path in self.files:
                del self.files[path]
                return 204
            if path == "/":
                return 409
            if path not in self.dirs:
                return 404
            prefix = path + "/"
            nested = [p for p in self.dirs | set(self.files) if p.startswith(prefix)]
            if nested and not recursive:
                return 409
            for p in nested:
                self.dirs.discard(p)
                self.files.pop(p, None)
            self.dirs.discard(path)
            return 204

    def move(self, source: str, target: str) -> int:
        with self._lock:
            if source not in self.files and (source not in self.dirs or source == "/"):
                return 404
            if target in self.files or target in self.dirs:
                return 409
            if posixpath.dirname(target) not in self.dirs:
                return 404
            if source in self.files:
                self.files[target] = self.files.pop(source)
                return 204
            prefix = source + "/"
            if target.startswith(prefix):
                return 409

            def moved(p: str) -> str:
                return target + p[len(source):] if p == source or p.startswith(prefix) else p

            self.dirs = {moved(p) for p in self.dirs}
            self.files = {moved(p): data for p, data in self.files.items()}
            return 204


def within(path: str, root: str) -> bool:
    """Tell whether normalized ``path`` is ``root`` or lies below it."""
    return root == "/" or path == root or path.startswith(root + "/")


@dataclass
class ServerState:
    tokens: TokenStore
    tree: FileTree
    users: Dict[str, str] = field(default_factory=dict)
    shares: Dict[str, Dict[str, Optional[str]]] = field(default_factory=dict)


def error_response(error: str, description: Optional[str] = None) -> Response:
    body = {"error": error}
    if description:
        body["description"] = description
    response = jsonify(body)
    response.status_code = 400
    return response


def unauthorized(challenge: str = "Bearer") -> Response:
    response = Response("Unauthorized\n", status=401, mimetype="text/plain")
    response.headers["WWW-Authenticate"] = challenge
    return response


def create_app(
    users: Optional[Dict[str, str]] = None,
    shares: Optional[Dict[str, Dict[str, Optional[str]]]] = None,
    access_token_timeout: float = DEFAULT_ACCESS_TOKEN_TIMEOUT,
    refresh_token_timeout: float = DEFAULT_REFRESH_TOKEN_TIMEOUT,
    cookie_secure: bool = False,
    config: Optional[ClientConfig] = None,
) -> Flask:
    """Build the development server.

    Args:
        users: username -> password
        shares: share id -> {"path": shared directory, "password": optional}
        access_token_timeout: Access token lifetime in seconds
        refresh_token_timeout: Refresh token lifetime in seconds
        cookie_secure: Mark token cookies Secure (needs HTTPS)
        config: Endpoint paths; defaults to ClientConfig()

    Returns:
        Flask application; its state is in ``app.extensions["authfetch"]``
    """
    config = config or ClientConfig()
    state = ServerState(
        tokens=TokenStore(access_token_timeout, refresh_token_timeout),
        tree=FileTree(),
        users=dict(users or {}),
        shares=dict(shares or {}),
    )

    app = Flask(__name__)
    app.extensions["authfetch"] = state
    files_root = config.files_root.rstrip("/")

    def cookie_or(value: str, placeholder: str, cookie_name: str) -> str:
        if value == placeholder:
            cookie = request.cookies.get(cookie_name)
            if cookie:
                return cookie
            logger.debug("Bearer is set to %s, but the cookie doesn't exist.", placeholder)
        return value

    def send_tokens(username: str, cookie_path: str, previous_refresh: Optional[str] = None) -> Response:
        access, refresh = state.tokens.issue(username, previous_refresh)
        body: Dict[str, Any] = {"token_type": "bearer", "expires_in": int(access_token_timeout)}

        if not cookie_path:
            body["access_token"] = access
            body["refresh_token"] = refresh
            response = jsonify(body)
        else:
            body["access_token"] = ACCESS_TOKEN_COOKIE
            body["refresh_token"] = REFRESH_TOKEN_COOKIE
            response = jsonify(body)
            cookies = [
                ("access_token", access, cookie_path, access_token_timeout),
                ("refresh_token", refresh, config.token_path, refresh_token_timeout),
                ("access_token", access, config.revoke_path, access_token_timeout),
                ("refresh_token", refresh, config.revoke_path, refresh_token_timeout),
            ]
            for name, value, path, max_age in cookies:
                response.set_cookie(
                    name,
                    value,
                    max_age=int(max_age),
                    path=path,
                    secure=cookie_secure,
                    httponly=True,
                )

        response.headers["Cache-Control"] = "no-store"
        response.headers["Pragma"] = "no-cache"
        return response

    @app.route(config.token_path, methods=["POST"])
    def token():
        if request.mimetype != FORM_CONTENT_TYPE:
            return Response(status=415)

        grant_type = request.form.get("grant_type", "")
        cookie_path = request.form.get("cookie_path", "")

        if grant_type == "password":
            username = request.form.get("username", "")
            password = request.form.get("password", "")
            if not username:
                return error_response("invalid_request", "username empty or absent")
            expected = state.users.get(username)
            if expected is None or not secrets.compare_digest(expected, password):
                logger.info("Rejected password for user %s", username)
                return unauthorized()
            logger.info("User %s logged in", username)
            return send_tokens(username, cookie_path)

        if grant_type == "refresh_token":
            bearer = cookie_or(request.form.get("refresh_token", ""), REFRESH_TOKEN_COOKIE, "refresh_token")
            username = state.tokens.check_refresh(bearer)
            if username is None:
                return error_response("invalid_request", "refresh token corrupted or absent")
            logger.debug("Refreshed tokens of user %s", username)
            return send_tokens(username, cookie_path, previous_refresh=bearer)

        return error_response("unsupported_grant_type")

    @app.route(config.revoke_path, methods=["POST"])
    def revoke():
        if request.mimetype != FORM_CONTENT_TYPE:
            return Response(status=415)

        bearer = request.form.get("token", "")
        hint = request.form.get("token_type_hint", "")
        if not bearer:
            return error_response("invalid_request", "token is absent")

        has_refresh_cookie = False
        if bearer == ACCESS_TOKEN_COOKIE:
            bearer = request.cookies.get("access_token", bearer)
        elif bearer == REFRESH_TOKEN_COOKIE and request.cookies.get("refresh_token"):
            bearer = request.cookies["refresh_token"]
            has_refresh_cookie = True

        must_erase_refresh_cookies = False
        if state.tokens.revoke_refresh(bearer):
            must_erase_refresh_cookies = has_refresh_cookie
        else:
            state.tokens.revoke_access(bearer)

        response = Response(status=200)
        if hint in ("refresh_token", "") and must_erase_refresh_cookies:
            for path in (config.token_path, config.revoke_path):
                response.delete_cookie("refresh_token", path=path, secure=cookie_secure, httponly=True)
        return response

    def serve_share(subpath: str):
        share_id, _, rest = subpath[len("shares/"):].partition("/")
        share = state.shares.get(share_id)
        if share is None:
            return Response(status=404)
        if request.method != "GET":
            return Response(status=405, headers={"Allow": "GET"})

        password = share.get("password")
        if password:
            scheme, encoded = parse_authorization(request.headers.get("Authorization"))
            decoded = decode_basic_credentials(encoded) if scheme == "Basic" else None
            if decoded is None or not secrets.compare_digest(decoded[1], password):
                return unauthorized(f'Basic realm="Password needed for {share_id}"')

        root = FileTree.normalize(share.get("path") or "/")
        path = FileTree.normalize(posixpath.join(root, rest))
        # Reads stay inside the shared directory
        if not within(path, root):
            logger.info("Rejected share %s path outside its root: %s", share_id, rest)
            return Response(status=404)
        return serve_read(path)

    def serve_read(path: str):
        data = state.tree.read(path)
        if data is not None:
            return Response(data, mimetype="application/octet-stream")
        entries = state.tree.listing(path)
        if entries is None:
            return Response(status=404)
        return jsonify(entries)

    def authorized_user() -> Optional[str]:
        scheme, bearer = parse_authorization(request.headers.get("Authorization"))
        if scheme != "Bearer":
            return None
        bearer = cookie_or(bearer, ACCESS_TOKEN_COOKIE, "access_token")
        return state.tokens.check_access(bearer)

    @app.route(f"{files_root}/", defaults={"subpath": ""}, methods=["GET", "PUT", "DELETE", "POST"], strict_slashes=False)
    @app.route(f"{files_root}/<path:subpath>", methods=["GET", "PUT", "DELETE", "POST"])
    def files(subpath: str):
        if subpath.startswith("shares/") and len(subpath) > len("shares/"):
            return serve_share(subpath)

        if authorized_user() is None:
            return unauthorized()

        path = FileTree.normalize(subpath)
        action = request.headers.get("X-FZ-Action", "")

        if request.method == "GET":
            return serve_read(path)

        if request.method == "PUT":
            if action == "mkdir":
                return Response(status=state.tree.mkdir(path))
            return Response(status=state.tree.write(path, request.get_data()))

        if request.method == "DELETE":
            recursive = request.headers.get("X-FZ-Recursive", "").lower() == "true"
            return Response(status=state.tree.remove(path, recursive))

        match = MOVE_ACTION_RE.match(action)
        if match is None:
            return error_response("invalid_request", "unsupported action")
        source = FileTree.normalize(posixpath.join(path, unquote(match.group(1))))
        target = unquote(match.group(2).strip())
        target = FileTree.normalize(target if target.startswith("/") else posixpath.join(path, target))
        return Response(status=state.tree.move(source, target))

    return app


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the authfetch development server.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--user", action="append", default=[], help="username:password (repeatable)")
    parser.add_argument("--share", action="append", default=[], help="id:path[:password] (repeatable)")
    parser.add_argument("--access-timeout", type=float, default=DEFAULT_ACCESS_TOKEN_TIMEOUT)
    parser.add_argument("--refresh-timeout", type=float, default=DEFAULT_REFRESH_TOKEN_TIMEOUT)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_arguments(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    users = dict(user.split(":", 1) for user in args.user if ":" in user)
    shares: Dict[str, Dict[str, Optional[str]]] = {}
    for value in args.share:
        share_id, _, rest = value.partition(":")
        path, _, password = rest.partition(":")
        shares[share_id] = {"path": path or "/", "password": password or None}

    app = create_app(
        users=users,
        shares=shares,
        access_token_timeout=args.access_timeout,
        refresh_token_timeout=args.refresh_timeout,
    )
    app.run(host=args.host, port=args.port)


if __name__ == "__main__":
    main()
