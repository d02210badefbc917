"""Client configuration from a YAML file and environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import yaml

from authfetch.paths import DEFAULT_PROTECTED_PATTERN, DEFAULT_UNPROTECTED_PATTERN, PathRule

logger = logging.getLogger(__name__)

CONFIG_FILE = os.environ.get("AUTHFETCH_CONFIG", "config/authfetch.yaml")

DEFAULT_BASE_URL = "http://127.0.0.1:8080"
DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass
class ClientConfig:
    """Endpoints and tuning for the authenticated request layer.

    Attributes:
        base_url: Scheme and authority prepended to every request path
        token_path: Token endpoint (password and refresh_token grants)
        revoke_path: Token revocation endpoint
        files_root: Path prefix of the file tree
        cookie_path: Path the server should scope the access cookie to
        protected_pattern: Regex of paths requiring an access token
        unprotected_pattern: Regex of public paths under the protected root
        session_file: Encrypted file holding the session flag (None = memory)
        timeout: Request timeout in seconds (None = transport default)
        max_transfers: Worker threads for progress-reporting transfers
        chunk_size: Upload chunk size for progress reporting
    """

    base_url: str = DEFAULT_BASE_URL
    token_path: str = "/api/v1/auth/token"
    revoke_path: str = "/api/v1/auth/revoke"
    files_root: str = "/api/v1/files"
    cookie_path: str = "/api/v1/files"
    protected_pattern: str = DEFAULT_PROTECTED_PATTERN
    unprotected_pattern: str = DEFAULT_UNPROTECTED_PATTERN
    session_file: Optional[str] = None
    timeout: Optional[float] = None
    max_transfers: int = 4
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def url_for(self, path: str) -> str:
        """Build full URL from an absolute path."""
        return f"{self.base_url.rstrip('/')}{path}"

    def path_rule(self) -> PathRule:
        return PathRule(protected=self.protected_pattern, unprotected=self.unprotected_pattern)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "base_url": self.base_url,
            "token_path": self.token_path,
            "revoke_path": self.revoke_path,
            "files_root": self.files_root,
            "cookie_path": self.cookie_path,
            "protected_pattern": self.protected_pattern,
            "unprotected_pattern": self.unprotected_pattern,
            "session_file": self.session_file,
            "timeout": self.timeout,
            "max_transfers": self.max_transfers,
            "chunk_size": self.chunk_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientConfig":
        """Create from dictionary, keeping defaults for missing keys."""
        defaults = cls()
        timeout = data.get("timeout", defaults.timeout)
        return cls(
            base_url=data.get("base_url", defaults.base_url),
            token_path=data.get("token_path", defaults.token_path),
            revoke_path=data.get("revoke_path", defaults.revoke_path),
            files_root=data.get("files_root", defaults.files_root),
            cookie_path=data.get("cookie_path", defaults.cookie_path),
            protected_pattern=data.get("protected_pattern", defaults.protected_pattern),
            unprotected_pattern=data.get("unprotected_pattern", defaults.unprotected_pattern),
            session_file=data.get("session_file", defaults.session_file),
            timeout=float(timeout) if timeout is not None else None,
            max_transfers=int(data.get("max_transfers", defaults.max_transfers)),
            chunk_size=int(data.get("chunk_size", defaults.chunk_size)),
        )


def load_settings(file_path: str = CONFIG_FILE) -> Dict[str, Any]:
    if not os.path.exists(file_path):
        return {}
    try:
        with open(file_path, "r") as file:
            return yaml.safe_load(file) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Error loading config file %s: %s", file_path, exc)
        return {}


def load_config(file_path: str = CONFIG_FILE) -> ClientConfig:
    """Load configuration, letting environment variables win over the file.

    Args:
        file_path: YAML file with ClientConfig keys

    Returns:
        ClientConfig
    """
    settings = load_settings(file_path)
    if not isinstance(settings, dict):
        logger.error("Config file %s does not contain a mapping", file_path)
        settings = {}

    overrides = {
        "base_url": os.environ.get("AUTHFETCH_BASE_URL"),
        "session_file": os.environ.get("AUTHFETCH_SESSION_FILE"),
        "timeout": os.environ.get("AUTHFETCH_TIMEOUT"),
    }
    settings.update({k: v for k, v in overrides.items() if v})

    return ClientConfig.from_dict(settings)


def get_secret_key(settings: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Return the key protecting the session file, if any is configured."""
    if not isinstance(settings, dict):
        settings = {}
    return os.environ.get("AUTHFETCH_SECRET_KEY", settings.get("secret_key"))
