"""Classification of request paths into protected and public ones."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Pattern

DEFAULT_PROTECTED_PATTERN = r"^/api/v1/files"
DEFAULT_UNPROTECTED_PATTERN = r"^/api/v1/files/shares/."


@dataclass(frozen=True)
class PathRule:
    """A protected root and a public exception nested under it.

    Attributes:
        protected: Regex matching paths that need an access token
        unprotected: Regex matching public sub-paths of the protected root
    """

    protected: str = DEFAULT_PROTECTED_PATTERN
    unprotected: str = DEFAULT_UNPROTECTED_PATTERN

    @property
    def protected_re(self) -> Pattern[str]:
        return re.compile(self.protected)

    @property
    def unprotected_re(self) -> Pattern[str]:
        return re.compile(self.unprotected)

    def requires_authorization(self, path: str) -> bool:
        return not self.unprotected_re.search(path) and bool(self.protected_re.search(path))


DEFAULT_RULE = PathRule()


def requires_authorization(path: str, rule: PathRule = DEFAULT_RULE) -> bool:
    """Tell whether requests to ``path`` must carry an access token.

    Args:
        path: Request path, e.g. "/api/v1/files/doc.txt"
        rule: Patterns to classify with

    Returns:
        True for paths under the protected root that are not public shares
    """
    return rule.requires_authorization(path)


def ensure_absolute(path: str) -> str:
    """Reject relative request paths.

    Raises:
        ValueError: If ``path`` does not start with "/"
    """
    if not path.startswith("/"):
        raise ValueError("The path must be absolute")
    return path
