"""Credential resolution for the PocketBase connection.

Turns a loosely-typed bag of optional strings (URL, admin email, admin
password) into an immutable ``ConnectionConfig``.  Resolution is pure: no
network access, no environment lookups.  All violations are collected before
failing so an operator can fix every problem in one pass.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Mapping
from urllib.parse import urlparse

from pocketbase_mcp.errors import ConfigurationError

URL_REQUIRED = "URL required"
URL_MALFORMED = "URL must be an absolute http(s) URL"
CREDENTIALS_PAIRED = "admin email and admin password must be provided together"
IDENTITY_SHAPE = "admin email must look like an email address"


@dataclasses.dataclass(frozen=True)
class ConnectionConfig:
    """Validated connection descriptor for a PocketBase instance.

    Attributes:
        base_url:       Server root, without a trailing slash.
        admin_identity: Superuser email, or ``None`` for public-only access.
        admin_secret:   Superuser password; present iff ``admin_identity`` is.
    """

    base_url: str
    admin_identity: str | None = None
    admin_secret: str | None = dataclasses.field(default=None, repr=False)

    @property
    def has_admin_credentials(self) -> bool:
        return self.admin_identity is not None and self.admin_secret is not None


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _secret(value: Any) -> str | None:
    """Like ``_clean`` for the blank check, but returns the secret untouched."""
    if value is None or not str(value).strip():
        return None
    return str(value)


def collect_violations(raw: Mapping[str, Any]) -> list[str]:
    """Return every problem with *raw*; an empty list means it resolves."""
    violations: list[str] = []
    url = _clean(raw.get("url"))
    identity = _clean(raw.get("admin_email"))
    secret = _secret(raw.get("admin_password"))

    if url is None:
        violations.append(URL_REQUIRED)
    else:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            violations.append(URL_MALFORMED)

    if (identity is None) != (secret is None):
        violations.append(CREDENTIALS_PAIRED)
    elif identity is not None and "@" not in identity:
        violations.append(IDENTITY_SHAPE)

    return violations


def resolve(raw: Mapping[str, Any]) -> ConnectionConfig:
    """Resolve *raw* into a ``ConnectionConfig``.

    Raises ``ConfigurationError`` listing every violation found.
    """
    violations = collect_violations(raw)
    if violations:
        raise ConfigurationError(violations)
    return ConnectionConfig(
        base_url=_clean(raw.get("url")).rstrip("/"),
        admin_identity=_clean(raw.get("admin_email")),
        admin_secret=_secret(raw.get("admin_password")),
    )
