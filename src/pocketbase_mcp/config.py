"""Settings loading: an optional YAML file overlaid with environment variables.

The YAML file mirrors the environment variables section by section::

    pocketbase:
      url: https://pb.example.com
      admin_email: admin@example.com
      admin_password: ...
    stripe:
      secret_key: sk_test_...
      webhook_secret: whsec_...
    email:
      service: sendgrid        # or smtp
      sendgrid_api_key: SG...
      smtp_host: smtp.example.com
      smtp_port: 587
      smtp_user: ...
      smtp_password: ...
      default_from: noreply@example.com
    server:
      request_timeout: 10
      debug: false

Environment variables win over the file, so a deployment can keep secrets
out of the file entirely.  PocketBase values are left unresolved here; the
credential resolver validates them.
"""

from __future__ import annotations

import dataclasses
import os
import pathlib
from typing import Any, Mapping

import yaml

_TRUTHY = {"1", "true", "yes", "on"}


@dataclasses.dataclass(frozen=True)
class PocketBaseSettings:
    url: str | None = None
    admin_email: str | None = None
    admin_password: str | None = dataclasses.field(default=None, repr=False)

    def as_raw(self) -> dict[str, Any]:
        """The loosely-typed bag consumed by the credential resolver."""
        return {
            "url": self.url,
            "admin_email": self.admin_email,
            "admin_password": self.admin_password,
        }


@dataclasses.dataclass(frozen=True)
class StripeSettings:
    secret_key: str | None = dataclasses.field(default=None, repr=False)
    webhook_secret: str | None = dataclasses.field(default=None, repr=False)

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


@dataclasses.dataclass(frozen=True)
class EmailSettings:
    service: str | None = None
    sendgrid_api_key: str | None = dataclasses.field(default=None, repr=False)
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = dataclasses.field(default=None, repr=False)
    default_from: str | None = None

    @property
    def provider(self) -> str | None:
        """``"sendgrid"``, ``"smtp"`` or ``None`` when email is not configured."""
        if self.service == "sendgrid" or (self.service is None and self.sendgrid_api_key):
            return "sendgrid" if self.sendgrid_api_key else None
        if self.smtp_host:
            return "smtp"
        return None

    @property
    def is_configured(self) -> bool:
        return self.provider is not None


@dataclasses.dataclass(frozen=True)
class ServerSettings:
    request_timeout: float = 10.0
    debug: bool = False


@dataclasses.dataclass(frozen=True)
class Settings:
    pocketbase: PocketBaseSettings = dataclasses.field(default_factory=PocketBaseSettings)
    stripe: StripeSettings = dataclasses.field(default_factory=StripeSettings)
    email: EmailSettings = dataclasses.field(default_factory=EmailSettings)
    server: ServerSettings = dataclasses.field(default_factory=ServerSettings)


class SettingsError(Exception):
    """Raised when the settings file cannot be read or has the wrong shape."""


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _load_file(path: str | pathlib.Path | None) -> dict[str, Any]:
    if path is None:
        return {}
    path = pathlib.Path(path)
    if not path.exists():
        raise SettingsError(f"Settings file not found: {path}")
    with open(path) as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise SettingsError("Settings file must contain a mapping at the top level")
    return data


def load_settings(
    path: str | pathlib.Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build ``Settings`` from *path* (optional) and *environ* (default ``os.environ``)."""
    env = os.environ if environ is None else environ
    data = _load_file(path)
    pb = data.get("pocketbase") or {}
    st = data.get("stripe") or {}
    em = data.get("email") or {}
    srv = data.get("server") or {}

    try:
        smtp_port = int(_first(env.get("SMTP_PORT"), em.get("smtp_port"), 587))
        timeout = float(_first(env.get("REQUEST_TIMEOUT"), srv.get("request_timeout"), 10.0))
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"Invalid numeric setting: {exc}") from exc

    service = _first(env.get("EMAIL_SERVICE"), em.get("service"))

    return Settings(
        pocketbase=PocketBaseSettings(
            url=_first(env.get("POCKETBASE_URL"), pb.get("url")),
            admin_email=_first(env.get("POCKETBASE_ADMIN_EMAIL"), pb.get("admin_email")),
            admin_password=_first(env.get("POCKETBASE_ADMIN_PASSWORD"), pb.get("admin_password")),
        ),
        stripe=StripeSettings(
            secret_key=_first(env.get("STRIPE_SECRET_KEY"), st.get("secret_key")),
            webhook_secret=_first(env.get("STRIPE_WEBHOOK_SECRET"), st.get("webhook_secret")),
        ),
        email=EmailSettings(
            service=service.lower() if isinstance(service, str) else None,
            sendgrid_api_key=_first(env.get("SENDGRID_API_KEY"), em.get("sendgrid_api_key")),
            smtp_host=_first(env.get("SMTP_HOST"), em.get("smtp_host")),
            smtp_port=smtp_port,
            smtp_user=_first(env.get("SMTP_USER"), em.get("smtp_user")),
            smtp_password=_first(
                env.get("SMTP_PASSWORD"), env.get("SMTP_PASS"), em.get("smtp_password")
            ),
            default_from=_first(env.get("DEFAULT_FROM_EMAIL"), em.get("default_from")),
        ),
        server=ServerSettings(
            request_timeout=timeout,
            debug=_as_bool(_first(env.get("DEBUG"), srv.get("debug"), False)),
        ),
    )
