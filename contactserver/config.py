"""
Configuration for the contact server.

Two layers:
  - tuning options declared with tornado.options (command line)
  - secrets and integration endpoints read from the environment

Both are merged into a single immutable Settings model at startup.
"""

import os
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from tornado.options import define, options

# ---------------------------------------------------------------------------
# port: which TCP port the server listens on.
# db: SQLite file for rate-limit bookkeeping ("" keeps it in memory).
# static_path: where to find the Jekyll-built HTML/JS/CSS (concrete/).
# allowed_origin: the one origin allowed to POST to the contact endpoint.
# ---------------------------------------------------------------------------
define("port", default=8080, help="Server port", type=int)
define("db", default="ratelimit.db", help="SQLite path for rate limits ('' = in-memory)", type=str)
define("static_path", default="concrete", help="Static files directory", type=str)
define("debug", default=False, help="Enable debug mode", type=bool)
define("allowed_origin", default="https://taeyoon.kr", help="Allowed CORS origin", type=str)
define("rate_limit_window", default=60.0, help="Rate limit window in seconds", type=float)
define("rate_limit_max", default=3, help="Max submissions per window", type=int)
define("min_submit_seconds", default=3.0, help="Minimum form fill time in seconds", type=float)
define("captcha_timeout", default=5.0, help="CAPTCHA verification timeout in seconds", type=float)
define("honeypot_field", default="website", help="Name of the hidden decoy field", type=str)
define("trusted_proxies", default="", help="Comma-separated proxy IPs allowed to set X-Forwarded-For", type=str)

DEFAULT_NOTIFY_EVENTS = "contact_submitted,session_end"


class ConfigurationError(ValueError):
    """Raised when the server cannot start with the given configuration."""


def _split_csv(value: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


class Settings(BaseModel):
    """Resolved configuration, shared read-only by every request."""

    model_config = ConfigDict(frozen=True)

    allowed_origin: str = "https://taeyoon.kr"
    static_path: str = "concrete"
    db_path: str = ""
    debug: bool = False

    rate_limit_window: float = Field(default=60.0, gt=0)
    rate_limit_max: int = Field(default=3, ge=1)
    min_submit_seconds: float = Field(default=3.0, ge=0)
    captcha_timeout: float = Field(default=5.0, gt=0)
    honeypot_field: str = "website"
    trusted_proxies: Tuple[str, ...] = ()

    turnstile_secret: str = ""
    resend_api_key: str = ""
    security_webhook_url: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    discord_notify_events: Tuple[str, ...] = _split_csv(DEFAULT_NOTIFY_EVENTS)

    email_from: str = "Contact Form <noreply@taeyoon.kr>"
    email_to: str = "contact@taeyoon.kr"
    email_subject: str = "New contact message"
    cookie_secret: Optional[str] = None

    @field_validator("allowed_origin")
    @classmethod
    def validate_origin(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v or v == "*" or "," in v:
            raise ValueError("allowed_origin must be exactly one origin, never a wildcard")
        if not v.startswith(("http://", "https://")):
            raise ValueError("allowed_origin must include the scheme")
        return v

    @field_validator("security_webhook_url", "discord_webhook_url")
    @classmethod
    def empty_to_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


def load_settings(environ=None) -> Settings:
    """Merge parsed tornado options with the process environment."""
    env = os.environ if environ is None else environ
    try:
        return Settings(
            allowed_origin=env.get("ALLOWED_ORIGIN") or options.allowed_origin,
            static_path=options.static_path,
            db_path=options.db,
            debug=options.debug,
            rate_limit_window=options.rate_limit_window,
            rate_limit_max=options.rate_limit_max,
            min_submit_seconds=options.min_submit_seconds,
            captcha_timeout=options.captcha_timeout,
            honeypot_field=options.honeypot_field,
            trusted_proxies=_split_csv(options.trusted_proxies),
            turnstile_secret=env.get("TURNSTILE_SECRET", ""),
            resend_api_key=env.get("RESEND_API_KEY", ""),
            security_webhook_url=env.get("SECURITY_WEBHOOK_URL"),
            discord_webhook_url=env.get("DISCORD_WEBHOOK_URL"),
            discord_notify_events=_split_csv(
                env.get("DISCORD_NOTIFY_EVENTS", DEFAULT_NOTIFY_EVENTS)
            ),
            email_from=env.get("CONTACT_EMAIL_FROM", "Contact Form <noreply@taeyoon.kr>"),
            email_to=env.get("CONTACT_EMAIL_TO", "contact@taeyoon.kr"),
            email_subject=env.get("CONTACT_EMAIL_SUBJECT", "New contact message"),
            cookie_secret=env.get("COOKIE_SECRET"),
        )
    except ValueError as e:
        # pydantic.ValidationError is a ValueError
        raise ConfigurationError(str(e)) from e
