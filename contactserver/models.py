"""
Data model for the contact pipeline.

Submission is validated with Pydantic; the rest are small immutable
records passed between pipeline stages.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator

NAME_MIN, NAME_MAX = 2, 50
MESSAGE_MIN, MESSAGE_MAX = 10, 1000
EMAIL_MAX = 254
CAPTCHA_TOKEN_MAX = 2048

# Epoch values above this are milliseconds (Date.now() on the form page)
_EPOCH_MS_THRESHOLD = 10 ** 11


class Submission(BaseModel):
    """
    A contact form submission that passed shape validation.

    Constructed once per request by the classifier; frozen afterwards.
    Field aliases cover the names the deployed form posts
    (``t``, ``cf-turnstile-response``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=NAME_MIN, max_length=NAME_MAX)
    email: EmailStr
    message: str = Field(min_length=MESSAGE_MIN, max_length=MESSAGE_MAX)
    honeypot: str = ""
    form_rendered_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("formRenderedAt", "form_rendered_at", "t"),
    )
    captcha_token: str = Field(
        min_length=1,
        max_length=CAPTCHA_TOKEN_MAX,
        validation_alias=AliasChoices("captchaToken", "captcha_token", "cf-turnstile-response"),
    )

    @field_validator("name", "email", "message", "captcha_token", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("honeypot", mode="before")
    @classmethod
    def coerce_honeypot(cls, v: Any) -> str:
        # Kept raw and unvalidated: any value, even whitespace, reaches the heuristics
        if v is None:
            return ""
        return str(v)

    @field_validator("form_rendered_at", mode="before")
    @classmethod
    def parse_rendered_at(cls, v: Any) -> Optional[datetime]:
        if v is None or v == "":
            return None
        if isinstance(v, bool):
            raise ValueError("formRenderedAt must be an ISO timestamp or epoch")
        if isinstance(v, str) and re.fullmatch(r"\d+(\.\d+)?", v.strip()):
            v = float(v)
        if isinstance(v, (int, float)):
            seconds = v / 1000.0 if v > _EPOCH_MS_THRESHOLD else float(v)
            try:
                return datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                raise ValueError("formRenderedAt is out of range")
        if isinstance(v, str):
            try:
                parsed = datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
            except ValueError:
                raise ValueError("formRenderedAt must be an ISO timestamp or epoch")
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        return v


@dataclass(frozen=True)
class EscapedText:
    """HTML-escaped copies of the user-supplied fields."""

    name: str
    email: str
    message: str


@dataclass(frozen=True)
class ClientIdentity:
    """Who is submitting: the rate-limit key plus request metadata for alerts."""

    ip: str
    country: str = "Unknown"
    user_agent: str = "Unknown"
    referer: str = "Direct"

    @property
    def key(self) -> str:
        return f"ip:{self.ip}"


@dataclass
class RateLimitRecord:
    """State of one identity's window after an attempt; ``window_start`` is its oldest counted hit."""

    identity: str
    window_start: float
    count: int
    allowed: bool = True


class VerificationOutcome(str, Enum):
    ACCEPTED = "accepted"
    RATE_LIMITED = "rejected_rate_limited"
    SPAM_HEURISTIC = "rejected_spam_heuristic"
    CAPTCHA_FAILED = "rejected_captcha_failed"
    MALFORMED = "rejected_malformed"


@dataclass(frozen=True)
class Verdict:
    """
    Result of one pipeline stage or of the whole pipeline.

    ``reason`` is a machine-readable code for logs and alerts;
    ``message`` is the text shown to the submitter and is only specific
    for malformed input.
    """

    outcome: VerificationOutcome
    reason: str = ""
    message: str = ""

    @property
    def accepted(self) -> bool:
        return self.outcome is VerificationOutcome.ACCEPTED

    @classmethod
    def accept(cls) -> "Verdict":
        return cls(VerificationOutcome.ACCEPTED)

    @classmethod
    def malformed(cls, reason: str, message: str) -> "Verdict":
        return cls(VerificationOutcome.MALFORMED, reason, message)


ACCEPTED = Verdict.accept()


@dataclass(frozen=True)
class SecurityEvent:
    kind: VerificationOutcome
    identity: ClientIdentity
    timestamp: datetime
    detail: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ip": self.identity.ip,
            "country": self.identity.country,
            "userAgent": self.identity.user_agent,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }


class Channel(str, Enum):
    EMAIL = "email"
    DISCORD_WEBHOOK = "discord_webhook"
    SECURITY_WEBHOOK = "security_webhook"


@dataclass(frozen=True)
class NotificationJob:
    channel: Channel
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryResult:
    channel: Channel
    ok: bool
    detail: str = ""
