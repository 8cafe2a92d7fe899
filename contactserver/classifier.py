"""
Request classification: method, origin, body shape, client identity.

Produces either a Submission (plus its HTML-escaped text) or a
MALFORMED verdict with a reason code and a specific user message.
"""

import ipaddress
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from pydantic import ValidationError
from tornado.escape import xhtml_escape
from tornado.httputil import HTTPServerRequest

from contactserver.models import (
    CAPTCHA_TOKEN_MAX,
    EMAIL_MAX,
    MESSAGE_MAX,
    MESSAGE_MIN,
    NAME_MAX,
    NAME_MIN,
    ClientIdentity,
    EscapedText,
    Submission,
    Verdict,
)

logger = logging.getLogger("contactserver.classifier")

ACCEPTED_METHOD = "POST"

# field name as posted -> label used in user-facing messages
_FIELD_LABELS = {
    "name": "name",
    "email": "email",
    "message": "message",
    "captchaToken": "captchaToken",
    "captcha_token": "captchaToken",
    "cf-turnstile-response": "captchaToken",
    "formRenderedAt": "formRenderedAt",
    "form_rendered_at": "formRenderedAt",
    "t": "formRenderedAt",
}

_LENGTH_BOUNDS = {
    "name": (NAME_MIN, NAME_MAX),
    "email": (3, EMAIL_MAX),
    "message": (MESSAGE_MIN, MESSAGE_MAX),
    "captchaToken": (1, CAPTCHA_TOKEN_MAX),
}

_REQUIRED = (
    ("name",),
    ("email",),
    ("message",),
    ("captchaToken", "captcha_token", "cf-turnstile-response"),
)


@dataclass(frozen=True)
class ClassifiedRequest:
    submission: Submission
    escaped: EscapedText


def escape_html(text: str) -> str:
    """Escape &, <, >, " and ' for any HTML sink."""
    return xhtml_escape(text)


def escape_submission(submission: Submission) -> EscapedText:
    return EscapedText(
        name=escape_html(submission.name),
        email=escape_html(str(submission.email)),
        message=escape_html(submission.message),
    )


def check_method(method: str) -> Optional[Verdict]:
    if method.upper() != ACCEPTED_METHOD:
        return Verdict.malformed("method_not_allowed", "Method not allowed")
    return None


def check_origin(origin: Optional[str], allowed_origin: str) -> Optional[Verdict]:
    if not origin or origin.rstrip("/") != allowed_origin:
        return Verdict.malformed("origin_forbidden", "Origin not allowed")
    return None


def parse_body(request: HTTPServerRequest) -> Union[Dict[str, Any], Verdict]:
    """Decode a JSON object body, or fall back to form arguments."""
    content_type = request.headers.get("Content-Type", "").split(";")[0].strip().lower()
    if content_type == "application/json":
        try:
            data = json.loads(request.body or b"")
        except (ValueError, UnicodeDecodeError):
            return Verdict.malformed("invalid_json", "Request body must be valid JSON")
        if not isinstance(data, dict):
            return Verdict.malformed("invalid_json", "Request body must be a JSON object")
        return data
    if content_type in ("application/x-www-form-urlencoded", "multipart/form-data"):
        return {
            key: values[-1].decode("utf-8", errors="replace")
            for key, values in request.body_arguments.items()
            if values
        }
    return Verdict.malformed("unsupported_media_type", "Request body must be JSON or a form")


def _describe_error(error: Mapping[str, Any]) -> Verdict:
    loc = error.get("loc") or ("body",)
    label = _FIELD_LABELS.get(str(loc[0]), str(loc[0]))
    kind = error.get("type", "")
    if kind == "missing":
        return Verdict.malformed(f"missing_{label}", f"{label} is required")
    if kind in ("string_too_short", "string_too_long") and label in _LENGTH_BOUNDS:
        low, high = _LENGTH_BOUNDS[label]
        return Verdict.malformed(f"length_{label}", f"{label} must be {low}-{high} characters")
    if label == "email":
        return Verdict.malformed("invalid_email", "email must be a valid email address")
    if kind == "string_type":
        return Verdict.malformed(f"invalid_{label}", f"{label} must be a string")
    return Verdict.malformed(f"invalid_{label}", f"{label} is invalid")


def validate_fields(data: Mapping[str, Any], honeypot_field: str) -> Union[ClassifiedRequest, Verdict]:
    for names in _REQUIRED:
        present = [data.get(n) for n in names if data.get(n) is not None]
        if not present or (isinstance(present[0], str) and not present[0].strip()):
            label = _FIELD_LABELS[names[0]]
            return Verdict.malformed(f"missing_{label}", f"{label} is required")

    fields = dict(data)
    fields["honeypot"] = data.get(honeypot_field, "")
    try:
        submission = Submission.model_validate(fields)
    except ValidationError as e:
        return _describe_error(e.errors()[0])
    return ClassifiedRequest(submission, escape_submission(submission))


def classify(request: HTTPServerRequest, allowed_origin: str, honeypot_field: str) -> Union[ClassifiedRequest, Verdict]:
    """Run every shape precondition in order; stop at the first failure."""
    for verdict in (
        check_method(request.method),
        check_origin(request.headers.get("Origin"), allowed_origin),
    ):
        if verdict is not None:
            return verdict
    data = parse_body(request)
    if isinstance(data, Verdict):
        return data
    return validate_fields(data, honeypot_field)


def _parse_ip(value: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def client_identity(request: HTTPServerRequest, trusted_proxies: Sequence[str] = ()) -> ClientIdentity:
    """
    Derive the rate-limit identity from the connecting address.

    X-Forwarded-For is honoured only when the direct peer is a trusted
    proxy, and only its last hop (the address that proxy saw) is used.
    """
    ip = request.remote_ip or "unknown"
    if trusted_proxies and ip in trusted_proxies:
        hops = [h for h in request.headers.get("X-Forwarded-For", "").split(",") if h.strip()]
        forwarded = _parse_ip(hops[-1]) if hops else None
        if forwarded:
            ip = forwarded
    headers = request.headers
    return ClientIdentity(
        ip=ip,
        country=headers.get("CF-IPCountry", "Unknown"),
        user_agent=headers.get("User-Agent", "Unknown"),
        referer=headers.get("Referer", "Direct"),
    )
