"""HTTP response assembly for every pipeline outcome."""

from dataclasses import dataclass, field
from typing import Any, Dict

from contactserver.models import Verdict, VerificationOutcome

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}

CORS_METHODS = "POST, OPTIONS"
CORS_HEADERS = "Content-Type"
CORS_MAX_AGE = "86400"

# Spam and CAPTCHA rejections share one message so neither is distinguishable.
GENERIC_REJECTION = "Your message could not be sent. Please try again."
RATE_LIMITED_MESSAGE = "Too many requests. Please try again later."
SUCCESS_MESSAGE = "Your message has been sent. Thank you!"
INTERNAL_ERROR = "Internal server error"

_STATUS = {
    VerificationOutcome.ACCEPTED: 200,
    VerificationOutcome.RATE_LIMITED: 429,
    VerificationOutcome.SPAM_HEURISTIC: 400,
    VerificationOutcome.CAPTCHA_FAILED: 400,
    VerificationOutcome.MALFORMED: 400,
}

_MALFORMED_STATUS = {
    "method_not_allowed": 405,
    "origin_forbidden": 403,
    "unsupported_media_type": 415,
}


@dataclass
class ContactResponse:
    status: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


def cors_headers(allowed_origin: str) -> Dict[str, str]:
    """Only ever the single configured origin."""
    return {
        "Access-Control-Allow-Origin": allowed_origin,
        "Access-Control-Allow-Methods": CORS_METHODS,
        "Access-Control-Allow-Headers": CORS_HEADERS,
        "Access-Control-Max-Age": CORS_MAX_AGE,
        "Vary": "Origin",
    }


def base_headers(allowed_origin: str) -> Dict[str, str]:
    headers = dict(SECURITY_HEADERS)
    headers.update(cors_headers(allowed_origin))
    return headers


def status_for(verdict: Verdict) -> int:
    if verdict.outcome is VerificationOutcome.MALFORMED:
        return _MALFORMED_STATUS.get(verdict.reason, 400)
    return _STATUS[verdict.outcome]


def build_response(verdict: Verdict, allowed_origin: str, retry_after: float = 60) -> ContactResponse:
    headers = base_headers(allowed_origin)
    outcome = verdict.outcome
    if outcome is VerificationOutcome.ACCEPTED:
        body = {"success": True, "message": SUCCESS_MESSAGE}
    elif outcome is VerificationOutcome.RATE_LIMITED:
        body = {"success": False, "error": RATE_LIMITED_MESSAGE}
        headers["Retry-After"] = str(int(retry_after))
    elif outcome is VerificationOutcome.MALFORMED:
        body = {"success": False, "error": verdict.message or "Invalid request"}
        if verdict.reason == "method_not_allowed":
            headers["Allow"] = CORS_METHODS
    else:
        body = {"success": False, "error": GENERIC_REJECTION}
    return ContactResponse(status_for(verdict), body, headers)


def build_error_response(status: int, allowed_origin: str) -> ContactResponse:
    """For unexpected failures outside the pipeline."""
    message = INTERNAL_ERROR if status >= 500 else "Request failed"
    return ContactResponse(status, {"success": False, "error": message}, base_headers(allowed_origin))
