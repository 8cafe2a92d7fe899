"""
Cloudflare Turnstile verification.

Fail-closed: a network error, timeout, non-200 status or unreadable
response is a rejection. One attempt per request, no retries.
"""

import json
import logging
from typing import Optional

from tornado.httpclient import AsyncHTTPClient, HTTPRequest

from contactserver.models import ACCEPTED, ClientIdentity, Verdict, VerificationOutcome

logger = logging.getLogger("contactserver.captcha")

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"

FAILED = VerificationOutcome.CAPTCHA_FAILED


class TurnstileVerifier:
    def __init__(
        self,
        secret: str,
        http_client: Optional[AsyncHTTPClient] = None,
        timeout: float = 5.0,
        verify_url: str = TURNSTILE_VERIFY_URL,
    ):
        self.secret = secret
        self.http_client = http_client
        self.timeout = timeout
        self.verify_url = verify_url

    def _build_request(self, token: str, identity: ClientIdentity) -> HTTPRequest:
        body = {"secret": self.secret, "response": token}
        if identity.ip and identity.ip != "unknown":
            body["remoteip"] = identity.ip
        return HTTPRequest(
            self.verify_url,
            method="POST",
            headers={"Content-Type": "application/json"},
            body=json.dumps(body),
            connect_timeout=self.timeout,
            request_timeout=self.timeout,
        )

    async def verify(self, token: str, identity: ClientIdentity) -> Verdict:
        if not self.secret:
            logger.error("TURNSTILE_SECRET not configured; rejecting submission")
            return Verdict(FAILED, "captcha_not_configured")

        try:
            client = self.http_client or AsyncHTTPClient()
            response = await client.fetch(
                self._build_request(token, identity), raise_error=False
            )
        except Exception as e:
            # Timeouts and connection failures land here
            logger.error(f"Turnstile verification unavailable: {e!r}")
            return Verdict(FAILED, "captcha_unavailable")

        if response.code != 200:
            logger.error(f"Turnstile returned HTTP {response.code}")
            return Verdict(FAILED, f"captcha_http_{response.code}")

        try:
            data = json.loads(response.body)
        except (TypeError, ValueError):
            logger.error("Turnstile returned a non-JSON body")
            return Verdict(FAILED, "captcha_bad_response")

        if not isinstance(data, dict) or data.get("success") is not True:
            codes = data.get("error-codes", []) if isinstance(data, dict) else []
            logger.info(f"Turnstile rejected token from {identity.ip}: {codes}")
            return Verdict(FAILED, "captcha_rejected:" + ",".join(map(str, codes)))

        return ACCEPTED
