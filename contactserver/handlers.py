"""Tornado request handlers."""

import asyncio
import logging
from datetime import datetime, timezone

import tornado.web

from contactserver.pipeline import ContactPipeline
from contactserver.responses import (
    ContactResponse,
    base_headers,
    build_error_response,
    build_response,
)

logger = logging.getLogger("contactserver")


class BaseHandler(tornado.web.RequestHandler):
    """CORS, hardened headers and a JSON error envelope on every response."""

    @property
    def allowed_origin(self) -> str:
        return self.application.settings["allowed_origin"]

    def set_default_headers(self):
        self.clear_header("Server")
        for name, value in base_headers(self.allowed_origin).items():
            self.set_header(name, value)

    def options(self, *args):
        """Handle CORS preflight."""
        self.set_status(204)
        self.finish()

    def send_contact_response(self, response: ContactResponse):
        self.set_status(response.status)
        for name, value in response.headers.items():
            self.set_header(name, value)
        self.finish(response.body)

    def write_error(self, status_code: int, **kwargs):
        self.send_contact_response(build_error_response(status_code, self.allowed_origin))


class ContactHandler(BaseHandler):
    """
    POST /contact — Receives contact form submissions.

    Gates, in order:
      1. Request shape: method, origin, body, field bounds
      2. Rate limiting (sliding window per client IP)
      3. Honeypot and minimum fill time
      4. Turnstile CAPTCHA (fail-closed)
    then emails the message and fires optional webhooks.
    """

    def check_xsrf_cookie(self):
        """
        The static-site frontend cannot generate server-side XSRF tokens;
        this endpoint relies on the origin check, CAPTCHA and rate
        limiting instead.
        """
        pass

    @property
    def pipeline(self) -> ContactPipeline:
        return self.application.pipeline

    async def prepare(self):
        if self.request.method not in ("POST", "OPTIONS"):
            # The classifier owns the method rule; let it produce the rejection.
            await self._respond()

    async def post(self):
        await self._respond()

    async def _respond(self):
        # Shielded so a client disconnect cannot skip rate-limit accounting
        # or abandon an in-flight verification.
        verdict = await asyncio.shield(self.pipeline.run(self.request))
        self.send_contact_response(
            build_response(verdict, self.allowed_origin, self.pipeline.settings.rate_limit_window)
        )


class HealthHandler(BaseHandler):
    """GET /health — Server health check endpoint."""

    def get(self):
        self.write({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})
