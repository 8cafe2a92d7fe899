import json
import time

from tornado.testing import AsyncHTTPTestCase

from conftest import (
    DISCORD_URL,
    ORIGIN,
    SECURITY_URL,
    FakeHTTPClient,
    FakeResponse,
    healthy_routes,
    valid_payload,
)
from contactserver.app import build_pipeline, make_app
from contactserver.captcha import TURNSTILE_VERIFY_URL
from contactserver.config import Settings
from contactserver.notify import RESEND_API_URL
from contactserver.ratelimit import MemoryRateLimitStore, RateLimitStore
from contactserver.responses import GENERIC_REJECTION


class BrokenStore(RateLimitStore):
    async def hit(self, identity, now, window, limit):
        raise RuntimeError("store exploded")


class ContactHandlerTestBase(AsyncHTTPTestCase):
    routes = None
    store_class = MemoryRateLimitStore

    def get_app(self):
        self.client = FakeHTTPClient(self.routes or healthy_routes())
        self.settings = Settings(
            allowed_origin=ORIGIN,
            rate_limit_max=2,
            rate_limit_window=60,
            min_submit_seconds=3,
            turnstile_secret="turnstile-secret",
            resend_api_key="re_test_key",
            discord_webhook_url=DISCORD_URL,
            security_webhook_url=SECURITY_URL,
        )
        self.pipeline = build_pipeline(self.settings, self.store_class(), http_client=self.client)
        return make_app(self.pipeline)

    def post_contact(self, payload=None, origin=ORIGIN, path="/contact"):
        headers = {"Content-Type": "application/json"}
        if origin:
            headers["Origin"] = origin
        return self.fetch(path, method="POST", body=json.dumps(payload or valid_payload()), headers=headers)

    def drain(self):
        return self.io_loop.run_sync(self.pipeline.dispatcher.drain)

    def assert_hardened(self, response):
        assert response.headers["Access-Control-Allow-Origin"] == ORIGIN
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "Strict-Transport-Security" in response.headers
        assert response.headers["Content-Type"].startswith("application/json")


class TestContactHandler(ContactHandlerTestBase):
    def test_valid_submission_is_accepted_and_emailed(self):
        response = self.post_contact()
        assert response.code == 200
        assert json.loads(response.body)["success"] is True
        self.assert_hardened(response)

        self.drain()
        [email] = self.client.payloads_to(RESEND_API_URL)
        assert email["reply_to"] == "ada@lovelace.org"
        assert len(self.client.requests_to(DISCORD_URL)) == 1
        assert self.client.requests_to(SECURITY_URL) == []

    def test_api_alias_route(self):
        assert self.post_contact(path="/api/contact").code == 200

    def test_third_identical_submission_is_rate_limited(self):
        codes = [self.post_contact().code for _ in range(3)]
        assert codes == [200, 200, 429]

        self.drain()
        assert len(self.client.requests_to(TURNSTILE_VERIFY_URL)) == 2
        [event] = self.client.payloads_to(SECURITY_URL)
        assert event["kind"] == "rejected_rate_limited"

    def test_rate_limited_response_is_hardened(self):
        for _ in range(2):
            self.post_contact()
        response = self.post_contact()
        assert response.code == 429
        assert response.headers["Retry-After"] == "60"
        self.assert_hardened(response)

    def test_honeypot_rejected_without_captcha_call(self):
        response = self.post_contact(valid_payload(website="http://buy-now.example"))
        assert response.code == 400
        assert json.loads(response.body) == {"success": False, "error": GENERIC_REJECTION}
        assert self.client.requests_to(TURNSTILE_VERIFY_URL) == []
        assert self.client.requests_to(RESEND_API_URL) == []

    def test_whitespace_honeypot_rejected(self):
        response = self.post_contact(valid_payload(website="   "))
        assert response.code == 400
        assert json.loads(response.body) == {"success": False, "error": GENERIC_REJECTION}
        assert self.client.requests_to(TURNSTILE_VERIFY_URL) == []
        assert self.client.requests_to(RESEND_API_URL) == []

    def test_too_fast_submission_rejected(self):
        response = self.post_contact(valid_payload(formRenderedAt=int(time.time() * 1000)))
        assert response.code == 400
        assert self.client.requests_to(TURNSTILE_VERIFY_URL) == []

    def test_xss_message_reaches_email_escaped(self):
        response = self.post_contact(valid_payload(message="<script>alert(1)</script>"))
        assert response.code == 200
        [request] = self.client.requests_to(RESEND_API_URL)
        body = request.body.decode()
        assert "<script>" not in body
        assert "&lt;script&gt;" in body

    def test_missing_message_gets_specific_error(self):
        response = self.post_contact(valid_payload(message=""))
        assert response.code == 400
        assert json.loads(response.body) == {"success": False, "error": "message is required"}
        self.assert_hardened(response)

    def test_cross_origin_post_rejected(self):
        response = self.post_contact(origin="https://evil.example")
        assert response.code == 403
        assert response.headers["Access-Control-Allow-Origin"] == ORIGIN
        assert self.client.requests_to(TURNSTILE_VERIFY_URL) == []

    def test_malformed_requests_are_not_counted(self):
        for _ in range(3):
            self.post_contact(valid_payload(email="nope"))
        assert self.post_contact().code == 200

    def test_get_is_method_not_allowed(self):
        response = self.fetch("/contact", headers={"Origin": ORIGIN})
        assert response.code == 405
        assert response.headers["Allow"] == "POST, OPTIONS"
        self.assert_hardened(response)

    def test_preflight(self):
        response = self.fetch("/contact", method="OPTIONS", headers={"Origin": ORIGIN})
        assert response.code == 204
        assert response.headers["Access-Control-Allow-Origin"] == ORIGIN
        assert response.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"

    def test_health(self):
        response = self.fetch("/health")
        assert response.code == 200
        assert json.loads(response.body)["status"] == "ok"


class TestCaptchaFailure(ContactHandlerTestBase):
    routes = {
        **healthy_routes(),
        TURNSTILE_VERIFY_URL: FakeResponse(200, {"success": False, "error-codes": ["timeout-or-duplicate"]}),
    }

    def test_failed_captcha_never_reaches_dispatch(self):
        response = self.post_contact()
        assert response.code == 400
        assert json.loads(response.body) == {"success": False, "error": GENERIC_REJECTION}
        assert self.client.requests_to(RESEND_API_URL) == []
        assert self.client.requests_to(DISCORD_URL) == []

        self.drain()
        [event] = self.client.payloads_to(SECURITY_URL)
        assert event["kind"] == "rejected_captcha_failed"


class TestCaptchaUnreachable(ContactHandlerTestBase):
    routes = {**healthy_routes(), TURNSTILE_VERIFY_URL: ConnectionRefusedError("down")}

    def test_unreachable_service_fails_closed(self):
        response = self.post_contact()
        assert response.code == 400
        assert self.client.requests_to(RESEND_API_URL) == []


class TestEmailFailure(ContactHandlerTestBase):
    routes = {**healthy_routes(), RESEND_API_URL: FakeResponse(502, b"bad gateway")}

    def test_email_failure_keeps_acceptance(self):
        response = self.post_contact()
        assert response.code == 200
        assert json.loads(response.body)["success"] is True
        self.drain()
        assert len(self.client.requests_to(DISCORD_URL)) == 1


class TestChatFailure(ContactHandlerTestBase):
    routes = {**healthy_routes(), DISCORD_URL: ConnectionResetError("discord down")}

    def test_chat_failure_keeps_email(self):
        response = self.post_contact()
        assert response.code == 200
        self.drain()
        assert len(self.client.requests_to(RESEND_API_URL)) == 1


class TestUnexpectedError(ContactHandlerTestBase):
    store_class = BrokenStore

    def test_internal_error_is_json_500_with_headers(self):
        response = self.post_contact()
        assert response.code == 500
        assert json.loads(response.body) == {"success": False, "error": "Internal server error"}
        self.assert_hardened(response)
