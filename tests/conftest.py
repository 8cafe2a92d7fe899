import json
import time
from typing import Any, Dict, List, Optional, Union

import pytest
from tornado.httputil import HTTPHeaders, HTTPServerRequest, parse_body_arguments

from contactserver.captcha import TURNSTILE_VERIFY_URL
from contactserver.config import Settings
from contactserver.notify import RESEND_API_URL

ORIGIN = "https://taeyoon.kr"
DISCORD_URL = "https://discord.test/api/webhooks/1/abc"
SECURITY_URL = "https://alerts.test/hook"


class FakeResponse:
    def __init__(self, code: int = 200, body: Union[bytes, str, dict] = b"{}"):
        self.code = code
        if isinstance(body, dict):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode()
        self.body = body


class FakeHTTPClient:
    """
    Stands in for AsyncHTTPClient. ``routes`` maps URL -> FakeResponse,
    an exception instance to raise, or a callable taking the request.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes = routes or {}
        self.requests: List[Any] = []

    async def fetch(self, request, raise_error=True):
        self.requests.append(request)
        result = self.routes.get(request.url, FakeResponse(200))
        if callable(result):
            result = result(request)
        if isinstance(result, BaseException):
            raise result
        return result

    def requests_to(self, url: str) -> List[Any]:
        return [r for r in self.requests if r.url == url]

    def payloads_to(self, url: str) -> List[dict]:
        return [json.loads(r.body) for r in self.requests_to(url)]


def turnstile_ok() -> Dict[str, Any]:
    return {TURNSTILE_VERIFY_URL: FakeResponse(200, {"success": True})}


def healthy_routes() -> Dict[str, Any]:
    routes = turnstile_ok()
    routes[RESEND_API_URL] = FakeResponse(200, {"id": "email_1"})
    routes[DISCORD_URL] = FakeResponse(204, b"")
    routes[SECURITY_URL] = FakeResponse(204, b"")
    return routes


def valid_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "name": "Ada Lovelace",
        "email": "ada@lovelace.org",
        "message": "Hello, I would like to talk about engines.",
        "website": "",
        "formRenderedAt": int((time.time() - 60) * 1000),
        "captchaToken": "token-123",
    }
    payload.update(overrides)
    return payload


def make_request(
    body: Union[Dict[str, Any], bytes] = None,
    method: str = "POST",
    origin: Optional[str] = ORIGIN,
    content_type: str = "application/json",
    remote_ip: str = "203.0.113.7",
    headers: Optional[Dict[str, str]] = None,
) -> HTTPServerRequest:
    h = HTTPHeaders({"Content-Type": content_type})
    if origin:
        h["Origin"] = origin
    for name, value in (headers or {}).items():
        h[name] = value
    if body is None:
        raw = b""
    elif isinstance(body, bytes):
        raw = body
    else:
        raw = json.dumps(body).encode()
    request = HTTPServerRequest(method=method, uri="/contact", headers=h, body=raw)
    request.remote_ip = remote_ip
    if content_type != "application/json":
        parse_body_arguments(content_type, raw, request.body_arguments, request.files, h)
    return request


@pytest.fixture
def settings() -> Settings:
    return Settings(
        allowed_origin=ORIGIN,
        rate_limit_max=2,
        rate_limit_window=60,
        min_submit_seconds=3,
        turnstile_secret="turnstile-secret",
        resend_api_key="re_test_key",
        discord_webhook_url=DISCORD_URL,
        security_webhook_url=SECURITY_URL,
    )


@pytest.fixture
def http_client() -> FakeHTTPClient:
    return FakeHTTPClient(healthy_routes())
