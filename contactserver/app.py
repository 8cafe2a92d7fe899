"""
Application factory and entry point for the contact server.

Usage:
  python tornado_run.py                          # default port 8080
  python tornado_run.py --port=9000              # custom port
  python tornado_run.py --db=                    # in-memory rate limits
"""

import asyncio
import logging
import signal
import uuid

import tornado.ioloop
import tornado.options
import tornado.web
from tornado.options import options

from contactserver.captcha import TurnstileVerifier
from contactserver.config import Settings, load_settings
from contactserver.handlers import ContactHandler, HealthHandler
from contactserver.heuristics import AbuseHeuristics
from contactserver.notify import NotificationDispatcher
from contactserver.pipeline import ContactPipeline
from contactserver.ratelimit import (
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitStore,
    SqliteRateLimitStore,
)

logger = logging.getLogger("contactserver")

CLEANUP_INTERVAL_MS = 300_000  # every 5 min


def build_pipeline(settings: Settings, store: RateLimitStore, http_client=None) -> ContactPipeline:
    """Wire the pipeline stages from settings. ``http_client`` is shared by upstream calls."""
    return ContactPipeline(
        settings=settings,
        rate_limiter=RateLimiter(
            store,
            max_requests=settings.rate_limit_max,
            window=settings.rate_limit_window,
        ),
        heuristics=AbuseHeuristics(min_submit_seconds=settings.min_submit_seconds),
        verifier=TurnstileVerifier(
            settings.turnstile_secret,
            http_client=http_client,
            timeout=settings.captcha_timeout,
        ),
        dispatcher=NotificationDispatcher(
            resend_api_key=settings.resend_api_key,
            email_from=settings.email_from,
            email_to=settings.email_to,
            email_subject=settings.email_subject,
            discord_webhook_url=settings.discord_webhook_url,
            discord_notify_events=settings.discord_notify_events,
            security_webhook_url=settings.security_webhook_url,
            http_client=http_client,
        ),
    )


def make_app(pipeline: ContactPipeline) -> tornado.web.Application:
    """Create and configure the Tornado Application."""
    settings = pipeline.settings

    routes = [
        (r"/contact", ContactHandler),
        (r"/api/contact", ContactHandler),
        (r"/health", HealthHandler),
        # Static files served last (catch-all)
        (r"/(.*)", tornado.web.StaticFileHandler, {
            "path": settings.static_path,
            "default_filename": "index.html",
        }),
    ]

    app = tornado.web.Application(
        routes,
        cookie_secret=settings.cookie_secret or uuid.uuid4().hex,
        xsrf_cookies=True,
        debug=settings.debug,
        allowed_origin=settings.allowed_origin,
    )

    # Attach shared resources to application object
    app.pipeline = pipeline

    return app


def make_store(settings: Settings) -> RateLimitStore:
    if settings.db_path:
        return SqliteRateLimitStore(settings.db_path)
    return MemoryRateLimitStore()


def _log_missing_secrets(settings: Settings):
    if not settings.turnstile_secret:
        logger.error("TURNSTILE_SECRET is not set: every submission will fail verification")
    if not settings.resend_api_key:
        logger.error("RESEND_API_KEY is not set: accepted messages will not be emailed")


async def main():
    tornado.options.parse_command_line()

    logging.basicConfig(
        level=logging.DEBUG if options.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = load_settings()
    _log_missing_secrets(settings)

    store = make_store(settings)
    await store.initialize()

    pipeline = build_pipeline(settings, store)
    app = make_app(pipeline)
    app.listen(options.port)

    logger.info(f"Server running on http://localhost:{options.port}")
    logger.info(f"Contact endpoint: POST http://localhost:{options.port}/contact")
    logger.info(f"Allowed origin:   {settings.allowed_origin}")

    # Periodic cleanup of expired rate limit windows
    cleanup_cb = tornado.ioloop.PeriodicCallback(pipeline.rate_limiter.cleanup, CLEANUP_INTERVAL_MS)
    cleanup_cb.start()

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)
    try:
        await shutdown_event.wait()
    finally:
        cleanup_cb.stop()
        await pipeline.dispatcher.drain()
        await store.close()
        logger.info("Server shut down.")
