#!/usr/bin/env python3
"""
tornado_run.py — Contact Form Backend for actualintelligence-hash.github.io

A Tornado server that gates contact form submissions and emails the ones
that pass.

Architecture:
  - Tornado async web server (non-blocking I/O)
  - Pydantic for input validation
  - Sliding-window rate limiting, in memory or in SQLite via aiosqlite
  - Honeypot and minimum fill time checks, Cloudflare Turnstile CAPTCHA
  - Resend email, optional Discord and security webhooks

Dependencies:
  pip install -e .

Environment:
  TURNSTILE_SECRET, RESEND_API_KEY, ALLOWED_ORIGIN,
  SECURITY_WEBHOOK_URL, DISCORD_WEBHOOK_URL, DISCORD_NOTIFY_EVENTS

Usage:
  python tornado_run.py                          # default port 8080
  python tornado_run.py --port=9000              # custom port
  python tornado_run.py --db=ratelimit.db        # custom db path
"""

import asyncio

from contactserver.app import main

if __name__ == "__main__":
    asyncio.run(main())
