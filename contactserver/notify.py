"""
Notifications for accepted submissions and security events.

Channels:
  - email (Resend API), mandatory for every accepted submission
  - chat webhook (Discord), for event kinds listed in DISCORD_NOTIFY_EVENTS
  - security webhook, for every rejection

Jobs run concurrently and fail independently. The email job is awaited
by the caller; webhook jobs are tracked as background tasks and only
logged.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from tornado.httpclient import AsyncHTTPClient, HTTPRequest

from contactserver.classifier import escape_html
from contactserver.models import (
    Channel,
    ClientIdentity,
    DeliveryResult,
    EscapedText,
    NotificationJob,
    SecurityEvent,
    Verdict,
)

logger = logging.getLogger("contactserver.notify")

RESEND_API_URL = "https://api.resend.com/emails"

EVENT_CONTACT_SUBMITTED = "contact_submitted"

WEBHOOK_TIMEOUT = 5.0

EMAIL_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1 style="font-size: 22px;">New contact message</h1>
    <p><strong>Name:</strong> {name}</p>
    <p><strong>Email:</strong> <a href="mailto:{email}">{email}</a></p>
    <p><strong>Message:</strong></p>
    <div style="white-space: pre-wrap; word-wrap: break-word; border: 1px solid #ddd; padding: 16px;">{message}</div>
    <hr>
    <p style="font-size: 12px; color: #888;">
      IP: {ip}<br>Country: {country}<br>Sent at: {timestamp}<br>
      User agent: {user_agent}<br>Referer: {referer}
    </p>
  </div>
</body>
</html>
"""

EMAIL_TEXT = """New contact message

Name: {name}
Email: {email}

Message:
{message}

--
IP: {ip}
Country: {country}
Sent at: {timestamp}
User agent: {user_agent}
Referer: {referer}
"""


def build_email_job(
    escaped: EscapedText,
    identity: ClientIdentity,
    sender: str,
    recipient: str,
    subject: str,
    reply_to: str,
    sent_at: Optional[datetime] = None,
) -> NotificationJob:
    """Both bodies use the escaped text; nothing user-supplied goes in raw."""
    sent_at = sent_at or datetime.now(timezone.utc)
    fields = {
        "name": escaped.name,
        "email": escaped.email,
        "message": escaped.message,
        "ip": escape_html(identity.ip),
        "country": escape_html(identity.country),
        "user_agent": escape_html(identity.user_agent),
        "referer": escape_html(identity.referer),
        "timestamp": sent_at.isoformat(),
    }
    return NotificationJob(
        Channel.EMAIL,
        {
            "from": sender,
            "to": recipient,
            "subject": subject,
            "html": EMAIL_HTML.format(**fields),
            "text": EMAIL_TEXT.format(**fields),
            "reply_to": reply_to,
        },
    )


def build_chat_job(event: str, escaped: EscapedText, identity: ClientIdentity) -> NotificationJob:
    preview = escaped.message if len(escaped.message) <= 300 else escaped.message[:297] + "..."
    return NotificationJob(
        Channel.DISCORD_WEBHOOK,
        {
            "content": f"**{event}** from {escaped.name} <{escaped.email}> ({identity.country})",
            "embeds": [{"title": "Message", "description": preview}],
            # never ping @everyone from user text
            "allowed_mentions": {"parse": []},
        },
    )


def build_security_job(event: SecurityEvent) -> NotificationJob:
    return NotificationJob(Channel.SECURITY_WEBHOOK, event.to_payload())


class NotificationDispatcher:
    def __init__(
        self,
        resend_api_key: str = "",
        email_from: str = "Contact Form <noreply@taeyoon.kr>",
        email_to: str = "contact@taeyoon.kr",
        email_subject: str = "New contact message",
        discord_webhook_url: Optional[str] = None,
        discord_notify_events: Iterable[str] = (EVENT_CONTACT_SUBMITTED,),
        security_webhook_url: Optional[str] = None,
        http_client: Optional[AsyncHTTPClient] = None,
        resend_api_url: str = RESEND_API_URL,
    ):
        self.resend_api_key = resend_api_key
        self.email_from = email_from
        self.email_to = email_to
        self.email_subject = email_subject
        self.discord_webhook_url = discord_webhook_url
        self.discord_notify_events = frozenset(discord_notify_events)
        self.security_webhook_url = security_webhook_url
        self.http_client = http_client
        self.resend_api_url = resend_api_url
        self._pending: Set[asyncio.Task] = set()

    # -- transport ----------------------------------------------------------

    def _request_for(self, job: NotificationJob) -> HTTPRequest:
        headers = {"Content-Type": "application/json"}
        if job.channel is Channel.EMAIL:
            url = self.resend_api_url
            headers["Authorization"] = f"Bearer {self.resend_api_key}"
        elif job.channel is Channel.DISCORD_WEBHOOK:
            url = self.discord_webhook_url
        else:
            url = self.security_webhook_url
        return HTTPRequest(
            url,
            method="POST",
            headers=headers,
            body=json.dumps(job.payload),
            connect_timeout=WEBHOOK_TIMEOUT,
            request_timeout=WEBHOOK_TIMEOUT,
        )

    async def send(self, job: NotificationJob) -> DeliveryResult:
        """Deliver one job. Never raises; the result says what happened."""
        if job.channel is Channel.EMAIL and not self.resend_api_key:
            logger.error("RESEND_API_KEY not configured; email not sent")
            return DeliveryResult(job.channel, False, "not_configured")
        try:
            client = self.http_client or AsyncHTTPClient()
            response = await client.fetch(self._request_for(job), raise_error=False)
        except Exception as e:
            logger.error(f"{job.channel.value} delivery failed: {e!r}")
            return DeliveryResult(job.channel, False, repr(e))
        if not 200 <= response.code < 300:
            logger.error(f"{job.channel.value} delivery failed: HTTP {response.code}")
            return DeliveryResult(job.channel, False, f"http_{response.code}")
        logger.info(f"{job.channel.value} delivered")
        return DeliveryResult(job.channel, True)

    def _spawn(self, job: NotificationJob) -> asyncio.Task:
        task = asyncio.ensure_future(self.send(job))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    # -- jobs ---------------------------------------------------------------

    def plan_accepted(
        self, escaped: EscapedText, identity: ClientIdentity, reply_to: str
    ) -> List[NotificationJob]:
        jobs = [
            build_email_job(
                escaped, identity, self.email_from, self.email_to, self.email_subject, reply_to
            )
        ]
        if self.discord_webhook_url and EVENT_CONTACT_SUBMITTED in self.discord_notify_events:
            jobs.append(build_chat_job(EVENT_CONTACT_SUBMITTED, escaped, identity))
        return jobs

    async def dispatch_accepted(
        self, escaped: EscapedText, identity: ClientIdentity, reply_to: str
    ) -> DeliveryResult:
        """
        Start every job for an accepted submission at once, then wait for
        the email only. Webhook jobs keep running in the background.
        """
        tasks = [self._spawn(job) for job in self.plan_accepted(escaped, identity, reply_to)]
        return await asyncio.shield(tasks[0])

    def report(self, verdict: Verdict, identity: ClientIdentity) -> SecurityEvent:
        """Log a rejection and forward it to the security webhook, if any."""
        event = SecurityEvent(
            kind=verdict.outcome,
            identity=identity,
            timestamp=datetime.now(timezone.utc),
            detail=verdict.reason,
        )
        logger.warning(
            f"Security event {event.kind.value} from {identity.ip}: {event.detail}"
        )
        if self.security_webhook_url:
            self._spawn(build_security_job(event))
        return event

    async def drain(self) -> List[DeliveryResult]:
        """Wait for background webhook jobs; used at shutdown and in tests."""
        if not self._pending:
            return []
        return list(await asyncio.gather(*list(self._pending)))
