"""
The contact gating pipeline.

    classify -> rate limit -> heuristics -> captcha -> dispatch

Each stage returns a Verdict; the first rejection ends the run. Only an
accepted submission reaches the notification dispatcher.
"""

import logging

from tornado.httputil import HTTPServerRequest

from contactserver.captcha import TurnstileVerifier
from contactserver.classifier import ClassifiedRequest, classify, client_identity
from contactserver.config import Settings
from contactserver.heuristics import AbuseHeuristics
from contactserver.models import ClientIdentity, Verdict, VerificationOutcome
from contactserver.notify import NotificationDispatcher
from contactserver.ratelimit import RateLimiter

logger = logging.getLogger("contactserver.pipeline")


class ContactPipeline:
    def __init__(
        self,
        settings: Settings,
        rate_limiter: RateLimiter,
        heuristics: AbuseHeuristics,
        verifier: TurnstileVerifier,
        dispatcher: NotificationDispatcher,
    ):
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.heuristics = heuristics
        self.verifier = verifier
        self.dispatcher = dispatcher

    async def run(self, request: HTTPServerRequest) -> Verdict:
        identity = client_identity(request, self.settings.trusted_proxies)
        classified = classify(request, self.settings.allowed_origin, self.settings.honeypot_field)
        if isinstance(classified, Verdict):
            return self._reject(classified, identity)
        return await self.evaluate(classified, identity)

    async def evaluate(self, classified: ClassifiedRequest, identity: ClientIdentity) -> Verdict:
        """Gate a well-formed submission, then notify if it survives."""
        if not await self.rate_limiter.is_allowed(identity.key):
            return self._reject(Verdict(VerificationOutcome.RATE_LIMITED, "rate_limited"), identity)

        submission = classified.submission
        verdict = self.heuristics.evaluate(submission)
        if not verdict.accepted:
            return self._reject(verdict, identity)

        verdict = await self.verifier.verify(submission.captcha_token, identity)
        if not verdict.accepted:
            return self._reject(verdict, identity)

        result = await self.dispatcher.dispatch_accepted(
            classified.escaped, identity, reply_to=str(submission.email)
        )
        if result.ok:
            logger.info(f"Contact message from {identity.ip} delivered")
        else:
            # Acceptance stands; delivery failure is operational only.
            logger.error(f"Contact message from {identity.ip} accepted but email failed: {result.detail}")
        return verdict

    def _reject(self, verdict: Verdict, identity: ClientIdentity) -> Verdict:
        self.dispatcher.report(verdict, identity)
        return verdict
