"""Offline spam checks: honeypot field and minimum form fill time."""

from datetime import datetime, timezone
from typing import Callable, Optional

from contactserver.models import ACCEPTED, Submission, Verdict, VerificationOutcome

SPAM = VerificationOutcome.SPAM_HEURISTIC


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AbuseHeuristics:
    def __init__(self, min_submit_seconds: float = 3.0, clock: Callable[[], datetime] = _utcnow):
        self.min_submit_seconds = min_submit_seconds
        self.clock = clock

    def check_honeypot(self, submission: Submission) -> Optional[Verdict]:
        if submission.honeypot:
            return Verdict(SPAM, "honeypot_filled")
        return None

    def check_elapsed(self, submission: Submission) -> Optional[Verdict]:
        # A missing render time is treated like a bot that skipped the page.
        if submission.form_rendered_at is None:
            return Verdict(SPAM, "render_time_missing")
        elapsed = (self.clock() - submission.form_rendered_at).total_seconds()
        if elapsed < 0:
            return Verdict(SPAM, "render_time_in_future")
        if elapsed <= self.min_submit_seconds:
            return Verdict(SPAM, f"too_fast:{elapsed:.2f}s")
        return None

    def evaluate(self, submission: Submission) -> Verdict:
        return self.check_honeypot(submission) or self.check_elapsed(submission) or ACCEPTED
