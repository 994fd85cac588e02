"""Run a credential check behind the abuse guard.

The HTTP layer owns the actual verification.  This module wires it to the
guard in the required order:

1. Pre-check the ban.  A banned identity is rejected without running the
   verifier at all, so the check cannot be used as an oracle.
2. Run the verifier.
3. ``VALID`` clears failures, ``INVALID`` records one, ``EXPIRED`` does
   neither.  An expired credential is a known credential and never counts
   toward a ban.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from harborguard.helpers.abuse_guard import AbuseGuard
from harborguard.helpers.attempt_store import AttemptMeta
from harborguard.helpers.policy import Context


class VerifyResult(StrEnum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"


class GuardDecision(StrEnum):
    ALLOWED = "allowed"
    DENIED = "denied"
    BLOCKED = "blocked"

    def status_code(self) -> int:
        return {
            GuardDecision.ALLOWED: 200,
            GuardDecision.DENIED: 401,
            GuardDecision.BLOCKED: 429,
        }[self]


@dataclass(frozen=True)
class GuardedCheckResult:
    decision: GuardDecision
    retry_after_sec: int = 0
    failures_in_window: int = 0
    verified: bool = False

    def headers(self) -> dict[str, str]:
        if self.decision is GuardDecision.BLOCKED:
            return {"Retry-After": str(self.retry_after_sec)}
        return {}


def run_guarded_check(
    guard: AbuseGuard,
    context: Context | str,
    identity: str | None,
    verify: Callable[[], VerifyResult],
    meta: AttemptMeta | None = None,
) -> GuardedCheckResult:
    status = guard.is_banned(identity, context)
    if status.banned:
        return GuardedCheckResult(
            GuardDecision.BLOCKED, retry_after_sec=status.retry_after_sec
        )

    result = VerifyResult(verify())
    if result is VerifyResult.VALID:
        guard.clear_failures(identity, context)
        return GuardedCheckResult(GuardDecision.ALLOWED, verified=True)
    if result is VerifyResult.EXPIRED:
        return GuardedCheckResult(GuardDecision.DENIED)

    outcome = guard.record_failure_and_maybe_ban(identity, context, meta)
    if outcome.banned_now:
        return GuardedCheckResult(
            GuardDecision.BLOCKED,
            retry_after_sec=outcome.retry_after_sec,
            failures_in_window=outcome.failures_in_window,
        )
    return GuardedCheckResult(
        GuardDecision.DENIED, failures_in_window=outcome.failures_in_window
    )
