"""Sliding-window failure counter with temporary bans.

Guards authentication-adjacent endpoints (password login, setup token,
API key, subscriber token, call join) against credential guessing and
token enumeration.

Usage::

    guard = AbuseGuard(SqlAttemptStore(), SqlBanStore(), PolicyTable.from_env())

    status = guard.is_banned(ip, Context.AUTH_APIKEY)
    if status.banned:
        # reply 429 with Retry-After: status.retry_after_sec
        ...

    # unknown / invalid credential (never for a merely expired one)
    outcome = guard.record_failure_and_maybe_ban(ip, Context.AUTH_APIKEY, meta)

    # verified
    guard.clear_failures(ip, Context.AUTH_APIKEY)

Per ``(identity, context)`` key the guard moves between *clean*,
*warming* (failures recorded, threshold not exceeded) and *banned*.  A
ban applies only when the failure count in the window is strictly
greater than the threshold.  Expiry is lazy: nothing sweeps old rows,
``is_banned`` simply ignores them.

Storage errors are never swallowed; callers decide how to fail closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from harborguard.helpers.attempt_store import AttemptMeta, AttemptStoreBase
from harborguard.helpers.ban_store import BanStoreBase
from harborguard.helpers.clock import Clock, SystemClock
from harborguard.helpers.policy import Context, PolicyTable, parse_context

logger = logging.getLogger(__name__)

UNKNOWN_IDENTITY = "unknown"


@dataclass(frozen=True)
class BanStatus:
    banned: bool
    retry_after_sec: int = 0


NOT_BANNED = BanStatus(banned=False, retry_after_sec=0)


@dataclass(frozen=True)
class FailureOutcome:
    banned_now: bool
    retry_after_sec: int
    failures_in_window: int


@dataclass(frozen=True)
class UnbanResult:
    bans_deleted: int
    failures_cleared: int


def normalize_identity(identity: str | None) -> str:
    """Trim *identity*; missing or blank values map to ``"unknown"``."""
    if identity is None:
        return UNKNOWN_IDENTITY
    return str(identity).strip() or UNKNOWN_IDENTITY


class AbuseGuard:
    """Orchestrates the attempt log, ban table and policy."""

    def __init__(
        self,
        attempt_store: AttemptStoreBase,
        ban_store: BanStoreBase,
        policy: PolicyTable,
        clock: Clock | None = None,
    ) -> None:
        self.attempts = attempt_store
        self.bans = ban_store
        self.policy = policy
        self.clock = clock or SystemClock()

    def is_banned(self, identity: str | None, context: Context | str) -> BanStatus:
        """Return the current ban state, read fresh from the store."""
        ctx = parse_context(context)
        ident = normalize_identity(identity)
        now = self.clock.now()
        ban = self.bans.get_active_ban(ident, ctx, now)
        if ban is None:
            return NOT_BANNED
        retry_after = ban.retry_after_sec(now)
        logger.info(
            "Request blocked: identity=%s context=%s retry_after=%ss",
            ident,
            ctx,
            retry_after,
        )
        return BanStatus(banned=True, retry_after_sec=retry_after)

    def record_failure_and_maybe_ban(
        self,
        identity: str | None,
        context: Context | str,
        meta: AttemptMeta | None = None,
    ) -> FailureOutcome:
        """Record one failed verification and ban once the threshold is exceeded.

        Call only for unknown or invalid credentials.  A well-formed but
        expired credential must not be counted.
        """
        ctx = parse_context(context)
        entry = self.policy.get(ctx)
        ident = normalize_identity(identity)

        now = self.clock.now()
        self.attempts.record_failure(ident, ctx, meta, now)

        window_start = now - timedelta(minutes=entry.window_minutes)
        failures = self.attempts.count_since(ident, ctx, window_start)
        logger.info(
            "Recorded failure: identity=%s context=%s failures_in_window=%d threshold=%d",
            ident,
            ctx,
            failures,
            entry.failure_threshold,
        )
        if failures <= entry.failure_threshold:
            return FailureOutcome(
                banned_now=False, retry_after_sec=0, failures_in_window=failures
            )

        self.bans.extend_ban(ident, ctx, entry.ban_minutes, now)
        logger.warning(
            "Banned identity=%s context=%s for %d min (failures=%d)",
            ident,
            ctx,
            entry.ban_minutes,
            failures,
        )

        # Retry-After comes from the persisted row, not the duration just used
        reread_at = self.clock.now()
        ban = self.bans.get_active_ban(ident, ctx, reread_at)
        retry_after = ban.retry_after_sec(reread_at) if ban else 0
        return FailureOutcome(
            banned_now=True,
            retry_after_sec=retry_after or entry.ban_minutes * 60,
            failures_in_window=failures,
        )

    def clear_failures(self, identity: str | None, context: Context | str) -> int:
        """Forget recorded failures after a successful verification.

        Active bans are left alone; only expiry or :meth:`unban` lifts them.
        """
        ctx = parse_context(context)
        return self.attempts.clear_failures(normalize_identity(identity), ctx)

    def unban(
        self, identity: str, context: Context | str | None = None
    ) -> UnbanResult:
        """Administrative unban for an exact identity string.

        Without *context* every context is cleared.  Failure history for the
        same scope is dropped too, so the next failure starts a fresh window.
        The identity is used verbatim apart from trimming; callers that know
        several spellings of one address must call this once per spelling.
        """
        ident = normalize_identity(identity)
        ctx = parse_context(context) if context is not None else None
        bans_deleted = self.bans.delete_ban(ident, ctx)
        failures_cleared = self.attempts.delete_attempts(ident, ctx)
        logger.info(
            "Unban identity=%s context=%s bans_deleted=%d failures_cleared=%d",
            ident,
            ctx or "*",
            bans_deleted,
            failures_cleared,
        )
        return UnbanResult(bans_deleted=bans_deleted, failures_cleared=failures_cleared)

    def bans_for(self, identity: str | None) -> list[tuple[Context, BanStatus]]:
        """Active bans for *identity* across all contexts."""
        ident = normalize_identity(identity)
        now = self.clock.now()
        result: list[tuple[Context, BanStatus]] = []
        for ban in self.bans.list_bans(ident):
            if not ban.is_active(now):
                continue
            try:
                ctx = Context(ban.context)
            except ValueError:
                logger.warning("Ignoring ban row with unknown context %r", ban.context)
                continue
            result.append((ctx, BanStatus(True, ban.retry_after_sec(now))))
        return result
