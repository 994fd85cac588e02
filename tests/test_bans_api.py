"""End-to-end HTTP tests through the Flask app.

A small API-key protected endpoint stands in for the platform's real
routes so the lockout, unban and expiry behaviour can be driven with the
Flask test client.
"""

import secrets
from datetime import datetime, timezone

import pytest

from harborguard.helpers.abuse_guard import AbuseGuard
from harborguard.helpers.api import ApiHandler, json_response
from harborguard.helpers.attempt_store import AttemptMeta, InMemoryAttemptStore
from harborguard.helpers.ban_store import InMemoryBanStore
from harborguard.helpers.errors import StorageError
from harborguard.helpers.guarded_check import (
    GuardDecision,
    VerifyResult,
    run_guarded_check,
)
from harborguard.helpers.policy import Context
from harborguard.helpers.request_identity import get_client_ip, get_user_agent

ADMIN_TOKEN = "test-admin-token"
ADMIN_HEADERS = {"X-Admin-Token": ADMIN_TOKEN}

EXPIRED_KEY = "hfm_" + "e" * 64
VALID_KEY = "hfm_" + "v" * 64


class PodcastsProbe(ApiHandler):
    """GET /podcasts guarded by API-key auth."""

    keys = {
        VALID_KEY: None,
        EXPIRED_KEY: datetime(2020, 1, 1, tzinfo=timezone.utc),
    }

    @classmethod
    def get_methods(cls) -> list[str]:
        return ["GET"]

    async def process(self, input, request):
        header = request.headers.get("Authorization", "")
        token = header.removeprefix("Bearer ").strip()

        def verify() -> VerifyResult:
            if token not in self.keys:
                return VerifyResult.INVALID
            valid_until = self.keys[token]
            if valid_until is not None and valid_until < datetime.now(timezone.utc):
                return VerifyResult.EXPIRED
            return VerifyResult.VALID

        result = run_guarded_check(
            self.guard,
            Context.AUTH_APIKEY,
            get_client_ip(request),
            verify,
            AttemptMeta(user_agent=get_user_agent(request)),
        )
        if result.decision is GuardDecision.ALLOWED:
            return {"ok": True, "podcasts": []}
        if result.decision is GuardDecision.BLOCKED:
            error = "Too many failed attempts. Try again later."
        else:
            error = "Unauthorized"
        return json_response(
            {"error": error},
            status=result.decision.status_code(),
            headers=result.headers(),
        )


def _build_app(guard):
    from run_server import create_app, register_api_handler

    app = create_app(guard=guard, admin_token=ADMIN_TOKEN)
    register_api_handler(app, PodcastsProbe, guard, name="podcasts")
    return app


@pytest.fixture
def client(guard):
    with _build_app(guard).test_client() as c:
        yield c


def _bad_key() -> str:
    return "hfm_" + secrets.token_hex(32)


def _get(client, key):
    return client.get("/podcasts", headers={"Authorization": f"Bearer {key}"})


class TestBruteForceLockout:
    def test_bad_key_eventually_429_then_unban_yields_401(self, client):
        bad_key = _bad_key()
        statuses = []
        for _ in range(15):
            res = _get(client, bad_key)
            statuses.append(res.status_code)
            if res.status_code == 429:
                break

        assert statuses[:-1] == [401] * 5
        assert statuses[-1] == 429
        assert int(res.headers["Retry-After"]) > 0

        # server may have stored either loopback form
        for ip in ("127.0.0.1", "::1"):
            unban = client.post("/bans_delete", json={"ip": ip}, headers=ADMIN_HEADERS)
            assert unban.status_code == 200

        assert _get(client, bad_key).status_code == 401

    def test_banned_client_is_blocked_even_with_valid_key(self, client):
        bad_key = _bad_key()
        for _ in range(6):
            _get(client, bad_key)
        res = _get(client, VALID_KEY)
        assert res.status_code == 429
        assert res.get_json() == {"error": "Too many failed attempts. Try again later."}

    def test_threshold_failures_still_let_valid_key_through(self, client):
        bad_key = _bad_key()
        for _ in range(5):
            assert _get(client, bad_key).status_code == 401
        assert _get(client, VALID_KEY).status_code == 200


class TestExpiredKeyNeverBans:
    def test_expired_key_always_401(self, client, guard):
        for _ in range(30):
            assert _get(client, EXPIRED_KEY).status_code == 401
        assert guard.is_banned("127.0.0.1", Context.AUTH_APIKEY).banned is False


class TestAdminEndpoints:
    def test_requires_admin_token(self, client):
        assert client.post("/bans_delete", json={"ip": "127.0.0.1"}).status_code == 403
        res = client.post(
            "/bans_delete",
            json={"ip": "127.0.0.1"},
            headers={"X-Admin-Token": "wrong"},
        )
        assert res.status_code == 403

    def test_disabled_without_configured_token(self, guard):
        from run_server import create_app

        app = create_app(guard=guard, admin_token="")
        with app.test_client() as c:
            res = c.post("/bans_delete", json={"ip": "1.2.3.4"}, headers=ADMIN_HEADERS)
            assert res.status_code == 403

    def test_blank_ip_rejected(self, client):
        res = client.post("/bans_delete", json={"ip": "   "}, headers=ADMIN_HEADERS)
        assert res.status_code == 400
        assert res.get_json() == {"error": "IP is required"}

    def test_unknown_context_rejected(self, client):
        res = client.post(
            "/bans_delete",
            json={"ip": "1.2.3.4", "context": "rss"},
            headers=ADMIN_HEADERS,
        )
        assert res.status_code == 400

    def test_delete_reports_counts(self, client, guard):
        for _ in range(6):
            guard.record_failure_and_maybe_ban("1.2.3.4", Context.SETUP)
        for _ in range(6):
            guard.record_failure_and_maybe_ban("1.2.3.4", Context.CALL_JOIN)

        res = client.post("/bans_delete", json={"ip": "1.2.3.4"}, headers=ADMIN_HEADERS)
        assert res.get_json() == {"ok": True, "deleted": 2, "failures_cleared": 12}

    def test_delete_single_context(self, client, guard):
        for ctx in (Context.SETUP, Context.CALL_JOIN):
            for _ in range(6):
                guard.record_failure_and_maybe_ban("1.2.3.4", ctx)

        res = client.post(
            "/bans_delete",
            json={"ip": "1.2.3.4", "context": "setup"},
            headers=ADMIN_HEADERS,
        )
        assert res.get_json()["deleted"] == 1
        assert guard.is_banned("1.2.3.4", Context.CALL_JOIN).banned is True

    def test_status_lists_active_bans(self, client, guard):
        for _ in range(6):
            guard.record_failure_and_maybe_ban("1.2.3.4", Context.AUTH_LOGIN)

        res = client.post("/bans_status", json={"ip": "1.2.3.4"}, headers=ADMIN_HEADERS)
        body = res.get_json()
        assert body["banned"] is True
        assert body["bans"] == [{"context": "auth_login", "retry_after_sec": 900}]

    def test_security_headers(self, client):
        res = client.post("/bans_status", json={"ip": "1.2.3.4"}, headers=ADMIN_HEADERS)
        assert res.headers.get("X-Content-Type-Options") == "nosniff"
        assert res.headers.get("X-Frame-Options") == "DENY"


class _UnreachableBanStore(InMemoryBanStore):
    def get_ban(self, identity, context):
        raise StorageError("get_ban failed: connection refused")


class TestFailClosed:
    def test_store_outage_is_not_treated_as_not_banned(self, policy, clock):
        guard = AbuseGuard(InMemoryAttemptStore(), _UnreachableBanStore(), policy, clock)
        with _build_app(guard).test_client() as c:
            res = _get(c, VALID_KEY)
        assert res.status_code == 503
