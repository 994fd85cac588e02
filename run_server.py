import hmac
import logging
import os
import secrets
from functools import wraps

from flask import Flask, Response, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.wrappers.response import Response as BaseResponse

from harborguard.api.bans_delete import BansDelete
from harborguard.api.bans_status import BansStatus
from harborguard.helpers import guard_db
from harborguard.helpers.abuse_guard import AbuseGuard
from harborguard.helpers.api import ApiHandler
from harborguard.helpers.attempt_store import SqlAttemptStore
from harborguard.helpers.ban_store import SqlBanStore
from harborguard.helpers.policy import PolicyTable

logger = logging.getLogger(__name__)

API_HANDLERS: list[type[ApiHandler]] = [BansDelete, BansStatus]


def add_security_headers(response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
    return response


def requires_admin(f, admin_token: str | None):
    @wraps(f)
    async def decorated(*args, **kwargs):
        sent = request.headers.get("X-Admin-Token", "")
        if not admin_token or not sent:
            return Response("Access denied.", 403)
        if not hmac.compare_digest(sent.encode(), admin_token.encode()):
            return Response("Access denied.", 403)
        return await f(*args, **kwargs)

    return decorated


def register_api_handler(
    app: Flask,
    handler: type[ApiHandler],
    guard: AbuseGuard,
    limiter: Limiter | None = None,
    admin_token: str | None = None,
    name: str | None = None,
):
    name = name or handler.__module__.split(".")[-1]
    instance = handler(app, guard)

    async def handler_wrap() -> BaseResponse:
        return await instance.handle_request(request=request)

    handler_wrap.__name__ = f"{name}_handler"

    if handler.requires_admin():
        handler_wrap = requires_admin(handler_wrap, admin_token)
        if limiter is not None:
            handler_wrap = limiter.limit("30/minute")(handler_wrap)

    app.add_url_rule(
        f"/{name}",
        f"/{name}",
        handler_wrap,
        methods=handler.get_methods(),
    )


def build_default_guard() -> AbuseGuard:
    """Guard backed by the database named in GUARD_DATABASE_URL."""
    guard_db.init_db()
    guard_db.create_tables()
    return AbuseGuard(SqlAttemptStore(), SqlBanStore(), PolicyTable.from_env())


def create_app(
    guard: AbuseGuard | None = None, admin_token: str | None = None
) -> Flask:
    guard = guard or build_default_guard()
    if admin_token is None:
        admin_token = os.environ.get("GUARD_ADMIN_TOKEN") or None
    if not admin_token:
        logger.warning("GUARD_ADMIN_TOKEN not set; admin endpoints are disabled")

    app = Flask(__name__)
    app.secret_key = os.getenv("FLASK_SECRET_KEY") or secrets.token_hex(32)
    app.extensions["abuse_guard"] = guard

    limiter = Limiter(
        app=app,
        key_func=get_remote_address,
        storage_uri="memory://",
    )
    app.after_request(add_security_headers)

    for handler in API_HANDLERS:
        register_api_handler(app, handler, guard, limiter, admin_token)

    return app


def run():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.environ.get("WEB_HOST", "localhost")
    port = int(os.environ.get("WEB_PORT", "5080"))
    app = create_app()
    logger.info("Starting ban admin server on %s:%d", host, port)
    app.run(host=host, port=port)


if __name__ == "__main__":
    run()
