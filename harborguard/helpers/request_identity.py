"""Extract the guard identity and audit details from a Flask request."""

from flask import Request

from harborguard.helpers.abuse_guard import UNKNOWN_IDENTITY


def get_client_ip(request: Request) -> str:
    # Behind a reverse proxy, wrap the app in werkzeug's ProxyFix so
    # remote_addr is the client address.
    return (request.remote_addr or "").strip() or UNKNOWN_IDENTITY


def get_user_agent(request: Request) -> str:
    return (request.headers.get("User-Agent") or "").strip()
