from typing import Any

from harborguard.helpers.api import ApiHandler, Request, Response, json_response
from harborguard.helpers.errors import ConfigurationError


class BansDelete(ApiHandler):
    """Remove ban entries (and their failure history) for an IP address.

    Body: ``{"ip": "...", "context": "<optional>"}``.  Without a context
    every ban for the IP is removed.  The IP is matched verbatim, so an
    operator unbanning a loopback client may need to send both
    ``127.0.0.1`` and ``::1``.
    """

    @classmethod
    def requires_admin(cls) -> bool:
        return True

    async def process(
        self, input: dict[Any, Any], request: Request
    ) -> dict[Any, Any] | Response:
        ip = str(input.get("ip") or "").strip()
        if not ip:
            return json_response({"error": "IP is required"}, status=400)

        context = input.get("context") or None
        try:
            result = self.guard.unban(ip, context)
        except ConfigurationError as e:
            return json_response({"error": str(e)}, status=400)

        return {
            "ok": True,
            "deleted": result.bans_deleted,
            "failures_cleared": result.failures_cleared,
        }
