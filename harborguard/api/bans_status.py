from typing import Any

from harborguard.helpers.api import ApiHandler, Request, Response, json_response


class BansStatus(ApiHandler):
    """List active bans for an IP address across all contexts."""

    @classmethod
    def requires_admin(cls) -> bool:
        return True

    async def process(
        self, input: dict[Any, Any], request: Request
    ) -> dict[Any, Any] | Response:
        ip = str(input.get("ip") or "").strip()
        if not ip:
            return json_response({"error": "IP is required"}, status=400)

        bans = [
            {"context": str(ctx), "retry_after_sec": status.retry_after_sec}
            for ctx, status in self.guard.bans_for(ip)
        ]
        return {"ok": True, "ip": ip, "banned": bool(bans), "bans": bans}
