import json
import logging
import os
from abc import abstractmethod
from typing import Any, Dict, TypedDict, Union

from flask import Flask, Request, Response

from harborguard.helpers.abuse_guard import AbuseGuard
from harborguard.helpers.errors import StorageError, format_error

logger = logging.getLogger(__name__)

Input = dict
Output = Union[Dict[str, Any], Response, TypedDict]  # type: ignore


def is_development() -> bool:
    return os.environ.get("GUARD_ENV", "production").lower() == "development"


def json_response(payload: dict, status: int = 200, headers: dict | None = None) -> Response:
    return Response(
        response=json.dumps(payload),
        status=status,
        mimetype="application/json",
        headers=headers or {},
    )


class ApiHandler:
    def __init__(self, app: Flask, guard: AbuseGuard):
        self.app = app
        self.guard = guard

    @classmethod
    def requires_admin(cls) -> bool:
        return False

    @classmethod
    def get_methods(cls) -> list[str]:
        return ["POST"]

    @abstractmethod
    async def process(self, input: Input, request: Request) -> Output:
        pass

    async def handle_request(self, request: Request) -> Response:
        try:
            input_data: Input = {}
            if request.is_json:
                try:
                    if request.data:
                        input_data = request.get_json()
                except Exception as e:
                    logger.warning("Error parsing JSON: %s", e)
                    input_data = {}
            if not isinstance(input_data, dict):
                input_data = {}

            output = await self.process(input_data, request)

            if isinstance(output, Response):
                return output
            return json_response(output)

        except StorageError as e:
            # Fail closed: the guard could not be consulted, so refuse
            logger.error("Guard store unavailable: %s", format_error(e))
            return json_response(
                {"error": "Service temporarily unavailable"}, status=503
            )
        except Exception as e:
            error = format_error(e)
            logger.error("API error: %s", error)
            if is_development():
                return Response(response=error, status=500, mimetype="text/plain")
            return json_response({"error": "Internal server error"}, status=500)
