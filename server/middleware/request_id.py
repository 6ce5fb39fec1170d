"""
Request ID middleware for request tracing.

Generates or propagates the X-Request-ID header and binds the room being
acted on (taken from /api/rooms/{room_id}/... paths) into the log context.
"""

import re
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from logging_config import request_id_var, room_id_var

ROOM_PATH = re.compile(r"^/api/rooms/(?P<room_id>[0-9a-fA-F-]{32,36})(?:/|$)")


def room_id_from_path(path: str) -> Optional[str]:
    """Room id addressed by an /api/rooms path, if any."""
    match = ROOM_PATH.match(path)
    return match.group("room_id") if match else None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tag each HTTP request with an id and the room it addresses.

    An incoming X-Request-ID is kept so ids follow a request across
    servers; otherwise a UUID is generated. The id is echoed on the
    response and bound, with the room id, into the logging context.
    """

    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id

        request_token = request_id_var.set(request_id)
        room_token = room_id_var.set(room_id_from_path(request.url.path))
        try:
            response = await call_next(request)
            response.headers[self.header_name] = request_id
            return response
        finally:
            room_id_var.reset(room_token)
            request_id_var.reset(request_token)
