"""
Middleware components for the Value Cards server.

Provides:
- RequestIDMiddleware: Request tracing with X-Request-ID and room context
"""

from .request_id import RequestIDMiddleware, room_id_from_path

__all__ = [
    "RequestIDMiddleware",
    "room_id_from_path",
]
