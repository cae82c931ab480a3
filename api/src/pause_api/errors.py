from __future__ import annotations


class APIError(Exception):
    """Error raised on the synchronous request path; rendered as ``{"error": message}``."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(APIError):
    status_code = 401
    default_message = "Unauthorized"


class InvalidRequest(APIError):
    status_code = 400
    default_message = "Invalid request body"


class Forbidden(APIError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(APIError):
    status_code = 404
    default_message = "Not found"


class Conflict(APIError):
    status_code = 409
    default_message = "Conflict"


class DatabaseError(APIError):
    status_code = 500
    default_message = "Database error"
