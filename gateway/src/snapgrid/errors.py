from __future__ import annotations


class MessagingError(Exception):
    """Base class for failures surfaced to API callers."""

    code = "internal"
    status = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code.replace("_", " ")
        super().__init__(self.message)

    def to_api_dict(self) -> dict[str, object]:
        return {"success": False, "code": self.code, "message": self.message}


class InvalidInput(MessagingError):
    code = "invalid_request"
    status = 400


class Unauthorized(MessagingError):
    code = "unauthorized"
    status = 401


class Forbidden(MessagingError):
    code = "forbidden"
    status = 403


class NotFound(MessagingError):
    code = "not_found"
    status = 404


class Internal(MessagingError):
    code = "internal"
    status = 500
