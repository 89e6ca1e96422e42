from __future__ import annotations


class ContinuationError(Exception):
    """Base for rejected continuation requests. Carries the HTTP status the routes return."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(ContinuationError):
    status_code = 400


class RunClosedError(ValidationError):
    def __init__(self, message: str = "This continuation run is no longer accepting responses"):
        super().__init__(message)


class AuthenticationError(ContinuationError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class AuthorizationError(ContinuationError):
    status_code = 403


class NotFoundError(ContinuationError):
    status_code = 404


class ConflictError(ContinuationError):
    status_code = 409
