"""
Error taxonomy for the BookXchange API.

Each error carries the HTTP status it is rendered with by the exception
handlers registered in main.py. The message is returned to the client as
{"detail": message}, except for InternalError whose detail is always generic.
"""

from fastapi import status


class BookXchangeError(Exception):
    """Base class for errors surfaced at the API boundary."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookXchangeError):
    """Malformed or missing input fields."""

    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(BookXchangeError):
    """No usable caller identity on an authenticated route."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(BookXchangeError):
    """Actor is not the owner or participant of the resource."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(BookXchangeError):
    """Referenced user, listing, conversation or message is absent."""

    status_code = status.HTTP_404_NOT_FOUND


class InternalError(BookXchangeError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
