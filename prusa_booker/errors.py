"""
Domain errors raised by the booking, credential and training logic.

Each error carries the HTTP status it maps to, so the API layer can render
every rejection through a single exception handler. None of them are
retriable for the same request; the caller has to change the request.
"""

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


class BookerError(Exception):
    """Base class for domain errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BookerError):
    """Malformed or out-of-range input."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(BookerError):
    """The user lacks a credential or permission the action requires."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(BookerError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(BookerError):
    """The request collides with existing state, e.g. an overlapping booking."""

    status_code = status.HTTP_409_CONFLICT


async def booker_error_handler(request: Request, exc: BookerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "Invalid request data",
            "errors": jsonable_encoder(exc.errors()),
        },
    )
