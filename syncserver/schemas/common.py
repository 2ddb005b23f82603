"""Error body shared by every endpoint."""

from typing import Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Response model for errors; retryAfter is set for throttled and blocked actors."""
    detail: str
    code: str
    retryAfter: Optional[float] = None


ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or unknown bearer token"},
    403: {"model": ErrorResponse, "description": "Actor blocked or write not permitted"},
    429: {"model": ErrorResponse, "description": "Actor throttled"},
    500: {"model": ErrorResponse, "description": "Store failure"},
}
