"""Pydantic schemas for API request/response validation."""

from app.schemas.common import ErrorDetail, ErrorResponse

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
]
