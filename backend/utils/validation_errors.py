"""
Structured Error Utilities

Provides standardized error responses for validation failures and
reconciliation errors. Helps UI distinguish between validation errors,
conflicts and connectivity issues.

Error Response Format:
{
    "error": "invalid_parameter" | "already_matched" | ...,
    "message": "...",
    "details": {...}
}
"""

import uuid
from typing import Any, NoReturn, Optional

from fastapi import HTTPException, status

from reconciliation.errors import ReconciliationError

# Reconciliation error category -> HTTP status
CATEGORY_STATUS_CODES = {
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "conflict": status.HTTP_409_CONFLICT,
    "state": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "configuration": status.HTTP_503_SERVICE_UNAVAILABLE,
}


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)

        Returns:
            Structured error dict
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> NoReturn:
    """
    Raise HTTPException with structured invalid parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )


def raise_reconciliation_error(error: ReconciliationError) -> NoReturn:
    """
    Translate a reconciliation error into an HTTPException.

    Validation -> 422, conflict/state -> 409, not found -> 404.
    """
    raise HTTPException(
        status_code=CATEGORY_STATUS_CODES.get(error.category, status.HTTP_400_BAD_REQUEST),
        detail=error.to_dict()
    ) from error


def validate_required_uuid(value: Optional[str], parameter: str) -> str:
    """
    Validate that a required UUID parameter is present and valid.

    Returns:
        The validated value

    Raises:
        HTTPException with structured error if validation fails
    """
    if not value:
        raise_missing_parameter(parameter)

    try:
        uuid.UUID(value)
        return value
    except ValueError:
        raise_invalid_parameter(
            parameter,
            f"{parameter} must be a valid UUID format",
            value
        )
