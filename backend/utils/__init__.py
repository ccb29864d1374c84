"""
Utils Package

Provides utility modules for:
- validation_errors: Structured HTTP error bodies for validation failures
  and reconciliation errors
"""

from .validation_errors import (
    CATEGORY_STATUS_CODES,
    ValidationErrorResponse,
    raise_missing_parameter,
    raise_invalid_parameter,
    raise_reconciliation_error,
    validate_required_uuid,
)

__all__ = [
    'CATEGORY_STATUS_CODES',
    'ValidationErrorResponse',
    'raise_missing_parameter',
    'raise_invalid_parameter',
    'raise_reconciliation_error',
    'validate_required_uuid',
]
