"""
Custom exceptions for the forecast engine.

Provides a hierarchy of exceptions with error codes for consistent error handling.
Data-quality problems (auto-derived ratios, zero-division fallbacks, restated
actuals) are not exceptions: they are recorded as notes and flags.
"""
from typing import Any, Dict, List, Optional


class ForecastEngineError(Exception):
    """
    Base exception for all forecast engine errors.

    Attributes:
        error_code: Unique error code (e.g., FVE-001)
        message: Human-readable error message
        details: Additional error context
    """
    error_code: str = "FVE-000"
    http_status: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# Validation Errors (FVE-1XX)
class ValidationError(ForecastEngineError):
    """Input validation failed."""
    error_code = "FVE-100"
    http_status = 400

    def __init__(self, message: str = "Validation failed", errors: Optional[List[Any]] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        details["errors"] = errors or []
        super().__init__(message, details=details, **kwargs)


class EmptyWorkbookError(ValidationError):
    """Uploaded file has no rows."""
    error_code = "FVE-101"
    http_status = 422

    def __init__(self, file_name: Optional[str] = None, **kwargs):
        super().__init__(
            "The uploaded file does not contain any rows.",
            details={"file_name": file_name},
            **kwargs,
        )


class UnsupportedFileTypeError(ValidationError):
    """File extension is not a supported spreadsheet format."""
    error_code = "FVE-102"
    http_status = 400

    def __init__(self, file_name: str, expected_types: List[str], **kwargs):
        message = f"Unsupported file type. Expected: {', '.join(expected_types)}"
        super().__init__(
            message,
            details={"file_name": file_name, "expected_types": expected_types},
            **kwargs,
        )


class FileTooLargeError(ValidationError):
    """File exceeds maximum size limit."""
    error_code = "FVE-103"
    http_status = 413

    def __init__(self, size: int, max_size: int, **kwargs):
        message = f"File too large. Maximum size: {max_size // (1024 * 1024)}MB"
        super().__init__(message, details={"size": size, "max_size": max_size}, **kwargs)


class NoMonthColumnsError(ValidationError):
    """No header cell could be read as a calendar month."""
    error_code = "FVE-104"
    http_status = 422

    def __init__(self, headers: Optional[List[str]] = None, **kwargs):
        super().__init__(
            'Could not detect any month columns. Please ensure headers look like "2023-01" or "Jan 2023".',
            details={"headers": headers or []},
            **kwargs,
        )


class InsufficientPeriodsError(ValidationError):
    """Fewer month columns than the import requires."""
    error_code = "FVE-105"
    http_status = 422

    def __init__(self, required: int, found: int, **kwargs):
        super().__init__(
            f"Expected at least {required} months, but found {found}.",
            details={"required": required, "found": found},
            **kwargs,
        )


class NoRowsExtractedError(ValidationError):
    """Parsing succeeded but produced nothing to store."""
    error_code = "FVE-106"
    http_status = 422

    def __init__(self, message: str = "No usable financial rows were found after parsing the file.", **kwargs):
        super().__init__(message, **kwargs)


class ParameterValidationError(ValidationError):
    """Methodology parameters outside their declared schema."""
    error_code = "FVE-107"
    http_status = 400

    def __init__(self, methodology: str, errors: Optional[List[Any]] = None, **kwargs):
        super().__init__(
            f"Invalid parameters for methodology '{methodology}'",
            errors=errors,
            details={"methodology": methodology},
            **kwargs,
        )


class UnknownMethodologyError(ValidationError):
    """Methodology id is not in the catalog."""
    error_code = "FVE-108"
    http_status = 400

    def __init__(self, methodology: str, **kwargs):
        super().__init__(
            f"Unknown forecast methodology '{methodology}'",
            details={"methodology": methodology},
            **kwargs,
        )


class InvalidPeriodError(ValidationError):
    """Period string is not a valid YYYY-MM key."""
    error_code = "FVE-109"
    http_status = 400

    def __init__(self, period: str, **kwargs):
        super().__init__(
            f"Invalid period '{period}'. Expected YYYY-MM.",
            details={"period": period},
            **kwargs,
        )


# Not Found Errors (FVE-2XX)
class NotFoundError(ForecastEngineError):
    """Requested resource does not exist."""
    error_code = "FVE-200"
    http_status = 404

    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, **kwargs)


class LineItemNotFoundError(NotFoundError):
    """Line item not found for the company."""
    error_code = "FVE-201"

    def __init__(self, line_item_id: str, **kwargs):
        message = f"Line item {line_item_id} not found"
        super().__init__(message, details={"line_item_id": str(line_item_id)}, **kwargs)


class ImportBatchNotFoundError(NotFoundError):
    """Import batch not found."""
    error_code = "FVE-202"

    def __init__(self, batch_id: str, **kwargs):
        message = f"Import batch {batch_id} not found"
        super().__init__(message, details={"batch_id": str(batch_id)}, **kwargs)


class ForecastVersionNotFoundError(NotFoundError):
    """No projections stored under the requested version."""
    error_code = "FVE-203"

    def __init__(self, version: int, **kwargs):
        message = f"Forecast version {version} not found"
        super().__init__(message, details={"version": version}, **kwargs)


# Storage Errors (FVE-8XX)
class StorageError(ForecastEngineError):
    """Database operation failed."""
    error_code = "FVE-800"
    http_status = 500

    def __init__(self, operation: str, message: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        details["operation"] = operation
        super().__init__(message or f"Storage operation '{operation}' failed", details=details, **kwargs)
