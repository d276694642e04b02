"""
Custom exceptions and error codes for the flag engine.

This module provides:
- Structured error codes for categorized error handling
- Custom exception classes for storage, remote sync and listener failures
- Error response schema for consistent API responses
"""
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class ErrorCode(str, Enum):
    """
    Engine-wide error codes for categorized error handling.

    Format: CATEGORY_SPECIFIC_ERROR
    Categories:
    - FLAG_*: Flag lookup and validation errors
    - STORAGE_*: Local key/value storage errors
    - REMOTE_*: Remote flag endpoint errors
    - LISTENER_*: Change listener errors
    - SCHEDULER_*: Override expiry scheduling errors
    """

    # Flag-related errors
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    FLAG_INVALID_VARIANTS = "FLAG_INVALID_VARIANTS"

    # Storage errors
    STORAGE_READ_FAILED = "STORAGE_READ_FAILED"
    STORAGE_WRITE_FAILED = "STORAGE_WRITE_FAILED"

    # Remote sync errors
    REMOTE_FETCH_FAILED = "REMOTE_FETCH_FAILED"
    REMOTE_PAYLOAD_MALFORMED = "REMOTE_PAYLOAD_MALFORMED"

    # Listener errors
    LISTENER_FAULT = "LISTENER_FAULT"

    # Scheduling errors
    SCHEDULER_UNAVAILABLE = "SCHEDULER_UNAVAILABLE"

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Structured error response for API errors."""

    model_config = ConfigDict(use_enum_values=True)

    error_code: ErrorCode
    message: str
    details: Optional[Dict[str, Any]] = None


class FlagEngineError(Exception):
    """
    Base exception for all flag engine errors.

    Provides structured error information for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse for API output."""
        return ErrorResponse(
            error_code=self.error_code,
            message=self.message,
            details=self.details if self.details else None,
        )


# Flag-related exceptions

class FlagNotFoundError(FlagEngineError):
    """Raised when a flag is not known to the store."""

    def __init__(self, name: str):
        super().__init__(
            message=f"Flag '{name}' not found",
            error_code=ErrorCode.FLAG_NOT_FOUND,
            details={"flag": name},
            status_code=404,
        )


class InvalidVariantsError(FlagEngineError):
    """Raised when an A/B test is evaluated without any variants."""

    def __init__(self, test_name: str):
        super().__init__(
            message=f"A/B test '{test_name}' needs at least one variant",
            error_code=ErrorCode.FLAG_INVALID_VARIANTS,
            details={"test": test_name},
            status_code=422,
        )


# Storage exceptions

class StorageError(FlagEngineError):
    """Base class for local storage failures."""


class StorageReadError(StorageError):
    """Raised when persisted flags cannot be read or decoded."""

    def __init__(self, key: str, reason: str):
        super().__init__(
            message=f"Failed to read flags from storage key '{key}': {reason}",
            error_code=ErrorCode.STORAGE_READ_FAILED,
            details={"key": key, "reason": reason},
            status_code=500,
        )


class StorageWriteError(StorageError):
    """Raised when flags cannot be written to or removed from storage."""

    def __init__(self, key: str, reason: str):
        super().__init__(
            message=f"Failed to write flags to storage key '{key}': {reason}",
            error_code=ErrorCode.STORAGE_WRITE_FAILED,
            details={"key": key, "reason": reason},
            status_code=500,
        )


# Remote sync exceptions

class RemoteError(FlagEngineError):
    """Base class for remote flag endpoint failures."""


class RemoteFetchError(RemoteError):
    """Raised when the remote flag endpoint is unreachable or returns non-2xx."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        details: Dict[str, Any] = {"url": url, "reason": reason}
        if status is not None:
            details["status"] = status
        super().__init__(
            message=f"Failed to fetch remote flags from {url}: {reason}",
            error_code=ErrorCode.REMOTE_FETCH_FAILED,
            details=details,
            status_code=502,
        )


class MalformedRemotePayloadError(RemoteError):
    """Raised when the remote flag document is not valid JSON or has the wrong shape."""

    def __init__(self, url: str, reason: str):
        super().__init__(
            message=f"Malformed flag document from {url}: {reason}",
            error_code=ErrorCode.REMOTE_PAYLOAD_MALFORMED,
            details={"url": url, "reason": reason},
            status_code=502,
        )


# Listener exceptions

class ListenerFault(FlagEngineError):
    """Wraps an exception raised by a flag change listener."""

    def __init__(self, flag_name: str, listener: str, cause: BaseException):
        super().__init__(
            message=f"Listener {listener} failed for flag '{flag_name}': {cause}",
            error_code=ErrorCode.LISTENER_FAULT,
            details={
                "flag": flag_name,
                "listener": listener,
                "error_type": type(cause).__name__,
            },
            status_code=500,
        )
        self.__cause__ = cause


# Scheduling exceptions

class SchedulerUnavailableError(FlagEngineError):
    """Raised when the expiry of a timed override cannot be scheduled."""

    def __init__(self, flag_name: str):
        super().__init__(
            message=(
                f"Cannot schedule expiry for flag '{flag_name}': "
                "no scheduler could be started"
            ),
            error_code=ErrorCode.SCHEDULER_UNAVAILABLE,
            details={"flag": flag_name},
            status_code=500,
        )
