"""Structured error handling — error categories, classification, and tool error model."""

from __future__ import annotations

import asyncio
from enum import Enum

from pydantic import BaseModel


class ErrorCategory(str, Enum):
    """Machine-readable rejection categories shared by results and tool errors."""

    STRUCTURAL_ERROR = "STRUCTURAL_ERROR"
    SECURITY_REJECTED = "SECURITY_REJECTED"
    RATE_LIMITED = "RATE_LIMITED"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"
    FILESYSTEM_ERROR = "FILESYSTEM_ERROR"
    CONFIGURATION_INVALID = "CONFIGURATION_INVALID"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN = "UNKNOWN"


class RootsConfigurationError(Exception):
    """Raised by operator-facing configuration calls; always chained to the cause."""


class ToolError(BaseModel):
    """Structured error returned from any tool."""

    error: str
    category: str
    hint: str
    retryable: bool = False
    retry_after_seconds: int | None = None


def categorize_error(error: Exception) -> tuple[ErrorCategory, str]:
    """Map an exception to an ErrorCategory + human-readable hint."""
    cause = error.__cause__ if isinstance(error, RootsConfigurationError) else None
    s = str(error).lower()

    if isinstance(error, RootsConfigurationError) and isinstance(cause, OSError):
        return (
            ErrorCategory.FILESYSTEM_ERROR,
            "Filesystem probe failed while reconfiguring — check the directory exists and is writable",
        )
    if isinstance(error, RootsConfigurationError) or "política" in s or "policy" in s:
        return (
            ErrorCategory.CONFIGURATION_INVALID,
            "Invalid security configuration — use policy strict, standard or permissive",
        )
    if "rate limit" in s:
        return (
            ErrorCategory.RATE_LIMITED,
            "Too many directory changes — wait for the configured interval and retry",
        )
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)) or "timed out" in s:
        return (
            ErrorCategory.FILESYSTEM_ERROR,
            "Filesystem probe timed out — the directory may live on a slow or stale mount",
        )
    if isinstance(error, PermissionError):
        return (
            ErrorCategory.FILESYSTEM_ERROR,
            "Permission denied — choose a directory the server user can write to",
        )
    if isinstance(error, FileNotFoundError):
        return (
            ErrorCategory.FILESYSTEM_ERROR,
            "Directory not found — check the path",
        )
    if isinstance(error, OSError):
        return (
            ErrorCategory.FILESYSTEM_ERROR,
            "Filesystem error — check the path and its permissions",
        )
    if isinstance(error, (ValueError, TypeError)):
        return (
            ErrorCategory.STRUCTURAL_ERROR,
            "Bad request — check input format",
        )

    return (ErrorCategory.UNKNOWN, str(error))


def make_tool_error(error: Exception) -> dict:
    """Create a serialisable ToolError dict from an exception."""
    cat, hint = categorize_error(error)
    retryable = cat in {
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.CONCURRENT_UPDATE,
        ErrorCategory.FILESYSTEM_ERROR,
    }
    return ToolError(
        error=str(error),
        category=cat.value,
        hint=hint,
        retryable=retryable,
        retry_after_seconds=1 if cat == ErrorCategory.RATE_LIMITED else None,
    ).model_dump(mode="json")
