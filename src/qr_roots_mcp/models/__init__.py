"""Pydantic models for the roots subsystem."""

from .roots import (
    AuditLogEntry,
    ConfigurationChangeEvent,
    ConfigurationState,
    ConfigurationStatus,
    DirectoryInfo,
    RootsNotification,
    RootsValidationResult,
    ValidationResult,
)

__all__ = [
    "AuditLogEntry",
    "ConfigurationChangeEvent",
    "ConfigurationState",
    "ConfigurationStatus",
    "DirectoryInfo",
    "RootsNotification",
    "RootsValidationResult",
    "ValidationResult",
]
