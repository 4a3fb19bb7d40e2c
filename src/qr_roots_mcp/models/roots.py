"""Roots subsystem models: validation results, audit entries, configuration snapshots.

Returned by SecurityValidator, ConfigurationProvider and RootsManager, and
serialised with ``model_dump(mode="json")`` by the roots tools.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ErrorCategory
from ..types import AuditResult, ConfigurationSource, RiskLevel, SecurityPolicy


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class ValidationResult(BaseModel):
    """Outcome of validating one candidate directory."""

    is_valid: bool
    valid_directory: str | None = None
    path: str = ""
    errors: list[str] = Field(default_factory=list)
    message: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    category: ErrorCategory | None = None
    processing_time: float = Field(default=0.0, ge=0.0)  # milliseconds


class RootsValidationResult(ValidationResult):
    """Outcome of a whole roots notification, with per-candidate diagnostics."""

    diagnostics: list[ValidationResult] = Field(default_factory=list)


class AuditLogEntry(BaseModel):
    """One forensic record; ``attempted_path`` is stored raw, before normalization."""

    id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    attempted_path: str
    result: AuditResult
    risk_level: RiskLevel
    reason: str
    policy: SecurityPolicy
    normalized_path: str | None = None


class ConfigurationState(BaseModel):
    """Immutable snapshot of the active QR directory and its provenance."""

    model_config = ConfigDict(frozen=True)

    current_directory: str
    source: ConfigurationSource
    allowed_directories: tuple[str, ...] = ()
    last_updated: datetime = Field(default_factory=_utcnow)


class ConfigurationStatus(BaseModel):
    """Introspection view of the configuration, as reported to clients."""

    source: ConfigurationSource
    current_directory: str
    allowed_directories: list[str] = Field(default_factory=list)
    is_valid: bool
    last_updated: datetime


class ConfigurationChangeEvent(BaseModel):
    """Delivered to observers after every update attempt, successful or not."""

    previous: ConfigurationState
    current: ConfigurationState
    timestamp: datetime = Field(default_factory=_utcnow)
    success: bool
    message: str
    reason: str | None = None


class DirectoryInfo(BaseModel):
    """Best-effort filesystem probe of the active QR directory."""

    path: str
    exists: bool = False
    writable: bool = False
    qr_file_count: int = 0
    total_size: int = 0
    last_modified: datetime = _EPOCH


class RootsNotification(BaseModel):
    """Inbound roots list; shape is checked by RootsManager, not here."""

    roots: Any = None
    timestamp: Any = None
