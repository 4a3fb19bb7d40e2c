"""Closed variants and annotated aliases shared across the roots subsystem."""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated

from pydantic import Field


class SecurityPolicy(str, Enum):
    """How strongly the whitelist is enforced."""

    STRICT = "strict"
    STANDARD = "standard"
    PERMISSIVE = "permissive"


class ConfigurationSource(str, Enum):
    """Which precedence layer determines the active QR directory."""

    ROOTS = "roots"
    ENVIRONMENT = "environment"
    COMMAND_LINE = "command_line"
    DEFAULT = "default"


# Highest precedence first.
PRECEDENCE: tuple[ConfigurationSource, ...] = (
    ConfigurationSource.ROOTS,
    ConfigurationSource.ENVIRONMENT,
    ConfigurationSource.COMMAND_LINE,
    ConfigurationSource.DEFAULT,
)


class RiskLevel(str, Enum):
    """Severity attached to every audited validation attempt."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class AuditResult(str, Enum):
    """Outcome recorded in the audit log."""

    ALLOWED = "allowed"
    BLOCKED = "blocked"
    ERROR = "error"


def coerce_json_param(value: str | dict | list | None, expected_type: type) -> dict | list | None:
    """Parse MCP JSON-RPC string params back to dict/list.

    MCP JSON-RPC transport may serialize dict/list params as JSON strings.
    Pydantic v2 rejects these — this helper coerces them back.

    Returns:
        Parsed value if coercion succeeded, original value otherwise.
    """
    if not isinstance(value, str):
        return value
    try:
        parsed = json.loads(value)
        if isinstance(parsed, expected_type):
            return parsed
    except (json.JSONDecodeError, TypeError):
        pass
    return value


# ── Annotated aliases ────────────────────────────────────────────────────────

DirectoryParam = Annotated[str, Field(
    description="Directory where QR images should be written (absolute, relative or ~-prefixed)",
)]
AuditLimit = Annotated[int, Field(ge=1, le=1000, description="Number of most recent audit entries")]
