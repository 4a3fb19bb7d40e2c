"""Server configuration via environment variables."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, field_validator

VALID_SECURITY_POLICIES = {"strict", "standard", "permissive"}

DEFAULT_DIRECTORY_NAME = "qrimages"


def _is_env_placeholder(value: str) -> bool:
    """Return True when *value* looks like an unresolved shell placeholder."""
    if value.startswith("${") and value.endswith("}"):
        inner = value[2:-1].strip()
        if ":-" in inner:
            inner = inner.split(":-", 1)[0].strip()
        return bool(inner) and all(ch.isalnum() or ch == "_" for ch in inner)
    if value.startswith("$"):
        inner = value[1:].strip()
        return bool(inner) and all(ch.isalnum() or ch == "_" for ch in inner)
    return False


def _clean_env_path(raw: str) -> str:
    """Strip a path-valued env var; unresolved placeholders count as unset."""
    value = raw.strip()
    if not value or _is_env_placeholder(value):
        return ""
    return value


def _optional_float(raw: str) -> float | None:
    """Parse an optional float env var; blank means the policy default applies."""
    value = raw.strip()
    return float(value) if value else None


def _split_roots(raw: str) -> list[str]:
    """Split ``QR_ALLOWED_ROOTS`` on ``os.pathsep``, dropping blanks."""
    value = _clean_env_path(raw)
    if not value:
        return []
    return [part.strip() for part in value.split(os.pathsep) if part.strip()]


class ServerConfig(BaseModel):
    """Runtime configuration resolved from environment."""

    qr_directory: str = Field(default="")
    default_directory_name: str = Field(default=DEFAULT_DIRECTORY_NAME)
    security_policy: str = Field(default="standard")
    allowed_roots: list[str] = Field(default_factory=list)
    validation_rate_limit: float | None = Field(default=None)
    roots_min_interval: float = Field(default=1.0)
    audit_log_size: int = Field(default=1000)
    fs_probe_timeout: float = Field(default=5.0)
    max_path_length: int = Field(default=4096)

    @field_validator("security_policy")
    @classmethod
    def validate_security_policy(cls, value: str) -> str:
        policy = value.strip().lower()
        if policy not in VALID_SECURITY_POLICIES:
            allowed = ", ".join(sorted(VALID_SECURITY_POLICIES))
            raise ValueError(f"Invalid security policy '{value}'. Allowed: {allowed}")
        return policy

    @field_validator("validation_rate_limit")
    @classmethod
    def validate_rate_limit(cls, value: float | None) -> float | None:
        if value is not None and not 0.1 <= value <= 100:
            raise ValueError("validation_rate_limit must be between 0.1 and 100 changes per second")
        return value

    @field_validator("roots_min_interval")
    @classmethod
    def validate_min_interval(cls, value: float) -> float:
        if value < 0:
            raise ValueError("roots_min_interval must be >= 0")
        return value

    @field_validator("audit_log_size", "max_path_length")
    @classmethod
    def validate_positive_ints(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Configuration values must be >= 1")
        return value

    @field_validator("fs_probe_timeout")
    @classmethod
    def validate_probe_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("fs_probe_timeout must be > 0")
        return value

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Build config from environment variables."""
        return cls(
            qr_directory=_clean_env_path(os.getenv("RADIX_QR_DIR", "")),
            default_directory_name=os.getenv("QR_DEFAULT_DIRECTORY_NAME", DEFAULT_DIRECTORY_NAME),
            security_policy=os.getenv("QR_SECURITY_POLICY", "standard"),
            allowed_roots=_split_roots(os.getenv("QR_ALLOWED_ROOTS", "")),
            validation_rate_limit=_optional_float(os.getenv("QR_VALIDATION_RATE_LIMIT", "")),
            roots_min_interval=float(os.getenv("QR_ROOTS_MIN_INTERVAL", "1.0")),
            audit_log_size=int(os.getenv("QR_AUDIT_LOG_SIZE", "1000")),
            fs_probe_timeout=float(os.getenv("QR_FS_PROBE_TIMEOUT", "5.0")),
            max_path_length=int(os.getenv("QR_MAX_PATH_LENGTH", "4096")),
        )


# Singleton, initialised once on first access.
_config: ServerConfig | None = None


def get_config() -> ServerConfig:
    """Return the global config singleton, creating it on first access.

    Loads ``~/.config/qr-roots-mcp/.env`` before reading env vars.
    Process environment always takes precedence over the config file.
    """
    global _config
    if _config is None:
        import logging

        from .dotenv import load_dotenv

        injected = load_dotenv()
        if injected:
            logger = logging.getLogger(__name__)
            logger.info(
                "Loaded %d var(s) from config: %s",
                len(injected),
                ", ".join(injected.keys()),
            )
        _config = ServerConfig.from_env()
    return _config


def update_config(**overrides: object) -> ServerConfig:
    """Patch the live config without touching the environment."""
    global _config
    cfg = get_config()
    data = cfg.model_dump()
    data.update({k: v for k, v in overrides.items() if v is not None})
    _config = ServerConfig(**data)
    return _config
