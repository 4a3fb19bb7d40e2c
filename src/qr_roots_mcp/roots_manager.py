"""Roots manager: turns roots notifications into a QR directory change.

Per notification::

    RECEIVED → STRUCTURAL_VALIDATION → RATE_LIMIT_CHECK → CONCURRENCY_GUARD
             → CANDIDATE_ITERATION → APPLY → RESULT

Malformed payloads are rejected before the rate limiter is touched. A
notification arriving while another is in flight is rejected, never queued.
Candidates are validated lazily and the first valid one wins; later
candidates are never evaluated.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from typing import TYPE_CHECKING, Any

from .configuration import ConfigurationProvider
from .errors import ErrorCategory, RootsConfigurationError
from .models import ConfigurationStatus, RootsNotification, RootsValidationResult, ValidationResult
from .rate_limit import RateLimiter
from .security_validator import (
    INVALID_PATH_ERROR,
    RATE_LIMIT_ERROR,
    SecurityValidator,
    create_security_validator,
    minimal_validation,
)
from .types import RiskLevel, SecurityPolicy

if TYPE_CHECKING:
    from .config import ServerConfig

logger = logging.getLogger(__name__)

CONCURRENT_UPDATE_ERROR = "Concurrent roots update in progress"
NO_VALID_CANDIDATE_ERROR = "No valid directory in roots list"
APPLY_FAILED_ERROR = "Directory could not be applied"
INVALID_NOTIFICATION_ERROR = "Invalid roots notification"
VALIDATION_TIMEOUT_ERROR = "Candidate validation timed out"


def _elapsed_ms(start: float) -> float:
    return max((time.perf_counter() - start) * 1000.0, 0.0)


def parse_roots(notification: Any) -> list[str]:
    """Extract the candidate list from a notification.

    Accepts a :class:`RootsNotification` or any mapping with a ``roots`` key.

    Raises:
        ValueError: Describing the first structural problem found.
    """
    if isinstance(notification, RootsNotification):
        roots = notification.roots
        timestamp = notification.timestamp
    elif isinstance(notification, Mapping):
        roots = notification.get("roots")
        timestamp = notification.get("timestamp")
    else:
        raise ValueError("se esperaba un objeto con el campo 'roots'")

    if timestamp is not None and (isinstance(timestamp, bool) or not isinstance(timestamp, (int, float))):
        raise ValueError("'timestamp' debe ser numérico")

    if not isinstance(roots, (list, tuple)):
        raise ValueError("'roots' debe ser una lista")
    if not roots:
        raise ValueError("'roots' no puede estar vacía")
    for index, root in enumerate(roots):
        if not isinstance(root, str) or not root.strip():
            raise ValueError(f"roots[{index}] debe ser una cadena no vacía")
    return list(roots)


def _recorded(results: Iterable[ValidationResult], sink: list[ValidationResult]) -> Iterator[ValidationResult]:
    for result in results:
        sink.append(result)
        yield result


class RootsManager:
    """Orchestrates validation and application of client-provided roots."""

    def __init__(
        self,
        configuration_provider: ConfigurationProvider,
        security_validator: SecurityValidator | None = None,
        *,
        min_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        validator_options: Mapping[str, Any] | None = None,
    ) -> None:
        """Wire the manager to its collaborators.

        Args:
            configuration_provider: Owner of the active directory.
            security_validator: Optional validator; minimal checks when absent.
            min_interval: Seconds between admitted notifications.
            clock: Monotonic clock shared with the notification rate limiter.
            validator_options: Extra keyword arguments for validators built
                by :meth:`set_security_validator`.
        """
        self._provider = configuration_provider
        self._validator = security_validator
        self._rate_limiter = RateLimiter(min_interval, clock=clock)
        self._validator_options = dict(validator_options or {})
        self._in_flight = False

    @property
    def configuration_provider(self) -> ConfigurationProvider:
        return self._provider

    @property
    def security_validator(self) -> SecurityValidator | None:
        return self._validator

    # ── notifications ────────────────────────────────────────────────────────

    async def handle_roots_changed(self, notification: RootsNotification | Mapping[str, Any]) -> RootsValidationResult:
        """Validate the candidates and apply the first acceptable one. Never raises."""
        start = time.perf_counter()
        try:
            return await self._handle(notification, start)
        except Exception as exc:
            logger.exception("Unexpected failure while handling roots notification")
            return self._failure(
                start,
                errors=[f"{type(exc).__name__}: {exc}"],
                message=f"Error interno procesando la notificación de roots: {exc}",
                category=ErrorCategory.INTERNAL_ERROR,
                risk=RiskLevel.HIGH,
            )

    async def _handle(self, notification: Any, start: float) -> RootsValidationResult:
        try:
            candidates = parse_roots(notification)
        except ValueError as exc:
            logger.debug("Malformed roots notification: %s", exc)
            return self._failure(
                start,
                errors=[INVALID_NOTIFICATION_ERROR],
                message=f"Notificación inválida: {exc}",
                category=ErrorCategory.STRUCTURAL_ERROR,
            )

        if not self._rate_limiter.try_acquire():
            wait = self._rate_limiter.retry_after()
            logger.info("Roots notification rate limited (retry in %.2fs)", wait)
            return self._failure(
                start,
                errors=[RATE_LIMIT_ERROR],
                message=f"Rate limit excedido. Espere {wait:.1f}s antes de enviar otra notificación de roots.",
                category=ErrorCategory.RATE_LIMITED,
                risk=RiskLevel.MEDIUM,
            )

        if self._in_flight:
            logger.info("Roots notification rejected: another change is in progress")
            return self._failure(
                start,
                errors=[CONCURRENT_UPDATE_ERROR],
                message="Ya hay otro cambio de roots en proceso. Intente nuevamente en unos momentos.",
                category=ErrorCategory.CONCURRENT_UPDATE,
            )

        self._in_flight = True
        try:
            return await self._apply_first_valid(candidates, start)
        finally:
            self._in_flight = False

    async def _apply_first_valid(self, candidates: list[str], start: float) -> RootsValidationResult:
        diagnostics: list[ValidationResult] = []
        timeout = self._provider.probe_timeout
        try:
            winner = await asyncio.wait_for(
                asyncio.to_thread(self._first_valid, candidates, diagnostics),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Candidate validation timed out after %gs", timeout)
            return self._failure(
                start,
                errors=[VALIDATION_TIMEOUT_ERROR],
                message=f"Tiempo de espera agotado validando los directorios candidatos ({timeout:g}s)",
                category=ErrorCategory.FILESYSTEM_ERROR,
                risk=RiskLevel.MEDIUM,
                diagnostics=list(diagnostics),
            )

        if winner is None:
            last = diagnostics[-1] if diagnostics else None
            if last is not None and last.category is ErrorCategory.RATE_LIMITED:
                return self._failure(
                    start,
                    errors=list(last.errors),
                    message=last.message,
                    category=ErrorCategory.RATE_LIMITED,
                    risk=last.risk_level,
                    diagnostics=diagnostics,
                )
            logger.warning("Roots notification rejected: none of %d candidate(s) valid", len(candidates))
            return self._failure(
                start,
                errors=[NO_VALID_CANDIDATE_ERROR] + [
                    f"{d.path}: {', '.join(d.errors)}" for d in diagnostics
                ],
                message="Ningún directorio en la lista es válido. Revise los diagnósticos de cada candidato.",
                category=ErrorCategory.SECURITY_REJECTED,
                risk=max((d.risk_level for d in diagnostics), key=lambda r: r.rank, default=RiskLevel.LOW),
                diagnostics=diagnostics,
            )

        directory = winner.valid_directory
        if not await self._provider.update_from_roots(directory):
            return self._failure(
                start,
                errors=[APPLY_FAILED_ERROR],
                message=(
                    f"El directorio {directory} pasó la validación pero no pudo aplicarse "
                    "(no se pudo crear o no es escribible)."
                ),
                category=ErrorCategory.FILESYSTEM_ERROR,
                risk=RiskLevel.LOW,
                path=winner.path,
                diagnostics=diagnostics,
            )

        logger.info(
            "Roots applied: %s (candidate %d of %d)",
            directory, len(diagnostics), len(candidates),
        )
        return RootsValidationResult(
            is_valid=True,
            valid_directory=directory,
            path=winner.path,
            message=f"Directorio QR actualizado desde MCP roots: {directory}",
            risk_level=RiskLevel.LOW,
            diagnostics=diagnostics,
            processing_time=_elapsed_ms(start),
        )

    def _first_valid(self, candidates: list[str], diagnostics: list[ValidationResult]) -> ValidationResult | None:
        # Symlink resolution touches the filesystem; runs in a worker thread.
        return next((r for r in _recorded(self._validations(candidates), diagnostics) if r.is_valid), None)

    def _validations(self, candidates: list[str]) -> Iterator[ValidationResult]:
        if self._validator is None:
            return (minimal_validation(candidate) for candidate in candidates)
        return self._validator.iter_validations(candidates)

    @staticmethod
    def _failure(
        start: float,
        *,
        errors: list[str],
        message: str,
        category: ErrorCategory,
        risk: RiskLevel = RiskLevel.LOW,
        path: str = "",
        diagnostics: list[ValidationResult] | None = None,
    ) -> RootsValidationResult:
        return RootsValidationResult(
            is_valid=False,
            path=path,
            errors=errors,
            message=message,
            risk_level=risk,
            category=category,
            diagnostics=diagnostics or [],
            processing_time=_elapsed_ms(start),
        )

    # ── introspection ────────────────────────────────────────────────────────

    async def get_current_roots(self) -> ConfigurationStatus:
        """Current configuration, with ``is_valid`` re-checked against the validator."""
        state = self._provider.get_state()
        try:
            is_valid = await asyncio.to_thread(self._check_current, state.current_directory)
        except Exception:
            logger.warning("Could not re-validate current directory %s", state.current_directory, exc_info=True)
            is_valid = False
        return self._provider.get_status(is_valid, state)

    def _check_current(self, directory: str) -> bool:
        if self._validator is None:
            return minimal_validation(directory).is_valid
        return self._validator.check_directory(directory).is_valid

    def validate_directory(self, path: str) -> ValidationResult:
        """Dry run: validate *path* exactly as a roots candidate, without applying it."""
        start = time.perf_counter()
        if not isinstance(path, str) or not path.strip():
            return ValidationResult(
                is_valid=False,
                errors=[INVALID_PATH_ERROR],
                message="Directorio es requerido y debe ser una cadena no vacía.",
                category=ErrorCategory.STRUCTURAL_ERROR,
                processing_time=_elapsed_ms(start),
            )
        return next(self._validations([path]))

    def get_security_validator_info(self) -> dict:
        info: dict[str, Any] = {
            "enabled": self._validator is not None,
            "roots_min_interval": self._rate_limiter.min_interval,
        }
        if self._validator is not None:
            info.update(self._validator.describe())
        return info

    # ── operator actions ─────────────────────────────────────────────────────

    def set_security_validator(
        self,
        policy: SecurityPolicy | str,
        allowed_roots: Iterable[str] | None = None,
    ) -> SecurityValidator:
        """Attach a new validator; supplied roots also become the allowed directories.

        Without *allowed_roots* the provider's current allowed directories are used.

        Raises:
            RootsConfigurationError: Invalid policy, rate limit or root entry.
        """
        roots = list(allowed_roots) if allowed_roots is not None else self._provider.get_allowed_directories()
        try:
            validator = create_security_validator(policy, roots, **self._validator_options)
            if allowed_roots is not None:
                self._provider.update_allowed_directories(roots)
        except (ValueError, TypeError) as exc:
            raise RootsConfigurationError(f"Configuración de seguridad inválida: {exc}") from exc

        self._validator = validator
        logger.info(
            "Security validator configured: policy=%s, %d allowed root(s)",
            validator.policy.value, len(roots),
        )
        return validator

    def update_allowed_directories(self, directories: Iterable[str]) -> list[str]:
        """Replace the whitelist on the provider and the attached validator together.

        Raises:
            RootsConfigurationError: If an entry is not a non-blank string.
        """
        try:
            self._provider.update_allowed_directories(list(directories))
        except ValueError as exc:
            raise RootsConfigurationError(f"Lista de directorios permitidos inválida: {exc}") from exc
        allowed = self._provider.get_allowed_directories()
        if self._validator is not None:
            self._validator.update_allowed_roots(allowed)
        return allowed

    async def clear_roots_configuration(self) -> None:
        """Drop the roots-provided directory.

        Raises:
            RootsConfigurationError: Chained to whatever the provider raised.
        """
        try:
            await self._provider.clear_roots_configuration()
        except Exception as exc:
            raise RootsConfigurationError(f"No se pudo limpiar la configuración de roots: {exc}") from exc


def build_roots_manager(cfg: ServerConfig, command_line_directory: str | None = None) -> RootsManager:
    """Wire provider, validator and manager from :class:`ServerConfig`."""
    validator_options = {
        "rate_limit": cfg.validation_rate_limit,
        "audit_log_size": cfg.audit_log_size,
        "max_path_length": cfg.max_path_length,
    }
    provider = ConfigurationProvider.from_config(cfg, command_line_directory)
    validator = create_security_validator(
        cfg.security_policy, provider.get_allowed_directories(), **validator_options,
    )
    return RootsManager(
        provider,
        validator,
        min_interval=cfg.roots_min_interval,
        validator_options=validator_options,
    )
