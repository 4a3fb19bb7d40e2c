"""Security validation for directories proposed through MCP roots.

The validator is the only component that turns untrusted input into a
filesystem decision. ``validate_directory_security`` never raises: every
outcome, including internal failures, becomes a ``ValidationResult`` and an
entry in a bounded audit ring buffer.

Pipeline (each phase short-circuits the rest):

1. rate gate (process-wide for this instance)
2. raw-string scan: null bytes, dangerous characters, traversal sequences
3. length gate
4. normalization (``~`` expansion, absolute against the working directory)
5. critical system directory denylist
6. whitelist, depending on the :class:`SecurityPolicy`
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable, Iterator

from .errors import ErrorCategory
from .models import AuditLogEntry, ValidationResult
from .path_policy import (
    canonical_path,
    critical_directory_for,
    is_within,
    resolve_path,
    scan_raw_path,
)
from .rate_limit import RateLimiter
from .types import AuditResult, RiskLevel, SecurityPolicy

logger = logging.getLogger(__name__)

RATE_LIMIT_ERROR = "Rate limit violation"
PATH_TOO_LONG_ERROR = "Path too long"
CRITICAL_DIRECTORY_ERROR = "Access to critical system directory not allowed"
WHITELIST_ERROR = "Directory not in whitelist"
STRICT_WITHOUT_ROOTS_ERROR = "Strict policy requires configured allowed roots"
INVALID_PATH_ERROR = "Invalid directory parameter"

_AUDIT_PATH_LIMIT = 1024

_POLICY_RATE_DEFAULTS: dict[SecurityPolicy, float] = {
    SecurityPolicy.STRICT: 1.0,
    SecurityPolicy.STANDARD: 2.0,
    SecurityPolicy.PERMISSIVE: 5.0,
}


def _elapsed_ms(start: float) -> float:
    return max((time.perf_counter() - start) * 1000.0, 0.0)


def _audit_path(raw: object) -> str:
    text = raw if isinstance(raw, str) else repr(raw)
    if len(text) > _AUDIT_PATH_LIMIT:
        return f"{text[:_AUDIT_PATH_LIMIT]}…(+{len(text) - _AUDIT_PATH_LIMIT} chars)"
    return text


def parse_policy(policy: SecurityPolicy | str) -> SecurityPolicy:
    """Coerce operator input into a :class:`SecurityPolicy`.

    Raises:
        ValueError: If the value names no known policy.
    """
    try:
        return SecurityPolicy(policy.lower() if isinstance(policy, str) else policy)
    except ValueError as exc:
        raise ValueError(f"Política de seguridad no válida: {policy}") from exc


class SecurityValidator:
    """Stateful validator: a rate-limit clock, a whitelist and an audit log."""

    def __init__(
        self,
        policy: SecurityPolicy,
        allowed_roots: Iterable[str] = (),
        *,
        rate_limit: float = 1.0,
        enable_audit_log: bool = True,
        audit_log_size: int = 1000,
        max_path_length: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = parse_policy(policy)
        self._allowed_roots: tuple[str, ...] = tuple(resolve_path(r) for r in allowed_roots)
        self._rate_limit = rate_limit
        self._rate_limiter = RateLimiter.per_second(rate_limit, clock=clock)
        self._enable_audit_log = enable_audit_log
        self._max_path_length = max_path_length
        self._audit_log: deque[AuditLogEntry] = deque(maxlen=audit_log_size)
        self._audit_lock = threading.Lock()

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    @property
    def allowed_roots(self) -> list[str]:
        return list(self._allowed_roots)

    # ── public API ───────────────────────────────────────────────────────────

    def validate_directory_security(self, path: str) -> ValidationResult:
        """Validate one untrusted directory. Never raises."""
        start = time.perf_counter()
        try:
            if not self._rate_limiter.try_acquire():
                return self._rate_limited(path, start)
            return self._run_pipeline(path, start)
        except Exception as exc:
            return self._internal_error(path, start, exc)

    def iter_validations(self, candidates: Iterable[str]) -> Iterator[ValidationResult]:
        """Lazily validate *candidates* under a single rate-gate admission.

        Each candidate's pipeline only runs when the consumer asks for the
        next result, so stopping at the first success skips the rest.
        """
        start = time.perf_counter()
        pending = list(candidates)
        if not self._rate_limiter.try_acquire():
            yield self._rate_limited(pending[0] if pending else "", start)
            return
        for candidate in pending:
            candidate_start = time.perf_counter()
            try:
                yield self._run_pipeline(candidate, candidate_start)
            except Exception as exc:
                yield self._internal_error(candidate, candidate_start, exc)

    def check_directory(self, path: str) -> ValidationResult:
        """Run the pipeline without consuming the rate gate or auditing.

        Used for introspection of the already-applied directory.
        """
        start = time.perf_counter()
        try:
            return self._run_pipeline(path, start, audit=False)
        except Exception as exc:
            return self._internal_error(path, start, exc, audit=False)

    def is_directory_allowed(self, path: str) -> bool:
        """Whitelist membership, compared on symlink-resolved paths."""
        candidate = canonical_path(path)
        return any(is_within(candidate, canonical_path(root)) for root in self._allowed_roots)

    def normalize_path(self, path: str) -> str:
        return resolve_path(path)

    def update_allowed_roots(self, roots: Iterable[str]) -> None:
        self._allowed_roots = tuple(resolve_path(r) for r in roots)

    def get_recent_audit_logs(self, limit: int = 100) -> list[AuditLogEntry]:
        """Most recent audit entries, oldest first."""
        with self._audit_lock:
            entries = list(self._audit_log)
        return entries[-limit:] if limit > 0 else []

    def clear_audit_log(self) -> int:
        with self._audit_lock:
            removed = len(self._audit_log)
            self._audit_log.clear()
        return removed

    def describe(self) -> dict:
        """Serialisable summary for introspection tools."""
        with self._audit_lock:
            entries = len(self._audit_log)
        return {
            "policy": self._policy.value,
            "allowed_roots": list(self._allowed_roots),
            "rate_limit": self._rate_limit,
            "audit_log_enabled": self._enable_audit_log,
            "audit_log_size": self._audit_log.maxlen,
            "audit_entries": entries,
        }

    # ── pipeline ─────────────────────────────────────────────────────────────

    def _run_pipeline(self, raw: str, start: float, *, audit: bool = True) -> ValidationResult:
        if not isinstance(raw, str) or not raw.strip():
            return self._reject(
                raw, start,
                errors=[INVALID_PATH_ERROR],
                message="Directorio es requerido y debe ser una cadena no vacía.",
                risk=RiskLevel.LOW,
                category=ErrorCategory.STRUCTURAL_ERROR,
                audit=audit,
            )

        findings = scan_raw_path(raw)
        if findings:
            errors = [error for error, _ in findings]
            risk = max((r for _, r in findings), key=lambda r: r.rank)
            return self._reject(
                raw, start,
                errors=errors,
                message=f"Validación de seguridad falló: {', '.join(errors)}",
                risk=risk,
                category=ErrorCategory.SECURITY_REJECTED,
                audit=audit,
            )

        if len(raw) > self._max_path_length:
            return self._reject(
                raw, start,
                errors=[PATH_TOO_LONG_ERROR],
                message=f"La ruta excede el máximo de {self._max_path_length} caracteres.",
                risk=RiskLevel.MEDIUM,
                category=ErrorCategory.SECURITY_REJECTED,
                audit=audit,
            )

        normalized = resolve_path(raw)
        canonical = canonical_path(normalized)

        critical = critical_directory_for(normalized) or critical_directory_for(canonical)
        if critical:
            return self._reject(
                raw, start,
                errors=[CRITICAL_DIRECTORY_ERROR],
                message=f"Acceso a directorio crítico del sistema no permitido: {critical}",
                risk=RiskLevel.HIGH,
                category=ErrorCategory.SECURITY_REJECTED,
                normalized=normalized,
                audit=audit,
            )

        whitelist_error = self._check_whitelist(normalized)
        if whitelist_error:
            return self._reject(
                raw, start,
                errors=[whitelist_error],
                message="El directorio no está permitido según la configuración de seguridad.",
                risk=RiskLevel.MEDIUM,
                category=ErrorCategory.SECURITY_REJECTED,
                normalized=normalized,
                audit=audit,
            )

        if audit:
            self._log_event(raw, AuditResult.ALLOWED, RiskLevel.LOW, "Validación exitosa", normalized)
        return ValidationResult(
            is_valid=True,
            valid_directory=normalized,
            path=_audit_path(raw),
            message="Directorio validado exitosamente.",
            risk_level=RiskLevel.LOW,
            processing_time=_elapsed_ms(start),
        )

    def _check_whitelist(self, normalized: str) -> str | None:
        if self._policy is SecurityPolicy.STRICT:
            if not self._allowed_roots:
                return STRICT_WITHOUT_ROOTS_ERROR
            return None if self.is_directory_allowed(normalized) else WHITELIST_ERROR
        if self._policy is SecurityPolicy.STANDARD:
            if not self._allowed_roots or self.is_directory_allowed(normalized):
                return None
            return WHITELIST_ERROR
        if self._policy is SecurityPolicy.PERMISSIVE:
            return None
        raise ValueError(f"Unhandled security policy: {self._policy}")

    # ── results & audit ──────────────────────────────────────────────────────

    def _rate_limited(self, raw: object, start: float) -> ValidationResult:
        return self._reject(
            raw, start,
            errors=[RATE_LIMIT_ERROR],
            message=(
                "Rate limit excedido. Máximo "
                f"{self._rate_limit:g} cambio(s) por segundo."
            ),
            risk=RiskLevel.MEDIUM,
            category=ErrorCategory.RATE_LIMITED,
        )

    def _internal_error(
        self, raw: object, start: float, exc: Exception, *, audit: bool = True,
    ) -> ValidationResult:
        logger.warning("Validation of %r failed internally", _audit_path(raw), exc_info=True)
        return self._reject(
            raw, start,
            errors=[f"{type(exc).__name__}: {exc}"],
            message=f"Error durante la validación: {exc}",
            risk=RiskLevel.HIGH,
            category=ErrorCategory.INTERNAL_ERROR,
            result=AuditResult.ERROR,
            audit=audit,
        )

    def _reject(
        self,
        raw: object,
        start: float,
        *,
        errors: list[str],
        message: str,
        risk: RiskLevel,
        category: ErrorCategory,
        normalized: str | None = None,
        result: AuditResult = AuditResult.BLOCKED,
        audit: bool = True,
    ) -> ValidationResult:
        if audit:
            self._log_event(raw, result, risk, f"{message} ({', '.join(errors)})", normalized)
        return ValidationResult(
            is_valid=False,
            path=_audit_path(raw),
            errors=errors,
            message=message,
            risk_level=risk,
            category=category,
            processing_time=_elapsed_ms(start),
        )

    def _log_event(
        self,
        raw: object,
        result: AuditResult,
        risk: RiskLevel,
        reason: str,
        normalized: str | None,
    ) -> None:
        if not self._enable_audit_log:
            return
        entry = AuditLogEntry(
            id=f"sec_{uuid.uuid4().hex[:12]}",
            attempted_path=_audit_path(raw),
            result=result,
            risk_level=risk,
            reason=reason,
            policy=self._policy,
            normalized_path=normalized,
        )
        with self._audit_lock:
            self._audit_log.append(entry)

        if risk in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            logger.warning(
                "[SECURITY] %s: %s (path=%r)",
                risk.value.upper(), reason, entry.attempted_path,
            )
        else:
            logger.debug("[SECURITY] %s: %s (path=%r)", result.value, reason, entry.attempted_path)


def minimal_validation(path: str) -> ValidationResult:
    """Baseline checks used when no SecurityValidator is attached.

    Runs the raw-string scan and normalization only; no rate gate, no
    denylist, no whitelist, no audit.
    """
    start = time.perf_counter()
    if not isinstance(path, str) or not path.strip():
        return ValidationResult(
            is_valid=False,
            path=_audit_path(path),
            errors=[INVALID_PATH_ERROR],
            message="Directorio es requerido y debe ser una cadena no vacía.",
            category=ErrorCategory.STRUCTURAL_ERROR,
            processing_time=_elapsed_ms(start),
        )
    findings = scan_raw_path(path)
    if findings:
        errors = [error for error, _ in findings]
        return ValidationResult(
            is_valid=False,
            path=_audit_path(path),
            errors=errors,
            message=f"Validación básica falló: {', '.join(errors)}",
            risk_level=max((r for _, r in findings), key=lambda r: r.rank),
            category=ErrorCategory.SECURITY_REJECTED,
            processing_time=_elapsed_ms(start),
        )
    return ValidationResult(
        is_valid=True,
        valid_directory=resolve_path(path),
        path=_audit_path(path),
        message="Directorio validado (validación básica).",
        processing_time=_elapsed_ms(start),
    )


def create_security_validator(
    policy: SecurityPolicy | str,
    allowed_roots: Iterable[str] | None = None,
    *,
    rate_limit: float | None = None,
    enable_audit_log: bool = True,
    audit_log_size: int = 1000,
    max_path_length: int = 4096,
    clock: Callable[[], float] = time.monotonic,
) -> SecurityValidator:
    """Build a validator with per-policy defaults, checking operator input.

    Defaults: STRICT 1 change/s, STANDARD 2/s, PERMISSIVE 5/s.

    Raises:
        ValueError: Unknown policy, rate limit outside 0.1–100 changes per
            second, or a blank whitelist entry.
    """
    resolved_policy = parse_policy(policy)

    if rate_limit is None:
        rate_limit = _POLICY_RATE_DEFAULTS[resolved_policy]
    if not 0.1 <= rate_limit <= 100:
        raise ValueError("Rate limit debe estar entre 0.1 y 100 cambios por segundo")

    roots = list(allowed_roots or [])
    for root in roots:
        if not isinstance(root, str) or not root.strip():
            raise ValueError(f"Root directory inválido: {root!r}")

    if resolved_policy is SecurityPolicy.STRICT and not roots:
        logger.warning("STRICT policy configured without allowed roots; every directory will be rejected")

    return SecurityValidator(
        resolved_policy,
        roots,
        rate_limit=rate_limit,
        enable_audit_log=enable_audit_log,
        audit_log_size=audit_log_size,
        max_path_length=max_path_length,
        clock=clock,
    )
