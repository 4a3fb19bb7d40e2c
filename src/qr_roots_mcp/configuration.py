"""Configuration provider: the single authoritative QR output directory.

Each precedence layer (roots, environment, command line, default) keeps its
own value; the active directory is the highest layer that holds one. The
resolved pair (directory, source) lives in one frozen
:class:`ConfigurationState` that is swapped by a single assignment, so
readers and observers never see a directory from one layer tagged with the
source of another.

Observers are notified from an event-loop task after every update attempt,
including rejected ones (``success=False``), in registration order. A
failing observer is logged and skipped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Union

from .config import DEFAULT_DIRECTORY_NAME
from .models import ConfigurationChangeEvent, ConfigurationState, ConfigurationStatus, DirectoryInfo
from .path_policy import contains_control_characters, resolve_path
from .types import PRECEDENCE, ConfigurationSource

if TYPE_CHECKING:
    from .config import ServerConfig

logger = logging.getLogger(__name__)

ConfigurationObserver = Callable[[ConfigurationChangeEvent], Union[None, Awaitable[None]]]


def _ensure_writable_directory(directory: str) -> None:
    """Create *directory* if missing and confirm it is a writable directory."""
    path = Path(directory)
    path.mkdir(parents=True, exist_ok=True)
    if not path.is_dir():
        raise NotADirectoryError(f"No es un directorio: {directory}")
    if not os.access(path, os.W_OK):
        raise PermissionError(f"Sin permisos de escritura: {directory}")


def _probe_directory(directory: str) -> DirectoryInfo:
    """Stat *directory* and summarise its QR images. Raises OSError on failure."""
    path = Path(directory)
    stats = path.stat()
    if not path.is_dir():
        return DirectoryInfo(path=directory)

    qr_file_count = 0
    total_size = 0
    with os.scandir(path) as entries:
        for entry in entries:
            try:
                if not entry.is_file():
                    continue
                total_size += entry.stat().st_size
            except OSError:
                continue
            name = entry.name.lower()
            if name.endswith(".png") and "qr" in name:
                qr_file_count += 1

    return DirectoryInfo(
        path=directory,
        exists=True,
        writable=os.access(path, os.W_OK),
        qr_file_count=qr_file_count,
        total_size=total_size,
        last_modified=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
    )


class ConfigurationProvider:
    """Owns the active QR directory, its provenance and the observer list."""

    def __init__(
        self,
        environment_directory: str | None = None,
        command_line_directory: str | None = None,
        *,
        default_directory: str | None = None,
        allowed_directories: Iterable[str] = (),
        probe_timeout: float = 5.0,
    ) -> None:
        """Seed every layer once.

        Args:
            environment_directory: Value of ``RADIX_QR_DIR``, if any.
            command_line_directory: Value of ``--qr-directory``, if any.
            default_directory: Fallback; ``<cwd>/qrimages`` when omitted.
            allowed_directories: Initial whitelist for an attached validator.
            probe_timeout: Upper bound in seconds for filesystem probes.
        """
        self._probe_timeout = probe_timeout
        self._layers: dict[ConfigurationSource, str | None] = {
            ConfigurationSource.ROOTS: None,
            ConfigurationSource.ENVIRONMENT: self._ingest_seed(environment_directory, "RADIX_QR_DIR"),
            ConfigurationSource.COMMAND_LINE: self._ingest_seed(command_line_directory, "--qr-directory"),
            ConfigurationSource.DEFAULT: resolve_path(default_directory or DEFAULT_DIRECTORY_NAME),
        }
        self._allowed_directories = self._ingest_allowed(allowed_directories)
        self._observers: list[ConfigurationObserver] = []
        self._pending: set[asyncio.Task] = set()
        self._state = self._compute_state()
        logger.info(
            "QR directory initialised from %s: %s",
            self._state.source.value, self._state.current_directory,
        )

    @classmethod
    def from_config(
        cls, cfg: ServerConfig, command_line_directory: str | None = None,
    ) -> ConfigurationProvider:
        """Build a provider from :class:`ServerConfig` plus the CLI seed."""
        return cls(
            cfg.qr_directory or None,
            command_line_directory,
            default_directory=os.path.join(os.getcwd(), cfg.default_directory_name),
            allowed_directories=cfg.allowed_roots,
            probe_timeout=cfg.fs_probe_timeout,
        )

    # ── reads ────────────────────────────────────────────────────────────────

    def get_current_qr_directory(self) -> str:
        """Active directory. Writers must call this before every write."""
        return self._state.current_directory

    def get_configuration_source(self) -> ConfigurationSource:
        return self._state.source

    @property
    def probe_timeout(self) -> float:
        return self._probe_timeout

    def get_state(self) -> ConfigurationState:
        return self._state

    def get_status(self, is_valid: bool, state: ConfigurationState | None = None) -> ConfigurationStatus:
        """Introspection view of *state* (the live snapshot by default)."""
        state = state or self._state
        return ConfigurationStatus(
            source=state.source,
            current_directory=state.current_directory,
            allowed_directories=list(state.allowed_directories),
            is_valid=is_valid,
            last_updated=state.last_updated,
        )

    def get_allowed_directories(self) -> list[str]:
        return list(self._state.allowed_directories)

    # ── updates ──────────────────────────────────────────────────────────────

    async def update_from_roots(self, path: str) -> bool:
        """Apply a roots-provided directory.

        On failure the previous state is kept and observers still receive a
        ``success=False`` event carrying the reason.

        Returns:
            True when the directory became active.
        """
        previous = self._state
        try:
            directory = self._baseline_check(path)
            await asyncio.wait_for(
                asyncio.to_thread(_ensure_writable_directory, directory),
                timeout=self._probe_timeout,
            )
        except asyncio.TimeoutError:
            reason = f"Tiempo de espera agotado verificando el directorio ({self._probe_timeout:g}s)"
        except (ValueError, TypeError, OSError) as exc:
            reason = str(exc) or type(exc).__name__
        else:
            self._layers[ConfigurationSource.ROOTS] = directory
            self._state = self._compute_state()
            logger.info("QR directory updated from roots: %s", directory)
            self._notify(ConfigurationChangeEvent(
                previous=previous,
                current=self._state,
                success=True,
                message=f"Configuración actualizada desde MCP roots: {directory}",
            ))
            return True

        logger.warning("Roots directory %r rejected: %s", path, reason)
        self._notify(ConfigurationChangeEvent(
            previous=previous,
            current=previous,
            success=False,
            message=f"Error al actualizar configuración: {reason}",
            reason=reason,
        ))
        return False

    def update_from_command_line(self, path: str) -> bool:
        """Trusted operator path: normalize and apply, no filesystem checks."""
        if not isinstance(path, str) or not path.strip():
            return False
        if contains_control_characters(path):
            logger.warning("Ignoring command-line directory with control characters: %r", path)
            return False
        self._layers[ConfigurationSource.COMMAND_LINE] = resolve_path(path)
        self._state = self._compute_state()
        logger.info("Command-line QR directory set: %s", self._layers[ConfigurationSource.COMMAND_LINE])
        return True

    async def clear_roots_configuration(self) -> None:
        """Drop the roots layer and fall back to the next available source."""
        previous = self._state
        self._layers[ConfigurationSource.ROOTS] = None
        self._state = self._compute_state()
        logger.info(
            "Roots configuration cleared; falling back to %s: %s",
            self._state.source.value, self._state.current_directory,
        )
        self._notify(ConfigurationChangeEvent(
            previous=previous,
            current=self._state,
            success=True,
            message=f"Configuración de roots eliminada, usando {self._state.source.value}",
        ))

    def update_allowed_directories(self, directories: Iterable[str]) -> None:
        """Replace the whitelist; every entry is normalized to an absolute path.

        Raises:
            ValueError: If an entry is not a non-blank string.
        """
        self._allowed_directories = self._ingest_allowed(directories)
        self._state = self._compute_state()

    # ── observers ────────────────────────────────────────────────────────────

    def on_configuration_change(self, callback: ConfigurationObserver) -> ConfigurationObserver:
        """Register *callback*; sync functions and coroutine functions both work."""
        self._observers.append(callback)
        return callback

    def remove_configuration_observer(self, callback: ConfigurationObserver) -> bool:
        try:
            self._observers.remove(callback)
        except ValueError:
            return False
        return True

    async def wait_for_observers(self, timeout: float | None = None) -> int:
        """Wait for in-flight deliveries. Returns how many are still pending."""
        pending = set(self._pending)
        if not pending:
            return 0
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning("%d observer deliveries still pending", len(not_done))
        return len(not_done)

    def _notify(self, event: ConfigurationChangeEvent) -> None:
        observers = list(self._observers)
        if not observers:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(event, observers))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _deliver(event: ConfigurationChangeEvent, observers: list[ConfigurationObserver]) -> None:
        for observer in observers:
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Configuration observer %r failed", observer)

    # ── filesystem ───────────────────────────────────────────────────────────

    async def get_directory_info(self) -> DirectoryInfo:
        """Best-effort probe of the active directory; never raises for I/O."""
        directory = self._state.current_directory
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(_probe_directory, directory),
                timeout=self._probe_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Directory probe timed out for %s", directory)
        except (OSError, ValueError) as exc:
            logger.debug("Directory probe failed for %s: %s", directory, exc)
        return DirectoryInfo(path=directory)

    # ── internals ────────────────────────────────────────────────────────────

    def _compute_state(self) -> ConfigurationState:
        source = next(s for s in PRECEDENCE if self._layers[s] is not None)
        return ConfigurationState(
            current_directory=self._layers[source],
            source=source,
            allowed_directories=self._allowed_directories,
        )

    @staticmethod
    def _baseline_check(path: str) -> str:
        if not isinstance(path, str) or not path.strip():
            raise ValueError("El directorio debe ser una cadena no vacía")
        if contains_control_characters(path):
            raise ValueError("El directorio contiene caracteres de control")
        return resolve_path(path)

    @staticmethod
    def _ingest_seed(value: str | None, label: str) -> str | None:
        if value is None or not value.strip():
            return None
        if contains_control_characters(value):
            logger.warning("Ignoring %s seed with control characters: %r", label, value)
            return None
        return resolve_path(value)

    @staticmethod
    def _ingest_allowed(directories: Iterable[str]) -> tuple[str, ...]:
        normalized: list[str] = []
        for directory in directories:
            if not isinstance(directory, str) or not directory.strip():
                raise ValueError(f"Directorio permitido inválido: {directory!r}")
            resolved = resolve_path(directory)
            if resolved not in normalized:
                normalized.append(resolved)
        return tuple(normalized)
