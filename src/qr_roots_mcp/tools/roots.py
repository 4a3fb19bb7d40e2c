"""Roots tools: QR output directory management on a FastMCP sub-server."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from typing import Annotated
from urllib.parse import urlparse
from urllib.request import url2pathname

from fastmcp import Context, FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from ..config import get_config
from ..errors import make_tool_error
from ..models import ConfigurationStatus, RootsNotification, RootsValidationResult
from ..roots_manager import RootsManager, build_roots_manager
from ..types import AuditLimit, AuditResult, DirectoryParam, coerce_json_param

logger = logging.getLogger(__name__)
roots_server = FastMCP("roots")

# Bound once by server.main(); built lazily from get_config() otherwise.
_manager: RootsManager | None = None


def get_roots_manager() -> RootsManager:
    """Return the bound RootsManager, building one from config on first access."""
    global _manager
    if _manager is None:
        _manager = build_roots_manager(get_config())
    return _manager


def bind_roots_manager(manager: RootsManager | None) -> RootsManager | None:
    """Install *manager* for the tools (``None`` resets to lazy construction)."""
    global _manager
    _manager = manager
    return manager


def roots_from_uris(uris: Iterable[str]) -> list[str]:
    """Convert MCP root URIs to local paths, keeping order; non-file URIs are skipped."""
    paths: list[str] = []
    for uri in uris:
        parsed = urlparse(uri)
        if parsed.scheme != "file" or parsed.netloc not in ("", "localhost"):
            logger.debug("Skipping non-local root URI %s", uri)
            continue
        path = url2pathname(parsed.path)
        if path:
            paths.append(path)
    return paths


def _status_summary(status: ConfigurationStatus) -> str:
    verdict = "válido" if status.is_valid else "NO válido"
    return (
        f"Directorio QR: {status.current_directory} (fuente: {status.source.value}, {verdict}); "
        f"{len(status.allowed_directories)} directorio(s) permitido(s)."
    )


def _roots_response(manager: RootsManager, result: RootsValidationResult) -> dict:
    provider = manager.configuration_provider
    return {
        **result.model_dump(mode="json"),
        "current_directory": provider.get_current_qr_directory(),
        "source": provider.get_configuration_source().value,
        "summary": result.message,
    }


@roots_server.tool(annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=False))
async def list_allowed_directories() -> dict:
    """Show the active QR directory, where it came from, and the directory whitelist.

    Returns:
        Dict with source, current_directory, allowed_directories, is_valid,
        last_updated, security (validator settings) and summary.
    """
    try:
        manager = get_roots_manager()
        status = await manager.get_current_roots()
        return {
            **status.model_dump(mode="json"),
            "security": manager.get_security_validator_info(),
            "summary": _status_summary(status),
        }
    except Exception as exc:
        return make_tool_error(exc)


@roots_server.tool(annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=False))
async def get_qr_directory_info() -> dict:
    """Probe the active QR directory: existence, writability, QR image count and size.

    Returns:
        Dict with path, exists, writable, qr_file_count, total_size,
        last_modified, source and summary.
    """
    try:
        provider = get_roots_manager().configuration_provider
        info = await provider.get_directory_info()
        if info.exists:
            summary = (
                f"{info.path}: {info.qr_file_count} imagen(es) QR, {info.total_size} bytes, "
                f"{'escribible' if info.writable else 'solo lectura'}."
            )
        else:
            summary = f"{info.path} no existe o no es accesible."
        return {
            **info.model_dump(mode="json"),
            "source": provider.get_configuration_source().value,
            "summary": summary,
        }
    except Exception as exc:
        return make_tool_error(exc)


@roots_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def set_qr_directory(directory: DirectoryParam) -> dict:
    """Switch the QR output directory, subject to the active security policy.

    The directory goes through the same checks as a roots notification and is
    created if missing.

    Args:
        directory: Target directory (absolute, relative or ~-prefixed).

    Returns:
        Dict with is_valid, valid_directory, errors, message, risk_level,
        category, diagnostics, current_directory, source and summary.
    """
    try:
        manager = get_roots_manager()
        result = await manager.handle_roots_changed(
            RootsNotification(roots=[directory], timestamp=time.time()),
        )
        return _roots_response(manager, result)
    except Exception as exc:
        return make_tool_error(exc)


@roots_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def notify_roots_changed(
    roots: Annotated[list[str], Field(description="Candidate directories, most preferred first")],
) -> dict:
    """Apply a roots list: the first candidate that passes validation becomes active.

    Args:
        roots: Ordered candidate directories.

    Returns:
        Same shape as set_qr_directory, with one diagnostic per evaluated candidate.
    """
    roots = coerce_json_param(roots, list)

    try:
        manager = get_roots_manager()
        result = await manager.handle_roots_changed(
            RootsNotification(roots=roots, timestamp=time.time()),
        )
        return _roots_response(manager, result)
    except Exception as exc:
        return make_tool_error(exc)


@roots_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def sync_client_roots(ctx: Context) -> dict:
    """Ask the connected client for its roots and apply the first valid ``file://`` one.

    Returns:
        Same shape as set_qr_directory, plus the client's raw root URIs.
    """
    try:
        client_roots = await ctx.list_roots()
        uris = [str(root.uri) for root in client_roots]
        candidates = roots_from_uris(uris)
        if not candidates:
            raise ValueError("El cliente no expone ningún root file:// utilizable")

        manager = get_roots_manager()
        result = await manager.handle_roots_changed(
            RootsNotification(roots=candidates, timestamp=time.time()),
        )
        return {**_roots_response(manager, result), "client_roots": uris}
    except Exception as exc:
        return make_tool_error(exc)


@roots_server.tool(annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=False))
async def validate_qr_directory(directory: DirectoryParam) -> dict:
    """Dry run: report whether a directory would be accepted, without switching to it.

    Args:
        directory: Candidate directory.

    Returns:
        Dict with is_valid, valid_directory, errors, message, risk_level,
        category and summary.
    """
    try:
        result = await asyncio.to_thread(get_roots_manager().validate_directory, directory)
        return {**result.model_dump(mode="json"), "summary": result.message}
    except Exception as exc:
        return make_tool_error(exc)


@roots_server.tool(
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def clear_qr_directory() -> dict:
    """Forget the roots-provided directory and fall back to env, CLI or default.

    Returns:
        Same shape as list_allowed_directories.
    """
    try:
        manager = get_roots_manager()
        await manager.clear_roots_configuration()
        status = await manager.get_current_roots()
        return {**status.model_dump(mode="json"), "summary": _status_summary(status)}
    except Exception as exc:
        return make_tool_error(exc)


@roots_server.tool(annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=False))
async def security_audit_log(limit: AuditLimit = 50) -> dict:
    """Return the most recent directory validation attempts, oldest first.

    Args:
        limit: How many entries to return (1-1000).

    Returns:
        Dict with entries, count, policy and summary.
    """
    try:
        validator = get_roots_manager().security_validator
        if validator is None:
            return {"entries": [], "count": 0, "policy": None, "summary": "Sin validador de seguridad activo."}
        entries = validator.get_recent_audit_logs(limit)
        blocked = sum(1 for e in entries if e.result is not AuditResult.ALLOWED)
        return {
            "entries": [e.model_dump(mode="json") for e in entries],
            "count": len(entries),
            "policy": validator.policy.value,
            "summary": f"{len(entries)} intento(s) registrados, {blocked} rechazado(s).",
        }
    except Exception as exc:
        return make_tool_error(exc)
