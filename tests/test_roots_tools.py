"""Tests for the roots tools sub-server."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

import qr_roots_mcp.tools.roots as roots_mod
from qr_roots_mcp.path_policy import IS_WINDOWS
from qr_roots_mcp.roots_manager import RootsManager
from qr_roots_mcp.security_validator import SecurityValidator
from qr_roots_mcp.types import SecurityPolicy
from tests.conftest import unwrap_tool

list_allowed_directories = unwrap_tool(roots_mod.list_allowed_directories)
get_qr_directory_info = unwrap_tool(roots_mod.get_qr_directory_info)
set_qr_directory = unwrap_tool(roots_mod.set_qr_directory)
notify_roots_changed = unwrap_tool(roots_mod.notify_roots_changed)
sync_client_roots = unwrap_tool(roots_mod.sync_client_roots)
validate_qr_directory = unwrap_tool(roots_mod.validate_qr_directory)
clear_qr_directory = unwrap_tool(roots_mod.clear_qr_directory)
security_audit_log = unwrap_tool(roots_mod.security_audit_log)


@pytest.fixture()
def manager(provider, fake_clock, qr_root):
    """Bind a STANDARD manager whitelisting ``qr_root`` for the duration of a test."""
    validator = SecurityValidator(SecurityPolicy.STANDARD, [str(qr_root)], rate_limit=5.0, clock=fake_clock)
    provider.update_allowed_directories([str(qr_root)])
    bound = RootsManager(provider, validator, min_interval=0, clock=fake_clock)
    roots_mod.bind_roots_manager(bound)
    yield bound
    roots_mod.bind_roots_manager(None)


def _ctx_with_roots(*uris: str):
    roots = [SimpleNamespace(uri=uri) for uri in uris]
    return SimpleNamespace(list_roots=AsyncMock(return_value=roots))


class TestDirectoryTools:
    @pytest.mark.asyncio
    async def test_set_qr_directory_applies(self, manager, fake_clock, qr_root):
        out = await set_qr_directory(str(qr_root / "wallets"))
        assert out["is_valid"] is True
        assert out["source"] == "roots"
        assert out["current_directory"] == str(qr_root / "wallets")
        assert out["summary"].startswith("Directorio QR actualizado")
        assert (qr_root / "wallets").is_dir()

    @pytest.mark.asyncio
    async def test_set_qr_directory_rejects_outside_whitelist(self, manager, tmp_path):
        out = await set_qr_directory(str(tmp_path / "elsewhere"))
        assert out["is_valid"] is False
        assert out["category"] == "SECURITY_REJECTED"
        assert out["source"] == "default"
        assert out["diagnostics"][0]["errors"] == ["Directory not in whitelist"]

    @pytest.mark.asyncio
    async def test_notify_roots_changed_accepts_json_string(self, manager, fake_clock, tmp_path, qr_root):
        out = await notify_roots_changed(f'["../etc", "{qr_root}"]')
        assert out["is_valid"] is True
        assert len(out["diagnostics"]) == 2

    @pytest.mark.asyncio
    async def test_notify_roots_changed_empty_is_structural(self, manager):
        out = await notify_roots_changed([])
        assert out["is_valid"] is False
        assert out["category"] == "STRUCTURAL_ERROR"

    @pytest.mark.asyncio
    async def test_validate_qr_directory_is_dry_run(self, manager, qr_root):
        out = await validate_qr_directory(str(qr_root))
        assert out["is_valid"] is True
        assert manager.configuration_provider.get_configuration_source().value == "default"

    @pytest.mark.asyncio
    async def test_validate_qr_directory_reports_traversal(self, manager):
        out = await validate_qr_directory("..%2f..%2fetc")
        assert out["is_valid"] is False
        assert out["risk_level"] == "critical"
        assert "Path traversal attack detected" in out["errors"]

    @pytest.mark.asyncio
    async def test_clear_qr_directory(self, manager, fake_clock, qr_root):
        await set_qr_directory(str(qr_root))
        out = await clear_qr_directory()
        assert out["source"] == "default"
        assert "fuente: default" in out["summary"]


class TestIntrospectionTools:
    @pytest.mark.asyncio
    async def test_list_allowed_directories(self, manager, qr_root):
        out = await list_allowed_directories()
        assert out["allowed_directories"] == [str(qr_root)]
        assert out["source"] == "default"
        assert out["is_valid"] is False
        assert out["security"]["policy"] == "standard"
        assert "1 directorio(s) permitido(s)" in out["summary"]

    @pytest.mark.asyncio
    async def test_get_qr_directory_info(self, manager, fake_clock, qr_root):
        (qr_root / "qr_001.png").write_bytes(b"\x89PNG")
        await set_qr_directory(str(qr_root))
        out = await get_qr_directory_info()
        assert out["exists"] is True
        assert out["qr_file_count"] == 1
        assert out["source"] == "roots"
        assert "1 imagen(es) QR" in out["summary"]

    @pytest.mark.asyncio
    async def test_get_qr_directory_info_missing(self, manager):
        out = await get_qr_directory_info()
        assert out["exists"] is False
        assert "no existe" in out["summary"]

    @pytest.mark.asyncio
    async def test_security_audit_log(self, manager, fake_clock, tmp_path, qr_root):
        await validate_qr_directory(str(qr_root))
        fake_clock.advance(1)
        await validate_qr_directory(str(tmp_path / "outside"))
        out = await security_audit_log(limit=10)
        assert out["count"] == 2
        assert out["policy"] == "standard"
        assert [e["result"] for e in out["entries"]] == ["allowed", "blocked"]
        assert "1 rechazado(s)" in out["summary"]

    @pytest.mark.asyncio
    async def test_security_audit_log_without_validator(self, provider):
        roots_mod.bind_roots_manager(RootsManager(provider))
        try:
            out = await security_audit_log()
        finally:
            roots_mod.bind_roots_manager(None)
        assert out["entries"] == []
        assert out["policy"] is None


class TestSyncClientRoots:
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX file URIs")
    @pytest.mark.asyncio
    async def test_applies_first_file_root(self, manager, qr_root):
        ctx = _ctx_with_roots("https://example.com/x", f"file://{qr_root}")
        out = await sync_client_roots(ctx)
        assert out["is_valid"] is True
        assert out["current_directory"] == str(qr_root)
        assert out["client_roots"] == ["https://example.com/x", f"file://{qr_root}"]

    @pytest.mark.asyncio
    async def test_no_file_roots_returns_tool_error(self, manager):
        out = await sync_client_roots(_ctx_with_roots("https://example.com/x"))
        assert out["category"] == "STRUCTURAL_ERROR"
        assert out["retryable"] is False

    @pytest.mark.asyncio
    async def test_client_failure_returns_tool_error(self, manager):
        ctx = SimpleNamespace(list_roots=AsyncMock(side_effect=TimeoutError("client timed out")))
        out = await sync_client_roots(ctx)
        assert out["category"] == "FILESYSTEM_ERROR"
        assert out["retryable"] is True


class TestRootsFromUris:
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX file URIs")
    def test_decodes_percent_escapes(self):
        assert roots_mod.roots_from_uris(["file:///home/a/qr%20codes"]) == ["/home/a/qr codes"]

    def test_skips_remote_and_other_schemes(self):
        assert roots_mod.roots_from_uris(["file://server/share", "http://x/y", "file://"]) == []


class TestLazyManager:
    def test_built_from_config(self, clean_config, monkeypatch, tmp_path):
        monkeypatch.setenv("RADIX_QR_DIR", str(tmp_path / "env"))
        monkeypatch.setenv("QR_SECURITY_POLICY", "permissive")
        roots_mod.bind_roots_manager(None)
        try:
            manager = roots_mod.get_roots_manager()
            assert manager.get_security_validator_info()["policy"] == "permissive"
            assert manager.configuration_provider.get_current_qr_directory() == str(tmp_path / "env")
            assert roots_mod.get_roots_manager() is manager
        finally:
            roots_mod.bind_roots_manager(None)
