"""Shared test fixtures for qr-roots-mcp."""

from __future__ import annotations

from typing import Any

import pytest

from qr_roots_mcp.configuration import ConfigurationProvider


def unwrap_tool(tool: Any) -> Any:
    """Extract the raw coroutine from a FastMCP FunctionTool, if wrapped.

    FastMCP 2.x wraps @server.tool functions in FunctionTool (not callable).
    FastMCP 3.x preserves the original function. This helper works with both.
    """
    return getattr(tool, "fn", tool)


@pytest.fixture(autouse=True, scope="session")
def _unwrap_fastmcp_tools():
    """Patch tool modules so FunctionTool objects become directly callable.

    FastMCP 2.x wraps @server.tool in FunctionTool (not callable); 3.x
    preserves the function. This fixture unwraps at the module level so
    tests can ``await tool_func(...)`` regardless of FastMCP version.
    """
    import importlib
    import pkgutil

    import qr_roots_mcp.tools as tools_pkg

    modules = []
    for info in pkgutil.walk_packages(tools_pkg.__path__, tools_pkg.__name__ + "."):
        modules.append(importlib.import_module(info.name))

    for mod in modules:
        for name in list(vars(mod)):
            obj = getattr(mod, name, None)
            if obj is not None and hasattr(obj, "fn") and not callable(obj):
                setattr(mod, name, obj.fn)


@pytest.fixture(autouse=True)
def _isolate_dotenv(tmp_path, monkeypatch):
    """Prevent tests from loading the user's real ~/.config/qr-roots-mcp/.env."""
    monkeypatch.setattr(
        "qr_roots_mcp.dotenv.DEFAULT_ENV_PATH",
        tmp_path / "nonexistent.env",
    )


@pytest.fixture(autouse=True)
def _isolate_qr_env(monkeypatch):
    """Strip QR directory/policy variables inherited from the developer's shell."""
    for key in (
        "RADIX_QR_DIR",
        "QR_DEFAULT_DIRECTORY_NAME",
        "QR_SECURITY_POLICY",
        "QR_ALLOWED_ROOTS",
        "QR_VALIDATION_RATE_LIMIT",
        "QR_ROOTS_MIN_INTERVAL",
        "QR_AUDIT_LOG_SIZE",
        "QR_FS_PROBE_TIMEOUT",
        "QR_MAX_PATH_LENGTH",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def clean_config():
    """Reset the config singleton between tests."""
    import qr_roots_mcp.config as cfg_mod

    cfg_mod._config = None
    yield
    cfg_mod._config = None


class FakeClock:
    """Manually advanced monotonic clock for rate-limit tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def qr_root(tmp_path):
    """A writable directory tree the tests may whitelist and write into."""
    root = tmp_path / "qr_root"
    root.mkdir()
    return root


@pytest.fixture()
def provider(tmp_path) -> ConfigurationProvider:
    """Provider with no env/CLI seeds and a default directory under tmp_path."""
    return ConfigurationProvider(default_directory=str(tmp_path / "default_qr"))
