"""Load QR directory settings from ``~/.config/qr-roots-mcp/.env``.

Only fills variables the process environment leaves unset (or passes through
as an unresolved ``${VAR}`` placeholder), so ``RADIX_QR_DIR`` and the
``QR_*`` policy knobs can live outside the MCP host's launch config.
"""

from __future__ import annotations

import os
from pathlib import Path

from .config import _clean_env_path

DEFAULT_ENV_PATH = Path.home() / ".config" / "qr-roots-mcp" / ".env"


def parse_dotenv(path: Path) -> dict[str, str]:
    """Read ``KEY=VALUE`` lines; ``#`` comments and blank lines are skipped.

    Values may be quoted to keep spaces in directory names.
    """
    if not path.is_file():
        return {}

    result: dict[str, str] = {}
    for line in path.read_text().splitlines():
        key, sep, value = line.strip().partition("=")
        key = key.strip()
        if not sep or not key or key.startswith("#"):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        result[key] = value
    return result


def load_dotenv(path: Path | None = None) -> dict[str, str]:
    """Inject vars from *path* (default :data:`DEFAULT_ENV_PATH`) that are unset.

    Returns:
        Dict of vars that were actually injected.
    """
    injected: dict[str, str] = {}
    for key, value in parse_dotenv(path or DEFAULT_ENV_PATH).items():
        if not _clean_env_path(os.environ.get(key, "")):
            os.environ[key] = value
            injected[key] = value
    return injected
