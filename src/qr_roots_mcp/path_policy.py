"""Policy helpers for local filesystem access boundaries.

Raw-string scans (dangerous characters, traversal sequences) run on the
untrusted input before it is normalized, so an attack that normalization
would silently "fix" is still rejected. Every scan is a single compiled-regex
pass over the string.
"""

from __future__ import annotations

import os
import re
import sys

from .types import RiskLevel

IS_WINDOWS = os.name == "nt"
CASE_INSENSITIVE_FS = IS_WINDOWS or sys.platform == "darwin"

NULL_BYTE_ERROR = "Null byte injection detected"
DANGEROUS_CHARS_ERROR = "Dangerous characters detected"
TRAVERSAL_ERROR = "Path traversal attack detected"

_POSIX_CRITICAL_DIRECTORIES = (
    "/etc",
    "/bin",
    "/sbin",
    "/usr/bin",
    "/usr/sbin",
    "/usr/lib",
    "/boot",
    "/dev",
    "/root",
    "/proc",
    "/sys",
    "/var/log",
    "/var/lib/docker",
    "/var/lib/containerd",
    "/var/lib/mysql",
    "/var/lib/postgresql",
    "/var/lib/mongodb",
    "/var/www",
    "/System",
    "/Library",
    "/private/etc",
    "/private/var/db",
)

_WINDOWS_CRITICAL_DIRECTORIES = (
    "C:\\Windows",
    "C:\\Program Files",
    "C:\\Program Files (x86)",
    "C:\\ProgramData",
    "C:\\inetpub",
)

CRITICAL_DIRECTORIES: tuple[str, ...] = (
    _WINDOWS_CRITICAL_DIRECTORIES if IS_WINDOWS else _POSIX_CRITICAL_DIRECTORIES
)

_NULL_BYTE = re.compile(r"\x00|%00")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]|%00")
_DANGEROUS_CHARS = re.compile(r'[\x01-\x1f\x7f<>:"|?*;&$`]')
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:(?=[\\/]|$)")

# Applied to the lowercased raw string.
_TRAVERSAL = re.compile(
    r"\.\.[/\\]"                        # ../ ..\ and dot runs such as ....//
    r"|(?:^|[/\\])\.\.$"                # trailing bare .. segment
    r"|%2e%2e|\.%2e|%2e\."              # percent-encoded dots
    r"|\.\.%2f|\.\.%5c"                 # percent-encoded separators
    r"|%25(?:2e|2f|5c)"                 # double encoding
    r"|%c0%ae|%c0%af|%c1%9c|%c1%1c|%e0%80%ae"  # overlong UTF-8
    "|[\u2024\u2025\u2026\ufe52\uff0e\u2215\u2044\uff0f\u29f8\u2216\uff3c\ufe68\u29f5]"
)


def resolve_path(path_value: str) -> str:
    """Normalize a user-supplied path to an absolute path string.

    Expands a leading ``~`` and resolves relative segments against the
    process working directory. Symlinks are left alone; see
    :func:`canonical_path` for that.
    """
    return os.path.abspath(os.path.expanduser(path_value))


def canonical_path(path_value: str) -> str:
    """Absolute path with symlinks resolved (non-strict: missing tails allowed)."""
    return os.path.realpath(resolve_path(path_value))


def _comparable(path_value: str) -> str:
    value = os.path.normcase(path_value)
    return value.casefold() if CASE_INSENSITIVE_FS else value


def is_within(path_value: str, root: str) -> bool:
    """Return True when *path_value* equals *root* or is nested under it.

    Both arguments must already be absolute.
    """
    path_cmp = _comparable(path_value)
    root_cmp = _comparable(root)
    if path_cmp == root_cmp:
        return True
    prefix = root_cmp if root_cmp.endswith(os.sep) else root_cmp + os.sep
    return path_cmp.startswith(prefix)


def critical_directory_for(path_value: str) -> str | None:
    """Return the denylisted directory *path_value* collides with, if any.

    A collision is equality, nesting under a critical directory, or being an
    ancestor of one (writing into ``/`` or ``/usr`` is as bad as ``/usr/bin``).
    """
    for entry in CRITICAL_DIRECTORIES:
        if is_within(path_value, entry) or is_within(entry, path_value):
            return entry
    return None


def contains_control_characters(raw: str) -> bool:
    """Baseline check used even when no SecurityValidator is attached."""
    return bool(_CONTROL_CHARS.search(raw))


def scan_raw_path(raw: str) -> list[tuple[str, RiskLevel]]:
    """Scan the untrusted, un-normalized string for injection and traversal.

    Returns:
        Ordered ``(error, risk)`` pairs; empty when the string is clean.
    """
    findings: list[tuple[str, RiskLevel]] = []

    if _NULL_BYTE.search(raw):
        findings.append((NULL_BYTE_ERROR, RiskLevel.CRITICAL))

    char_target = _WINDOWS_DRIVE.sub("", raw, count=1) if IS_WINDOWS else raw
    if _DANGEROUS_CHARS.search(char_target):
        findings.append((DANGEROUS_CHARS_ERROR, RiskLevel.HIGH))

    if _TRAVERSAL.search(raw.lower()):
        findings.append((TRAVERSAL_ERROR, RiskLevel.CRITICAL))

    return findings
