"""Build version information."""

from __future__ import annotations

VERSION = "1.6.13"
COMMIT = "unknown"
RELEASE_TAG = ""


def version_string(
    version: str = VERSION,
    commit: str = COMMIT,
    release_tag: str = RELEASE_TAG,
) -> str:
    """Return a human-readable version line such as ``slipgate v1.2.3 (abc123)``."""
    tag = "-dev" if release_tag else ""
    if commit == "unknown":
        return f"slipgate v{version}{tag}"
    return f"slipgate v{version}{tag} ({commit})"


def is_dev(release_tag: str = RELEASE_TAG) -> bool:
    """Return True for a dev channel build."""
    return release_tag != ""