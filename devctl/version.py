"""Package version, read from the VERSION file shipped inside devctl."""

import os
from pathlib import Path

VERSION_FILE = Path(__file__).parent / "VERSION"


def get_version() -> str:
    try:
        version = VERSION_FILE.read_text().strip()
    except OSError:
        return "0.0.0"
    return version or "0.0.0"


__version__ = get_version()


def get_commit() -> str:
    """Commit the build was made from, stamped into DEVCTL_GIT_SHA by packaging."""
    return os.getenv("DEVCTL_GIT_SHA", "").strip() or "unknown"
