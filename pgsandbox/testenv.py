"""Locating the project and its config, and verbose-only logging for test runs."""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import Any, Optional, Union

PROJECT_MARKER = "pyproject.toml"
DEFAULT_CONFIG_REL = Path("config") / "pgtest-sandbox.yaml"
CONFIG_ENV = "PGTEST_CONFIG"
VERBOSE_ENV = "PGTEST_VERBOSE"


def project_root(start: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """Nearest directory at or above ``start`` (default: cwd) holding the project marker."""
    directory = Path(start) if start is not None else Path.cwd()
    directory = directory.resolve()
    for candidate in (directory, *directory.parents):
        if (candidate / PROJECT_MARKER).exists():
            return candidate
    return None


def config_path() -> Path:
    """Path of the config file, from PGTEST_CONFIG or the project's default location."""
    base = project_root() or Path.cwd()
    env_path = os.environ.get(CONFIG_ENV, "")
    if env_path:
        path = Path(env_path)
        return path if path.is_absolute() else base / path
    return base / DEFAULT_CONFIG_REL


def is_test_verbose() -> bool:
    """True when a verbose test flag is on the command line or PGTEST_VERBOSE is 1."""
    if any("test.v" in arg for arg in sys.argv):
        return True
    return os.environ.get(VERBOSE_ENV) == "1"


def log_if_verbose(fmt: str, *args: Any) -> None:
    """Write a timestamped message to standard error only in verbose test runs."""
    if not is_test_verbose():
        return
    message = fmt % args if args else fmt
    sys.stderr.write(f"{time.strftime('%Y/%m/%d %H:%M:%S')} {message}\n")
    sys.stderr.flush()