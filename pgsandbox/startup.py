"""Handling of the client startup parameters."""

from __future__ import annotations

import re
from typing import Mapping, Optional

PROXY_APPLICATION_NAME = "pgtest-proxy"
DEFAULT_TEST_ID = "default"
NO_APPLICATION_NAME = "(sem application_name)"

_TEST_ID_RE = re.compile(r"pgtest_(.+)")


def extract_appname(params: Optional[Mapping[str, str]]) -> str:
    """Return the client's application_name, or a placeholder when missing."""
    name = (params or {}).get("application_name", "")
    return name or NO_APPLICATION_NAME


def extract_test_id(params: Optional[Mapping[str, str]]) -> str:
    """Derive the test id from application_name (``pgtest_<id>`` or the name itself)."""
    app_name = (params or {}).get("application_name", "")
    if not app_name or app_name == DEFAULT_TEST_ID:
        return DEFAULT_TEST_ID
    match = _TEST_ID_RE.fullmatch(app_name)
    if match:
        return match.group(1)
    return app_name


def build_startup_message_for_postgres(params: Mapping[str, str]) -> dict[str, str]:
    """Copy the startup parameters, setting application_name to the proxy's name."""
    new_params = dict(params)
    new_params["application_name"] = PROXY_APPLICATION_NAME
    return new_params