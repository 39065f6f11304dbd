"""Helpers behind the tray menu: proxy address, connection line, clipboard and browser."""

from __future__ import annotations

import subprocess
import sys

DEFAULT_PROXY_ADDRESS = "localhost:5432"
DEFAULT_PORT = "5432"
ROLLBACK_ALL_PATH = "/api/sessions/rollback-all"


def proxy_address_from_gui_url(gui_url: str) -> str:
    """Return ``host:port`` from a GUI URL such as ``http://localhost:5433/``."""
    address = gui_url.strip()
    _, sep, rest = address.partition("://")
    if sep:
        address = rest
    address = address.split("/", 1)[0]
    return address or DEFAULT_PROXY_ADDRESS


def connection_string(proxy_addr: str) -> str:
    """Short DSN line ``host=... port=...`` for the proxy address."""
    host, port = proxy_addr, DEFAULT_PORT
    i = proxy_addr.rfind(":")
    if 0 <= i < len(proxy_addr) - 1:
        host, port = proxy_addr[:i], proxy_addr[i + 1 :]
    return f"host={host} port={port}"


def rollback_all_url(gui_url: str) -> str:
    """URL of the endpoint that rolls back every session."""
    base = gui_url[:-1] if gui_url.endswith("/") else gui_url
    return base + ROLLBACK_ALL_PATH


def escape_ps(text: str) -> str:
    """Quote ``text`` as a PowerShell single-quoted string."""
    return "'" + text.replace("'", "''") + "'"


def _run_quietly(command: list[str], text: str | None = None) -> bool:
    try:
        subprocess.run(
            command,
            input=None if text is None else text.encode("utf-8"),
            check=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return True


def copy_to_clipboard(text: str) -> None:
    """Put ``text`` on the system clipboard; failures are ignored."""
    if sys.platform == "win32":
        _run_quietly(
            ["powershell", "-NoProfile", "-Command", "Set-Clipboard -Value " + escape_ps(text)]
        )
    elif sys.platform == "darwin":
        _run_quietly(["pbcopy"], text)
    elif not _run_quietly(["xclip", "-selection", "clipboard"], text):
        _run_quietly(["xsel", "--clipboard", "--input"], text)


def open_browser(url: str) -> None:
    """Open ``url`` in the default browser without waiting; failures are ignored."""
    if sys.platform == "win32":
        command = ["rundll32", "url.dll,FileProtocolHandler", url]
    elif sys.platform == "darwin":
        command = ["open", url]
    else:
        command = ["xdg-open", url]
    try:
        subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError:
        pass