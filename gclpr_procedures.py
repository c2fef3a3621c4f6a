"""
gclpr_procedures.py — Procedures exposed by the gclpr server.

  Clipboard.Copy(text)  -> null     write text to the server's clipboard
  Clipboard.Paste(null) -> text     read the server's clipboard
  URI.Open(uri)         -> null     open uri with the desktop's default handler

The OS adapters are injected: the clipboard backend is any object with
copy(text) / paste() (the pyperclip module by default) and the opener is a
callable returning a truthy value on success (webbrowser.open by default).
"""

import logging
import webbrowser
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import pyperclip

from gclpr_rpc import ProcedureRegistry, ProcedureError

MAX_CLIPBOARD_SIZE = 1024 * 1024        # 1 MiB of UTF-8
ALLOWED_SCHEMES    = frozenset({"http", "https"})

log = logging.getLogger("gclpr.procedures")


def convert_line_endings(text: str, op: Optional[str]) -> str:
    """Normalise line breaks to "lf" or "crlf"; any other op is a no-op."""
    mode = (op or "").lower()
    if mode not in ("lf", "crlf"):
        return text
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    if mode == "crlf":
        text = text.replace("\n", "\r\n")
    return text


class Clipboard:

    def __init__(self, backend: Any = pyperclip, line_ending: Optional[str] = None) -> None:
        self.backend     = backend
        self.line_ending = line_ending

    def copy(self, text: Any) -> None:
        if not isinstance(text, str):
            raise ProcedureError(f"clipboard payload must be text, got {type(text).__name__}")
        size = len(text.encode("utf-8"))
        log.debug("Copy request received len: %d", size)
        if size > MAX_CLIPBOARD_SIZE:
            raise ProcedureError(
                f"clipboard payload size {size} exceeds maximum {MAX_CLIPBOARD_SIZE}"
            )
        self.backend.copy(convert_line_endings(text, self.line_ending))

    def paste(self, _: Any = None) -> str:
        text = self.backend.paste()
        log.debug("Paste request received len: %d", len(text))
        return text


class URIOpener:

    def __init__(self, opener: Callable[[str], Any] = webbrowser.open) -> None:
        self.opener = opener

    @staticmethod
    def validate(uri: Any) -> str:
        """Return the URI if its scheme is allowed; a missing scheme is refused."""
        if not isinstance(uri, str) or not uri.strip():
            raise ProcedureError("invalid URI: empty")
        try:
            parsed = urlsplit(uri)
        except ValueError as exc:
            raise ProcedureError(f"invalid URI: {exc}") from exc
        scheme = parsed.scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            raise ProcedureError(f"URI scheme {scheme!r} is not allowed")
        return uri

    def open(self, uri: Any) -> None:
        log.debug("URI Open received: '%s'", uri)
        uri = self.validate(uri)
        if not self.opener(uri):
            raise ProcedureError(f"unable to open {uri}")


def build_registry(
    clipboard:  Optional[Clipboard] = None,
    uri_opener: Optional[URIOpener] = None,
) -> ProcedureRegistry:
    clipboard  = clipboard if clipboard is not None else Clipboard()
    uri_opener = uri_opener if uri_opener is not None else URIOpener()

    registry = ProcedureRegistry()
    registry.register("Clipboard.Copy",  clipboard.copy)
    registry.register("Clipboard.Paste", clipboard.paste)
    registry.register("URI.Open",        uri_opener.open)
    return registry
