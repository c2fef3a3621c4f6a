"""Tests for clipboard / URI procedures and line-ending conversion."""

import pytest

from gclpr_procedures import (
    Clipboard,
    URIOpener,
    build_registry,
    convert_line_endings,
    MAX_CLIPBOARD_SIZE,
)
from gclpr_rpc import ProcedureError

from .fakes import FakeClipboard, RecordingOpener


@pytest.mark.parametrize("text, op, expect", [
    ("a\r\nb\r\n",     "lf",   "a\nb\n"),
    ("a\rb\r",         "lf",   "a\nb\n"),
    ("a\r\nb\rc\n",    "lf",   "a\nb\nc\n"),
    ("a\nb\n",         "lf",   "a\nb\n"),
    ("abc",            "lf",   "abc"),
    ("",               "lf",   ""),
    ("a\r\nb\r\n",     "LF",   "a\nb\n"),
    ("\r\r\r",         "lf",   "\n\n\n"),
    ("a\nb\n",         "crlf", "a\r\nb\r\n"),
    ("a\rb\r",         "crlf", "a\r\nb\r\n"),
    ("a\r\nb\r\n",     "crlf", "a\r\nb\r\n"),
    ("a\nb\r\nc\rd\n", "crlf", "a\r\nb\r\nc\r\nd\r\n"),
    ("\nabc",          "crlf", "\r\nabc"),
    ("a\n\nb",         "crlf", "a\r\n\r\nb"),
    ("a\nb\n",         "CRLF", "a\r\nb\r\n"),
    ("a\nb\r\nc\r",    "",     "a\nb\r\nc\r"),
    ("a\nb\r\n",       "foo",  "a\nb\r\n"),
    ("a\nb",           None,   "a\nb"),
])
def test_convert_line_endings(text, op, expect):
    assert convert_line_endings(text, op) == expect


class TestClipboard:

    def test_copy_and_paste(self):
        backend = FakeClipboard()
        clip = Clipboard(backend)
        clip.copy("hello")
        assert backend.text == "hello"
        assert clip.paste() == "hello"

    def test_copy_converts_line_endings(self):
        backend = FakeClipboard()
        Clipboard(backend, line_ending="crlf").copy("a\nb")
        assert backend.text == "a\r\nb"

    def test_max_size_accepted(self):
        backend = FakeClipboard()
        Clipboard(backend).copy("x" * MAX_CLIPBOARD_SIZE)
        assert len(backend.text) == MAX_CLIPBOARD_SIZE

    def test_oversized_rejected_and_clipboard_unchanged(self):
        backend = FakeClipboard("before")
        with pytest.raises(ProcedureError, match="exceeds maximum"):
            Clipboard(backend).copy("x" * (MAX_CLIPBOARD_SIZE + 1))
        assert backend.text == "before"
        assert backend.copies == 0

    def test_size_counts_utf8_bytes(self):
        backend = FakeClipboard("before")
        text = "é" * (MAX_CLIPBOARD_SIZE // 2 + 1)     # 2 bytes each
        with pytest.raises(ProcedureError):
            Clipboard(backend).copy(text)
        assert backend.text == "before"

    def test_non_text_rejected(self):
        with pytest.raises(ProcedureError, match="must be text"):
            Clipboard(FakeClipboard()).copy(42)


class TestURIOpener:

    @pytest.mark.parametrize("uri", [
        "http://example.com",
        "https://example.com/foo/bar?q=1",
        "HTTP://example.com",
    ])
    def test_allowed(self, uri):
        opener = RecordingOpener()
        URIOpener(opener).open(uri)
        assert opener.opened == [uri]

    @pytest.mark.parametrize("uri, scheme", [
        ("file:///etc/passwd",          "file"),
        ("FILE:///etc/passwd",          "file"),
        ("data:text/html,<h1>hi</h1>",  "data"),
        ("javascript:alert(1)",         "javascript"),
        ("vbscript:MsgBox",             "vbscript"),
        ("/etc/passwd",                 ""),
        ("../../home/user/.ssh/id_rsa", ""),
        ("example.com",                 ""),
        ("google.com/page",             ""),
    ])
    def test_blocked(self, uri, scheme):
        opener = RecordingOpener()
        with pytest.raises(ProcedureError, match=f"'{scheme}' is not allowed"):
            URIOpener(opener).open(uri)
        assert opener.opened == []

    def test_empty(self):
        with pytest.raises(ProcedureError):
            URIOpener(RecordingOpener()).open("  ")

    def test_opener_failure(self):
        with pytest.raises(ProcedureError, match="unable to open"):
            URIOpener(RecordingOpener(result=False)).open("https://example.com")


def test_registry_names():
    registry = build_registry(Clipboard(FakeClipboard()), URIOpener(RecordingOpener()))
    assert registry.names() == ["Clipboard.Copy", "Clipboard.Paste", "URI.Open"]
