"""Shared fixtures: key material, fake OS adapters, a live server."""

import threading
from types import SimpleNamespace

import pytest

from gclpr_channel import MAGIC
from gclpr_crypto import key_digest
from gclpr_keys import create_keys
from gclpr_procedures import Clipboard, URIOpener, build_registry
from gclpr_server import CallServer

from .fakes import FakeClipboard, RecordingOpener


@pytest.fixture
def key_dir(tmp_path):
    return tmp_path / ".gclpr"


@pytest.fixture
def client_keys(key_dir):
    """A fresh keypair written to a temporary key directory."""
    return create_keys(key_dir)


@pytest.fixture
def trusted_keys(client_keys):
    pub, _ = client_keys
    return {key_digest(pub): pub}


@pytest.fixture
def fake_clipboard():
    return FakeClipboard("initial")


@pytest.fixture
def opener():
    return RecordingOpener()


@pytest.fixture
def start_server(fake_clipboard, opener):
    """
    Factory starting a CallServer on an ephemeral loopback port in a
    background thread.  Every server started is stopped at teardown.
    """
    running = []

    def start(trusted, locked=None, magic=MAGIC, io_timeout=5.0):
        registry = build_registry(Clipboard(fake_clipboard), URIOpener(opener))
        server   = CallServer(trusted, registry, magic=magic, locked=locked, io_timeout=io_timeout)
        address  = server.bind(("127.0.0.1", 0))
        stop     = threading.Event()
        outcome  = {}

        def run():
            outcome["result"] = server.serve(stop)

        thread = threading.Thread(target=run, daemon=True)
        thread.start()
        handle = SimpleNamespace(
            server=server,
            address=address,
            port=address[1],
            stop=stop,
            thread=thread,
            outcome=outcome,
            clipboard=fake_clipboard,
            opener=opener,
        )
        running.append(handle)
        return handle

    yield start

    for handle in running:
        handle.stop.set()
        handle.thread.join(timeout=5)
