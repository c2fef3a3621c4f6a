"""Tests for the secure channel and the envelope format."""

import socket
import threading

import pytest

from gclpr_channel import (
    ClientChannel,
    ServerChannel,
    build_envelope,
    open_envelope,
    envelope_overhead,
    MAGIC,
    MAGIC_CHECK_LEN,
    MalformedEnvelope,
    ProtocolMismatch,
    UnauthorizedKey,
    VerificationFailed,
    SessionLocked,
)
from gclpr_crypto import generate_signing_keypair, key_digest, load_signer, DIGEST_SIZE
from gclpr_frame import ConnectionClosed


@pytest.fixture
def keypair():
    return generate_signing_keypair()


@pytest.fixture
def trusted(keypair):
    pub, _ = keypair
    return {key_digest(pub): pub}


@pytest.fixture
def channel_pair(keypair, trusted):
    """Connected (client, server) channels over a socketpair, plus the lock flag."""
    a, b = socket.socketpair()
    pub, priv = keypair
    locked = threading.Event()
    client = ClientChannel(a, pub, priv, io_timeout=5.0)
    server = ServerChannel(b, trusted, locked=locked, io_timeout=5.0)
    yield client, server, locked
    client.close()
    server.close()


def _envelope(keypair, message=b"hello", magic=MAGIC):
    pub, priv = keypair
    return build_envelope(magic, key_digest(pub), load_signer(priv), message)


class TestEnvelope:

    def test_layout(self, keypair):
        pub, _ = keypair
        env = _envelope(keypair, b"msg")
        assert env[:8] == MAGIC
        assert env[8:8 + DIGEST_SIZE] == key_digest(pub)
        assert env[-3:] == b"msg"
        assert len(env) == envelope_overhead() + 3

    def test_open(self, keypair, trusted):
        assert open_envelope(_envelope(keypair), MAGIC, trusted) == b"hello"

    def test_too_short(self, keypair, trusted):
        """An envelope carrying an empty message is malformed."""
        with pytest.raises(MalformedEnvelope):
            open_envelope(_envelope(keypair, b""), MAGIC, trusted)
        with pytest.raises(MalformedEnvelope):
            open_envelope(b"gclpr", MAGIC, trusted)

    def test_major_version_mismatch(self, keypair, trusted):
        other = MAGIC[:5] + bytes([MAGIC[5] + 1]) + MAGIC[6:]
        with pytest.raises(ProtocolMismatch):
            open_envelope(_envelope(keypair, magic=other), MAGIC, trusted)

    def test_product_tag_mismatch(self, keypair, trusted):
        with pytest.raises(ProtocolMismatch):
            open_envelope(_envelope(keypair, magic=b"lemon\x00\x00\x00"), MAGIC, trusted)

    def test_reserved_magic_bytes_ignored(self, keypair, trusted):
        other = MAGIC[:MAGIC_CHECK_LEN] + b"\x07\x09"
        assert open_envelope(_envelope(keypair, magic=other), MAGIC, trusted) == b"hello"

    def test_unknown_key(self, trusted):
        stranger = generate_signing_keypair()
        with pytest.raises(UnauthorizedKey):
            open_envelope(_envelope(stranger), MAGIC, trusted)

    def test_bad_signature(self, keypair, trusted):
        env = bytearray(_envelope(keypair))
        env[-1] ^= 0xFF
        with pytest.raises(VerificationFailed):
            open_envelope(bytes(env), MAGIC, trusted)

    def test_digest_of_trusted_key_signed_by_other(self, keypair, trusted):
        """Claiming a trusted digest without its private key fails verification."""
        pub, _ = keypair
        _, other_priv = generate_signing_keypair()
        env = build_envelope(MAGIC, key_digest(pub), load_signer(other_priv), b"hello")
        with pytest.raises(VerificationFailed):
            open_envelope(env, MAGIC, trusted)


class TestKnownLimitations:
    """Behaviour kept for wire compatibility; documented, not fixed."""

    def test_prefix_not_covered_by_signature(self, keypair, trusted):
        env = bytearray(_envelope(keypair))
        env[6] ^= 0xFF          # reserved minor-version byte, changed in flight
        assert open_envelope(bytes(env), MAGIC, trusted) == b"hello"

    def test_replay_is_accepted(self, keypair, trusted):
        env = _envelope(keypair)
        assert open_envelope(env, MAGIC, trusted) == b"hello"
        assert open_envelope(env, MAGIC, trusted) == b"hello"


class TestChannels:

    def test_client_to_server(self, channel_pair):
        client, server, _ = channel_pair
        client.write(b"request")
        assert server.read() == b"request"

    def test_server_to_client_is_raw(self, channel_pair):
        client, server, _ = channel_pair
        server.write(b"response")
        assert client.read() == b"response"

    def test_many_messages_in_order(self, channel_pair):
        client, server, _ = channel_pair
        for i in range(5):
            client.write(b"call %d" % i)
        assert [server.read() for _ in range(5)] == [b"call %d" % i for i in range(5)]

    def test_session_locked(self, channel_pair):
        client, server, locked = channel_pair
        locked.set()
        client.write(b"request")
        with pytest.raises(SessionLocked):
            server.read()

    def test_unlocked_again(self, channel_pair):
        client, server, locked = channel_pair
        locked.set()
        locked.clear()
        client.write(b"request")
        assert server.read() == b"request"

    def test_untrusted_client(self, trusted):
        a, b = socket.socketpair()
        pub, priv = generate_signing_keypair()
        with ClientChannel(a, pub, priv) as client, ServerChannel(b, trusted) as server:
            client.write(b"request")
            with pytest.raises(UnauthorizedKey):
                server.read()

    def test_peer_closed(self, channel_pair):
        client, server, _ = channel_pair
        client.close()
        with pytest.raises(ConnectionClosed):
            server.read()

    def test_read_deadline(self, keypair, trusted):
        a, b = socket.socketpair()
        with ServerChannel(b, trusted, io_timeout=0.2) as server:
            with pytest.raises(socket.timeout):
                server.read()
        a.close()
