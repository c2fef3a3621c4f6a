"""
gclpr_channel.py — Authenticated, length-framed transport over a TCP socket.

Client → server frame payload (the "secure envelope"):
  [8 B magic] [32 B SHA-256(sender public key)] [64 B signature] [message]

Server → client frame payload:
  [message]    (unauthenticated: only the client proves its identity)

Server-side checks, in order, each terminal for the connection:
  1. session locked      → SessionLocked       (checked after the raw frame)
  2. envelope too short  → MalformedEnvelope
  3. magic[0:6] mismatch → ProtocolMismatch    (product tag + major version)
  4. digest not trusted  → UnauthorizedKey
  5. bad signature       → VerificationFailed

Known gaps, kept for wire compatibility:
  • The signature covers only the message, not the magic/digest prefix.
    Reserved magic bytes [6:8] can be changed in flight without detection.
  • No replay protection: a captured envelope authenticates again verbatim.
"""

import socket
import logging
import threading
from typing import BinaryIO, Dict, Optional

from gclpr_crypto import (
    load_signer,
    load_verifier,
    sign_message,
    open_signed,
    key_digest,
    pubkey_fingerprint,
    SignatureError,
    BytesLike,
    DIGEST_SIZE,
    SIGNATURE_SIZE,
)
from gclpr_frame import read_frame, write_frame

# ── Protocol header ───────────────────────────────────────────────────────────
PRODUCT_TAG      = b"gclpr"
PROTOCOL_MAJOR   = 0
PROTOCOL_MINOR   = 0
PROTOCOL_FLAGS   = 0
MAGIC            = PRODUCT_TAG + bytes([PROTOCOL_MAJOR, PROTOCOL_MINOR, PROTOCOL_FLAGS])
MAGIC_CHECK_LEN  = len(PRODUCT_TAG) + 1        # tag + major version

log = logging.getLogger("gclpr.channel")


class ChannelError(Exception):
    pass


class MalformedEnvelope(ChannelError):
    pass


class ProtocolMismatch(ChannelError):
    pass


class UnauthorizedKey(ChannelError):
    pass


class VerificationFailed(ChannelError):
    pass


class SessionLocked(ChannelError):
    pass


# ─────────────────────────────────────────────────────────────────────────────
# Envelope
# ─────────────────────────────────────────────────────────────────────────────

def envelope_overhead(magic: bytes = MAGIC) -> int:
    return len(magic) + DIGEST_SIZE + SIGNATURE_SIZE


def build_envelope(magic: bytes, digest: bytes, signer, message: bytes) -> bytes:
    """magic | digest | signature(message) | message"""
    return magic + digest + sign_message(signer, message)


def open_envelope(
    envelope: bytes,
    magic: bytes,
    trusted_keys: Dict[bytes, bytes],
) -> bytes:
    """Authenticate an envelope against the trust store and return the message."""
    if len(envelope) <= envelope_overhead(magic):
        log.warning("Message is too short: %d", len(envelope))
        raise MalformedEnvelope(f"message is too short: {len(envelope)} bytes")

    if envelope[:MAGIC_CHECK_LEN] != magic[:MAGIC_CHECK_LEN]:
        log.warning(
            "Bad signature or incompatible versions: server [%s], client [%s]",
            magic.hex(), envelope[:len(magic)].hex(),
        )
        raise ProtocolMismatch("bad protocol signature or incompatible versions")

    digest = envelope[len(magic) : len(magic) + DIGEST_SIZE]
    pub    = trusted_keys.get(digest)
    if pub is None:
        log.warning("Call with unauthorized key: %s", digest.hex())
        raise UnauthorizedKey(f"unauthorized key {digest.hex()}")

    try:
        return open_signed(load_verifier(pub), envelope[len(magic) + DIGEST_SIZE :])
    except SignatureError:
        log.warning("Call fails verification with key: %s", pub.hex())
        raise VerificationFailed(f"verification failed for key {pubkey_fingerprint(pub)}")


# ─────────────────────────────────────────────────────────────────────────────
# Channels
# ─────────────────────────────────────────────────────────────────────────────

class SecureChannel:
    """
    Owns one connected socket plus its buffered reader/writer.
    `io_timeout` (seconds) is armed on the socket before every read and
    write; expiry surfaces as socket.timeout.  None or 0 disables it.
    """

    def __init__(
        self,
        sock:       socket.socket,
        magic:      bytes           = MAGIC,
        io_timeout: Optional[float] = None,
    ) -> None:
        self.sock       = sock
        self.magic      = magic
        self.io_timeout = io_timeout
        self._rfile: BinaryIO = sock.makefile("rb")
        self._wfile: BinaryIO = sock.makefile("wb")

    def _arm_deadline(self) -> None:
        if self.io_timeout:
            self.sock.settimeout(self.io_timeout)

    def _read_raw(self) -> bytes:
        self._arm_deadline()
        return read_frame(self._rfile)

    def _write_raw(self, payload: bytes) -> None:
        self._arm_deadline()
        write_frame(self._wfile, payload)

    def read(self) -> bytes:
        return self._read_raw()

    def write(self, message: bytes) -> None:
        self._write_raw(message)

    def close(self) -> None:
        for f in (self._rfile, self._wfile):
            try:
                f.close()
            except OSError:
                pass   # unflushed bytes on a dead socket
        self.sock.close()

    def __enter__(self) -> "SecureChannel":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ClientChannel(SecureChannel):
    """Signs every outgoing message; reads server responses as raw frames."""

    def __init__(
        self,
        sock:        socket.socket,
        public_key:  BytesLike,
        private_key: BytesLike,
        magic:       bytes           = MAGIC,
        io_timeout:  Optional[float] = None,
    ) -> None:
        self.digest  = key_digest(public_key)
        self._signer = load_signer(private_key)
        super().__init__(sock, magic, io_timeout)

    def write(self, message: bytes) -> None:
        self._write_raw(build_envelope(self.magic, self.digest, self._signer, message))


class ServerChannel(SecureChannel):
    """Authenticates every incoming envelope; writes responses as raw frames."""

    def __init__(
        self,
        sock:         socket.socket,
        trusted_keys: Dict[bytes, bytes],
        magic:        bytes                     = MAGIC,
        locked:       Optional[threading.Event] = None,
        io_timeout:   Optional[float]           = None,
    ) -> None:
        super().__init__(sock, magic, io_timeout)
        self.trusted_keys = trusted_keys
        self.locked       = locked

    def read(self) -> bytes:
        envelope = self._read_raw()
        if self.locked is not None and self.locked.is_set():
            raise SessionLocked("session is locked")
        return open_envelope(envelope, self.magic, self.trusted_keys)
