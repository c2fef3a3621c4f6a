"""
gclpr_crypto.py — Signing primitives for gclpr.

Key Design:
  - Identity keypairs : Ed25519, stored in the NaCl `crypto_sign` layout
                        public key  = 32 B
                        private key = 64 B  [32 B seed | 32 B public key]
  - Signed block      : [64 B signature | message]   (NaCl "combined" form)
  - Key digest        : SHA-256(public key), the lookup key of the trust store
  - Private keys are handled as bytearray so callers can wipe them with
    zero_bytes() once they are done.
"""

import hashlib
from typing import Tuple, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey,
)
from cryptography.exceptions import InvalidSignature

# ── Size constants ───────────────────────────────────────────────────────────
PUBLIC_KEY_SIZE  = 32
SEED_SIZE        = 32
PRIVATE_KEY_SIZE = SEED_SIZE + PUBLIC_KEY_SIZE   # 64
SIGNATURE_SIZE   = 64                            # signature overhead
DIGEST_SIZE      = 32

BytesLike = Union[bytes, bytearray, memoryview]


class SignatureError(Exception):
    """Raised when a signed block cannot be opened with the given key."""
    pass


# ─────────────────────────────────────────────────────────────────────────────
# Ed25519 identity keys
# ─────────────────────────────────────────────────────────────────────────────

def generate_signing_keypair() -> Tuple[bytes, bytearray]:
    """Generate an Ed25519 keypair from the OS CSPRNG.
    Returns (public_key_32B, private_key_64B)."""
    priv = Ed25519PrivateKey.generate()
    seed = priv.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    pub = priv.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return pub, bytearray(seed + pub)


def load_signer(private_key: BytesLike) -> Ed25519PrivateKey:
    """Build a signing key object from a 64-byte NaCl-layout private key."""
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise ValueError(
            f"Private key must be {PRIVATE_KEY_SIZE} bytes, got {len(private_key)}"
        )
    return Ed25519PrivateKey.from_private_bytes(bytes(private_key[:SEED_SIZE]))


def load_verifier(public_key: BytesLike) -> Ed25519PublicKey:
    """Build a verification key object from a raw 32-byte public key."""
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise ValueError(
            f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}"
        )
    return Ed25519PublicKey.from_public_bytes(bytes(public_key))


def sign_message(signer: Ed25519PrivateKey, message: bytes) -> bytes:
    """Return [signature | message]."""
    return signer.sign(message) + message


def open_signed(verifier: Ed25519PublicKey, signed: bytes) -> bytes:
    """
    Verify a [signature | message] block and return the message.
    Raises SignatureError if the block is too short or the signature is bad.
    """
    if len(signed) < SIGNATURE_SIZE:
        raise SignatureError("Signed block shorter than signature")
    signature = signed[:SIGNATURE_SIZE]
    message   = signed[SIGNATURE_SIZE:]
    try:
        verifier.verify(signature, message)
    except InvalidSignature:
        raise SignatureError("Signature verification failed")
    return message


# ─────────────────────────────────────────────────────────────────────────────
# Utilities
# ─────────────────────────────────────────────────────────────────────────────

def key_digest(public_key: BytesLike) -> bytes:
    """SHA-256 of a public key; the trust-store lookup key."""
    return hashlib.sha256(bytes(public_key)).digest()


def pubkey_fingerprint(public_key: BytesLike) -> str:
    """Return a short, human-readable fingerprint for log lines.
    Format: XXXX:XXXX:XXXX:XXXX (first 16 hex chars of SHA-256)."""
    digest = hashlib.sha256(bytes(public_key)).hexdigest()
    return ":".join(digest[i : i + 4] for i in range(0, 16, 4))


def zero_bytes(buf: bytearray) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    for i in range(len(buf)):
        buf[i] = 0
