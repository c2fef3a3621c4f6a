"""
gclpr_keys.py — On-disk key material for gclpr.

Per-user key directory (default ~/.gclpr, mode 0700):
  key.pub   32 B raw Ed25519 public key         (0644, may be world-readable)
  key       64 B raw NaCl-layout private key    (0600, owner only)
  trusted   text allow-list for the server      (0600, owner only)
            one hex-encoded 32 B public key per line, '#' comments

Client side: create_keys() / read_keys() manage the caller's own identity.
Server side: load_trusted_keys() builds the digest → public key map.

Security notes:
  • Private key and allow-list are refused if group/other have any access.
  • Regeneration writes both new files to .tmp first and removes the old pair
    before renaming, so an old and a new half never sit side by side.
  • read_keys() returns the private key as a bytearray; wipe it with
    gclpr_crypto.zero_bytes() when done.
"""

import os
import stat
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from gclpr_crypto import (
    generate_signing_keypair,
    load_verifier,
    key_digest,
    PUBLIC_KEY_SIZE,
    PRIVATE_KEY_SIZE,
)

KEY_DIR_NAME      = ".gclpr"
PUBLIC_KEY_FILE   = "key.pub"
PRIVATE_KEY_FILE  = "key"
TRUSTED_KEYS_FILE = "trusted"
HOME_ENV_VAR      = "GCLPR_HOME"

DIR_MODE          = 0o700
PUBLIC_KEY_MODE   = 0o644
PRIVATE_FILE_MODE = 0o600

log = logging.getLogger("gclpr.keys")

PathLike = Union[str, os.PathLike]


# ─────────────────────────────────────────────────────────────────────────────

class KeyStoreError(Exception):
    pass


class KeysNotFound(KeyStoreError):
    pass


class BadKeySize(KeyStoreError):
    pass


class InsecurePermissions(KeyStoreError):
    pass


class TrustStoreError(KeyStoreError):
    pass


def default_key_dir() -> Path:
    home = os.environ.get(HOME_ENV_VAR) or os.path.expanduser("~")
    return Path(home) / KEY_DIR_NAME


# ── Permission gate ───────────────────────────────────────────────────────────

def check_permissions(path: PathLike, read_ok: bool = False) -> None:
    """
    Refuse anything that is not a regular file.  Unless `read_ok`, also refuse
    files that grant any permission to group or other.  Windows has no POSIX
    mode bits, so only the regular-file check applies there.
    """
    try:
        st = os.stat(path)
    except OSError as exc:
        raise KeyStoreError(f"unable to stat {path}: {exc.strerror}") from exc
    if not stat.S_ISREG(st.st_mode):
        raise KeyStoreError(f"not a regular file {path}")
    if read_ok or os.name == "nt":
        return
    if st.st_mode & 0o077:
        raise InsecurePermissions(
            f"permissions {stat.S_IMODE(st.st_mode):04o} on {path} are too open"
        )


# ── Client identity ───────────────────────────────────────────────────────────

def _write_tmp(path: Path, data: bytes, mode: int) -> Path:
    tmp = path.with_name(path.name + ".tmp")
    fd  = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.chmod(tmp, mode)
    return tmp


def create_keys(key_dir: Optional[PathLike] = None) -> Tuple[bytes, bytearray]:
    """
    Generate and save a fresh keypair, overwriting any existing one.
    Callers decide whether overwriting is acceptable.
    Returns (public_key, private_key).
    """
    kd = Path(key_dir) if key_dir is not None else default_key_dir()
    try:
        kd.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        os.chmod(kd, DIR_MODE)
    except OSError as exc:
        raise KeyStoreError(f"cannot create keys directory {kd}: {exc}") from exc

    pub, priv = generate_signing_keypair()

    pub_path  = kd / PUBLIC_KEY_FILE
    priv_path = kd / PRIVATE_KEY_FILE
    try:
        pub_tmp  = _write_tmp(pub_path, pub, PUBLIC_KEY_MODE)
        priv_tmp = _write_tmp(priv_path, bytes(priv), PRIVATE_FILE_MODE)
        for old in (pub_path, priv_path):
            if old.exists():
                old.unlink()
        os.replace(priv_tmp, priv_path)
        os.replace(pub_tmp, pub_path)
    except OSError as exc:
        raise KeyStoreError(f"unable to save keys in {kd}: {exc}") from exc

    log.info("Created new signing keys in %s", kd)
    return pub, priv


def read_keys(key_dir: Optional[PathLike] = None) -> Tuple[bytes, bytearray]:
    """Load the previously generated keypair.  Returns (public_key, private_key)."""
    kd = Path(key_dir) if key_dir is not None else default_key_dir()
    if not kd.is_dir():
        raise KeysNotFound(f"keys directory {kd} does not exist")

    try:
        pub = (kd / PUBLIC_KEY_FILE).read_bytes()
    except OSError as exc:
        raise KeysNotFound(f"unable to read public key: {exc}") from exc
    if len(pub) != PUBLIC_KEY_SIZE:
        raise BadKeySize(f"bad public key size {len(pub)}")

    priv_path = kd / PRIVATE_KEY_FILE
    try:
        priv = bytearray(priv_path.read_bytes())
    except OSError as exc:
        raise KeysNotFound(f"unable to read private key: {exc}") from exc
    if len(priv) != PRIVATE_KEY_SIZE:
        raise BadKeySize(f"bad private key size {len(priv)}")

    check_permissions(priv_path)
    return pub, priv


# ── Server allow-list ─────────────────────────────────────────────────────────

def parse_trusted_keys(text: str) -> Dict[bytes, bytes]:
    """
    Parse allow-list text into {SHA-256(public_key): public_key}.
    Bad lines are logged and skipped; the first of duplicate keys wins.
    """
    keys: Dict[bytes, bytes] = {}
    for line in text.replace("\r", "\n").split("\n"):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        head = line[:8]
        if len(line) != PUBLIC_KEY_SIZE * 2:
            log.warning("Wrong size for key %s... in trusted keys file. Ignoring", head)
            continue
        try:
            pub = bytes.fromhex(line)
            if len(pub) != PUBLIC_KEY_SIZE:
                raise ValueError(f"decoded to {len(pub)} bytes")
            load_verifier(pub)
        except ValueError as exc:
            log.warning("Bad key %s... in trusted keys file: %s. Ignoring", head, exc)
            continue
        digest = key_digest(pub)
        if digest in keys:
            log.warning("Duplicate key %s... in trusted keys file. Ignoring", head)
            continue
        keys[digest] = pub
    return keys


def load_trusted_keys(key_dir: Optional[PathLike] = None) -> Dict[bytes, bytes]:
    """Read and parse the server's allow-list; refuses an insecure file."""
    kd = Path(key_dir) if key_dir is not None else default_key_dir()
    if not kd.is_dir():
        raise TrustStoreError(f"keys directory {kd} does not exist")

    path = kd / TRUSTED_KEYS_FILE
    if not path.exists():
        raise TrustStoreError(f"trusted keys file {path} does not exist")
    check_permissions(path)

    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise TrustStoreError(f"unable to read trusted keys: {exc}") from exc
    return parse_trusted_keys(text)
