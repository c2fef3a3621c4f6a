"""
gclpr_client.py — Client side of a gclpr call.

RpcClient opens one TCP connection to the server, signs every request with
the caller's private key (ClientChannel) and reads raw responses.  Calls on
one client are sequential and thread-safe (protected by a single lock).
Errors returned by the server are raised as RemoteError with the server's
message verbatim; nothing is retried.

Usage:
    with RpcClient(port=2850) as rc:
        rc.copy("hello")
        print(rc.paste())
"""

import socket
import logging
import threading
from typing import Any, Optional, Tuple

from gclpr_channel import ClientChannel, MAGIC
from gclpr_crypto import zero_bytes, BytesLike
from gclpr_keys import read_keys, PathLike
from gclpr_rpc import encode_request, decode_response, RpcError, RemoteError
from gclpr_server import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_IO_TIMEOUT,
)

log = logging.getLogger("gclpr.client")


class RpcClient:

    def __init__(
        self,
        port:            int                                   = DEFAULT_PORT,
        host:            str                                   = DEFAULT_HOST,
        key_dir:         Optional[PathLike]                    = None,
        keys:            Optional[Tuple[BytesLike, BytesLike]] = None,
        magic:           bytes                                 = MAGIC,
        connect_timeout: Optional[float]                       = DEFAULT_CONNECT_TIMEOUT,
        io_timeout:      Optional[float]                       = DEFAULT_IO_TIMEOUT,
    ) -> None:
        self.host            = host
        self.port            = port
        self.key_dir         = key_dir
        self.magic           = magic
        self.connect_timeout = connect_timeout
        self.io_timeout      = io_timeout
        self._keys           = keys
        self._owns_keys      = False
        self._lock           = threading.Lock()
        self._channel: Optional[ClientChannel] = None
        self._next_id        = 0

    # ── Connection ────────────────────────────────────────────────────────────

    def connect(self) -> None:
        if self._keys is None:
            self._keys      = read_keys(self.key_dir)
            self._owns_keys = True
        pub, priv = self._keys

        sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        try:
            sock.settimeout(None)
            self._channel = ClientChannel(sock, pub, priv, self.magic, self.io_timeout)
        except BaseException:
            sock.close()
            raise
        log.debug("Connected to %s:%d", self.host, self.port)

    def close(self) -> None:
        with self._lock:
            if self._channel is not None:
                self._channel.close()
                self._channel = None
            if self._owns_keys and self._keys is not None:
                zero_bytes(self._keys[1])
                self._keys      = None
                self._owns_keys = False

    @property
    def connected(self) -> bool:
        return self._channel is not None

    def __enter__(self) -> "RpcClient":
        try:
            self.connect()
        except BaseException:
            # __exit__ will not run; wipe any key loaded before the failure
            self.close()
            raise
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Calls ─────────────────────────────────────────────────────────────────

    def call(self, method: str, params: Any = None) -> Any:
        with self._lock:
            if self._channel is None:
                raise RpcError("client is not connected")
            self._next_id += 1
            call_id = self._next_id
            self._channel.write(encode_request(call_id, method, params))
            resp_id, result, error = decode_response(self._channel.read())
        if resp_id != call_id:
            raise RpcError(f"response id {resp_id} does not match call id {call_id}")
        if error is not None:
            raise RemoteError(error)
        return result

    def copy(self, text: str) -> None:
        self.call("Clipboard.Copy", text)

    def paste(self) -> str:
        return self.call("Clipboard.Paste")

    def open_uri(self, uri: str) -> None:
        self.call("URI.Open", uri)
