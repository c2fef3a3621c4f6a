"""
gclpr_server.py — gclpr call server.

Responsibilities:
  • Listen on the loopback interface (default port 2850)
  • Run one ConnectionHandler thread per accepted connection
  • Authenticate every call through a ServerChannel (trusted keys only)
  • Dispatch calls to the registered procedures, sequentially per connection

Failure containment:
  A malformed frame, unknown key, bad signature, version mismatch, locked
  session or I/O timeout closes that one connection; the accept loop and
  other connections are unaffected.

Shutdown:
  Setting the `stop` event (or calling CallServer.close()) closes the
  listener and serve() returns None.  Connections already accepted run until
  the peer disconnects or an I/O error ends them.
"""

import socket
import logging
import threading
from typing import Dict, Optional, Tuple

from gclpr_channel import ServerChannel, ChannelError, MAGIC
from gclpr_frame import FrameError, ConnectionClosed
from gclpr_rpc import ProcedureRegistry, RpcError
from gclpr_procedures import build_registry

# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_HOST            = "127.0.0.1"
DEFAULT_PORT            = 2850
DEFAULT_CONNECT_TIMEOUT = 10.0     # seconds
DEFAULT_IO_TIMEOUT      = 30.0     # seconds per frame read/write
ACCEPT_POLL_INTERVAL    = 0.5      # seconds between stop checks
LISTEN_BACKLOG          = 16

log = logging.getLogger("gclpr.server")


class ServerError(Exception):
    pass


# ─────────────────────────────────────────────────────────────────────────────

class ConnectionHandler(threading.Thread):
    """Serves sequential calls on one authenticated connection."""

    def __init__(self, channel: ServerChannel, registry: ProcedureRegistry, peer) -> None:
        super().__init__(name=f"gclpr-conn-{peer}", daemon=True)
        self.channel  = channel
        self.registry = registry
        self.peer     = peer

    def run(self) -> None:
        log.debug("Accepted connection from %s", self.peer)
        try:
            while True:
                request = self.channel.read()
                self.channel.write(self.registry.dispatch(request))
        except ConnectionClosed:
            pass
        except socket.timeout:
            log.warning("I/O timeout on connection from %s", self.peer)
        except (ChannelError, FrameError, RpcError) as exc:
            log.warning("Closing connection from %s: %s", self.peer, exc)
        except OSError as exc:
            log.info("Connection from %s failed: %s", self.peer, exc)
        except Exception as exc:
            log.exception("Unhandled error for %s: %s", self.peer, exc)
        finally:
            self.channel.close()
            log.debug("Handled connection from %s", self.peer)


class CallServer:
    """
    Usage:
        srv = CallServer(trusted_keys)
        srv.bind(("127.0.0.1", 0))      # optional; serve() binds if needed
        srv.serve(stop_event)           # blocks until stop_event is set
    """

    def __init__(
        self,
        trusted_keys: Dict[bytes, bytes],
        registry:     Optional[ProcedureRegistry] = None,
        magic:        bytes                       = MAGIC,
        locked:       Optional[threading.Event]   = None,
        io_timeout:   Optional[float]             = DEFAULT_IO_TIMEOUT,
    ) -> None:
        self.trusted_keys = trusted_keys
        self.registry     = registry if registry is not None else build_registry()
        self.magic        = magic
        self.locked       = locked
        self.io_timeout   = io_timeout
        self._listener: Optional[socket.socket] = None
        self._closing     = threading.Event()

    # ── Listener ──────────────────────────────────────────────────────────────

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        if self._listener is None:
            return None
        return self._listener.getsockname()[:2]

    def bind(self, address: Tuple[str, int] = (DEFAULT_HOST, DEFAULT_PORT)) -> Tuple[str, int]:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(address)
            sock.listen(LISTEN_BACKLOG)
        except OSError as exc:
            sock.close()
            raise ServerError(f"unable to listen on '{address[0]}:{address[1]}': {exc}") from exc
        sock.settimeout(ACCEPT_POLL_INTERVAL)
        self._listener = sock
        log.info("gclpr server listens on '%s:%d'", *self.address)
        return self.address

    def close(self) -> None:
        """Stop accepting; safe to call from any thread."""
        self._closing.set()
        if self._listener is not None:
            self._listener.close()

    # ── Accept loop ───────────────────────────────────────────────────────────

    def serve(self, stop: Optional[threading.Event] = None) -> None:
        if self._listener is None:
            self.bind()
        listener = self._listener

        log.info("gclpr server is ready")
        while True:
            if self._closing.is_set() or (stop is not None and stop.is_set()):
                self.close()
                log.info("gclpr server is shutting down")
                return None
            try:
                conn, addr = listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._closing.is_set() or (stop is not None and stop.is_set()):
                    log.info("gclpr server is shutting down")
                    return None
                self.close()
                raise ServerError(f"gclpr server is unable to accept requests: {exc}") from exc

            conn.settimeout(None)
            channel = ServerChannel(
                conn,
                self.trusted_keys,
                magic=self.magic,
                locked=self.locked,
                io_timeout=self.io_timeout,
            )
            ConnectionHandler(channel, self.registry, "%s:%d" % addr[:2]).start()


def serve(
    stop:         Optional[threading.Event],
    port:         int,
    trusted_keys: Dict[bytes, bytes],
    magic:        bytes                       = MAGIC,
    locked:       Optional[threading.Event]   = None,
    io_timeout:   Optional[float]             = DEFAULT_IO_TIMEOUT,
    registry:     Optional[ProcedureRegistry] = None,
    host:         str                         = DEFAULT_HOST,
) -> None:
    """Serve calls on host:port until `stop` is set."""
    server = CallServer(trusted_keys, registry, magic, locked, io_timeout)
    server.bind((host, port))
    server.serve(stop)
