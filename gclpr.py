"""
gclpr.py — copy, paste text and open browser over localhost TCP interface.

Usage:
  gclpr [options]... COMMAND [arg]

Commands:
  copy 'text'  (client) send text to server clipboard (stdin if no text)
  paste        (client) output server clipboard locally
  open 'url'   (client) open url in server's default browser (stdin if no url)
  genkey       (client) generate key pair for signing
  server       start server

When invoked as pbcopy, pbpaste or xdg-open the command is implied.

Keys live in ~/.gclpr (or $GCLPR_HOME/.gclpr).  The server only accepts
calls signed by keys listed in its `trusted` file.

The server started from this command line never locks its session: there
is no flag to set or ignore the session lock.  Embedders that need one pass
a threading.Event as `locked` to gclpr_server.serve().
"""

import os
import sys
import signal
import logging
import argparse
import threading
from typing import List, Optional

from gclpr_channel import ChannelError
from gclpr_client import RpcClient
from gclpr_crypto import zero_bytes
from gclpr_frame import FrameError
from gclpr_keys import (
    KeyStoreError,
    KeysNotFound,
    create_keys,
    default_key_dir,
    load_trusted_keys,
    read_keys,
)
from gclpr_procedures import Clipboard, URIOpener, build_registry, convert_line_endings
from gclpr_rpc import RpcError
from gclpr_server import (
    DEFAULT_PORT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_IO_TIMEOUT,
    ServerError,
    serve,
)

# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────

EXIT_SUCCESS     = 0
EXIT_USAGE_ERROR = 6
EXIT_NO_KEYS     = 7
EXIT_RPC_ERROR   = 8
EXIT_HELP        = 9

COMMANDS = {
    "copy":   "send text to server clipboard",
    "paste":  "output server clipboard locally",
    "open":   "open url in server's default browser",
    "genkey": "generate key pair for signing",
    "server": "start server",
}
ALIASES = {
    "pbcopy":   "copy",
    "pbpaste":  "paste",
    "xdg-open": "open",
}
DATA_COMMANDS = ("copy", "open")

LOG_FORMAT = "%(asctime)s [gclpr] %(levelname)s %(message)s"

log = logging.getLogger("gclpr")


class UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise UsageError(message)


def build_parser(alias: Optional[str] = None) -> argparse.ArgumentParser:
    p = _Parser(
        prog=alias or "gclpr",
        description="gclpr - copy, paste text and open browser over localhost TCP interface",
        epilog="\n".join(f"  {name:<7} {text}" for name, text in COMMANDS.items()),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )
    p.add_argument("--help",            action="store_true", help="Show help")
    p.add_argument("--port",            type=int,   default=DEFAULT_PORT, help="TCP port number")
    p.add_argument("--line-ending",     default="", help="Convert Line Endings (LF/CRLF)")
    p.add_argument("--connect-timeout", type=float, default=DEFAULT_CONNECT_TIMEOUT,
                   help="TCP connection timeout, seconds")
    p.add_argument("--timeout",         type=float, default=DEFAULT_IO_TIMEOUT,
                   help="Read/write I/O timeout, seconds")
    p.add_argument("--debug",           action="store_true", help="Print debugging information")
    if alias is None:
        p.add_argument("command", nargs="?", choices=sorted(COMMANDS))
    p.add_argument("data", nargs="?", help="text or url (copy/open)")
    return p


def parse_command_line(argv: List[str]):
    """Returns (parser, args) with args.command resolved, aliases included."""
    alias  = ALIASES.get(os.path.basename(argv[0]) if argv else "")
    parser = build_parser(os.path.basename(argv[0]) if alias else None)
    args   = parser.parse_intermixed_args(argv[1:])
    if alias:
        args.command = alias
    if args.help:
        return parser, args
    if not args.command:
        raise UsageError("unknown command")
    if args.data is not None and args.command not in DATA_COMMANDS:
        raise UsageError(f"command {args.command} takes no argument")
    return parser, args


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=LOG_FORMAT,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

def _client(args) -> RpcClient:
    return RpcClient(
        port=args.port,
        connect_timeout=args.connect_timeout,
        io_timeout=args.timeout,
    )


def cmd_copy(args) -> None:
    with _client(args) as rc:
        rc.copy(args.data)


def cmd_paste(args) -> None:
    with _client(args) as rc:
        text = rc.paste()
    sys.stdout.write(convert_line_endings(text, args.line_ending))
    sys.stdout.flush()


def cmd_open(args) -> None:
    uri = URIOpener.validate(args.data.strip())
    with _client(args) as rc:
        rc.open_uri(uri)


def cmd_genkey(args) -> None:
    try:
        pub, priv = read_keys()
        existing  = True
    except KeyStoreError:
        pub, priv = create_keys()
        existing  = False
    zero_bytes(priv)
    print(f"\nPublic key:\n\t{pub.hex()}")
    if existing:
        raise KeyStoreError("usable keys already exist")


def cmd_server(args) -> None:
    trusted = load_trusted_keys()
    if not trusted:
        raise KeyStoreError(f"no usable trusted keys in {default_key_dir()}")
    log.info("Starting server with %d trusted public key(s)", len(trusted))
    for digest, pub in trusted.items():
        log.info("\t%s [%s]", pub.hex(), digest.hex())

    stop = threading.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, lambda *_: stop.set())

    registry = build_registry(Clipboard(line_ending=args.line_ending))
    serve(stop, args.port, trusted, io_timeout=args.timeout or None, registry=registry)


HANDLERS = {
    "copy":   cmd_copy,
    "paste":  cmd_paste,
    "open":   cmd_open,
    "genkey": cmd_genkey,
    "server": cmd_server,
}


def run(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv if argv is None else argv)
    try:
        parser, args = parse_command_line(argv)
    except UsageError as exc:
        build_parser().print_usage(sys.stderr)
        print(f"\n\n*** ERROR: {exc}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    if args.help:
        parser.print_help(sys.stderr)
        return EXIT_HELP

    setup_logging(args.debug)

    if args.command in DATA_COMMANDS and args.data is None:
        args.data = sys.stdin.read()
    log.debug("Received command \"%s\" [%s]", COMMANDS[args.command], args.data or "")

    try:
        HANDLERS[args.command](args)
    except KeysNotFound as exc:
        print(f"\n\n*** ERROR: {exc}", file=sys.stderr)
        return EXIT_NO_KEYS
    except (KeyStoreError, ChannelError, FrameError, RpcError, ServerError, OSError) as exc:
        print(f"\n\n*** ERROR: {exc}", file=sys.stderr)
        return EXIT_RPC_ERROR
    return EXIT_SUCCESS


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
