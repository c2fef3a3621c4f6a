"""
gclpr_rpc.py — Named-procedure calls carried over a secure channel.

Each call is one request message and one response message, both UTF-8 JSON:

  request   {"id": 7, "method": "Clipboard.Copy", "params": "hello"}
  response  {"id": 7, "result": null, "error": null}
            {"id": 7, "result": null, "error": "clipboard payload size ..."}

Procedures are registered once at startup in a ProcedureRegistry.  A failing
procedure or an unknown method produces an error response and the connection
stays usable.  A request that does not decode at all raises CallDecodeError,
which the server treats as terminal for the connection.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

log = logging.getLogger("gclpr.rpc")

Handler = Callable[[Any], Any]


class RpcError(Exception):
    pass


class CallDecodeError(RpcError):
    pass


class RemoteError(RpcError):
    """An error string returned by the server, surfaced verbatim."""
    pass


class ProcedureError(RpcError):
    """Raised by a procedure to report a caller-visible failure."""
    pass


# ── Codec ─────────────────────────────────────────────────────────────────────

def _dumps(obj: Dict) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _loads(data: bytes, what: str) -> Dict:
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CallDecodeError(f"invalid {what}: {exc}") from exc
    if not isinstance(obj, dict) or not isinstance(obj.get("id"), int):
        raise CallDecodeError(f"invalid {what}: missing call id")
    return obj


def encode_request(call_id: int, method: str, params: Any = None) -> bytes:
    return _dumps({"id": call_id, "method": method, "params": params})


def decode_request(data: bytes) -> Tuple[int, str, Any]:
    obj    = _loads(data, "request")
    method = obj.get("method")
    if not isinstance(method, str) or not method:
        raise CallDecodeError("invalid request: missing method name")
    return obj["id"], method, obj.get("params")


def encode_response(call_id: int, result: Any = None, error: Optional[str] = None) -> bytes:
    return _dumps({"id": call_id, "result": result, "error": error})


def decode_response(data: bytes) -> Tuple[int, Any, Optional[str]]:
    obj   = _loads(data, "response")
    error = obj.get("error")
    if error is not None and not isinstance(error, str):
        error = str(error)
    return obj["id"], obj.get("result"), error


# ── Registry ──────────────────────────────────────────────────────────────────

class ProcedureRegistry:
    """Maps "Service.Method" names to handlers taking one argument."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        if name in self._handlers:
            raise ValueError(f"procedure {name!r} is already registered")
        self._handlers[name] = handler

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def names(self):
        return sorted(self._handlers)

    def invoke(self, name: str, params: Any) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise ProcedureError(f"rpc: can't find method {name}")
        return handler(params)

    def dispatch(self, request: bytes) -> bytes:
        """Decode a request, run the procedure and encode its response."""
        call_id, method, params = decode_request(request)
        log.debug("Call #%d %s", call_id, method)
        try:
            result = self.invoke(method, params)
        except ProcedureError as exc:
            return encode_response(call_id, error=str(exc))
        except Exception as exc:
            log.exception("Procedure %s failed", method)
            return encode_response(call_id, error=str(exc) or exc.__class__.__name__)
        return encode_response(call_id, result=result)
