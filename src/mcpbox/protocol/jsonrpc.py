"""
JSON-RPC 2.0 messages and their newline-delimited wire framing.

Each frame is a single JSON object terminated by a line feed. Outgoing messages are encoded with encode().
Incoming bytes are given to a LineDecoder, which reassembles frames split across reads and fires each
decoded message to its listeners.
"""
import json
import logging

from mcpbox.support.events import EventSource
from mcpbox.support.mixins import CommonEqualityMixin, StringerMixin

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

# error codes reserved by JSON-RPC 2.0
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class MalformedFrameError(ValueError):
    """ A line received from the peer could not be decoded as a JSON-RPC message. """

    def __init__(self, reason, line=None):
        super().__init__(reason)
        self.line = line


class ProtocolError(Exception):
    """ The peer answered a request with a JSON-RPC error object. """

    def __init__(self, code, message, data=None):
        super().__init__("MCP error %s: %s" % (code, message))
        self.code = code
        self.message = message
        self.data = data


class JsonRpcMessage(CommonEqualityMixin, StringerMixin):
    """ Base class for the three kinds of message. """

    def to_dict(self) -> dict:
        raise NotImplementedError()


class JsonRpcRequest(JsonRpcMessage):
    """ A call that expects a response carrying the same id. """

    def __init__(self, id, method: str, params=None):
        self.id = id
        self.method = method
        self.params = params

    @property
    def response_key(self):
        return self.id

    def to_dict(self):
        d = {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method}
        if self.params is not None:
            d["params"] = self.params
        return d


class JsonRpcNotification(JsonRpcMessage):
    """ A one way message. Nothing is sent back. """

    def __init__(self, method: str, params=None):
        self.method = method
        self.params = params

    def to_dict(self):
        d = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            d["params"] = self.params
        return d


class JsonRpcError(CommonEqualityMixin, StringerMixin):
    """ The error member of a failed response. """

    def __init__(self, code: int, message: str, data=None):
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_dict(cls, d):
        if not isinstance(d, dict):
            return cls(INTERNAL_ERROR, str(d))
        return cls(d.get("code", INTERNAL_ERROR), d.get("message", "Unknown error"), d.get("data"))

    def to_dict(self):
        d = {"code": self.code, "message": self.message}
        if self.data is not None:
            d["data"] = self.data
        return d

    def to_exception(self) -> ProtocolError:
        return ProtocolError(self.code, self.message, self.data)


class JsonRpcResponse(JsonRpcMessage):
    """ The outcome of a request: exactly one of result or error is meaningful. """

    def __init__(self, id, result=None, error: JsonRpcError=None):
        self.id = id
        self.result = result
        self.error = error

    @property
    def response_key(self):
        return self.id

    @property
    def is_error(self):
        return self.error is not None

    def to_dict(self):
        d = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            d["error"] = self.error.to_dict()
        else:
            d["result"] = self.result
        return d


def encode(message: JsonRpcMessage) -> bytes:
    """
    Encodes a message as a single frame.

    >>> encode(JsonRpcNotification("notifications/initialized"))
    b'{"jsonrpc":"2.0","method":"notifications/initialized"}\\n'
    """
    text = json.dumps(message.to_dict(), separators=(',', ':'), ensure_ascii=False)
    return text.encode('utf-8') + b'\n'


def decode_message(obj) -> JsonRpcMessage:
    """
    Classifies a decoded JSON value as a response, request or notification.
    raises MalformedFrameError when the value is none of these.
    """
    if not isinstance(obj, dict):
        raise MalformedFrameError("frame is not a JSON object")
    has_id = "id" in obj
    method = obj.get("method")
    if has_id and ("result" in obj or "error" in obj):
        error = obj.get("error")
        if error is None and "result" not in obj:
            raise MalformedFrameError("response has neither a result nor an error")
        return JsonRpcResponse(obj["id"], obj.get("result"),
                               JsonRpcError.from_dict(error) if error is not None else None)
    if method is not None and not isinstance(method, str):
        raise MalformedFrameError("method must be a string")
    if has_id and obj["id"] is not None and method:
        return JsonRpcRequest(obj["id"], method, obj.get("params"))
    if method and not has_id:
        return JsonRpcNotification(method, obj.get("params"))
    raise MalformedFrameError("frame is not a request, response or notification")


def parse_frame(line: bytes) -> JsonRpcMessage:
    """ Decodes one frame, without its line terminator. """
    try:
        obj = json.loads(line.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedFrameError(str(e), line) from e
    try:
        return decode_message(obj)
    except MalformedFrameError as e:
        e.line = line
        raise


class LineDecoder:
    """
    Splits a byte stream into frames and decodes them.

    Bytes are given to feed() as they arrive, in whatever chunks the stream delivers. Complete lines are
    decoded and fired to `messages`. A line that cannot be decoded is fired to `errors` as a
    MalformedFrameError and skipped. Trailing bytes without a line terminator are kept until more data
    arrives.
    """

    def __init__(self):
        self._buffer = bytearray()
        self.messages = EventSource()
        self.errors = EventSource()

    @property
    def buffered(self) -> bytes:
        """ the bytes of an incomplete frame waiting for its terminator """
        return bytes(self._buffer)

    def reset(self):
        self._buffer.clear()

    def feed(self, chunk: bytes):
        """
        Appends a chunk and fires any messages completed by it.
        :return: the list of messages decoded from this chunk
        """
        self._buffer.extend(chunk)
        decoded = []
        while True:
            end = self._buffer.find(b'\n')
            if end < 0:
                break
            line = bytes(self._buffer[:end]).rstrip(b'\r')
            del self._buffer[:end + 1]
            if not line.strip():
                continue
            try:
                message = parse_frame(line)
            except MalformedFrameError as e:
                logger.warning("discarding malformed frame: %s" % e)
                self.errors.fire(e)
                continue
            decoded.append(message)
            self.messages.fire(message)
        return decoded
