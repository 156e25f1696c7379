import logging
import threading

from mcpbox.conduit.base import Conduit
from mcpbox.connector.base import ConnectionNotConnectedError
from mcpbox.protocol.asynchronous import RequestCorrelator, FutureResponse, DEFAULT_REQUEST_TIMEOUT
from mcpbox.protocol.handshake import Handshake
from mcpbox.protocol.jsonrpc import LineDecoder, JsonRpcRequest, JsonRpcResponse, JsonRpcNotification, \
    JsonRpcError, JsonRpcMessage, MalformedFrameError, METHOD_NOT_FOUND, encode
from mcpbox.support.events import EventSource

logger = logging.getLogger(__name__)

PING = "ping"


class McpProtocolHandler:
    """
    Conducts an MCP session over a conduit.

    Bytes from the conduit are decoded into messages. Responses complete the matching request, notifications
    are fired to `notification_handlers`, and requests from the worker are refused since this client offers no
    methods of its own. Requests and notifications may only be sent once the handshake is ready.

    When the conduit closes without shutdown() having been called, every outstanding request is rejected and
    `closed` is fired with (handler, reason).

    The handler registers with the conduit on construction. Start the conduit afterwards so that no output is
    missed.

    :param conduit: the conduit to the worker
    :param name: the server name, used in log messages
    :param timeout: the default seconds to wait for a response
    """

    def __init__(self, conduit: Conduit, name=None, timeout=DEFAULT_REQUEST_TIMEOUT,
                 timer_factory=threading.Timer, log=logger):
        self._conduit = conduit
        self.name = name or "mcp"
        self.logger = log
        self.decoder = LineDecoder()
        self.correlator = RequestCorrelator(self._write, timeout, timer_factory)
        self.handshake = Handshake(self.correlator, self._send_notification)
        self.notification_handlers = EventSource()
        self.closed = EventSource()
        self._shutdown = False
        self.decoder.messages.add(self.process_message)
        self.decoder.errors.add(self._malformed_frame)
        conduit.data.add(self.decoder.feed)
        conduit.diagnostics.add(self._diagnostic)
        conduit.closed.add(self._conduit_closed)

    @property
    def conduit(self):
        return self._conduit

    @property
    def open(self):
        return not self._shutdown and self._conduit.open

    @property
    def ready(self):
        return self.open and self.handshake.ready

    def initialize(self, timeout=None):
        """ begins the handshake. See Handshake.begin() """
        return self.handshake.begin(timeout)

    def _check_sendable(self):
        if not self.open:
            raise ConnectionNotConnectedError("MCP server '%s' not connected" % self.name)
        self.handshake.check_ready()

    def request(self, method, params=None, timeout=None, on_result=None, on_error=None) -> FutureResponse:
        """
        Sends a request.
        raises NotReadyError before the handshake completes, ConnectionNotConnectedError after the conduit closed.
        :return: a future for the result.
        """
        self._check_sendable()
        request = JsonRpcRequest(self.correlator.allocate_id(), method, params)
        return self.correlator.send(request, on_result, on_error, timeout)

    def notify(self, method, params=None):
        self._check_sendable()
        self._send_notification(JsonRpcNotification(method, params))

    def ping(self, timeout=None):
        """ sends a ping request, a cheap probe that the worker is responsive. """
        return self.request(PING, timeout=timeout)

    def _send_notification(self, notification: JsonRpcNotification):
        self._write(encode(notification))

    def _write(self, frame: bytes):
        self._conduit.write(frame)

    def process_message(self, message: JsonRpcMessage):
        """ dispatches a message decoded from the conduit. """
        if isinstance(message, JsonRpcResponse):
            self.correlator.resolve(message)
        elif isinstance(message, JsonRpcNotification):
            self.logger.debug("%s notification: %s" % (self.name, message.method))
            self.notification_handlers.fire(message)
        elif isinstance(message, JsonRpcRequest):
            self._refuse(message)

    def _refuse(self, request: JsonRpcRequest):
        self.logger.info("%s sent unsupported request '%s'" % (self.name, request.method))
        response = JsonRpcResponse(request.id, error=JsonRpcError(METHOD_NOT_FOUND, "Method not found"))
        try:
            self._write(encode(response))
        except IOError as e:
            self.logger.debug("unable to refuse request %s: %s" % (request.id, e))

    def _malformed_frame(self, error: MalformedFrameError):
        self.logger.warning("%s sent a malformed frame: %s %r" % (self.name, error, error.line))

    def _diagnostic(self, chunk: bytes):
        for line in chunk.decode('utf-8', errors='replace').splitlines():
            if line.strip():
                self.logger.debug("%s stderr: %s" % (self.name, line))

    def _conduit_closed(self, conduit):
        self.decoder.reset()
        if self._shutdown:
            return
        returncode = getattr(conduit, 'returncode', None)
        reason = ConnectionNotConnectedError("MCP server '%s' exited (code %s)" % (self.name, returncode))
        self.correlator.reject_all(reason)
        self.closed.fire(self, reason)

    def shutdown(self, reason=None):
        """
        Ends the session: rejects all outstanding requests and closes the conduit. Safe to call more than once.
        """
        if reason is None:
            reason = ConnectionNotConnectedError("MCP server '%s' disconnected" % self.name)
        self._shutdown = True
        self.correlator.reject_all(reason)
        self._conduit.close()
