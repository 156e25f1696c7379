"""
The initialize/initialized exchange that opens every MCP session.

    idle --begin()--> initializing --result--> initialized --notification sent--> ready
                           |
                           +--error or timeout--> failed

No application request may be sent until the handshake is ready.
"""
import logging
import threading
from concurrent.futures import Future

from mcpbox.connector.base import ConnectorError
from mcpbox.protocol.asynchronous import RequestCorrelator
from mcpbox.protocol.jsonrpc import JsonRpcRequest, JsonRpcNotification

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-06-18"

CLIENT_INFO = {
    "name": "mcpbox",
    "title": "mcpbox MCP Client",
    "version": "0.1.0",
}

CLIENT_CAPABILITIES = {
    "tools": {},
    "resources": {},
    "prompts": {},
    "sampling": {},
    "elicitation": {},
}

INITIALIZE = "initialize"
INITIALIZED = "notifications/initialized"


class HandshakeState:
    idle = "idle"
    initializing = "initializing"
    initialized = "initialized"
    ready = "ready"
    failed = "failed"


class HandshakeFailedError(ConnectorError):
    """ The initialize request failed or timed out. """


class HandshakeStateError(RuntimeError):
    """ begin() was called on a handshake that has already started. """


class NotReadyError(ConnectorError):
    """ A request was attempted before the handshake completed. """


class Handshake:
    """
    Drives the handshake over a correlator.

    :param correlator: sends the initialize request and matches its response.
    :param notifier: a callable that sends a notification to the peer.
    """

    def __init__(self, correlator: RequestCorrelator, notifier, protocol_version=PROTOCOL_VERSION,
                 client_info=None, capabilities=None, log=logger):
        self._correlator = correlator
        self._notifier = notifier
        self.protocol_version = protocol_version
        self.client_info = dict(CLIENT_INFO if client_info is None else client_info)
        self.capabilities = dict(CLIENT_CAPABILITIES if capabilities is None else capabilities)
        self.state = HandshakeState.idle
        self.error = None
        self.server_info = None
        self.server_capabilities = None
        self.negotiated_version = None
        self.instructions = None
        self._lock = threading.Lock()
        self.logger = log

    @property
    def ready(self):
        return self.state == HandshakeState.ready

    def initialize_request(self) -> JsonRpcRequest:
        return JsonRpcRequest(self._correlator.allocate_id(), INITIALIZE, {
            "protocolVersion": self.protocol_version,
            "capabilities": self.capabilities,
            "clientInfo": self.client_info,
        })

    def begin(self, timeout=None) -> Future:
        """
        Sends the initialize request.
        :param timeout: seconds to wait for the initialize result, or None for the correlator default.
        :return: a future completed with the initialize result once the handshake is ready, or failed with
            HandshakeFailedError.
        """
        with self._lock:
            if self.state != HandshakeState.idle:
                raise HandshakeStateError("handshake already %s" % self.state)
            self.state = HandshakeState.initializing
        done = Future()
        self._correlator.send(self.initialize_request(),
                              lambda result: self._on_result(result, done),
                              lambda error: self._on_error(error, done),
                              timeout)
        return done

    def _on_result(self, result, done: Future):
        result = result if isinstance(result, dict) else {}
        with self._lock:
            if self.state != HandshakeState.initializing:
                return
            self.server_info = result.get("serverInfo")
            self.server_capabilities = result.get("capabilities", {})
            self.negotiated_version = result.get("protocolVersion", self.protocol_version)
            self.instructions = result.get("instructions")
            self.state = HandshakeState.initialized
        if self.negotiated_version != self.protocol_version:
            self.logger.info("server negotiated protocol version %s" % self.negotiated_version)
        try:
            self._notifier(JsonRpcNotification(INITIALIZED))
        except Exception as e:
            self._on_error(e, done)
            return
        with self._lock:
            self.state = HandshakeState.ready
        done.set_result(result)

    def _on_error(self, error, done: Future):
        with self._lock:
            if self.state == HandshakeState.failed:
                return
            self.state = HandshakeState.failed
            self.error = error
        self.logger.warning("handshake failed: %s" % error)
        failure = HandshakeFailedError("initialize failed: %s" % error)
        failure.__cause__ = error
        done.set_exception(failure)

    def check_ready(self):
        """ raises NotReadyError unless the handshake has completed. """
        if self.state != HandshakeState.ready:
            raise NotReadyError("MCP session is not ready (handshake %s)" % self.state)
