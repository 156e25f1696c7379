import logging
import os
import threading

from mcpbox.conduit.base import ConduitFactory
from mcpbox.conduit.process_conduit import ProcessConduitFactory
from mcpbox.config.servers import LocalServerConfig
from mcpbox.connector.base import AbstractConnector, ConnectorStartedEvent, ConnectionNotConnectedError
from mcpbox.protocol.asynchronous import DEFAULT_REQUEST_TIMEOUT
from mcpbox.protocol.handshake import HandshakeFailedError
from mcpbox.protocol.mcp import McpProtocolHandler

logger = logging.getLogger(__name__)


class ProcessConnector(AbstractConnector):
    """
    Launches a worker process and conducts an MCP session over its standard streams.
    Connecting spawns the process and completes the handshake before the protocol handler is returned.

    :param config: describes the command to launch
    :param conduit_factory: creates the conduit for each launch
    :param request_timeout: the default seconds to wait for a response. The server's configured timeout is used
        when not given.
    """

    def __init__(self, config: LocalServerConfig, conduit_factory: ConduitFactory=None, request_timeout=None,
                 timer_factory=threading.Timer):
        super().__init__()
        self.config = config
        self.conduit_factory = conduit_factory or ProcessConduitFactory()
        self.request_timeout = request_timeout or config.timeout_seconds or DEFAULT_REQUEST_TIMEOUT
        self.timer_factory = timer_factory

    @property
    def endpoint(self):
        return self.config.command

    @property
    def name(self):
        return self.config.name

    def _connect(self) -> McpProtocolHandler:
        config = self.config
        conduit = self.conduit_factory(config.command, config.args, config.env, config.cwd)
        protocol = McpProtocolHandler(conduit, config.name, self.request_timeout, self.timer_factory)
        conduit.spawn()
        try:
            self._starting(protocol)
        except ConnectionNotConnectedError:
            conduit.close()
            raise
        self.events.fire(ConnectorStartedEvent(self))
        logger.info("started MCP server '%s': %s" % (config.name, self._command_line()))
        try:
            protocol.initialize(self.request_timeout).result()
        except HandshakeFailedError as e:
            protocol.shutdown(e)
            raise
        except Exception as e:
            protocol.shutdown()
            raise HandshakeFailedError("MCP server '%s' handshake failed: %s" % (config.name, e)) from e
        return protocol

    def _command_line(self):
        return " ".join([os.path.basename(self.config.command)] + self.config.args)

