import logging
import threading
from abc import abstractmethod

from mcpbox.support.events import EventSource

logger = logging.getLogger(__name__)


class ConnectorError(Exception):
    """ Indicates an error condition with a connection. """


class ConnectionNotConnectedError(ConnectorError):
    """ Indicates a connection is in the disconnected state when a connection is required. """


class ConnectionNotAvailableError(ConnectorError):
    """ Indicates the connection endpoint cannot be reached by any available transport. """


class ConnectorEvent:
    """ base class for connector events. """
    def __init__(self, connector):
        self.connector = connector


class ConnectorStartedEvent(ConnectorEvent):
    """ The transport to the endpoint is up and the handshake is starting. """


class ConnectorConnectedEvent(ConnectorEvent):
    """ The connector was connected and its session is ready. """


class ConnectorDisconnectedEvent(ConnectorEvent):
    """ The connector was disconnected on request. """


class ConnectorLostEvent(ConnectorEvent):
    """ The connection went away without being asked to, e.g. the worker process exited. """
    def __init__(self, connector, reason):
        super().__init__(connector)
        self.reason = reason


class Connector:
    """ A connector describes an endpoint to which an MCP session can be established. """

    def __init__(self):
        self.events = EventSource()

    @property
    @abstractmethod
    def endpoint(self):
        """ the endpoint that this connector reaches out to """
        raise NotImplementedError

    @property
    @abstractmethod
    def connected(self) -> bool:
        """
        :return: True if this connector has a live, initialized session.
        """
        raise NotImplementedError

    @property
    @abstractmethod
    def protocol(self):
        """
        Retrieves the protocol handler for the session.
        raises ConnectionNotConnectedError if not connected.
        """
        raise ConnectionNotConnectedError

    @abstractmethod
    def connect(self):
        """
        Establishes the session: starts the transport and completes the handshake.
        If already connected, returns the existing protocol handler.
        :return: the protocol handler for the session.
        """
        raise NotImplementedError

    @abstractmethod
    def disconnect(self, reason=None):
        raise NotImplementedError


class AbstractConnector(Connector):
    """ Manages the connection cycle to an endpoint."""

    def __init__(self):
        super().__init__()
        self._protocol = None
        self._connecting = None
        self._abandoned = False
        self._lock = threading.Lock()

    @property
    def connected(self):
        protocol = self._protocol
        return protocol is not None and protocol.open

    def connect(self):
        if self.connected:
            return self._protocol
        self.disconnect()
        with self._lock:
            self._abandoned = False
        protocol = None
        try:
            protocol = self._connect()
        finally:
            with self._lock:
                self._connecting = None
                abandoned = self._abandoned
                if protocol is not None and not abandoned:
                    self._protocol = protocol
        if abandoned:
            reason = ConnectionNotConnectedError("disconnected from %s while connecting" % self.endpoint)
            protocol.shutdown(reason)
            raise reason
        protocol.closed.add(self._protocol_closed)
        self.events.fire(ConnectorConnectedEvent(self))
        return protocol

    def _starting(self, protocol):
        """
        Called by subclasses with the session being established, before the transport is started, so that
        disconnect() can shut it down before the handshake completes.
        raises ConnectionNotConnectedError when disconnect() was called since connect() began.
        """
        with self._lock:
            if self._abandoned:
                raise ConnectionNotConnectedError("disconnected from %s while connecting" % self.endpoint)
            self._connecting = protocol

    def disconnect(self, reason=None):
        """
        Shuts down the session, rejecting any outstanding requests with the given reason. A session still being
        established is shut down too, failing the connect() in progress.
        Does nothing when not connected.
        """
        with self._lock:
            protocol = self._protocol
            self._protocol = None
            connecting = self._connecting
            self._connecting = None
            self._abandoned = True
        if connecting is not None:
            connecting.shutdown(reason)
        if protocol is None:
            return
        protocol.closed.remove(self._protocol_closed)
        self._disconnect()
        protocol.shutdown(reason)
        self.events.fire(ConnectorDisconnectedEvent(self))

    def _protocol_closed(self, protocol, reason):
        if protocol is self._protocol:
            logger.info("connection to %s lost: %s" % (self.endpoint, reason))
            self.events.fire(ConnectorLostEvent(self, reason))

    @abstractmethod
    def _connect(self):
        """ Template method for subclasses to perform the connection.
            Returns a started protocol handler whose handshake has completed.
            If connection is not possible, an exception should be thrown.
        """
        raise NotImplementedError

    def _disconnect(self):
        """ template method for subclasses to perform any actions needed on disconnection.
        The base class shuts down the protocol after this method has been called.
        """
        pass

    @property
    def protocol(self):
        """
        Retrieves the protocol handler for the session.
        raises ConnectionNotConnectedError if not connected
        """
        self.check_connected()
        return self._protocol

    def check_connected(self):
        if not self.connected:
            raise ConnectionNotConnectedError("not connected to %s" % self.endpoint)
