import unittest
from unittest.mock import Mock

from hamcrest import assert_that, is_, calling, raises, instance_of

from mcpbox.connector.base import AbstractConnector, ConnectorConnectedEvent, ConnectorDisconnectedEvent, \
    ConnectorLostEvent, ConnectionNotConnectedError
from mcpbox.support.events import EventSource


class StubProtocol:
    def __init__(self):
        self.open = True
        self.closed = EventSource()
        self.shutdown = Mock()


class StubConnector(AbstractConnector):
    endpoint = "stub"

    def __init__(self):
        super().__init__()
        self.sessions = []

    def _connect(self):
        protocol = StubProtocol()
        self.sessions.append(protocol)
        return protocol


class AbstractConnectorTest(unittest.TestCase):
    def setUp(self):
        self.sut = StubConnector()
        self.events = []
        self.sut.events += self.events.append

    def test_not_connected(self):
        assert_that(self.sut.connected, is_(False))
        assert_that(calling(getattr).with_args(self.sut, 'protocol'), raises(ConnectionNotConnectedError, "stub"))

    def test_connect(self):
        protocol = self.sut.connect()
        assert_that(self.sut.protocol, is_(protocol))
        assert_that(self.sut.connect(), is_(protocol))
        assert_that(len(self.sut.sessions), is_(1))
        assert_that(self.events[0], is_(instance_of(ConnectorConnectedEvent)))

    def test_closed_session_reported_as_lost(self):
        protocol = self.sut.connect()
        reason = ConnectionNotConnectedError("gone")
        protocol.open = False
        protocol.closed.fire(protocol, reason)
        lost = self.events[-1]
        assert_that(lost, is_(instance_of(ConnectorLostEvent)))
        assert_that(lost.reason, is_(reason))

    def test_disconnect_shuts_down_session(self):
        protocol = self.sut.connect()
        reason = ConnectionNotConnectedError("bye")
        self.sut.disconnect(reason)
        protocol.shutdown.assert_called_once_with(reason)
        assert_that(self.events[-1], is_(instance_of(ConnectorDisconnectedEvent)))
        protocol.closed.fire(protocol, reason)
        assert_that(len(self.events), is_(2))

    def test_connect_after_session_closed_starts_new_one(self):
        first = self.sut.connect()
        first.open = False
        second = self.sut.connect()
        assert_that(second is first, is_(False))
        first.shutdown.assert_called_once_with(None)

    def test_session_established_after_disconnect_is_shut_down(self):
        protocols = []

        def connect_then_disconnect():
            protocol = StubProtocol()
            protocols.append(protocol)
            self.sut.disconnect()
            return protocol
        self.sut._connect = connect_then_disconnect
        assert_that(calling(self.sut.connect), raises(ConnectionNotConnectedError, "while connecting"))
        protocols[0].shutdown.assert_called_once()
        assert_that(self.sut.connected, is_(False))
        assert_that(self.events, is_([]))
