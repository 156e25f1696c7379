import json
import unittest
from unittest.mock import Mock

from hamcrest import assert_that, is_, equal_to, calling, raises, instance_of, has_length, empty

from mcpbox.conduit.base import Conduit, ConduitNotConnectedError
from mcpbox.connector.base import ConnectionNotConnectedError
from mcpbox.protocol.asynchronous_test import ManualTimer
from mcpbox.protocol.handshake import NotReadyError, HandshakeState, HandshakeFailedError
from mcpbox.protocol.jsonrpc import JsonRpcNotification, ProtocolError
from mcpbox.protocol.mcp import McpProtocolHandler


class FakeConduit(Conduit):
    """ A conduit to an imaginary worker. Tests feed it output and inspect what was written. """

    def __init__(self):
        super().__init__()
        self.written = []
        self.is_open = True
        self.returncode = None
        self.close_count = 0

    @property
    def target(self):
        return self

    @property
    def open(self):
        return self.is_open

    def write(self, data: bytes):
        if not self.is_open:
            raise ConduitNotConnectedError("closed")
        self.written.append(data)

    def close(self):
        self.close_count += 1
        if self.is_open:
            self.is_open = False
            self.closed.fire(self)

    def sent(self):
        return [json.loads(frame) for frame in self.written]

    def receive(self, data: bytes):
        self.data.fire(data)

    def respond(self, request_id, result=None, error=None):
        message = {"jsonrpc": "2.0", "id": request_id}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result if result is not None else {}
        self.receive(json.dumps(message).encode() + b"\n")

    def exit(self, returncode=1):
        self.returncode = returncode
        self.is_open = False
        self.closed.fire(self)


class McpProtocolHandlerTest(unittest.TestCase):
    def setUp(self):
        ManualTimer.created = []
        self.conduit = FakeConduit()
        self.sut = McpProtocolHandler(self.conduit, name="fake", timer_factory=ManualTimer)

    def complete_handshake(self):
        self.sut.initialize()
        self.conduit.respond(1, {})

    def test_request_before_handshake_fails_fast(self):
        assert_that(calling(self.sut.request).with_args("tools/list"), raises(NotReadyError))
        assert_that(calling(self.sut.notify).with_args("x"), raises(NotReadyError))
        assert_that(self.conduit.written, is_(empty()))

    def test_request_during_handshake_fails_fast(self):
        self.sut.initialize()
        assert_that(calling(self.sut.request).with_args("tools/list"), raises(NotReadyError))
        assert_that(self.conduit.written, has_length(1))

    def test_handshake_over_conduit(self):
        done = self.sut.initialize()
        self.conduit.respond(1, {"serverInfo": {"name": "fake"}})
        assert_that(done.done(), is_(True))
        assert_that(self.sut.ready, is_(True))
        sent = self.conduit.sent()
        assert_that([m["method"] for m in sent], is_(["initialize", "notifications/initialized"]))
        assert_that("id" in sent[1], is_(False))

    def test_request_and_response(self):
        self.complete_handshake()
        future = self.sut.request("tools/list", {"cursor": None})
        request = self.conduit.sent()[-1]
        assert_that(request["method"], is_("tools/list"))
        assert_that(request["id"], is_(2))
        self.conduit.respond(2, {"tools": [{"name": "read"}]})
        assert_that(future.result(0), is_(equal_to({"tools": [{"name": "read"}]})))

    def test_response_split_across_chunks(self):
        self.complete_handshake()
        future = self.sut.request("tools/list")
        self.conduit.receive(b'{"jsonrpc":"2.0","id":2,"resu')
        assert_that(future.done(), is_(False))
        self.conduit.receive(b'lt":{}}\n')
        assert_that(future.result(0), is_(equal_to({})))

    def test_protocol_error(self):
        self.complete_handshake()
        future = self.sut.request("tools/call")
        self.conduit.respond(2, error={"code": -32602, "message": "Unknown tool"})
        assert_that(calling(future.result).with_args(0), raises(ProtocolError, "Unknown tool"))

    def test_unknown_response_ignored(self):
        self.complete_handshake()
        future = self.sut.request("tools/list")
        self.conduit.respond(77, {})
        assert_that(future.done(), is_(False))

    def test_malformed_frame_skipped(self):
        self.complete_handshake()
        future = self.sut.request("tools/list")
        self.conduit.receive(b'garbage\n{"jsonrpc":"2.0","id":2,"result":{"ok":true}}\n')
        assert_that(future.result(0), is_(equal_to({"ok": True})))

    def test_notifications_fired(self):
        received = []
        self.sut.notification_handlers += received.append
        self.conduit.receive(b'{"jsonrpc":"2.0","method":"notifications/tools/list_changed"}\n')
        assert_that(received, is_([JsonRpcNotification("notifications/tools/list_changed")]))

    def test_inbound_request_refused(self):
        self.conduit.receive(b'{"jsonrpc":"2.0","id":"srv-1","method":"sampling/createMessage"}\n')
        reply = self.conduit.sent()[-1]
        assert_that(reply, is_(equal_to({"jsonrpc": "2.0", "id": "srv-1",
                                          "error": {"code": -32601, "message": "Method not found"}})))

    def test_notify(self):
        self.complete_handshake()
        self.sut.notify("notifications/cancelled", {"requestId": 5})
        assert_that(self.conduit.sent()[-1], is_(equal_to(
            {"jsonrpc": "2.0", "method": "notifications/cancelled", "params": {"requestId": 5}})))

    def test_ping(self):
        self.complete_handshake()
        future = self.sut.ping(timeout=3)
        assert_that(self.conduit.sent()[-1]["method"], is_("ping"))
        assert_that(ManualTimer.created[-1].interval, is_(3))
        self.conduit.respond(2, {})
        assert_that(future.result(0), is_(equal_to({})))

    def test_worker_exit_rejects_outstanding_and_fires_closed(self):
        self.complete_handshake()
        closed = Mock()
        self.sut.closed += closed
        futures = [self.sut.request("tools/list"), self.sut.request("prompts/list")]
        self.conduit.exit(2)
        for f in futures:
            assert_that(f.exception(0), is_(instance_of(ConnectionNotConnectedError)))
            assert_that(str(f.exception(0)), is_("MCP server 'fake' exited (code 2)"))
        closed.assert_called_once()
        assert_that(closed.call_args[0][0], is_(self.sut))
        assert_that(self.sut.open, is_(False))
        assert_that(calling(self.sut.request).with_args("x"), raises(ConnectionNotConnectedError))

    def test_exit_during_handshake_fails_handshake(self):
        done = self.sut.initialize()
        self.conduit.exit(1)
        assert_that(self.sut.handshake.state, is_(HandshakeState.failed))
        assert_that(done.exception(0), is_(instance_of(HandshakeFailedError)))

    def test_shutdown_rejects_and_closes_without_firing_closed(self):
        self.complete_handshake()
        closed = Mock()
        self.sut.closed += closed
        future = self.sut.request("tools/list")
        reason = ConnectionNotConnectedError("bye")
        self.sut.shutdown(reason)
        assert_that(future.exception(0), is_(reason))
        assert_that(self.conduit.close_count, is_(1))
        closed.assert_not_called()
        self.sut.shutdown()
        assert_that(self.sut.open, is_(False))

    def test_diagnostics_logged(self):
        log = Mock()
        self.sut = McpProtocolHandler(self.conduit, name="fake", log=log)
        self.conduit.diagnostics.fire(b"starting up\n\nlistening on stdio\n")
        assert_that(log.debug.call_count, is_(2))
