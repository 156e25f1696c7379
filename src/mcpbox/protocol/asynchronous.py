"""
Provides building blocks for asynchronous request/response protocols: background loops, futures, and a
correlator that pairs each response with the request that caused it.
"""
import itertools
import logging
import threading
import time
from concurrent.futures import Future, InvalidStateError
from typing import Callable

from mcpbox.protocol.jsonrpc import JsonRpcRequest, JsonRpcResponse, encode
from mcpbox.support.events import EventSource

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0


class RequestTimeoutError(TimeoutError):
    """ No response arrived for a request before its deadline. """

    def __init__(self, method, timeout=None):
        super().__init__("MCP request timeout: %s" % method)
        self.method = method
        self.timeout = timeout


class RequestAbortedError(IOError):
    """ The request was abandoned before a response arrived, typically because the connection closed. """


class FutureValue(Future):
    """ describes a value that may have not yet been computed. Callers can check if the value has arrived, or chose to
        wait until the value has arrived.
        If an exception is encountered computing the value, it is set."""

    def set_result_or_exception(self, value):
        """ completes the future, unless it is already complete.
        :return: True if this call completed the future.
        """
        try:
            if isinstance(value, BaseException):
                self.set_exception(value)
            else:
                self.set_result(value)
            return True
        except InvalidStateError:
            return False

    def value(self, timeout=None):
        """ waits for the result, raising the exception if the computation failed. """
        return self.result(timeout)


class FutureResponse(FutureValue):
    """ Relates a request and its future result."""

    def __init__(self, request: JsonRpcRequest):
        super().__init__()
        self._request = request
        self.response = None

    @property
    def request(self):
        return self._request


class PendingRequest:
    """ The bookkeeping for one request that has been sent and not yet answered. """

    def __init__(self, future: FutureResponse, on_result=None, on_error=None, timeout=None):
        self.future = future
        self.on_result = on_result
        self.on_error = on_error
        self.timeout = timeout
        self.timer = None

    @property
    def method(self):
        return self.future.request.method

    def cancel_deadline(self):
        timer = self.timer
        if timer is not None:
            timer.cancel()


class AsyncLoop:
    """ Continually runs a given function on a background thread.
        Exceptions are logged and posted to a given handler
        The background thread is registered as a daemon.
    """

    def __init__(self, fn: Callable=None, args=(), log=logger, name=None):
        """
        :param fn the function to run
        :param args arguments to pass to fn
        :param name the name given to the background thread
        """
        self.fn = fn
        self.args = args
        self.name = name
        self.stop_event = threading.Event()
        self.background_thread = None
        self.logger = log
        self._lock = threading.Lock()

    def start(self):
        """ Starts the background thread, if not already started. """
        with self._lock:
            if self.background_thread is None:
                t = threading.Thread(target=self._run, name=self.name, daemon=True)
                self.background_thread = t
                t.start()

    def exception_handler(self, e):
        self.logger.exception(e)

    def _run(self):
        """ The processing loop for the background thread.
             Invokes the callable for as long as the stop signal is not received.
        """
        self._do(self.startup)
        while self.running():
            self._do(self.loop)
        self._do(self.shutdown)
        self.logger.debug("background thread %s exiting" % threading.current_thread().name)

    def _do(self, callme):
        """ runs a function and captures any exceptions """
        try:
            time.sleep(0)
            callme()
        except Exception as e:
            time.sleep(0)
            self.exception_handler(e)

    def startup(self):
        """ template method called when the thread starts"""
        pass

    def loop(self):
        self.fn(*self.args)

    def shutdown(self):
        """ template method called when the thread exits """
        pass

    def running(self):
        return not self.stop_event.is_set()

    def stop(self, timeout=None):
        """ signals the loop to stop, and waits for the thread to exit unless called from that thread. """
        self.stop_event.set()
        with self._lock:
            thread = self.background_thread
            self.background_thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout)


class RequestCorrelator:
    """
    Pairs responses with the requests that caused them.

    Each request sent is recorded against its id, together with a FutureResponse and a deadline. When a
    response with the same id is given to resolve(), the entry is removed and the future completed with the
    result, or with a ProtocolError when the response carries an error. When the deadline passes first, the
    entry is removed and the future fails with RequestTimeoutError. Removing the entry decides the outcome,
    so a response racing its deadline produces exactly one of the two.

    Responses for ids that are not pending, such as late responses after a timeout, are discarded.

    :param writer: a callable that writes an encoded frame to the peer.
    :param timeout: the default time in seconds to wait for a response.
    :param timer_factory: creates the deadline timers. Takes (interval, function, args).
    """

    def __init__(self, writer: Callable[[bytes], None], timeout=DEFAULT_REQUEST_TIMEOUT,
                 timer_factory=threading.Timer, log=logger):
        self._writer = writer
        self.timeout = timeout
        self._timer_factory = timer_factory
        self._pending = dict()
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.logger = log
        self.request_handlers = EventSource()
        self.response_handlers = EventSource()

    def allocate_id(self) -> int:
        """ returns a request id that has not been used by this correlator. """
        with self._lock:
            return next(self._ids)

    @property
    def pending_count(self):
        return len(self._pending)

    def pending_ids(self):
        with self._lock:
            return list(self._pending.keys())

    def send(self, request: JsonRpcRequest, on_result=None, on_error=None, timeout=None) -> FutureResponse:
        """
        Records the request as pending and writes it to the peer.

        :param request: the request to send. Its id must not be pending.
        :param on_result: called with the result when a successful response arrives.
        :param on_error: called with the exception when the request fails.
        :param timeout: seconds to wait for the response, or None for this correlator's default.
        :return: a future completed with the result, or failed with the error.
        """
        timeout = self.timeout if timeout is None else timeout
        future = FutureResponse(request)
        pending = PendingRequest(future, on_result, on_error, timeout)
        with self._lock:
            if request.id in self._pending:
                raise ValueError("request id %s is already pending" % request.id)
            self._pending[request.id] = pending
        if timeout is not None and timeout > 0:
            timer = self._timer_factory(timeout, self._expire, args=(request.id, pending))
            timer.daemon = True
            pending.timer = timer
            timer.start()
        self.request_handlers.fire(future)
        try:
            self._writer(encode(request))
        except Exception as e:
            if self._take(request.id, pending):
                pending.cancel_deadline()
                self._fail(pending, e)
        return future

    def discard_future(self, future: FutureResponse):
        """ abandons a request. The future is cancelled and a later response is ignored. """
        pending = self._take(future.request.id)
        if pending is not None:
            pending.cancel_deadline()
            future.cancel()

    def resolve(self, response: JsonRpcResponse) -> bool:
        """
        Completes the pending request matching the response id.
        :return: True if a pending request was completed, False if the response was discarded.
        """
        pending = self._take(response.response_key)
        self.response_handlers.fire(response, pending)
        if pending is None:
            self.logger.debug("discarding response for unknown request id %s" % response.response_key)
            return False
        pending.cancel_deadline()
        pending.future.response = response
        if response.is_error:
            self._fail(pending, response.error.to_exception())
        else:
            self._succeed(pending, response.result)
        return True

    def reject_all(self, reason):
        """
        Fails every pending request with the given reason and clears the table.
        :param reason: an exception, or a message used to build a RequestAbortedError.
        :return: the number of requests rejected.
        """
        if not isinstance(reason, BaseException):
            reason = RequestAbortedError(str(reason))
        with self._lock:
            rejected = list(self._pending.values())
            self._pending.clear()
        for pending in rejected:
            pending.cancel_deadline()
            self._fail(pending, reason)
        return len(rejected)

    def _take(self, request_id, expected: PendingRequest=None):
        """ removes and returns the pending entry for the id. Returns None if another outcome already claimed it. """
        with self._lock:
            pending = self._pending.get(request_id)
            if pending is None or (expected is not None and pending is not expected):
                return None
            del self._pending[request_id]
            return pending

    def _expire(self, request_id, pending):
        if self._take(request_id, pending) is not None:
            self.logger.warning("request %s (%s) timed out after %ss" % (request_id, pending.method, pending.timeout))
            self._fail(pending, RequestTimeoutError(pending.method, pending.timeout))

    def _succeed(self, pending: PendingRequest, result):
        pending.future.set_result_or_exception(result)
        self._callback(pending.on_result, result)

    def _fail(self, pending: PendingRequest, error):
        pending.future.set_result_or_exception(error)
        self._callback(pending.on_error, error)

    def _callback(self, fn, value):
        if fn is None:
            return
        try:
            fn(value)
        except Exception as e:
            self.logger.exception("request callback failed: %s" % e)
