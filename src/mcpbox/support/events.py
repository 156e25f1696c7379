import logging
import threading

logger = logging.getLogger(__name__)


class EventSource(object):
    """
    A list of handlers that are all called when an event is fired.

    Handlers may be added and removed from any thread, including from inside a handler while an
    event is being fired. Firing iterates a snapshot of the handlers, so such changes take effect
    from the next event.

    An exception raised by one handler is logged and does not stop delivery to the remaining
    handlers, nor does it propagate to the code that fired the event.
    """

    def __init__(self, log=logger):
        self._handlers = []
        self._lock = threading.Lock()
        self.logger = log

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def __len__(self):
        return len(self._handlers)

    def add(self, handler):
        with self._lock:
            self._handlers = self._handlers + [handler]
        return self

    def remove(self, handler):
        with self._lock:
            if handler in self._handlers:
                handlers = list(self._handlers)
                handlers.remove(handler)
                self._handlers = handlers
        return self

    def clear(self):
        with self._lock:
            self._handlers = []

    def handlers(self):
        return tuple(self._handlers)

    def fire(self, *args, **kwargs):
        self._fire(*args, **kwargs)

    def fire_all(self, events):
        for e in events:
            self._fire(e)

    def _fire(self, *args, **kwargs):
        for handler in self.handlers():
            try:
                handler(*args, **kwargs)
            except Exception as e:
                self.logger.exception("event handler %r failed: %s" % (handler, e))
