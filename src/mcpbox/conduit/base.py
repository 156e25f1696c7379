from abc import abstractmethod

from mcpbox.support.events import EventSource


class ConduitError(IOError):
    """ base class for conduit failures. """


class SpawnError(ConduitError):
    """ The worker process could not be launched. """


class ConduitNotConnectedError(ConduitError):
    """ A write was attempted with no live worker on the other end. """


class Conduit:
    """
    A conduit allows two-way communication with a worker. Data is written with write(). Data arriving from the
    worker is fired as raw byte chunks on the `data` event source, in arrival order but with no framing:
    one write by the worker may arrive as several chunks and several writes may arrive as one.

    Out of band diagnostic output is fired on `diagnostics`. When the worker goes away, `closed` is fired once
    with the conduit.
    """

    def __init__(self):
        self.data = EventSource()
        self.diagnostics = EventSource()
        self.closed = EventSource()

    @property
    @abstractmethod
    def target(self):
        """ the underlying resource, such as the process. """
        raise NotImplementedError

    @property
    @abstractmethod
    def open(self) -> bool:
        """ determines if this conduit is open. When open, write() may be called. """
        raise NotImplementedError

    @abstractmethod
    def write(self, data: bytes):
        """
        Sends bytes to the worker.
        raises ConduitNotConnectedError when the conduit is not open.
        """
        raise NotImplementedError

    @abstractmethod
    def close(self):
        """
        Releases the worker. Closing an already closed conduit does nothing.
        """
        raise NotImplementedError


class ConduitFactory:
    """
    A factory knows how to create a conduit given appropriate construction arguments.
    """
    @abstractmethod
    def __call__(self, *args, **kwargs):
        """
        Constructs the conduit from the given construction arguments.
        """
        raise NotImplementedError()
