import logging
import os
import subprocess
import threading

from mcpbox.conduit.base import Conduit, ConduitError, ConduitFactory, ConduitNotConnectedError, SpawnError
from mcpbox.protocol.asynchronous import AsyncLoop
from mcpbox.support.events import EventSource

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 65536
DEFAULT_KILL_TIMEOUT = 5.0


class StreamPump(AsyncLoop):
    """
    Reads a stream on a background thread and fires each chunk read to an event source.
    Stops when the stream reaches end of file, then calls on_eof.
    """

    def __init__(self, stream, events: EventSource, on_eof=None, name=None, chunk_size=DEFAULT_CHUNK_SIZE):
        super().__init__(name=name)
        self.stream = stream
        self.events = events
        self.on_eof = on_eof
        self.chunk_size = chunk_size

    def _read(self):
        read = getattr(self.stream, 'read1', None) or self.stream.read
        try:
            return read(self.chunk_size)
        except (OSError, ValueError):
            # the stream was closed underneath us
            return b''

    def loop(self):
        chunk = self._read()
        if not chunk:
            self.stop_event.set()
            return
        self.events.fire(chunk)

    def shutdown(self):
        try:
            self.stream.close()
        except (OSError, ValueError):
            pass
        if self.on_eof:
            self.on_eof()


class ProcessConduit(Conduit):
    """
    Provides a conduit to a locally hosted worker process over its standard streams.
    stdout is fired on `data`, stderr on `diagnostics`, and `closed` is fired when stdout is exhausted.

    :param command: the executable to launch
    :param args: arguments passed to the executable
    :param env: environment variables added to those inherited from this process
    :param cwd: the working directory for the process
    :param kill_timeout: seconds to wait for the process to exit after terminating it before killing it
    """

    def __init__(self, command, args=(), env=None, cwd=None, kill_timeout=DEFAULT_KILL_TIMEOUT,
                 popen=subprocess.Popen):
        super().__init__()
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.cwd = cwd
        self.kill_timeout = kill_timeout
        self._popen = popen
        self.process = None
        self.returncode = None
        self._pumps = []
        self._write_lock = threading.Lock()
        self._closed_lock = threading.Lock()
        self._closed_fired = False

    @property
    def target(self):
        return self.process

    @property
    def pid(self):
        process = self.process
        return process.pid if process is not None else None

    def spawn(self):
        """
        Launches the process and starts reading its output. Listeners should be registered before calling
        this so that no output is missed.
        raises SpawnError if the process cannot be launched.
        :return: the process
        """
        if self.process is not None:
            raise ConduitError("process already spawned for %s" % self.command)
        environment = dict(os.environ)
        environment.update(self.env)
        try:
            p = self._popen([self.command] + self.args, cwd=self.cwd, env=environment,
                            stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except (OSError, ValueError) as e:
            raise SpawnError("unable to start '%s': %s" % (self.command, e)) from e
        self.process = p
        logger.debug("started %s (pid %s)" % (self.command, p.pid))
        name = os.path.basename(str(self.command))
        self._pumps = [StreamPump(p.stdout, self.data, self._output_closed, name="%s-stdout" % name),
                       StreamPump(p.stderr, self.diagnostics, name="%s-stderr" % name)]
        for pump in self._pumps:
            pump.start()
        return p

    @property
    def open(self):
        """
        The conduit is open while the process is set and alive, and its output has not ended. The output can
        end before the exited process can be reaped.
        """
        process = self.process
        return process is not None and not self._closed_fired and process.poll() is None

    def write(self, data: bytes):
        process = self.process
        if process is None or process.poll() is not None:
            raise ConduitNotConnectedError("MCP server not connected: %s" % self.command)
        with self._write_lock:
            try:
                process.stdin.write(data)
                process.stdin.flush()
            except (OSError, ValueError) as e:
                raise ConduitNotConnectedError("write to %s failed: %s" % (self.command, e)) from e

    def _output_closed(self):
        process = self.process
        if process is not None:
            self.returncode = process.poll()
        with self._closed_lock:
            if self._closed_fired:
                return
            self._closed_fired = True
        self.closed.fire(self)

    def wait_for_exit(self, timeout=None):
        process = self.process
        if process is not None:
            self.returncode = process.wait(timeout)
        return self.returncode

    def kill(self):
        """
        Terminates the process, killing it if it does not exit within kill_timeout. Safe to call when the
        process has already exited or was never started.
        """
        process = self.process
        if process is None:
            return
        self.process = None
        try:
            process.stdin.close()
        except (OSError, ValueError):
            pass
        try:
            process.terminate()
        except OSError:
            pass
        try:
            self.returncode = process.wait(self.kill_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("%s (pid %s) did not exit, killing it" % (self.command, process.pid))
            try:
                process.kill()
            except OSError:
                pass
            self.returncode = process.wait()
        for pump in self._pumps:
            pump.stop(self.kill_timeout)
        self._pumps = []

    def close(self):
        self.kill()


class ProcessConduitFactory(ConduitFactory):
    """ Creates unstarted process conduits. """

    def __init__(self, kill_timeout=DEFAULT_KILL_TIMEOUT):
        self.kill_timeout = kill_timeout

    def __call__(self, command, args=(), env=None, cwd=None):
        return ProcessConduit(command, args, env=env, cwd=cwd, kill_timeout=self.kill_timeout)
