"""
The health events broadcast by the connection supervisor, and the snapshots it reports.

Subscribers receive one HealthEvent per lifecycle change of a server:

    healthy         a health check succeeded
    unhealthy       a health check failed, the worker exited, or a connection attempt failed
    restarting      a restart attempt is starting (attempt counts from 1 for each failure)
    restarted       a restart attempt succeeded
    restart_failed  every restart attempt failed, the server is left failed
"""
from mcpbox.support.mixins import CommonEqualityMixin, StringerMixin, FrozenMixin


class ConnectionState:
    disconnected = "disconnected"
    connecting = "connecting"
    handshaking = "handshaking"
    ready = "ready"
    unhealthy = "unhealthy"
    restarting = "restarting"
    failed = "failed"

    # states in which the health of the server is monitored
    monitored = (ready, unhealthy)


class HealthEvent(CommonEqualityMixin, StringerMixin, FrozenMixin):
    """ base class for health events. Events are immutable once constructed. """
    type = None

    def __init__(self, server_name):
        self.server_name = server_name
        self._freeze()


class HealthyEvent(HealthEvent):
    type = "healthy"


class UnhealthyEvent(HealthEvent):
    type = "unhealthy"

    def __init__(self, server_name, error):
        self.error = error
        super().__init__(server_name)


class RestartingEvent(HealthEvent):
    type = "restarting"

    def __init__(self, server_name, attempt):
        self.attempt = attempt
        super().__init__(server_name)


class RestartedEvent(HealthEvent):
    type = "restarted"


class RestartFailedEvent(HealthEvent):
    type = "restart_failed"

    def __init__(self, server_name, error):
        self.error = error
        super().__init__(server_name)


class ServerHealth(CommonEqualityMixin, StringerMixin, FrozenMixin):
    """
    A point in time view of a connection.
    :param uptime_ms: milliseconds since the current worker was launched, 0 when not running
    :param last_error: a description of the most recent failure, or None
    :param last_check: the wall clock time of the last health check or state change
    """

    def __init__(self, server_name, state, restart_count=0, uptime_ms=0, last_error=None, last_check=None):
        self.server_name = server_name
        self.state = state
        self.restart_count = restart_count
        self.uptime_ms = uptime_ms
        self.last_error = last_error
        self.last_check = last_check
        self._freeze()

    @property
    def healthy(self):
        return self.state == ConnectionState.ready
