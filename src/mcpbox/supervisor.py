"""
Supervises the connections to MCP servers.

Each server is connected by name. While connected, the supervisor checks its health at regular intervals by
sending a ping. When a check fails, or the worker exits unexpectedly, the server is marked unhealthy and, when
its configuration allows, restarted with increasing delays between attempts. After the configured number of
failed attempts the server is left failed until it is connected again.

Every change is broadcast as a HealthEvent to the handlers registered with on_health_event(). For one server
the events of a failure always follow the order

    unhealthy, restarting(1), ..., restarting(n), restarted | restart_failed

Threads: each monitored server has a HealthMonitorLoop, each failure is handled by a RestartLoop, and the
worker output is read on the conduit's own threads. The fields of a SupervisedConnection are guarded by its
lock, which is never held while waiting for a worker.
"""
import logging
import threading
import time
from concurrent.futures import Future

from mcpbox.conduit.base import ConduitError
from mcpbox.conduit.process_conduit import ProcessConduitFactory
from mcpbox.config.servers import parse_server_config, RemoteServerConfig, ServerConfig, InvalidServerConfigError
from mcpbox.config.settings import SupervisorSettings
from mcpbox.connector.base import ConnectorError, ConnectionNotConnectedError, ConnectorLostEvent, \
    ConnectorStartedEvent
from mcpbox.connector.processconn import ProcessConnector
from mcpbox.connector.remoteconn import RemoteConnector
from mcpbox.events import ConnectionState, ServerHealth, HealthyEvent, UnhealthyEvent, RestartingEvent, \
    RestartedEvent, RestartFailedEvent
from mcpbox.protocol.asynchronous import AsyncLoop
from mcpbox.protocol.jsonrpc import ProtocolError
from mcpbox.protocol.mcp import McpProtocolHandler
from mcpbox.registry import ConnectionRegistry
from mcpbox.support.events import EventSource
from mcpbox.support.retry_strategy import BackoffRetryStrategy

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_CHECK_INTERVAL_MS = 30000


class RestartExhaustedError(ConnectorError):
    """ Every restart attempt for a failed server failed. The server stays failed until it is connected again. """


class ConnectorFactory:
    """ Creates the connector that reaches the server described by a configuration. """

    def __init__(self, settings: SupervisorSettings):
        self.settings = settings
        self.conduit_factory = ProcessConduitFactory(settings.kill_timeout)

    def __call__(self, config: ServerConfig):
        if isinstance(config, RemoteServerConfig):
            return RemoteConnector(config)
        return ProcessConnector(config, self.conduit_factory, config.timeout_seconds or self.settings.request_timeout)


class SupervisedConnection:
    """
    The supervisor's record of one server.
    The connector is replaced on each restart. The generation advances whenever the connection is taken out of
    the hands of a restart in progress, by disconnect() or by an explicit connect().
    """

    def __init__(self, name):
        self.name = name
        self.lock = threading.RLock()
        self.config = None
        self.connector = None
        self.protocol = None
        self.state = ConnectionState.disconnected
        self.started_at = None
        self.restart_count = 0
        self.last_error = None
        self.error = None
        self.last_check = None
        self.health_loop = None
        self.monitor_interval = 0   # milliseconds, 0 when monitoring is off
        self.attempt = None         # Future for a connection attempt in progress
        self.recovery = None        # RestartLoop handling the current failure
        self.generation = 0

    @property
    def alive(self):
        protocol = self.protocol
        return protocol is not None and protocol.ready


class HealthMonitorLoop(AsyncLoop):
    """ Checks the health of a connection every interval seconds until stopped. """

    def __init__(self, supervisor, connection: SupervisedConnection, interval, log=logger):
        super().__init__(log=log, name="%s-health" % connection.name)
        self.supervisor = supervisor
        self.connection = connection
        self.interval = interval

    def loop(self):
        if self.stop_event.wait(self.interval):
            return
        self.supervisor._scheduled_check(self.connection, self)


class RestartLoop(AsyncLoop):
    """
    Restarts a failed connection, one attempt each time round the loop, until an attempt succeeds, the attempts
    are exhausted, or the loop is stopped. Stopping also cuts short the delay before the next attempt.
    """

    def __init__(self, supervisor, connection: SupervisedConnection, generation, error, log=logger):
        super().__init__(log=log, name="%s-restart" % connection.name)
        self.supervisor = supervisor
        self.connection = connection
        self.generation = generation
        self.error = error
        self.attempt = 0
        self.done = threading.Event()

    def loop(self):
        self.attempt += 1
        if not self.supervisor._restart_attempt(self):
            self.stop_event.set()

    def shutdown(self):
        self.supervisor._restart_finished(self)
        self.done.set()


class ConnectionSupervisor:
    """
    Connects to MCP servers by name and keeps them healthy.

    :param registry: holds the connections. Each supervisor has its own unless one is given.
    :param connector_factory: creates the connector for a server configuration
    :param settings: timeouts and backoff
    :param retry_strategy: gives the seconds to wait before each restart attempt, given the attempt number
    :param clock: monotonic seconds, used for uptime
    :param wall_clock: seconds since the epoch, used for the time of the last check
    """

    def __init__(self, registry: ConnectionRegistry=None, connector_factory=None, settings: SupervisorSettings=None,
                 retry_strategy=None, clock=time.monotonic, wall_clock=time.time, log=logger):
        self.settings = settings or SupervisorSettings()
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.connector_factory = connector_factory or ConnectorFactory(self.settings)
        self.retry_strategy = retry_strategy or BackoffRetryStrategy(self.settings.backoff_base,
                                                                     self.settings.backoff_maximum)
        self.health_events = EventSource(log)
        self._clock = clock
        self._wall_clock = wall_clock
        self.logger = log

    # health events

    def on_health_event(self, handler):
        self.health_events.add(handler)

    def off_health_event(self, handler):
        self.health_events.remove(handler)

    def _emit(self, event):
        self.logger.debug("health event %r" % event)
        self.health_events.fire(event)

    # connecting

    def connect(self, name, config) -> McpProtocolHandler:
        """
        Connects to the named server, launching the worker and completing the handshake.
        Returns the existing session when the server is already connected, and shares an attempt already in
        progress rather than launching a second worker. Connecting a server that is being restarted abandons the
        restart.

        :param config: a ServerConfig, or a mapping parsed with parse_server_config()
        :return: the protocol handler for the session
        raises InvalidServerConfigError, SpawnError, HandshakeFailedError or ConnectionNotAvailableError. The
            connection is then left failed, and an unhealthy event is emitted.
        """
        config = parse_server_config(name, config)
        connection = self.registry.get_or_create(name, SupervisedConnection)
        with connection.lock:
            if connection.state == ConnectionState.ready and connection.alive:
                return connection.protocol
            attempt = connection.attempt
            if attempt is None:
                self._abandon_recovery(connection)
                connection.config = config
                connection.monitor_interval = config.health_check_interval
                connection.error = None
                attempt = connection.attempt = Future()
                generation = connection.generation
                owner = True
            else:
                owner = False
        if not owner:
            return attempt.result()
        try:
            return self._run_attempt(connection, attempt, config, generation)
        except Exception as e:
            self._connect_failed(connection, generation, e)
            raise

    def _run_attempt(self, connection: SupervisedConnection, attempt: Future, config, generation):
        try:
            protocol = self._launch(connection, config, generation)
        except Exception as e:
            attempt.set_exception(e)
            raise
        else:
            attempt.set_result(protocol)
            return protocol
        finally:
            with connection.lock:
                if connection.attempt is attempt:
                    connection.attempt = None

    def _launch(self, connection: SupervisedConnection, config, generation):
        """ starts a new worker for the connection, replacing any previous one. """
        connector = self.connector_factory(config)
        connector.events.add(lambda event: self._connector_event(connection, connector, event))
        with connection.lock:
            self._check_generation(connection, generation)
            previous = connection.connector
            connection.connector = connector
            connection.protocol = None
            connection.started_at = None
            connection.state = ConnectionState.connecting
            connection.last_check = self._wall_clock()
        if previous is not None:
            previous.disconnect(ConnectionNotConnectedError("MCP server '%s' replaced" % connection.name))
        self.logger.info("connecting to MCP server '%s'" % connection.name)
        try:
            protocol = connector.connect()
        except Exception:
            connector.disconnect()
            raise
        with connection.lock:
            current = connection.generation == generation and connection.connector is connector
            if current:
                connection.protocol = protocol
                connection.state = ConnectionState.ready
                connection.last_error = None
                connection.error = None
                connection.last_check = self._wall_clock()
                if connection.monitor_interval > 0:
                    self._start_monitoring(connection, connection.monitor_interval)
        if not current:
            reason = ConnectionNotConnectedError("MCP server '%s' was disconnected while connecting" % connection.name)
            connector.disconnect(reason)
            raise reason
        self.logger.info("MCP server '%s' ready" % connection.name)
        if not protocol.open:
            self._fail(connection, ConnectionNotConnectedError("MCP server '%s' exited" % connection.name), connector)
        return protocol

    def _check_generation(self, connection: SupervisedConnection, generation):
        if connection.generation != generation:
            raise ConnectionNotConnectedError("MCP server '%s' was disconnected while connecting" % connection.name)

    def _connect_failed(self, connection: SupervisedConnection, generation, error):
        with connection.lock:
            if connection.generation != generation or connection.attempt is not None:
                return
            connector = connection.connector
            connection.connector = None
            connection.protocol = None
            connection.started_at = None
            connection.state = ConnectionState.failed
            connection.last_error = str(error)
            connection.error = error
            connection.last_check = self._wall_clock()
            self._stop_monitoring(connection)
        if connector is not None:
            connector.disconnect()
        self.logger.warning("unable to connect to MCP server '%s': %s" % (connection.name, error))
        self._emit(UnhealthyEvent(connection.name, str(error)))

    def _connector_event(self, connection: SupervisedConnection, connector, event):
        if isinstance(event, ConnectorStartedEvent):
            with connection.lock:
                if connection.connector is connector:
                    connection.started_at = self._clock()
                    connection.state = ConnectionState.handshaking
        elif isinstance(event, ConnectorLostEvent):
            self._fail(connection, event.reason, connector)

    # disconnecting

    def disconnect(self, name):
        """
        Stops monitoring the named server, rejects its outstanding requests and stops its worker.
        Does nothing for a server that is not known.
        """
        connection = self.registry.get(name)
        if connection is None:
            return
        with connection.lock:
            connection.generation += 1
            recovery = connection.recovery
            connection.recovery = None
            self._stop_monitoring(connection)
            connector = connection.connector
            connection.connector = None
            connection.protocol = None
            connection.started_at = None
            connection.state = ConnectionState.disconnected
            connection.last_check = self._wall_clock()
            self.registry.remove(name, connection)
        if recovery is not None:
            recovery.stop(0)
        if connector is not None:
            connector.disconnect(ConnectionNotConnectedError("MCP server '%s' disconnected" % name))
            self.logger.info("disconnected from MCP server '%s'" % name)

    def connect_enabled(self, configs):
        """
        Connects each enabled server in a dict of configurations, such as the one returned by
        load_server_configs(). Servers that cannot be connected are logged and skipped.
        :return: the protocol handlers of the servers connected, by name
        """
        connected = {}
        for name, config in configs.items():
            try:
                config = parse_server_config(name, config)
                if config.enabled:
                    connected[name] = self.connect(name, config)
            except (ConnectorError, ConduitError, InvalidServerConfigError) as e:
                self.logger.error("unable to connect to MCP server '%s': %s" % (name, e))
        return connected

    def cleanup(self):
        """ Disconnects every server and removes all health event handlers. Safe to call more than once. """
        for name in self.registry.names():
            self.disconnect(name)
        self.health_events.clear()

    # health monitoring

    def start_health_monitoring(self, name, interval_ms=DEFAULT_HEALTH_CHECK_INTERVAL_MS):
        """
        Checks the health of the named server every interval_ms milliseconds, replacing any monitoring already
        running. Monitoring is resumed after a successful restart.
        """
        if interval_ms is None or interval_ms <= 0:
            raise ValueError("interval_ms must be positive, not %r" % (interval_ms,))
        connection = self.registry.get(name)
        if connection is None:
            self.logger.warning("cannot monitor unknown MCP server '%s'" % name)
            return
        with connection.lock:
            connection.monitor_interval = interval_ms
            if connection.state in ConnectionState.monitored:
                self._start_monitoring(connection, interval_ms)

    def stop_health_monitoring(self, name):
        """ Stops checking the health of the named server. Does nothing when it is not being checked. """
        connection = self.registry.get(name)
        if connection is None:
            return
        with connection.lock:
            connection.monitor_interval = 0
            self._stop_monitoring(connection)

    def _start_monitoring(self, connection: SupervisedConnection, interval_ms):
        self._stop_monitoring(connection)
        loop = connection.health_loop = HealthMonitorLoop(self, connection, interval_ms / 1000.0, self.logger)
        loop.start()

    def _stop_monitoring(self, connection: SupervisedConnection):
        loop = connection.health_loop
        connection.health_loop = None
        if loop is not None:
            loop.stop(0)

    def _scheduled_check(self, connection: SupervisedConnection, loop: HealthMonitorLoop):
        with connection.lock:
            if connection.health_loop is not loop:
                loop.stop(0)
                return
        self._check(connection)

    def check_health(self, name) -> ServerHealth:
        """
        Checks the health of the named server once, now.
        A worker that has exited fails the check. Otherwise a ping is sent, and any reply, even an error, passes.
        A failed check starts the failure handling described for the supervisor.
        :return: the health of the server after the check
        """
        connection = self.registry.get(name)
        if connection is None:
            return ServerHealth(name, ConnectionState.disconnected, last_check=self._wall_clock())
        self._check(connection)
        return self._snapshot(connection)

    def check_all_servers_health(self):
        """ Checks the health of every server once. :return: a list of ServerHealth """
        return [self.check_health(name) for name in self.registry.names()]

    def _check(self, connection: SupervisedConnection):
        with connection.lock:
            if connection.state not in ConnectionState.monitored or connection.recovery is not None \
                    or connection.attempt is not None:
                return
            protocol = connection.protocol
            connector = connection.connector
        error = self._probe(connection.name, protocol)
        if error is not None:
            self._fail(connection, error, connector)
            return
        with connection.lock:
            if connection.connector is not connector or connection.state not in ConnectionState.monitored:
                return
            connection.state = ConnectionState.ready
            connection.last_check = self._wall_clock()
        self._emit(HealthyEvent(connection.name))

    def _probe(self, name, protocol: McpProtocolHandler):
        """ :return: None if the server is responsive, otherwise the reason it is not. """
        if protocol is None or not protocol.open:
            return ConnectionNotConnectedError("MCP server '%s' is not running" % name)
        try:
            protocol.ping(self.settings.probe_timeout or None).result()
        except ProtocolError as e:
            self.logger.debug("MCP server '%s' answered ping with %s" % (name, e))
        except Exception as e:
            return e
        return None

    # failure and restart

    def _fail(self, connection: SupervisedConnection, error, connector=None):
        """
        Handles the failure of a connection that was established: marks it unhealthy, then either restarts it,
        or, when restarts are disabled and the worker is gone, marks it failed.
        Failures of a connector that has since been replaced are ignored, as are failures reported while a
        restart is already running.
        """
        with connection.lock:
            if connector is not None and connector is not connection.connector:
                return
            if connection.state not in ConnectionState.monitored or connection.recovery is not None:
                return
            message = str(error)
            connection.state = ConnectionState.unhealthy
            connection.last_error = message
            connection.error = error
            connection.last_check = self._wall_clock()
            recovery = teardown = None
            if connection.config.auto_restart:
                self._stop_monitoring(connection)
                recovery = connection.recovery = RestartLoop(self, connection, connection.generation, message,
                                                             self.logger)
            elif not (connection.protocol is not None and connection.protocol.open):
                self._stop_monitoring(connection)
                connection.state = ConnectionState.failed
                connection.started_at = None
                teardown = connection.connector
                connection.connector = None
                connection.protocol = None
        self.logger.warning("MCP server '%s' is unhealthy: %s" % (connection.name, message))
        self._emit(UnhealthyEvent(connection.name, message))
        if teardown is not None:
            teardown.disconnect(ConnectionNotConnectedError("MCP server '%s' failed: %s" % (connection.name, message)))
        if recovery is not None:
            recovery.start()

    def _abandon_recovery(self, connection: SupervisedConnection):
        recovery = connection.recovery
        if recovery is not None:
            connection.generation += 1
            connection.recovery = None
            recovery.stop(0)

    def _restart_attempt(self, cycle: RestartLoop):
        """
        Makes one restart attempt.
        :return: True if another attempt should follow
        """
        connection = cycle.connection
        name = connection.name
        with connection.lock:
            if connection.recovery is not cycle or connection.generation != cycle.generation:
                return False
            config = connection.config
            exhausted = cycle.attempt > config.max_restart_attempts
            if exhausted:
                error = RestartExhaustedError("MCP server '%s': max restart attempts (%d) exceeded: %s"
                                              % (name, config.max_restart_attempts, cycle.error))
                connection.state = ConnectionState.failed
                connection.last_error = str(error)
                connection.error = error
            else:
                error = ConnectionNotConnectedError("MCP server '%s' is restarting" % name)
                connection.state = ConnectionState.restarting
                connection.restart_count += 1
            connection.last_check = self._wall_clock()
            self._stop_monitoring(connection)
            previous = connection.connector
            connection.connector = None
            connection.protocol = None
            connection.started_at = None
        if exhausted:
            if previous is not None:
                previous.disconnect(error)
            self.logger.error("giving up on MCP server '%s': %s" % (name, error))
            self._emit(RestartFailedEvent(name, str(error)))
            return False

        self._emit(RestartingEvent(name, cycle.attempt))
        if previous is not None:
            previous.disconnect(error)
        delay = self.retry_strategy(cycle.attempt)
        self.logger.info("restarting MCP server '%s' in %ss (attempt %d of %d)"
                         % (name, delay, cycle.attempt, config.max_restart_attempts))
        if cycle.stop_event.wait(delay):
            return False
        with connection.lock:
            if connection.recovery is not cycle or connection.generation != cycle.generation \
                    or connection.attempt is not None:
                return False
            attempt = connection.attempt = Future()
        try:
            self._run_attempt(connection, attempt, config, cycle.generation)
        except Exception as e:
            cycle.error = str(e)
            self.logger.warning("restart %d of MCP server '%s' failed: %s" % (cycle.attempt, name, e))
            with connection.lock:
                if connection.recovery is cycle:
                    connection.state = ConnectionState.restarting
                    connection.last_error = str(e)
                    connection.error = e
            return True
        self._emit(RestartedEvent(name))
        return False

    def _restart_finished(self, cycle: RestartLoop):
        connection = cycle.connection
        with connection.lock:
            if connection.recovery is not cycle:
                return
            connection.recovery = None
            protocol = connection.protocol
            connector = connection.connector
            lost = connection.state in ConnectionState.monitored and not (protocol is not None and protocol.open)
        if lost:
            self._fail(connection, ConnectionNotConnectedError("MCP server '%s' exited" % connection.name), connector)

    def wait_for_recovery(self, name, timeout=None):
        """
        Waits for the handling of a failure of the named server to finish.
        :return: True unless the timeout elapsed first
        """
        connection = self.registry.get(name)
        recovery = connection.recovery if connection is not None else None
        return recovery is None or recovery.done.wait(timeout)

    # inspection

    def _uptime_ms(self, connection: SupervisedConnection):
        started_at = connection.started_at
        return int((self._clock() - started_at) * 1000) if started_at is not None else 0

    def _snapshot(self, connection: SupervisedConnection) -> ServerHealth:
        with connection.lock:
            return ServerHealth(connection.name, connection.state, connection.restart_count,
                                self._uptime_ms(connection), connection.last_error, connection.last_check)

    def get_server_health(self, name):
        """ :return: the health of the named server, or None if it is not known. """
        connection = self.registry.get(name)
        return self._snapshot(connection) if connection is not None else None

    def get_all_server_health(self):
        return [self._snapshot(connection) for connection in self.registry.connections()]

    def get_restart_count(self, name):
        connection = self.registry.get(name)
        return connection.restart_count if connection is not None else 0

    def reset_restart_count(self, name):
        connection = self.registry.get(name)
        if connection is not None:
            with connection.lock:
                connection.restart_count = 0

    def get_server_uptime(self, name):
        """ :return: milliseconds since the named server's worker was launched, 0 when it is not running. """
        connection = self.registry.get(name)
        return self._uptime_ms(connection) if connection is not None else 0

    def is_connected(self, name):
        connection = self.registry.get(name)
        return connection is not None and connection.state in ConnectionState.monitored and connection.alive

    def get_connected_servers(self):
        return [name for name in self.registry.names() if self.is_connected(name)]

    def get_protocol_handler(self, name):
        """ :return: the protocol handler for the named server, or None when it has no session. """
        connection = self.registry.get(name)
        return connection.protocol if connection is not None else None

    def request(self, name, method, params=None, timeout=None):
        """
        Sends a request to the named server.
        :return: a future for the result
        raises ConnectionNotConnectedError when the server has no session, RestartExhaustedError when it failed
            and could not be restarted, and NotReadyError before its handshake completes.
        """
        connection = self.registry.get(name)
        if connection is None:
            raise ConnectionNotConnectedError("MCP server '%s' is not connected" % name)
        with connection.lock:
            protocol = connection.protocol
            error = connection.error
        if protocol is None:
            if isinstance(error, RestartExhaustedError):
                raise error
            raise ConnectionNotConnectedError("MCP server '%s' is %s" % (name, connection.state))
        return protocol.request(method, params, timeout)
