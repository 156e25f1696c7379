"""

MCP Server Connections

- Conduit: the pipes to a worker process. Output from the worker arrives as raw byte chunks on
  the conduit's data event, stderr on its diagnostics event, and the closed event is fired once
  when the worker exits.
- Protocol: newline delimited JSON-RPC 2.0 over a conduit. The decoder frames the byte stream,
  the correlator pairs responses with requests and times out the ones left unanswered, and the
  handshake runs initialize / notifications/initialized before any other request is let through.
- Connector: binds a conduit and a protocol to a server configuration. connect() launches the
  worker and completes the handshake; the lost event is fired when the worker goes away.
- ConnectionSupervisor: keeps one connection per server name. It checks the health of live
  connections by sending a ping at intervals, and restarts failed workers with increasing delays,
  up to the configured number of attempts.
- Health events - HealthyEvent, UnhealthyEvent, RestartingEvent, RestartedEvent,
  RestartFailedEvent - are broadcast to the handlers registered with on_health_event().

Configuration is read from ConfigObj files: server definitions as one section per server, and the
supervisor settings layered from defaults, the platform, the user's home directory and the local
directory.


## Threading

Each worker has two reader threads, one for stdout and one for stderr. Responses are decoded and
dispatched on the stdout reader thread, so futures complete there. Request deadlines run on
timer threads.

Each monitored server has a health monitor thread that sleeps for the interval and then pings.
A failure is handled on a restart thread of its own, so the delay between attempts never blocks
the caller or the other servers. Connecting is synchronous on the caller's thread; concurrent
callers for the same name share a single attempt.
"""
