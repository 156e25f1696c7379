"""
Server configurations describe how to reach an MCP server: either a local command run as a worker process,
or a remote endpoint. A configuration is validated once, when it is constructed.

A server configuration file has one section per server:

    [filesystem]
    command = npx
    args = -y, @modelcontextprotocol/server-filesystem, /tmp
    enabled = True
    health_check_interval = 10000
        [[env]]
        LOG_LEVEL = debug

Times are given in milliseconds.
"""
import logging
from collections.abc import Mapping
from urllib.parse import urlparse

from configobj import ConfigObj, Section
from validate import Validator

from mcpbox.config.config import load_config_file_base, validation_errors
from mcpbox.support.mixins import CommonEqualityMixin, StringerMixin, FrozenMixin

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30000
DEFAULT_HEALTH_CHECK_INTERVAL = 30000
DEFAULT_MAX_RESTART_ATTEMPTS = 3

REMOTE_SCHEMES = ('http', 'https', 'ws', 'wss')

server_configspec = """
[__many__]
command = string(default=None)
args = force_list(default=list())
cwd = string(default=None)
url = string(default=None)
description = string(default=None)
enabled = boolean(default=False)
timeout = integer(min=0, default=30000)
health_check_interval = integer(min=0, default=30000)
auto_restart = boolean(default=True)
max_restart_attempts = integer(min=0, default=3)
    [[env]]
    __many__ = string
""".splitlines()

# keys as written in JSON style configurations
_aliases = {
    'healthCheckInterval': 'health_check_interval',
    'autoRestart': 'auto_restart',
    'maxRestartAttempts': 'max_restart_attempts',
}


class InvalidServerConfigError(ValueError):
    """ A server configuration is missing required values or has values of the wrong type. """


def _check_integer(name, key, value):
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidServerConfigError("server '%s': %s must be a non-negative integer, not %r" % (name, key, value))
    return value


def _check_boolean(name, key, value):
    if not isinstance(value, bool):
        raise InvalidServerConfigError("server '%s': %s must be a boolean, not %r" % (name, key, value))
    return value


def _check_string(name, key, value, required=False):
    if value is None and not required:
        return None
    if not isinstance(value, str) or (required and not value.strip()):
        raise InvalidServerConfigError("server '%s': %s must be a non-empty string, not %r" % (name, key, value))
    return value


class ServerConfig(CommonEqualityMixin, StringerMixin, FrozenMixin):
    """
    The settings common to all servers.
    :param name: the unique name of the server
    :param timeout: milliseconds allowed for the handshake and for each request
    :param health_check_interval: milliseconds between health checks, 0 to disable checking
    :param auto_restart: restart the server when it fails
    :param max_restart_attempts: the number of restarts tried for each failure before giving up
    """
    kind = None

    def __init__(self, name, description=None, enabled=False, timeout=DEFAULT_TIMEOUT,
                 health_check_interval=DEFAULT_HEALTH_CHECK_INTERVAL, auto_restart=True,
                 max_restart_attempts=DEFAULT_MAX_RESTART_ATTEMPTS):
        if not isinstance(name, str) or not name.strip():
            raise InvalidServerConfigError("server name must be a non-empty string, not %r" % (name,))
        self.name = name
        self.description = _check_string(name, 'description', description)
        self.enabled = _check_boolean(name, 'enabled', enabled)
        self.timeout = _check_integer(name, 'timeout', timeout)
        self.health_check_interval = _check_integer(name, 'health_check_interval', health_check_interval)
        self.auto_restart = _check_boolean(name, 'auto_restart', auto_restart)
        self.max_restart_attempts = _check_integer(name, 'max_restart_attempts', max_restart_attempts)

    @property
    def timeout_seconds(self):
        return self.timeout / 1000.0


class LocalServerConfig(ServerConfig):
    """ A server launched as a worker process that speaks MCP on its standard streams. """
    kind = 'local'

    def __init__(self, name, command, args=(), env=None, cwd=None, **kwargs):
        super().__init__(name, **kwargs)
        self.command = _check_string(name, 'command', command, required=True)
        if isinstance(args, str) or not all(isinstance(a, str) for a in args or ()):
            raise InvalidServerConfigError("server '%s': args must be a list of strings, not %r" % (name, args))
        self.args = list(args or ())
        if env is not None and not isinstance(env, Mapping):
            raise InvalidServerConfigError("server '%s': env must be a mapping, not %r" % (name, env))
        env = dict(env or {})
        for k, v in env.items():
            if not isinstance(k, str) or not isinstance(v, str):
                raise InvalidServerConfigError("server '%s': env entry %r=%r must be strings" % (name, k, v))
        self.env = env
        self.cwd = _check_string(name, 'cwd', cwd)
        self._freeze()


class RemoteServerConfig(ServerConfig):
    """ A server reached over the network at a url. """
    kind = 'remote'

    def __init__(self, name, url, **kwargs):
        super().__init__(name, **kwargs)
        _check_string(name, 'url', url, required=True)
        parsed = urlparse(url)
        if parsed.scheme not in REMOTE_SCHEMES or not parsed.netloc:
            raise InvalidServerConfigError("server '%s': url must be one of %s, not %r"
                                           % (name, "/".join(REMOTE_SCHEMES), url))
        self.url = url
        self._freeze()


_common_keys = ('description', 'enabled', 'timeout', 'health_check_interval', 'auto_restart',
                'max_restart_attempts')


def parse_server_config(name, mapping) -> ServerConfig:
    """
    Builds the server configuration described by a mapping. A mapping with a command describes a local server,
    one with a url describes a remote server. Values not given take their defaults.
    raises InvalidServerConfigError when the mapping does not describe a valid server.
    """
    if isinstance(mapping, ServerConfig):
        if mapping.name != name:
            raise InvalidServerConfigError("configuration named '%s' given for server '%s'" % (mapping.name, name))
        return mapping
    if not isinstance(mapping, Mapping):
        raise InvalidServerConfigError("configuration for server '%s' must be a mapping, not %r" % (name, mapping))
    values = {_aliases.get(k, k): v for k, v in mapping.items()}
    common = {k: values[k] for k in _common_keys if values.get(k) is not None}
    command = values.get('command')
    url = values.get('url')
    if command is not None and url is not None:
        raise InvalidServerConfigError("server '%s' must give either a command or a url, not both" % name)
    if command is not None:
        return LocalServerConfig(name, command, values.get('args') or (), values.get('env'), values.get('cwd'),
                                 **common)
    if url is not None:
        return RemoteServerConfig(name, url, **common)
    raise InvalidServerConfigError("server '%s' must give a command or a url" % name)


def _plain(section: Section):
    return {k: _plain(v) if isinstance(v, Section) else v for k, v in section.items()}


def read_server_configs(config: ConfigObj):
    """
    Validates each server section of a configuration and builds its server configuration.
    Sections that fail validation are logged and skipped.
    :return: a dict of server configurations keyed by name, in file order.
    """
    config.configspec = ConfigObj(server_configspec, list_values=False, _inspec=True)
    result = config.validate(Validator(), preserve_errors=True)
    invalid = {}
    if result is not True:
        for path, key, message in validation_errors(config, result):
            server = path[0] if path else key
            invalid.setdefault(server, "%s: %s" % (key, message))
    servers = {}
    for name in config.sections:
        if name in invalid:
            logger.warning("skipping server '%s': %s" % (name, invalid[name]))
            continue
        try:
            servers[name] = parse_server_config(name, _plain(config[name]))
        except InvalidServerConfigError as e:
            logger.warning("skipping server '%s': %s" % (name, e))
    for key in config.scalars:
        logger.warning("ignoring '%s': expected a server section" % key)
    return servers


def load_server_configs(file, must_exist=True):
    """
    Loads server configurations from a file with one section per server.
    """
    return read_server_configs(load_config_file_base(file, must_exist, interpolation=False))
