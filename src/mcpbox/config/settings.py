import logging

from mcpbox.config.config import load_config, apply_conf_path
from mcpbox.support.mixins import StringerMixin, CommonEqualityMixin

logger = logging.getLogger(__name__)

settings_configspec = """
[supervisor]
request_timeout = float(min=0, default=30.0)
probe_timeout = float(min=0, default=5.0)
backoff_base = float(min=0, default=1.0)
backoff_maximum = float(min=0, default=30.0)
kill_timeout = float(min=0, default=5.0)
""".splitlines()


class SupervisorSettings(StringerMixin, CommonEqualityMixin):
    """
    Tunables for the connection supervisor, in seconds.
    :param request_timeout: the default deadline for a request when the server configuration gives none
    :param probe_timeout: the deadline for the ping sent by each health check
    :param backoff_base: the delay before the first restart attempt; attempt n waits n times this long
    :param backoff_maximum: the longest delay between restart attempts
    :param kill_timeout: how long a terminated worker has to exit before it is killed
    """

    def __init__(self, request_timeout=30.0, probe_timeout=5.0, backoff_base=1.0, backoff_maximum=30.0,
                 kill_timeout=5.0):
        self.request_timeout = request_timeout
        self.probe_timeout = probe_timeout
        self.backoff_base = backoff_base
        self.backoff_maximum = backoff_maximum
        self.kill_timeout = kill_timeout


def load_settings(name, directory, user_directory='~') -> SupervisorSettings:
    """
    Loads the supervisor settings from the [supervisor] section of the named configuration.
    Settings not configured keep their defaults.
    """
    config = load_config(name, directory, settings_configspec, user_directory)
    settings = SupervisorSettings()
    apply_conf_path(config, ('supervisor',), settings)
    logger.debug("supervisor settings %r" % settings)
    return settings
