import logging

from mcpbox.config.servers import RemoteServerConfig
from mcpbox.connector.base import AbstractConnector, ConnectionNotAvailableError

logger = logging.getLogger(__name__)


class RemoteConnector(AbstractConnector):
    """
    Describes a server reached over the network. No network transport is available yet, so connecting
    always fails with ConnectionNotAvailableError.
    """

    def __init__(self, config: RemoteServerConfig):
        super().__init__()
        self.config = config

    @property
    def endpoint(self):
        return self.config.url

    @property
    def name(self):
        return self.config.name

    def _connect(self):
        logger.warning("MCP server '%s' at %s cannot be reached: remote servers are not supported"
                       % (self.config.name, self.config.url))
        raise ConnectionNotAvailableError("MCP server '%s': no transport available for %s"
                                          % (self.config.name, self.config.url))
