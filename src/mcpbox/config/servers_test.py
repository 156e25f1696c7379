import os
import unittest
from unittest.mock import patch

from configobj import ConfigObj
from hamcrest import assert_that, is_, equal_to, calling, raises, instance_of, contains_exactly, has_properties

from mcpbox.config.servers import parse_server_config, LocalServerConfig, RemoteServerConfig, \
    InvalidServerConfigError, load_server_configs, read_server_configs

servers_file = os.path.join(os.path.dirname(__file__), 'servers_test.cfg')


class ParseServerConfigTest(unittest.TestCase):
    def test_local_defaults(self):
        sut = parse_server_config("fs", {"command": "npx"})
        assert_that(sut, is_(instance_of(LocalServerConfig)))
        assert_that(sut, has_properties(name="fs", command="npx", args=[], env={}, cwd=None, enabled=False,
                                        timeout=30000, health_check_interval=30000, auto_restart=True,
                                        max_restart_attempts=3, kind='local'))
        assert_that(sut.timeout_seconds, is_(30.0))

    def test_local_all_values(self):
        sut = parse_server_config("fs", {"command": "node", "args": ["server.js"], "env": {"A": "1"},
                                         "cwd": "/srv", "enabled": True, "timeout": 1000,
                                         "health_check_interval": 0, "auto_restart": False,
                                         "max_restart_attempts": 5, "description": "files"})
        assert_that(sut, is_(equal_to(LocalServerConfig("fs", "node", ["server.js"], {"A": "1"}, "/srv",
                                                        enabled=True, timeout=1000, health_check_interval=0,
                                                        auto_restart=False, max_restart_attempts=5,
                                                        description="files"))))

    def test_json_style_keys(self):
        sut = parse_server_config("fs", {"command": "x", "healthCheckInterval": 500, "autoRestart": False,
                                         "maxRestartAttempts": 1})
        assert_that(sut, has_properties(health_check_interval=500, auto_restart=False, max_restart_attempts=1))

    def test_remote(self):
        sut = parse_server_config("web", {"url": "https://example.com/mcp", "timeout": 100})
        assert_that(sut, is_(instance_of(RemoteServerConfig)))
        assert_that(sut, has_properties(url="https://example.com/mcp", timeout=100, kind='remote'))

    def test_config_passed_through(self):
        config = LocalServerConfig("fs", "npx")
        assert_that(parse_server_config("fs", config), is_(config))
        assert_that(calling(parse_server_config).with_args("other", config), raises(InvalidServerConfigError))

    def test_invalid(self):
        invalid = [
            ("", {"command": "x"}),
            (None, {"command": "x"}),
            ("s", "command"),
            ("s", {}),
            ("s", {"command": ""}),
            ("s", {"command": "x", "url": "http://a"}),
            ("s", {"command": "x", "args": "a b"}),
            ("s", {"command": "x", "args": [1]}),
            ("s", {"command": "x", "env": {"A": 1}}),
            ("s", {"command": "x", "env": ["A"]}),
            ("s", {"command": "x", "timeout": -1}),
            ("s", {"command": "x", "timeout": "10"}),
            ("s", {"command": "x", "max_restart_attempts": True}),
            ("s", {"command": "x", "auto_restart": "yes"}),
            ("s", {"url": "ftp://a"}),
            ("s", {"url": "not a url"}),
        ]
        for name, mapping in invalid:
            assert_that(calling(parse_server_config).with_args(name, mapping), raises(InvalidServerConfigError),
                        "%r %r" % (name, mapping))

    def test_immutable(self):
        sut = parse_server_config("fs", {"command": "npx"})
        assert_that(calling(setattr).with_args(sut, "command", "other"), raises(AttributeError))


class LoadServerConfigsTest(unittest.TestCase):
    def test_load_skips_invalid_sections(self):
        with patch('mcpbox.config.servers.logger') as log:
            servers = load_server_configs(servers_file)
        assert_that(list(servers), contains_exactly("filesystem", "search"))
        assert_that(log.warning.call_count, is_(2))

    def test_values_converted(self):
        servers = load_server_configs(servers_file)
        assert_that(servers["filesystem"], is_(equal_to(
            LocalServerConfig("filesystem", "npx", ["-y", "@modelcontextprotocol/server-filesystem", "$HOME"],
                              {"LOG_LEVEL": "debug"}, enabled=True, health_check_interval=10000))))
        assert_that(servers["search"], is_(equal_to(
            RemoteServerConfig("search", "https://mcp.example.com/search", timeout=5000, auto_restart=False))))

    def test_missing_file(self):
        assert_that(calling(load_server_configs).with_args("no_such_servers.cfg"), raises(IOError))
        assert_that(load_server_configs("no_such_servers.cfg", must_exist=False), is_(equal_to({})))

    def test_top_level_values_ignored(self):
        servers = read_server_configs(ConfigObj({"stray": "value", "one": {"command": "x"}}))
        assert_that(list(servers), is_(["one"]))
