import unittest
from unittest.mock import Mock

from hamcrest import assert_that, is_, contains_inanyorder, empty

from mcpbox.registry import ConnectionRegistry


class ConnectionRegistryTest(unittest.TestCase):
    def setUp(self):
        self.sut = ConnectionRegistry()

    def test_get_or_create_creates_once(self):
        factory = Mock(side_effect=lambda name: "connection-" + name)
        assert_that(self.sut.get_or_create("a", factory), is_("connection-a"))
        assert_that(self.sut.get_or_create("a", factory), is_("connection-a"))
        factory.assert_called_once_with("a")
        assert_that("a" in self.sut, is_(True))
        assert_that(len(self.sut), is_(1))

    def test_get_unknown(self):
        assert_that(self.sut.get("a"), is_(None))

    def test_remove_only_matching(self):
        first = self.sut.get_or_create("a", lambda name: object())
        assert_that(self.sut.remove("a", object()), is_(None))
        assert_that(self.sut.remove("a", first), is_(first))
        assert_that(self.sut.remove("a"), is_(None))

    def test_names_and_clear(self):
        self.sut.get_or_create("a", lambda name: 1)
        self.sut.get_or_create("b", lambda name: 2)
        assert_that(self.sut.names(), contains_inanyorder("a", "b"))
        assert_that(self.sut.clear(), contains_inanyorder(1, 2))
        assert_that(self.sut.connections(), is_(empty()))

    def test_registries_are_independent(self):
        self.sut.get_or_create("a", lambda name: 1)
        assert_that(ConnectionRegistry().get("a"), is_(None))
