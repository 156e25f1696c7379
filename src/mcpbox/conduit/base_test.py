import unittest

from hamcrest import assert_that, calling, raises

from mcpbox.conduit.base import Conduit, ConduitFactory


class ConduitTest(unittest.TestCase):

    def test_abstract_methods(self):
        sut = Conduit()
        assert_that(calling(sut.close), raises(NotImplementedError))
        assert_that(calling(sut.write).with_args(b"x"), raises(NotImplementedError))
        assert_that(calling(sut.__getattribute__).with_args('open'), raises(NotImplementedError))
        assert_that(calling(sut.__getattribute__).with_args('target'), raises(NotImplementedError))

    def test_factory_is_abstract(self):
        assert_that(calling(ConduitFactory()).with_args("worker"), raises(NotImplementedError))
