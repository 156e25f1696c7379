import os
import shutil
import tempfile
import unittest

from hamcrest import assert_that, is_, equal_to

from mcpbox.config.settings import SupervisorSettings, load_settings


class SupervisorSettingsTest(unittest.TestCase):
    def setUp(self):
        self.user_directory = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.user_directory)

    def test_defaults(self):
        sut = SupervisorSettings()
        assert_that(sut.request_timeout, is_(30.0))
        assert_that(sut.probe_timeout, is_(5.0))
        assert_that(sut.backoff_base, is_(1.0))

    def test_load_merges_layers(self):
        sut = load_settings('settings_test', os.path.dirname(__file__), self.user_directory)
        assert_that(sut, is_(equal_to(SupervisorSettings(probe_timeout=2.5, backoff_base=0.5))))

    def test_load_without_files_gives_defaults(self):
        sut = load_settings('no_such_settings', self.user_directory, self.user_directory)
        assert_that(sut, is_(equal_to(SupervisorSettings())))
