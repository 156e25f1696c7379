import os
import shutil
import tempfile
import unittest
from unittest.mock import Mock

from configobj import ConfigObjError, ConfigObj
from hamcrest import assert_that, is_, equal_to, calling, raises, has_entries

from mcpbox.config.config import config_filename, config_flavor, load_config_file_base, load_config, \
    map_os_name, fetch_conf_path, apply_conf_path, apply_conf, validate_config

config_name = 'config_test'
here = os.path.dirname(__file__)


class Target:
    def __init__(self):
        self.value = None
        self.retries = 0


class ConfigTestCase(unittest.TestCase):

    def setUp(self):
        self.user_directory = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.user_directory)

    def test_config_file_not_found(self):
        assert_that(calling(load_config_file_base).with_args('blah'), raises(IOError))

    def test_optional_config_file_not_found(self):
        assert_that(load_config_file_base('blah', must_exist=False), is_(equal_to({})))

    def test_config_file_invalid_schema(self):
        assert_that(calling(load_config).with_args('config_test_invalid_schema', here,
                                                   user_directory=self.user_directory),
                    raises(ConfigObjError, "the config file config_test_invalid_schema failed validation.*"
                                           "count.*server.port"))

    def test_config_file_invalid_syntax(self):
        assert_that(calling(load_config_file_base).with_args(os.path.join(here, 'config_test_invalid_syntax.cfg')),
                    raises(ConfigObjError, "Section too nested at line 1. at .*config_test_invalid_syntax.cfg"))

    def test_can_retrieve_config_file(self):
        name = config_flavor(config_name, "default")
        file = config_filename(name, here)
        assert_that(os.path.exists(file), is_(True), "expected config path %s to exist" % file)

    def test_layers_merged_and_validated(self):
        config = load_config(config_name, here, user_directory=self.user_directory)
        assert_that(config['name'], is_('local'))
        assert_that(config['retries'], is_(2))
        assert_that(config['section']['value'], is_('local value'))

    def test_user_config_overrides_defaults(self):
        with open(os.path.join(self.user_directory, config_name + '.cfg'), 'w') as f:
            f.write("retries = 5\nname = user\n")
        config = load_config(config_name, here, user_directory=self.user_directory)
        assert_that(config['retries'], is_(5))
        assert_that(config['name'], is_('local'))

    def test_schema_given_in_code(self):
        config = load_config(config_name, here, ["retries = integer(default=1)", "extra = float(default=1.5)"],
                             user_directory=self.user_directory)
        assert_that(config, has_entries(retries=2, extra=1.5))

    def test_validate_config_reports_missing_values(self):
        config = ConfigObj(configspec=["required = integer()"])
        assert_that(calling(validate_config).with_args(config, 'mine'),
                    raises(ConfigObjError, "mine failed validation: required: value missing"))

    def test_map_os_name(self):
        assert_that(map_os_name('Windows'), is_('windows'))
        assert_that(map_os_name('Darwin'), is_('osx'))
        assert_that(map_os_name('darwin'), is_('osx'))

    def test_non_existent_config_path(self):
        sut = ConfigObj()
        assert_that(fetch_conf_path(sut, 'abcd'), is_(None))

    def test_non_existent_apply_config_path(self):
        sut = ConfigObj()
        target = Mock()
        apply_conf_path(sut, ['abcd'], target)
        assert_that(target.mock_calls, is_([]))

    def test_apply_conf_sets_known_attributes(self):
        conf = ConfigObj({'value': 'x', 'retries': 3, 'unknown': 'y', 'nested': {'value': 'z'}})
        target = apply_conf(conf, Target())
        assert_that(target.value, is_('x'))
        assert_that(target.retries, is_(3))
        assert_that(hasattr(target, 'unknown'), is_(False))

    def test_apply_conf_path(self):
        conf = ConfigObj({'outer': {'inner': {'value': 'deep'}}})
        target = Target()
        apply_conf_path(conf, ['outer', 'inner'], target)
        assert_that(target.value, is_('deep'))


if __name__ == '__main__':  # pragma no cover
    unittest.main()
