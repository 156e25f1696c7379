import logging
import os
import platform

from configobj import ConfigObj, ConfigObjError, Section, flatten_errors
from validate import Validator

logger = logging.getLogger(__name__)

# The default extension for configuration files
config_extension = '.cfg'


def config_flavor(name, flavor=None):
    """
    >>> config_flavor('mcpbox', 'default')
    'mcpbox.default'
    >>> config_flavor('mcpbox')
    'mcpbox'
    """
    configname = name if not flavor else name + '.' + flavor
    return configname


def config_filename(name, directory=None):
    """
    Determines the location of a config file in the given directory.
    """
    config_file = os.path.join(directory or '', name + config_extension)
    return config_file


def load_config_file_base(file, must_exist=True, configspec=None, interpolation='Template'):
    """
    Loads a configuration file
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or an exception is thrown.
    :param configspec:  the schema used to validate the file, if any.
    :param interpolation: the ConfigObj interpolation style, or False to take values literally.
    :return: The ConfigObj instance for the file.
    """
    try:
        return ConfigObj(file, interpolation=interpolation, file_error=must_exist, configspec=configspec) \
            if must_exist or os.path.exists(file) else ConfigObj(configspec=configspec, interpolation=interpolation)
    except ConfigObjError as e:
        raise type(e)(str(e) + ' at ' + file)


def config_flavor_file(name, directory, subpart=None) -> ConfigObj:
    """
    Loads a specialization of a config file. The configuration file is expected to be named
    after the base, followed by a period and then the specialization, if the specialization is given,
    otherwise just the base name.
    :param name:    The name of the base configuration
    :param subpart: The name of the specialization.
    :return: The ConfigObj for the configuration file, empty if the file does not exist.
    """
    configname = config_flavor(name, subpart)
    file = config_filename(configname, directory)
    return load_config_file_base(file, False)


def map_os_name(name):
    """
    >>> map_os_name('Windows')
    'windows'
    >>> map_os_name("Darwin")
    'osx'
    """
    name = name.lower()
    if name == 'darwin':
        name = 'osx'
    return name


def os_name():
    return map_os_name(platform.system())


def validation_errors(config: ConfigObj, result):
    """
    Describes each failure in a validation result.
    :return: a list of (section path, key, message) tuples.
    """
    errors = []
    for section_list, key, error in flatten_errors(config, result):
        if key is None:
            message = "section missing"
        elif error is False:
            message = "value missing"
        else:
            message = str(error)
        errors.append((tuple(section_list), key, message))
    return errors


def validate_config(config: ConfigObj, name='config'):
    """
    Validates a config against its configspec, converting values to the declared types and filling in
    defaults.
    raises ConfigObjError describing the failures if validation fails.
    """
    result = config.validate(Validator(), preserve_errors=True)
    if result is not True:
        described = ["%s: %s" % ('.'.join(path + ((key,) if key else ())), message)
                     for path, key, message in validation_errors(config, result)]
        raise ConfigObjError("the config file %s failed validation: %s" % (name, "; ".join(described)))
    return config


def load_config(name, directory, schema=None, user_directory='~'):
    """
        Loads all the configuration files that relate to the given name.
        Configurations are merged in this order, later files overriding earlier ones:
        - the default specialization
        - the platform specialization
        - the user override in the user directory
        - the base configuration
        The merged configuration is validated against the schema, given as the lines of a configspec,
        or when not given, against a "schema" specialization file if one exists.
    :directory: the location of the configuration files
    :return: the validated configuration
    """
    local_config = config_flavor_file(name, directory)
    default_config = config_flavor_file(name, directory, 'default')
    platform_config = config_flavor_file(name, directory, os_name())
    user_config = load_config_file_base(os.path.expanduser(
        os.path.join(user_directory, name + config_extension)), must_exist=False)
    config = ConfigObj()
    config.merge(default_config)
    config.merge(platform_config)
    config.merge(user_config)
    config.merge(local_config)

    if schema is None:
        schema_file = config_filename(config_flavor(name, 'schema'), directory)
        if os.path.exists(schema_file):
            schema = ConfigObj(schema_file, list_values=False, _inspec=True)
    if schema is not None:
        config.configspec = schema if isinstance(schema, ConfigObj) else \
            ConfigObj(schema, list_values=False, _inspec=True)
        validate_config(config, name)
    return config


def fetch_conf_path(conf: Section, path):
    """
    Retrieves the named configuration section
    :param conf:        The root configuration
    :param path:        An iterable that lists the names of the nested sections to resolve
    :return: The configuration object identified by the path, or None
    """
    for p in path:    # lookup specific section
        conf = conf.get(p, None)
        if conf is None:
            return
    return conf


def apply_conf_path(conf: Section, name_parts, target):
    """
    Applies a configuration path to a given target object
    :param conf:        The root configuration object
    :param name_parts:  The path of the configuration to apply
    :param target:      The target object that receives the configured values
    """
    conf = fetch_conf_path(conf, name_parts)
    if conf:
        apply_conf(conf, target)


def apply_conf(conf: Section, target):
    """
    Applies the attributes contained in a configuration object to a target object.
    It does this by iterating over the items in the configuration and setting any attributes with the same name.
    Nested sections are skipped.
    :return: the target
    """
    for k, v in conf.items():
        if isinstance(v, Section):
            continue
        if hasattr(target, k):
            setattr(target, k, v)
        else:
            logger.debug("ignoring unknown setting '%s'" % k)
    return target
