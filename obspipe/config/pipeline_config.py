# pipeline_config.py
"""
Configuration of a pipeline run.

The pipeline reads one .cfg file (configparser syntax). Every section is
also exposed as a Struct so that values can be reached as attributes,
e.g. ``config.PIPELINE.instrument``, as well as by subscript.
"""

import os
import ast

from dotenv import load_dotenv
import keckdrpframework.config.framework_config as fc

from obspipe.errors import FatalError

# prefix of the environment variables understood by the pipeline
ENV_PREFIX = 'OBSPIPE_'


class Struct(object):
    """ Object that supports access by attribute, as well as subscript """

    def __init__(self, arg=None, **kwargs):
        if isinstance(arg, dict):
            for k, v in arg.items():
                setattr(self, k, v)
        for k, v in kwargs.items():
            setattr(self, k, v)

    def __iter__(self):
        for item in self.__dict__:
            yield item

    def __getitem__(self, k):
        return self.__dict__[k]

    def __contains__(self, k):
        return k in self.__dict__

    def get(self, k, default=None):
        return self.__dict__.get(k, default)

    def getValue(self, k):
        return self[k]


def get_type(value: str):
    '''
    Convert a config string to int, float, bool or a python literal
    when it looks like one, else return the string unchanged.
    '''
    if value is None:
        return None
    text = value.strip()
    low = text.lower()
    if low in ('true', 'yes', 'on'):
        return True
    if low in ('false', 'no', 'off'):
        return False
    if low in ('none', ''):
        return None
    for conv in (int, float):
        try:
            return conv(text)
        except ValueError:
            pass
    if text[0] in '[({' and text[-1] in '])}':
        try:
            return ast.literal_eval(text)
        except (ValueError, SyntaxError):
            return text
    return text


class ConfigClass(fc.ConfigClass):
    """ ConfigClass for the pipeline
    Supports access to config object from within recipes.
    Keys keep their case, so calibration roles and header names can be
    written as they are used.
    """

    def __init__(self, cfgfile=None, **kwargs):
        super(ConfigClass, self).__init__(cgfile=None, **kwargs)
        self.optionxform = str
        self.path = None
        if cfgfile is not None:
            self.read(cfgfile)

    def _getType(self, value):
        # values may name recipes or headers, so they are never eval'ed
        if not isinstance(value, str):
            return value
        return get_type(value)

    def read(self, cgfile):
        """ override of framework implementation, sections become Structs """
        def digestItemsStruct(sec):
            secValues = Struct()
            for k, v in self.items(sec, raw=True):
                setattr(secValues, k, self._getType(v))
            return secValues

        path = self._getPath(cgfile)
        if path is None:
            raise IOError('failed to read {}'.format(cgfile))
        super(fc.ConfigClass, self).read(path)
        self.path = path

        for k, v in self.defaults().items():
            self.properties[k] = self._getType(v)
        for sec in self.sections():
            self.properties[sec] = digestItemsStruct(sec)

    def __getattr__(self, name):
        # only called when normal lookup fails
        properties = self.__dict__.get('properties', {})
        if name in properties:
            return properties[name]
        raise AttributeError(name)

    def section(self, name):
        """ a section as a Struct, empty when the section is absent """
        return self.properties.get(name, Struct())

    def parameters(self):
        """ the [DEFAULT] values, converted """
        return {k: self._getType(v) for k, v in self.defaults().items()}


class ConfigHandler():
    """Config file handler.

    Methods to access the values defined in a specified section of a config
    context.

    Args:
        config (configparser.ConfigParser): config context.
        section (str): Section name from the config context. Defaults to None.
        default (ConfigHandler): An instance of ConfigHandler in case `section` not found. Defaults to None.

    Attributes:
        config_param (configparser.SectionProxy): Instance of dict containing the property-value pairs associated with
        `section` in `config`
    """
    def __init__(self, config, section=None, default=None):
        if config is not None and section is not None and config.has_section(section):
            self.config_param = config[section]
        else:
            self.config_param = default.get_section() if default is not None else None

    def get_section(self):
        return self.config_param

    def get_config_value(self, param: str, default=None):
        """Get defined value from the instance associated section.

        Search the value of the specified property from config section. The default value is returned if no found.

        Args:
            param (str): Name of the property to be searched.
            default (str/int/float/bool): Default value for the searched property.

        Returns:
            str/int/float/bool/list: Value for the searched property.
        """
        if self.config_param is None:
            return default
        if isinstance(default, bool):
            return self.config_param.getboolean(param, default)
        elif isinstance(default, int):
            return self.config_param.getint(param, default)
        elif isinstance(default, float):
            return self.config_param.getfloat(param, default)
        c_str = self.config_param.get(param, default)
        if c_str and isinstance(c_str, str) and c_str[0] == '[' and c_str[-1] == ']':
            try:
                return ast.literal_eval(c_str)
            except (ValueError, SyntaxError):
                return c_str
        return c_str


def split_path(value):
    ''' split a PATH style (colon separated) string into a list of directories '''
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [v for v in value if v]
    return [p for p in str(value).split(os.pathsep) if p]


class PipelineEnvironment(object):
    """
    Directories and search paths used by a run.

    Values come, in order of precedence, from explicit keyword arguments
    (the command line), the [PIPELINE] section of the config file, the shell
    environment (OBSPIPE_DATA_IN etc., after loading a .env file with
    python-dotenv) and finally the defaults.

    Args:
        config (ConfigClass): parsed pipeline config, may be None
        dotenv_path (str): explicit .env file, None to search the usual places
        **overrides: data_in, data_out, data_cal, recipe_dir, primitive_dir, instrument
    """

    def __init__(self, config=None, dotenv_path=None, **overrides):
        load_dotenv(dotenv_path=dotenv_path)
        self.handler = ConfigHandler(config, 'PIPELINE')

        def pick(key, cfg_key=None):
            value = overrides.get(key)
            if value is None:
                value = self.handler.get_config_value(cfg_key or key)
            if value is None:
                value = os.environ.get(ENV_PREFIX + key.upper())
            return value

        self.instrument = pick('instrument')
        self.data_out = os.path.abspath(pick('data_out') or os.getcwd())
        self.data_in = os.path.abspath(pick('data_in') or self.data_out)
        cal = pick('data_cal')
        self.data_cal = os.path.abspath(cal) if cal else None
        self.recipe_path = split_path(pick('recipe_dir', 'recipe_path'))
        self.primitive_path = split_path(pick('primitive_dir', 'primitive_path'))

    def check(self, create_out=True):
        '''
        Make sure the input directory exists and the output directory can be
        used. Raises FatalError otherwise.
        '''
        if not os.path.isdir(self.data_in):
            raise FatalError(f'Input data directory {self.data_in} does not exist')
        if not os.path.isdir(self.data_out):
            if not create_out:
                raise FatalError(f'Output data directory {self.data_out} does not exist')
            try:
                os.makedirs(self.data_out)
            except OSError as e:
                raise FatalError(f'Could not create output directory {self.data_out}: {e}')
        if self.data_cal is not None and not os.path.isdir(self.data_cal):
            raise FatalError(f'Calibration directory {self.data_cal} does not exist')
        return True

    def __repr__(self):
        return (f'PipelineEnvironment(instrument={self.instrument}, data_in={self.data_in}, '
                f'data_out={self.data_out}, data_cal={self.data_cal})')
