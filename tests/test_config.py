# Tests related to configuration and logging

import os
import logging

import pytest
import keckdrpframework.config.framework_config as fc

from obspipe.config.pipeline_config import (ConfigClass, ConfigHandler, Struct, get_type,
                                            split_path, PipelineEnvironment)
from obspipe.errors import FatalError
from obspipe.logger import start_logger, get_level, frame_logger

CONFIG = """
[LOGGER]
start_log = False
log_level = debug

[PIPELINE]
instrument = GENERIC
poll_interval = 0.5
batch = True
recipe_path = /a:/b
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'test.cfg'
    path.write_text(CONFIG)
    return str(path)


def test_struct_class():
    arg = {'first': 0, 'second': 1}

    st = Struct(arg)
    assert list(st) == ['first', 'second']
    assert st.first == 0
    assert st['second'] == 1
    assert 'first' in st
    assert st.get('third', 3) == 3


def test_get_type():
    assert get_type('3') == 3
    assert get_type('2.5') == 2.5
    assert get_type('True') is True
    assert get_type('no') is False
    assert get_type('[1, 2]') == [1, 2]
    assert get_type('median') == 'median'
    assert get_type('') is None


def test_config_parse(config_file):
    cfg = ConfigClass(config_file)
    assert cfg.PIPELINE.instrument == 'GENERIC'
    assert cfg.PIPELINE.batch is True
    assert cfg.section('MISSING').get('x') is None

    handler = ConfigHandler(cfg, 'PIPELINE')
    assert handler.get_config_value('poll_interval', 2.0) == 0.5
    assert handler.get_config_value('timeout', 7200.0) == 7200.0
    assert handler.get_config_value('batch', False) is True


def test_config_missing_file(tmp_path):
    with pytest.raises(IOError):
        ConfigClass(str(tmp_path / 'nothing.cfg'))


def test_split_path():
    assert split_path('/a' + os.pathsep + '/b') == ['/a', '/b']
    assert split_path(None) == []


def test_environment_precedence(config_file, tmp_path, monkeypatch):
    monkeypatch.setenv('OBSPIPE_DATA_IN', str(tmp_path))
    monkeypatch.setenv('OBSPIPE_INSTRUMENT', 'OTHER')
    env = PipelineEnvironment(ConfigClass(config_file), dotenv_path=str(tmp_path / '.env'),
                              data_out=str(tmp_path / 'out'))
    # config file wins over the shell environment
    assert env.instrument == 'GENERIC'
    assert env.data_in == str(tmp_path)
    assert env.data_out == str(tmp_path / 'out')
    assert env.recipe_path == ['/a', '/b']

    env.check()
    assert os.path.isdir(str(tmp_path / 'out'))


def test_environment_missing_input(tmp_path):
    env = PipelineEnvironment(None, dotenv_path=str(tmp_path / '.env'),
                              data_in=str(tmp_path / 'nowhere'), data_out=str(tmp_path))
    with pytest.raises(FatalError):
        env.check()


def test_logger(config_file):
    assert get_level('info') == logging.INFO
    assert get_level('nonsense') == logging.NOTSET

    logger = start_logger('obspipe.test.config', config_file)
    assert logger.level == logging.DEBUG
    assert logger.handlers == []


def test_frame_logger(caplog):
    class Numbered:
        number = 42

    log = frame_logger(logging.getLogger('obspipe.test.frame'), Numbered())
    with caplog.at_level(logging.INFO, logger='obspipe.test.frame'):
        log.info('Recipe ended')
    assert '#42 Recipe ended' in caplog.text


def test_config_extends_framework_config(tmp_path):
    path = tmp_path / 'case.cfg'
    path.write_text('[DEFAULT]\nmethod = median\n\n[CALIBRATION]\nReadNoise = nearest,dynamic,8.0\n'
                    'combine = max\n')
    cfg = ConfigClass(str(path))
    assert isinstance(cfg, fc.ConfigClass)
    assert cfg.path == str(path)
    # keys keep their case and bare names are not evaluated
    assert cfg.CALIBRATION.ReadNoise == 'nearest,dynamic,8.0'
    assert cfg.CALIBRATION.combine == 'max'
    assert cfg.parameters() == {'method': 'median'}
