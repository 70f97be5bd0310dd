# Tests of the command line interface

import argparse

import pytest

from conftest import write_raw, write_file, UTDATE
from obspipe.cli import main, parse_obslist, parse_files, _parseArguments
from obspipe.errors import FatalError
from obspipe.models.instrument import register_instrument

CONFIG = """
[LOGGER]
start_log = False
log_level = info

[PIPELINE]
poll_interval = 0.1
timeout = 1.0
"""


@pytest.fixture
def config_file(tmp_path):
    return write_file(str(tmp_path / 'run.cfg'), CONFIG)


@pytest.fixture
def registered(instrument):
    return register_instrument(instrument)


def test_parse_obslist():
    assert parse_obslist('1,2,5:8') == [1, 2, 5, 6, 7, 8]
    assert parse_obslist('3') == [3]
    with pytest.raises(argparse.ArgumentTypeError):
        parse_obslist('1,two')


def test_parse_files(tmp_path):
    path = write_file(str(tmp_path / 'files.txt'), '# tonight\na.fits\n\nb.fits  # second\n')
    assert parse_files(path) == ['a.fits', 'b.fits']
    with pytest.raises(FatalError):
        parse_files(str(tmp_path / 'nothing.txt'))


def test_arguments():
    args = _parseArguments(['--ut', '20240317', '--list', '1:3', '--batch', '--loop', 'flag',
                            '--calib', 'dark=d.fits', 'flat=f.fits', '--engine', 'kappa=true'])
    assert args.ut == UTDATE
    assert args.obslist == [1, 2, 3]
    assert args.batch
    assert args.loop == 'flag'
    assert args.calib == ['dark=d.fits', 'flat=f.fits']
    assert args.engines == ['kappa=true']
    with pytest.raises(SystemExit):
        _parseArguments(['--loop', 'sometimes'])


def test_dump_recipe(config_file, capsys):
    assert main(['-c', config_file, '--instrument', 'generic', '--dump-recipe', 'REDUCE_DARK']) == 0
    out = capsys.readouterr().out
    assert 'ENTER _SUBTRACT_BIAS_ from REDUCE_DARK' in out
    assert 'CHECK fitsops sub' in out


def test_run(config_file, registered, data_dirs, add_recipe):
    data_in, data_out = data_dirs
    add_recipe('REDUCE', 'kappa.invoke("reduce", "in=$file")\n')
    write_raw(data_in, 1, RECIPE='REDUCE')
    write_raw(data_in, 2, RECIPE='REDUCE')
    common = ['-c', config_file, '--instrument', registered.name, '--data-in', data_in,
              '--data-out', data_out, '--ut', str(UTDATE), '--list', '1,2']

    assert main(common + ['--engine', 'kappa=true']) == 0
    assert main(common + ['--engine', 'kappa=false']) == 1


def test_run_missing_input(config_file, registered, tmp_path):
    assert main(['-c', config_file, '--instrument', registered.name,
                 '--data-in', str(tmp_path / 'nowhere'), '--list', '1']) == 1


def test_run_wait_timeout(config_file, registered, data_dirs):
    data_in, data_out = data_dirs
    assert main(['-c', config_file, '--instrument', registered.name, '--data-in', data_in,
                 '--data-out', data_out, '--ut', str(UTDATE), '--loop', 'wait']) == 1
