# Fixtures shared by the obspipe tests

import os
import logging

import pytest
from astropy.io import fits

from obspipe.engines.base import AlgorithmEngine, EngineSet
from obspipe.models.instrument import Instrument
from obspipe.constants import Status

UTDATE = 20240317

RULES = {
    'rules.dark': 'ORACTIME\nEXPTIME tol 0.01\n',
    'rules.flat': 'ORACTIME\nFILTER eq\n',
    'rules.bias': 'ORACTIME\n',
    'rules.readnoise': 'ORACTIME\nREADNOISE\n',
    'rules.badobs': 'ORACUT\nORACNUM\n',
}

INSTRUMENT_CFG = """
[INSTRUMENT]
fixedpart = o
suffix = .fits
digits = 4
default_recipe = QUICK_LOOK
group_keys = GRPNUM

[CALIBRATION]
dark = nearest
flat = nearest
bias = earlier
readnoise = nearest,dynamic,8.0
"""


def write_file(path, text):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as fh:
        fh.write(text)
    return path


def write_raw(directory, obsnum, utdate=UTDATE, mjd=None, **header):
    '''
    Write a small FITS file named like a raw observation.
    Header keywords are given as keyword arguments, e.g. GRPNUM=1.
    '''
    if mjd is None:
        mjd = 60386.0 + obsnum / 1000.
    hdr = fits.Header()
    hdr['DATE-OBS'] = f'{str(utdate)[0:4]}-{str(utdate)[4:6]}-{str(utdate)[6:8]}T05:00:00'
    hdr['MJD-OBS'] = mjd
    for k, v in header.items():
        hdr[k] = v
    path = os.path.join(str(directory), f'o{utdate}_{obsnum:04d}.fits')
    fits.PrimaryHDU(header=hdr).writeto(path, overwrite=True)
    return path


class StubEngine(AlgorithmEngine):
    """ records requests and answers with a fixed status per operation """

    def __init__(self, name, statuses=None):
        AlgorithmEngine.__init__(self, name)
        self.statuses = statuses or {}
        self.calls = []
        self.stopped = False

    def invoke(self, operation, arguments):
        self.calls.append((operation, arguments))
        return self.statuses.get(operation, Status.OK)

    def shutdown(self):
        self.stopped = True


@pytest.fixture
def logger():
    log = logging.getLogger('obspipe.test')
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def instrument_root(tmp_path):
    root = tmp_path / 'instrument'
    write_file(str(root / 'instrument.cfg'), INSTRUMENT_CFG)
    for name, text in RULES.items():
        write_file(str(root / 'calib' / name), text)
    write_file(str(root / 'recipes' / 'QUICK_LOOK'), 'print("looking at", basename(Frm.file))\n')
    os.makedirs(str(root / 'primitives'), exist_ok=True)
    return root


@pytest.fixture
def instrument(instrument_root):
    return Instrument.from_directory('TEST', str(instrument_root))


@pytest.fixture
def add_recipe(instrument_root):
    def add(name, text):
        return write_file(str(instrument_root / 'recipes' / name), text)
    return add


@pytest.fixture
def add_primitive(instrument_root):
    def add(name, text):
        return write_file(str(instrument_root / 'primitives' / name), text)
    return add


@pytest.fixture
def data_dirs(tmp_path):
    data_in = tmp_path / 'raw'
    data_out = tmp_path / 'reduced'
    data_in.mkdir()
    data_out.mkdir()
    return str(data_in), str(data_out)


@pytest.fixture
def stub_engine():
    return StubEngine('kappa')


@pytest.fixture
def engines(stub_engine, logger):
    es = EngineSet(logger)
    es.register('kappa', lambda name: stub_engine)
    return es
