# Tests of calibration indexes and calibration selection

import pytest

from conftest import write_file, write_raw
from obspipe.calibration.index import CalibrationIndex, CalibrationRules
from obspipe.calibration.selector import CalibrationSelector
from obspipe.errors import NoSuitableCalibration, PipelineError
from obspipe.models.frame import Frame


@pytest.fixture
def dark_index(tmp_path):
    rules = write_file(str(tmp_path / 'rules.dark'), 'ORACTIME\nEXPTIME tol 0.5\nMODE eq\n')
    return CalibrationIndex(str(tmp_path / 'index.dark'), rules)


def test_nearest_in_time(dark_index):
    for name, t in (('d10', 10), ('d20', 20), ('d30', 30)):
        dark_index.add(name, {'ORACTIME': t, 'EXPTIME': 5.0, 'MODE': 'dark'})

    ctx = {'ORACTIME': 22, 'EXPTIME': 5.0, 'MODE': 'dark'}
    assert dark_index.choosebydt('ORACTIME', ctx) == 'd20'
    assert dark_index.chooseby_negativedt('ORACTIME', {**ctx, 'ORACTIME': 29}) == 'd20'


def test_tie_goes_to_earliest_entry(dark_index):
    dark_index.add('late', {'ORACTIME': 30, 'EXPTIME': 5.0, 'MODE': 'dark'})
    dark_index.add('early', {'ORACTIME': 10, 'EXPTIME': 5.0, 'MODE': 'dark'})
    assert dark_index.choosebydt('ORACTIME', {'ORACTIME': 20, 'EXPTIME': 5.0, 'MODE': 'dark'}) == 'late'


def test_rules_skip_unsuitable(dark_index):
    dark_index.add('short', {'ORACTIME': 21, 'EXPTIME': 1.0, 'MODE': 'dark'})
    dark_index.add('good', {'ORACTIME': 40, 'EXPTIME': 5.2, 'MODE': 'dark'})
    ctx = {'ORACTIME': 22, 'EXPTIME': 5.0, 'MODE': 'dark'}
    assert dark_index.choosebydt('ORACTIME', ctx) == 'good'
    assert dark_index.verify('good', ctx)
    assert not dark_index.verify('short', ctx)
    assert not dark_index.verify('unknown', ctx)


def test_no_suitable_calibration(dark_index):
    dark_index.add('d10', {'ORACTIME': 10, 'EXPTIME': 60.0, 'MODE': 'dark'})
    with pytest.raises(NoSuitableCalibration):
        dark_index.choosebydt('ORACTIME', {'ORACTIME': 22, 'EXPTIME': 5.0, 'MODE': 'dark'})


def test_index_persists_and_supersedes(dark_index):
    dark_index.add('d10', {'ORACTIME': 10, 'EXPTIME': 5.0, 'MODE': 'dark'})
    dark_index.add('d10', {'ORACTIME': 12, 'EXPTIME': 5.0, 'MODE': 'dark'})

    again = CalibrationIndex(dark_index.indexfile, dark_index.rules)
    assert len(again) == 1
    assert again.indexentry('d10')['ORACTIME'] == '12'


def test_superseded_entry_keeps_its_place(dark_index):
    dark_index.add('first', {'ORACTIME': 10, 'EXPTIME': 5.0, 'MODE': 'dark'})
    dark_index.add('second', {'ORACTIME': 30, 'EXPTIME': 5.0, 'MODE': 'dark'})
    dark_index.add('first', {'ORACTIME': 10, 'EXPTIME': 5.1, 'MODE': 'dark'})

    assert list(dark_index.entries()['NAME']) == ['first', 'second']
    assert dark_index.indexentry('first')['EXPTIME'] == '5.1'
    ctx = {'ORACTIME': 20, 'EXPTIME': 5.0, 'MODE': 'dark'}
    assert dark_index.choosebydt('ORACTIME', ctx) == 'first'


def test_add_needs_rule_fields(dark_index):
    with pytest.raises(PipelineError):
        dark_index.add('d10', {'ORACTIME': 10, 'EXPTIME': 5.0})


def test_rule_operations(tmp_path):
    rules = CalibrationRules.from_file(
        write_file(str(tmp_path / 'rules.flat'), 'ORACTIME\nFILTER in J,H\nSPEED ge\nGAIN ne\n'))
    ctx = {'SPEED': 2, 'GAIN': 1}
    assert rules.check({'ORACTIME': 1, 'FILTER': 'J', 'SPEED': 3, 'GAIN': 2}, ctx) is None
    assert rules.check({'ORACTIME': 1, 'FILTER': 'K', 'SPEED': 3, 'GAIN': 2}, ctx) == 'FILTER'
    assert rules.check({'ORACTIME': 1, 'FILTER': 'H', 'SPEED': 1, 'GAIN': 2}, ctx) == 'SPEED'
    assert rules.check({'ORACTIME': 1, 'FILTER': 'H', 'SPEED': 2, 'GAIN': 1}, ctx) == 'GAIN'

    with pytest.raises(PipelineError):
        CalibrationRules.from_file(write_file(str(tmp_path / 'rules.bad'), 'X like\n'))


@pytest.fixture
def selector(instrument, tmp_path, logger):
    out = tmp_path / 'reduced'
    out.mkdir()
    return CalibrationSelector(instrument.calibration, str(out), logger=logger)


def frame_at(instrument, directory, obsnum, mjd, **hdr):
    return Frame(instrument, write_raw(directory, obsnum, mjd=mjd, **hdr))


def test_selector_files_and_selects(instrument, selector, tmp_path):
    dark = frame_at(instrument, tmp_path, 1, 60386.1, EXPTIME=10.0)
    selector.file('dark', dark)

    sci = frame_at(instrument, tmp_path, 2, 60386.2, EXPTIME=10.0)
    selector.set_context(sci)
    assert selector.get('dark') == 'o20240317_0001.fits'


def test_selector_pinned_never_reads_index(selector):
    selector.override(['dark=mydark.fits'])
    assert selector.is_pinned('dark')
    assert selector.get('dark') == 'mydark.fits'
    assert 'dark' not in selector._indexes
    # filing does not replace a pinned value
    assert selector.set('dark', 'other.fits') == 'mydark.fits'


def test_selector_bound_value_is_revalidated(instrument, selector, tmp_path):
    selector.file('dark', frame_at(instrument, tmp_path, 1, 60386.1, EXPTIME=10.0))
    selector.file('dark', frame_at(instrument, tmp_path, 2, 60386.5, EXPTIME=20.0))

    # the bound dark (number 2) does not match a 10 s exposure
    selector.set_context(frame_at(instrument, tmp_path, 3, 60386.6, EXPTIME=10.0))
    assert selector.get('dark') == 'o20240317_0001.fits'


def test_selector_default_and_failure(instrument, selector, tmp_path):
    selector.set_context(frame_at(instrument, tmp_path, 4, 60386.3, EXPTIME=10.0))
    with pytest.raises(NoSuitableCalibration):
        selector.get('dark')
    assert selector.get('readnoise') == '8.0'


def test_selector_unknown_role(selector, caplog):
    selector.override({'sky': 'x.fits'})
    assert 'unknown' in caplog.text
    with pytest.raises(PipelineError):
        selector.get('sky')
