# Tests of the data arrival loops

import os
import queue

import pytest
from watchdog.events import FileCreatedEvent, FileMovedEvent

from conftest import write_raw, write_file, UTDATE
from obspipe.errors import LoopTimeout, FatalError
from obspipe.pipelines.loop import DataLoop, LoopCursor, make_cursor, FLAG_LOOKAHEAD
from obspipe.pipelines.watch import RawFileAlarm, WatchLoop


class FakeClock(object):
    """ monotonic clock advanced by sleep """

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class FakeObserver(object):

    def __init__(self):
        self.scheduled = []
        self.running = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path))

    def start(self):
        self.running = True

    def stop(self):
        self.running = False

    def join(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def loop(instrument, data_dirs, clock, logger):
    data_in, data_out = data_dirs
    return DataLoop(instrument, data_in, data_out, logger, poll_interval=2, timeout=1,
                    sleep=clock.sleep, clock=clock)


def numbers(frames):
    return [f.number for f in frames]


def test_make_cursor():
    name, cursor = make_cursor(obslist=[1, 2, 5])
    assert name == 'list' and list(cursor.numbers) == [1, 2, 5]
    name, cursor = make_cursor(obs_from=3, obs_to=5)
    assert name == 'list' and list(cursor.numbers) == [3, 4, 5]
    name, cursor = make_cursor(obs_to=2)
    assert list(cursor.numbers) == [1, 2]
    assert make_cursor(obs_from=7)[0] == 'inf'
    assert make_cursor(obs_from=7, loop='flag')[0] == 'flag'
    name, cursor = make_cursor()
    assert name == 'wait' and cursor.current == 1
    assert make_cursor(files=['a.fits'])[0] == 'file'
    with pytest.raises(FatalError):
        make_cursor(obs_from=5, obs_to=2)


def test_list_loop(loop):
    write_raw(loop.data_in, 1)
    write_raw(loop.data_in, 3)

    cursor = LoopCursor(numbers=[1, 2, 3])
    assert numbers(loop.next_frames('list', UTDATE, cursor)) == [1]
    # a missing file ends the loop unless missing files are skipped
    assert loop.next_frames('list', UTDATE, cursor) is None

    cursor = LoopCursor(numbers=[1, 2, 3])
    assert numbers(loop.next_frames('list', UTDATE, cursor, skip=True)) == [1]
    assert numbers(loop.next_frames('list', UTDATE, cursor, skip=True)) == [3]
    assert loop.next_frames('list', UTDATE, cursor, skip=True) is None


def test_raw_files_are_linked(loop):
    write_raw(loop.data_in, 1)
    frame = loop.next_frames('list', UTDATE, LoopCursor(numbers=[1]))[0]
    assert frame.tempraw
    assert os.path.islink(frame.raw)
    assert os.path.dirname(frame.raw) == loop.data_out


def test_file_loop(loop):
    write_raw(loop.data_in, 4)
    cursor = LoopCursor(files=['o20240317_0004.fits', 'missing.fits'])
    assert numbers(loop.next_frames('file', UTDATE, cursor)) == [4]
    assert loop.next_frames('file', UTDATE, cursor) is None


def test_inf_loop(loop):
    write_raw(loop.data_in, 1)
    cursor = LoopCursor(current=1)
    assert numbers(loop.next_frames('inf', UTDATE, cursor)) == [1]
    assert loop.next_frames('inf', UTDATE, cursor) == []
    assert cursor.current == 3


def test_wait_loop_times_out(loop, clock):
    with pytest.raises(LoopTimeout):
        loop.next_frames('wait', UTDATE, LoopCursor(current=1))
    assert clock.now <= 3


def test_wait_loop_waits_for_stable_size(loop, clock):
    write_raw(loop.data_in, 1)
    cursor = LoopCursor(current=1)
    assert numbers(loop.next_frames('wait', UTDATE, cursor)) == [1]
    assert cursor.current == 2
    # the size was seen twice
    assert clock.now > 0


def test_wait_loop_skips_missing(loop):
    write_raw(loop.data_in, 3)
    cursor = LoopCursor(current=2)
    assert numbers(loop.next_frames('wait', UTDATE, cursor, skip=True)) == [3]
    assert cursor.current == 4


def test_flag_loop(loop):
    write_raw(loop.data_in, 1)
    write_file(os.path.join(loop.data_in, '.o20240317_0001.fits.ok'), '')
    cursor = LoopCursor(current=1)
    assert numbers(loop.next_frames('flag', UTDATE, cursor)) == [1]
    assert cursor.current == 2


def test_flag_lists_files(loop):
    write_raw(loop.data_in, 5)
    write_raw(loop.data_in, 6)
    write_file(os.path.join(loop.data_in, '.o20240317_0002.fits.ok'),
               'o20240317_0005.fits\no20240317_0006.fits\n')
    assert numbers(loop.next_frames('flag', UTDATE, LoopCursor(current=2))) == [5, 6]


def test_flag_loop_skip_is_bounded(loop):
    write_raw(loop.data_in, 3)
    write_file(os.path.join(loop.data_in, '.o20240317_0003.fits.ok'), '')
    cursor = LoopCursor(current=1)
    assert numbers(loop.next_frames('flag', UTDATE, cursor, skip=True)) == [3]

    far = 4 + FLAG_LOOKAHEAD + 1
    write_raw(loop.data_in, far)
    write_file(os.path.join(loop.data_in, f'.o20240317_{far:04d}.fits.ok'), '')
    with pytest.raises(LoopTimeout):
        loop.next_frames('flag', UTDATE, cursor, skip=True)


def test_unknown_loop(loop):
    with pytest.raises(FatalError):
        loop.next_frames('sometimes', UTDATE, LoopCursor(current=1))


def test_pause_ticks(loop, clock):
    ticks = []
    loop.tick = lambda: ticks.append(clock.now)
    loop.pause(0.5)
    assert len(ticks) == 5


def test_watch_loop(loop, clock):
    observer = FakeObserver()
    write_raw(loop.data_in, 1)
    write_raw(loop.data_in, 2)
    loop.poll_interval = 0.01
    loop.tick = lambda: clock.sleep(0.5)
    loop._watch = WatchLoop(loop, loop.logger, observer_factory=lambda: observer)

    cursor = LoopCursor(current=2)
    assert numbers(loop.next_frames('watch', UTDATE, cursor)) == [2]
    assert observer.running
    assert observer.scheduled[0][1] == loop.data_in
    with pytest.raises(LoopTimeout):
        loop.next_frames('watch', UTDATE, cursor)

    loop.close()
    assert not observer.running


def test_raw_file_alarm(instrument, tmp_path, logger):
    files = queue.Queue()
    alarm = RawFileAlarm(instrument.naming, files, logger)
    raw = str(tmp_path / 'o20240317_0009.fits')
    alarm.on_created(FileCreatedEvent(raw))
    alarm.on_created(FileCreatedEvent(raw))
    alarm.on_created(FileCreatedEvent(str(tmp_path / 'notes.txt')))
    alarm.on_moved(FileMovedEvent(str(tmp_path / '.tmp123'), str(tmp_path / 'o20240317_0010.fits')))

    assert files.get_nowait() == raw
    assert files.get_nowait().endswith('o20240317_0010.fits')
    assert files.empty()
