"""
Data arrival loops: how the pipeline finds the next observation to reduce.

    list    explicit observation numbers, ends when the list is used up
    inf     consecutive numbers starting from a given one, no waiting
    wait    consecutive numbers, waits for each file to appear
    flag    as wait, but a file is ready once its flag file appears
    file    explicit file names
    watch   files reported by a filesystem observer (see watch.py)

Every strategy returns a list of configured Frames, or None when there is
no more work defined. Timeouts raise LoopTimeout.
"""

import os
import time
import logging
from collections import deque

from obspipe.errors import FatalError, LoopTimeout
from obspipe.models.frame import Frame
from obspipe.pipelines.watch import WatchLoop

LOOP_NAMES = ('list', 'inf', 'wait', 'flag', 'file', 'watch')
FLAG_LOOKAHEAD = 10
TICK_INTERVAL = 0.1


class LoopCursor(object):
    """
    Position of a loop.

    Attributes:
        current (int): next observation number (inf, wait, flag, watch)
        numbers (deque): observation numbers still to do (list)
        files (deque): file names still to do (file)
    """

    def __init__(self, current=None, numbers=None, files=None):
        self.current = current
        self.numbers = deque(numbers or [])
        self.files = deque(files or [])

    def __repr__(self):
        return f'LoopCursor(current={self.current}, numbers={list(self.numbers)}, files={list(self.files)})'


def make_cursor(obs_from=None, obs_to=None, obslist=None, loop=None, files=None):
    '''
    Work out the loop and its cursor from the run options.

        files given             file loop over the files
        list given              list loop over the list
        from and to             list loop over from..to
        to only                 list loop over 1..to
        from only               requested loop (default inf) from that number
        nothing                 requested loop (default wait) from 1

    Returns:
        (str, LoopCursor)
    '''
    if files:
        return 'file', LoopCursor(files=files)
    if obslist:
        return 'list', LoopCursor(numbers=obslist)
    if obs_from is not None and obs_to is not None:
        if obs_to < obs_from:
            raise FatalError(f'Last observation {obs_to} is before first observation {obs_from}')
        return 'list', LoopCursor(numbers=range(obs_from, obs_to + 1))
    if obs_to is not None:
        return 'list', LoopCursor(numbers=range(1, obs_to + 1))
    if obs_from is not None:
        return loop or 'inf', LoopCursor(current=obs_from)
    return loop or 'wait', LoopCursor(current=1)


class DataLoop(object):
    """
    Args:
        instrument (Instrument): raw file naming and frame set up
        data_in (str): directory receiving raw data
        data_out (str): output directory, raw files are linked there
        logger (logging.Logger): logger
        poll_interval (float): seconds between directory scans (wait, flag)
        timeout (float): seconds to wait for a file before giving up
        sleep (callable): sleep function
        clock (callable): monotonic clock
        tick (callable): called at least every 0.1 s while waiting, so that
            a host event loop stays responsive
    """

    def __init__(self, instrument, data_in, data_out, logger=None, poll_interval=2.0, timeout=7200,
                 sleep=time.sleep, clock=time.monotonic, tick=None):
        self.instrument = instrument
        self.naming = instrument.naming
        self.data_in = data_in
        self.data_out = data_out
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.sleep = sleep
        self.clock = clock
        self.tick = tick
        self._watch = None

    # --- dispatch -------------------------------------------------------

    def strategy(self, name):
        if name == 'watch':
            if self._watch is None:
                self._watch = WatchLoop(self, self.logger)
            return self._watch.next_frames
        if name not in LOOP_NAMES:
            raise FatalError(f'Unknown data loop {name}, expected one of {", ".join(LOOP_NAMES)}')
        return getattr(self, 'next_' + name)

    def next_frames(self, name, utdate, cursor, skip=False):
        return self.strategy(name)(utdate, cursor, skip)

    def close(self):
        if self._watch is not None:
            self._watch.stop()
            self._watch = None

    # --- helpers --------------------------------------------------------

    def check_dir(self):
        if not os.path.isdir(self.data_in):
            raise FatalError(f'Input data directory {self.data_in} does not exist')

    def pause(self, seconds):
        ''' sleep, calling tick every 0.1 s when a tick function is set '''
        if seconds <= 0:
            return
        if self.tick is None:
            self.sleep(seconds)
            return
        remaining = seconds
        while remaining > 1e-9:
            step = min(TICK_INTERVAL, remaining)
            self.sleep(step)
            self.tick()
            remaining -= step

    def raw_path(self, utdate, obsnum):
        return os.path.join(self.data_in, self.naming.pattern_from_bits(utdate, obsnum))

    def flag_path(self, utdate, obsnum):
        return os.path.join(self.data_in, self.naming.flag_from_bits(utdate, obsnum))

    def check_data_dir(self, after, flag=False, utdate=None):
        '''
        Scan the input directory.

        Args:
            after (int): observation number to search beyond
            flag (bool): look at flag files rather than data files
            utdate: only consider files of this UT date

        Returns:
            (int, int): the first observation number above after, and the
            highest number present. (None, None) when there is nothing newer.
        '''
        self.check_dir()
        numbers = []
        for fname in os.listdir(self.data_in):
            if flag:
                if not self.naming.is_flag(fname, utdate):
                    continue
                fname = fname[1:-len(self.naming.flag_suffix)]
            elif not self.naming.is_raw(fname, utdate):
                continue
            numbers.append(self.naming.number(fname))
        numbers.sort()
        for n in numbers:
            if n > after:
                return n, numbers[-1]
        return None, None

    def read_flag(self, flagfile):
        ''' data files named in a flag file, empty for an empty flag file '''
        files = []
        with open(flagfile) as fh:
            for line in fh:
                line = line.strip()
                if line and not line.startswith('#'):
                    files.append(line)
        return files

    def link_and_read(self, fname):
        '''
        Make a configured Frame from a raw file. When the input and output
        directories differ the raw file is linked into the output directory
        and the link is marked as temporary.

        Returns:
            list: [Frame], empty when the file does not exist
        '''
        src = fname if os.path.isabs(fname) else os.path.join(self.data_in, fname)
        if not os.path.exists(src):
            self.logger.warning(f'Input file {src} not found')
            return []
        path = src
        tempraw = False
        if os.path.realpath(os.path.dirname(src)) != os.path.realpath(self.data_out):
            dest = os.path.join(self.data_out, os.path.basename(src))
            if os.path.islink(dest) and not os.path.exists(dest):
                self.logger.error(f'Dangling link {dest} is in the way of {src}')
                return []
            if not os.path.exists(dest):
                os.symlink(src, dest)
                tempraw = True
            path = dest
        frame = Frame(self.instrument, path)
        frame.tempraw = tempraw
        self.logger.info(f'Read {os.path.basename(src)} (group {frame.group}, recipe {frame.recipe})')
        return [frame]

    def wait_stable(self, path, deadline=None):
        '''
        Wait until the size of path is non-zero and unchanged over two
        consecutive polls.
        '''
        old = 0
        while True:
            if os.path.exists(path):
                size = os.path.getsize(path)
                if size == old and size > 0:
                    return size
                old = size
            if deadline is not None and self.clock() >= deadline:
                raise LoopTimeout(f'Timeout whilst waiting for {path} to be complete')
            self.pause(self.poll_interval if deadline is None
                       else min(self.poll_interval, max(deadline - self.clock(), 0)))

    # --- strategies -----------------------------------------------------

    def next_list(self, utdate, cursor, skip=False):
        while cursor.numbers:
            obsnum = cursor.numbers.popleft()
            path = self.raw_path(utdate, obsnum)
            if os.path.exists(path):
                return self.link_and_read(path)
            if skip:
                self.logger.info(f'{os.path.basename(path)} not found, skipping')
                continue
            self.logger.warning(f'{os.path.basename(path)} not found')
            return None
        return None

    def next_file(self, utdate, cursor, skip=False):
        while cursor.files:
            fname = cursor.files.popleft()
            frames = self.link_and_read(fname)
            if frames or not skip:
                return frames if frames else None
        return None

    def next_inf(self, utdate, cursor, skip=False):
        ''' the file for the current number, [] when it is not there (yet) '''
        if cursor.current is None:
            return None
        obsnum = cursor.current
        cursor.current += 1
        self.check_dir()
        return self.link_and_read(self.raw_path(utdate, obsnum))

    def next_wait(self, utdate, cursor, skip=False):
        if cursor.current is None:
            return None
        self.check_dir()
        obsnum = cursor.current
        path = self.raw_path(utdate, obsnum)
        self.logger.info(f'Checking for next data file: {os.path.basename(path)}')
        deadline = self.clock() + self.timeout
        old = 0
        while True:
            if os.path.exists(path):
                size = os.path.getsize(path)
                if size == old and size > 0:
                    break
                old = size
            elif skip:
                following, _ = self.check_data_dir(obsnum - 1, utdate=utdate)
                if following is not None and following != obsnum:
                    self.logger.info(f'{os.path.basename(path)} appears to be missing, '
                                     f'next available observation is number {following}')
                    obsnum = following
                    cursor.current = obsnum
                    path = self.raw_path(utdate, obsnum)
                    old = 0
                    continue
            if self.clock() >= deadline:
                raise LoopTimeout(f'Timeout whilst waiting for next data file: {os.path.basename(path)}')
            self.pause(min(self.poll_interval, max(deadline - self.clock(), 0)))
        cursor.current = obsnum + 1
        return self.link_and_read(path)

    def next_flag(self, utdate, cursor, skip=False):
        if cursor.current is None:
            return None
        self.check_dir()
        obsnum = cursor.current
        flag = self.flag_path(utdate, obsnum)
        self.logger.info(f'Checking for new data via flag: {os.path.basename(flag)}')
        deadline = self.clock() + self.timeout
        while not os.path.exists(flag):
            if skip:
                following, _ = self.check_data_dir(obsnum - 1, flag=True, utdate=utdate)
                if following is not None and obsnum < following <= obsnum + FLAG_LOOKAHEAD:
                    self.logger.info(f'{os.path.basename(flag)} appears to be missing, '
                                     f'next available observation is number {following}')
                    obsnum = following
                    flag = self.flag_path(utdate, obsnum)
                    continue
            if self.clock() >= deadline:
                raise LoopTimeout(f'Timeout whilst waiting for flag file: {os.path.basename(flag)}')
            self.pause(min(self.poll_interval, max(deadline - self.clock(), 0)))
        cursor.current = obsnum + 1
        files = self.read_flag(flag)
        if not files:
            files = [self.raw_path(utdate, obsnum)]
        frames = []
        for fname in files:
            frames.extend(self.link_and_read(fname))
        return frames
