"""
Group: the frames sharing a group key
"""
import os
import logging

from obspipe.constants import UT_KEY, NUM_KEY
from obspipe.models.frame import suffixed_name

logger = logging.getLogger(__name__)


class Group(object):
    '''
    Frames that are reduced together.

    ``allmembers`` holds every frame pushed into the group in arrival order.
    ``members`` is derived from it and holds only the frames that are good and
    not listed by the bad observation filter. It is recomputed whenever
    ``allmembers`` changes, so the two never get out of step.

    Args:
        name (str): group key
        instrument (Instrument): used for the group file name
        badobs (BadObservationFilter): filter applied to members, may be None
        data_out (str): output directory holding the group file
    '''

    def __init__(self, name, instrument=None, badobs=None, data_out=None):
        self.name = name
        self.instrument = instrument
        self.badobs_index = badobs
        self.data_out = data_out
        self.hdr = {}
        self.uhdr = {}
        self.file = None
        self._allmembers = []
        self._members = []
        self.file = self.file_from_name()

    def __repr__(self):
        return f'Group({self.name}, {len(self._members)}/{len(self._allmembers)} members)'

    def __len__(self):
        return len(self._members)

    @property
    def allmembers(self):
        return list(self._allmembers)

    @allmembers.setter
    def allmembers(self, frames):
        self._allmembers = list(frames)
        self.check_membership()

    @property
    def members(self):
        return list(self._members)

    def push(self, *frames):
        ''' add frames to the group and recompute the members '''
        self._allmembers.extend(frames)
        self.check_membership()
        return len(self._members)

    def identity(self, frame):
        return {UT_KEY: frame.uhdr.get(UT_KEY), NUM_KEY: frame.number}

    def check_membership(self):
        '''
        Recompute members from allmembers: frames that are marked bad, or
        matched by the bad observation filter, are left out. Order is kept.
        '''
        members = []
        for frame in self._allmembers:
            if not frame.isgood:
                continue
            if self.badobs_index is not None:
                match = self.badobs_index.cmp_with_hash(self.identity(frame))
                if match is not None:
                    logger.debug(f'{frame.raw} excluded from group {self.name} ({match})')
                    continue
            members.append(frame)
        self._members = members
        return self._members

    # --- membership queries ---------------------------------------------

    def num(self):
        ''' index of the last member, -1 for an empty group '''
        return len(self._members) - 1

    def frame(self, i):
        return self._members[i]

    def membernumbers(self):
        return [f.number for f in self._members]

    def membernames(self):
        return [f.file for f in self._members]

    def lastmember(self, frame):
        ''' True when frame is the last good member of the group '''
        return bool(self._members) and self._members[-1] is frame

    # --- group file -----------------------------------------------------

    def file_from_name(self):
        if self.instrument is None:
            return None
        fname = self.instrument.naming.group_file(self.name)
        if self.data_out is not None:
            fname = os.path.join(self.data_out, fname)
        return fname

    def inout(self, suffix):
        ''' (infile, outfile) for a group product, see Frame.inout '''
        return self.file, suffixed_name(self.file, suffix)

    def file_exists(self):
        return self.file is not None and os.path.exists(self.file)

    def erase(self):
        ''' remove a group file left over from a previous run '''
        if self.file_exists():
            logger.info(f'Removing stale group file {self.file}')
            os.remove(self.file)
            return True
        return False
