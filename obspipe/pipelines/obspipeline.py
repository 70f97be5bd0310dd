# obspipeline.py
"""
The pipeline: takes frames from a data loop, sorts them into groups and
runs their recipes, either as they arrive (streaming) or once every frame
has been read (batch).
"""

import logging
from collections import OrderedDict

from obspipe.constants import Status
from obspipe.errors import RunAbort
from obspipe.logger import frame_logger
from obspipe.models.group import Group

ALL_GROUP = 'ALL'


class RunStatistics(object):
    """
    Outcome counts of a run.

    OK, TERM and BADENG count recipes by status; every other status counts
    as BAD. A bad engine is also counted in BAD. GOOD counts OK and TERM.
    """

    def __init__(self):
        self.counts = OrderedDict([('OK', 0), ('TERM', 0), ('BADENG', 0), ('BAD', 0),
                                   ('GOOD', 0), ('TOTAL', 0)])

    def __getitem__(self, key):
        return self.counts[key]

    def record(self, status):
        status = Status.coerce(status)
        key = {Status.OK: 'OK', Status.TERMINATED: 'TERM', Status.BAD_ENGINE: 'BADENG'}.get(status, 'BAD')
        self.counts[key] += 1
        self.counts['TOTAL'] += 1
        if status in (Status.OK, Status.TERMINATED):
            self.counts['GOOD'] += 1
        elif key != 'BAD':
            self.counts['BAD'] += 1
        return status

    def summary(self):
        total = self.counts['TOTAL']
        if total == 0:
            return 'No recipes were processed'
        if total == 1:
            text = 'which completed successfully'
            if self.counts['TERM']:
                text = 'which was terminated early'
            elif self.counts['BADENG']:
                text = 'which had a bad algorithm engine'
            elif self.counts['GOOD'] == 0:
                text = 'which completed with an error'
            return f'Processed one recipe {text}'
        text = 'successfully'
        if self.counts['BAD'] > 0:
            text = f'of which {self.counts["BAD"]} completed with an error'
        elif self.counts['TERM'] > 0:
            waswere = 'was' if self.counts['TERM'] == 1 else 'were'
            text = f'of which {self.counts["TERM"]} {waswere} terminated early'
        return f'Processed {total} recipes {text}'

    def exit_status(self):
        return 0 if self.counts['BAD'] == 0 else 1


class ObsPipeline(object):
    """
    Args:
        instrument (Instrument): instrument of the data
        compiler (RecipeCompiler): compiles recipes
        executor (RecipeExecutor): runs them
        calibration (CalibrationSelector): calibration selection
        loop (DataLoop): finds the data
        logger (logging.Logger): logger
        batch (bool): read all the data before reducing any of it
        override_recipe (str): recipe used for every frame instead of the header one
        resume (bool): keep group files left by an earlier run
        group_transient (int): 1 drops earlier groups when a new group starts,
            -1 puts every frame in one group
        badobs (BadObservationFilter): filter handed to new groups
        display: display object made available to recipes
    """

    def __init__(self, instrument, compiler, executor, calibration, loop, logger=None, batch=False,
                 override_recipe=None, resume=False, group_transient=0, badobs=None, display=None):
        self.instrument = instrument
        self.compiler = compiler
        self.executor = executor
        self.calibration = calibration
        self.loop = loop
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.batch = batch
        self.override_recipe = override_recipe
        self.resume = resume
        self.group_transient = group_transient
        self.badobs = badobs
        self.display = display
        self.groups = OrderedDict()
        self.stats = RunStatistics()

    def store_frame_in_group(self, frame, discard=True):
        '''
        Put frame in its group, creating the group on first use.

        With group_transient 1 a new group replaces the earlier ones, unless
        discard is False; batch runs drop them only once they are reduced.
        '''
        name = ALL_GROUP if self.group_transient == -1 else frame.group
        created = False
        if name not in self.groups:
            if self.group_transient == 1 and discard:
                self.drop_groups()
            self.groups[name] = Group(name, self.instrument, self.badobs, self.loop.data_out)
            created = True
        group = self.groups[name]
        group.push(frame)
        log = frame_logger(self.logger, frame)
        if created:
            log.info(f'A new group {group.name} has been created')
            if group.file_exists() and not self.resume:
                group.erase()
        else:
            log.info(f'This observation is part of group {group.name}')
        return group

    def process_frame(self, frame, group):
        '''
        Compile and run the recipe of one frame.

        Returns:
            Status
        '''
        recipe = self.override_recipe or frame.recipe
        compiled = self.compiler.compile(recipe)
        return self.executor.execute(compiled, frame, group, self.calibration, self.display)

    def frames(self, loop_name, utdate, cursor, skip=False):
        ''' frames from the loop until it has no more '''
        while True:
            frames = self.loop.next_frames(loop_name, utdate, cursor, skip)
            if not frames:
                return
            for frame in frames:
                yield frame

    def run(self, utdate, cursor, loop_name='list', skip=False):
        '''
        Reduce the data found by the loop.

        Returns:
            RunStatistics

        Raises:
            FatalError, UserAbort: after engines are shut down and the loop is closed
        '''
        try:
            if self.batch:
                self.run_batch(utdate, cursor, loop_name, skip)
            else:
                self.run_streaming(utdate, cursor, loop_name, skip)
        except RunAbort as e:
            self.logger.error(f'Pipeline stopped: {e}')
            raise
        except KeyboardInterrupt:
            self.logger.error('Pipeline interrupted')
            raise
        finally:
            self.cleanup()
        self.logger.info(self.stats.summary())
        return self.stats

    def run_streaming(self, utdate, cursor, loop_name, skip):
        for frame in self.frames(loop_name, utdate, cursor, skip):
            group = self.store_frame_in_group(frame)
            self.stats.record(self.process_frame(frame, group))

    def run_batch(self, utdate, cursor, loop_name, skip):
        for frame in self.frames(loop_name, utdate, cursor, skip):
            self.store_frame_in_group(frame, discard=False)
        self.logger.info(f'Read all data: {len(self.groups)} groups')
        for group in list(self.groups.values()):
            for frame in group.members:
                self.stats.record(self.process_frame(frame, group))
        if self.group_transient == 1 and self.groups:
            name, group = self.groups.popitem()
            self.drop_groups()
            self.groups[name] = group

    def drop_groups(self):
        for group in self.groups.values():
            for frame in group.allmembers:
                self.executor.remove_temp_raw(frame)
        self.groups.clear()

    def cleanup(self):
        self.executor.engines.shutdown()
        self.loop.close()
        for group in self.groups.values():
            for frame in group.allmembers:
                self.executor.remove_temp_raw(frame)
