"""
Calibration selection for the frame being reduced.

For each role the selector remembers the calibration it last handed out.
A request is answered, in order, by

    1. the value pinned by the operator (never checked, index not read)
    2. the value bound earlier, if it still passes the rules for the
       current frame
    3. the index entry nearest in time that passes the rules

and the answer is bound for the next request.
"""

import os
import shutil
import logging

from obspipe.calibration.index import CalibrationIndex, as_number
from obspipe.constants import TIME_KEY
from obspipe.errors import PipelineError, NoSuitableCalibration


class CalibrationSelector(object):
    """
    Args:
        provider (CalibrationRuleProvider): roles and rules of the instrument
        data_out (str): output directory, home of the dynamic index files
        data_cal (str): calibration directory searched before the built-in rules
        logger (logging.Logger): logger
    """

    def __init__(self, provider, data_out, data_cal=None, logger=None):
        self.provider = provider
        self.data_out = data_out
        self.data_cal = data_cal
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.thing = {}
        self.frame = None
        self._bound = {}
        self._pinned = {}
        self._indexes = {}

    # --- context --------------------------------------------------------

    def set_context(self, frame):
        ''' use the headers of frame to validate and select calibrations '''
        self.frame = frame
        self.thing = frame.context() if frame is not None else {}
        return self.thing

    # --- overrides ------------------------------------------------------

    def pin(self, role, value):
        self.provider.role(role)
        self._pinned[role] = value
        self.logger.info(f'Calibration {role} fixed to {value}')

    def is_pinned(self, role):
        return role in self._pinned

    def override(self, assignments):
        '''
        Pin calibrations from operator assignments.

        Args:
            assignments (dict, list or str): {'dark': 'dark_01'},
                ['dark=dark_01', 'flat=flat_02'] or 'dark=dark_01,flat=flat_02'
        '''
        if not assignments:
            return
        if isinstance(assignments, str):
            assignments = [a for a in assignments.split(',') if a.strip()]
        if not isinstance(assignments, dict):
            pairs = {}
            for item in assignments:
                if '=' not in item:
                    self.logger.warning(f'Ignoring calibration override "{item}", expected role=value')
                    continue
                role, value = item.split('=', 1)
                pairs[role.strip()] = value.strip()
            assignments = pairs
        for role, value in assignments.items():
            try:
                self.pin(role, value)
            except KeyError:
                self.logger.warning(f'Calibration override {role} unknown by this instrument')

    # --- indexes --------------------------------------------------------

    def _extra_dirs(self):
        return [self.data_cal] if self.data_cal else []

    def index(self, role):
        ''' the index of a role, opened on first use '''
        if role in self._indexes:
            return self._indexes[role]
        rule = self.provider.role(role)
        rulesfile = self.provider.rules_file(role, self._extra_dirs())
        if rulesfile is None:
            raise PipelineError(f'No rules file for calibration {role}')
        name = self.provider.index_name(role)
        dynamic = os.path.join(self.data_out, name)
        if rule.index_mode == 'static':
            indexfile = self.provider.find_file(name, self._extra_dirs())
            index = CalibrationIndex(indexfile, rulesfile, self.logger, readonly=True)
        else:
            if rule.index_mode == 'copy' and not os.path.exists(dynamic):
                static = self.provider.find_file(name, self._extra_dirs())
                if static is not None:
                    shutil.copyfile(static, dynamic)
            index = CalibrationIndex(dynamic, rulesfile, self.logger)
        self._indexes[role] = index
        return index

    # --- selection ------------------------------------------------------

    def get(self, role):
        '''
        The calibration to use for role with the current frame.

        Raises:
            NoSuitableCalibration: nothing in the index is compatible and the
                role has no default
        '''
        if role in self._pinned:
            return self._pinned[role]
        try:
            rule = self.provider.role(role)
        except KeyError as e:
            raise PipelineError(str(e))
        index = self.index(role)
        value = self._bound.get(role)
        if value is not None and index.verify(value, self.thing, warn=False):
            return value
        try:
            if rule.time_search == 'earlier':
                value = index.chooseby_negativedt(TIME_KEY, self.thing)
            else:
                value = index.choosebydt(TIME_KEY, self.thing)
        except NoSuitableCalibration as e:
            if rule.default is None:
                raise NoSuitableCalibration(f'No suitable {role} calibration: {e}')
            self.logger.warning(f'No suitable {role} calibration, using default {rule.default}')
            value = rule.default
        self._bound[role] = value
        self.logger.debug(f'Calibration {role}: {value}')
        return value

    def set(self, role, value):
        ''' bind a calibration, ignored when the role is pinned '''
        self.provider.role(role)
        if role in self._pinned:
            self.logger.debug(f'Calibration {role} is fixed, not updating to {value}')
            return self._pinned[role]
        self._bound[role] = value
        return value

    def get_value(self, role, column):
        ''' a value stored in the index entry of the selected calibration '''
        value = self.get(role)
        if role in self._pinned:
            return value
        entry = self.index(role).indexentry(value)
        if entry is None:
            return value
        if column not in entry:
            raise PipelineError(f'Index for {role} has no column {column}')
        number = as_number(entry[column])
        return number if number is not None else entry[column]

    def file(self, role, frame, name=None):
        '''
        Register frame as a calibration for role and bind it.

        Returns:
            str: name of the new index entry
        '''
        if name is None:
            name = os.path.basename(frame.file)
        self.index(role).add(name, frame.context())
        self.logger.info(f'Filed {name} as {role} calibration')
        return self.set(role, name)
