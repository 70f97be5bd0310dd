"""
Calibration index files.

An index file is a whitespace separated table. The first line names the
columns, every other line describes one calibration frame::

    #NAME ORACTIME MODE FILTER EXPTIME
    o20240317_0003_dk 60386.2051 dark J 10.0
    o20240317_0011_dk 60386.2496 dark J 10.0

The columns are the fields of the companion rules file. A rules file has one
line per field giving the test an index entry must pass against the header
of the frame being calibrated::

    ORACTIME            # stored only
    MODE     eq         # entry value == header value
    EXPTIME  tol 0.5    # abs(entry - header) <= 0.5
    FILTER   in J,H,K   # entry value is one of the list

Other comparisons: ne, ge, le, gt, lt (entry <op> header value).

Index files are append-only: new entries are written as a single line under
an exclusive lock so that several pipelines can share one index.
"""

import os
import re
import fcntl
import logging
from collections import OrderedDict

import numpy as np
import pandas as pd

from obspipe.errors import PipelineError, NoSuitableCalibration

NAME_COL = 'NAME'
RULE_OPS = ('eq', 'ne', 'ge', 'le', 'gt', 'lt', 'tol', 'in')


def normalise(value):
    ''' index values are single tokens: collapse inner whitespace '''
    return re.sub(r'\s+', '_', str(value).strip())


def as_number(value):
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def locked_append(path, lines, header=None):
    '''
    Append lines to a file under an exclusive lock. The header line is
    written first when the file is empty.
    '''
    with open(path, 'a') as fh:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            fh.seek(0, os.SEEK_END)
            if header is not None and fh.tell() == 0:
                fh.write(header + '\n')
            for line in lines:
                fh.write(line + '\n')
            fh.flush()
            os.fsync(fh.fileno())
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def read_table(path, columns=None):
    '''
    Read a whitespace separated table with a "#col col col" header line.

    Returns:
        (list, list): column names and rows (lists of strings)
    '''
    names = None
    rows = []
    with open(path) as fh:
        for line in fh:
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.startswith('#'):
                if names is None and rows == []:
                    names = stripped[1:].split()
                continue
            rows.append(stripped.split())
    if names is None:
        names = list(columns) if columns is not None else []
    return names, rows


class CalibrationRules(object):
    """
    The rules of one calibration role.

    Args:
        rules (OrderedDict): field -> (op, argument). op is None for fields that
            are only stored.
    """

    def __init__(self, rules):
        self.rules = OrderedDict(rules)

    @property
    def fields(self):
        return list(self.rules.keys())

    @classmethod
    def from_file(cls, path):
        if path is None or not os.path.exists(path):
            raise PipelineError(f'Could not open rules file {path}')
        rules = OrderedDict()
        with open(path) as fh:
            for lineno, line in enumerate(fh, 1):
                line = line.split('#', 1)[0].strip()
                if not line:
                    continue
                parts = line.split(None, 2)
                field = parts[0]
                op = parts[1].lower() if len(parts) > 1 else None
                arg = parts[2].strip() if len(parts) > 2 else None
                if op is not None and op not in RULE_OPS:
                    raise PipelineError(f'Unknown rule "{op}" for {field} in {path} line {lineno}')
                if op == 'tol':
                    if as_number(arg) is None:
                        raise PipelineError(f'Rule tol for {field} needs a number ({path} line {lineno})')
                    arg = float(arg)
                elif op == 'in':
                    if not arg:
                        raise PipelineError(f'Rule in for {field} needs a list ({path} line {lineno})')
                    arg = [normalise(a) for a in arg.split(',') if a.strip()]
                rules[field] = (op, arg)
        return cls(rules)

    def check_field(self, field, entry_value, context):
        '''
        Test one field of an index entry against the context.

        Returns:
            bool: True when the entry passes the rule
        '''
        op, arg = self.rules[field]
        if op is None:
            return True
        if op == 'in':
            return normalise(entry_value) in arg
        if field not in context or context[field] is None:
            return False
        query = context[field]
        if op == 'tol':
            a, b = as_number(entry_value), as_number(query)
            return a is not None and b is not None and abs(a - b) <= arg
        a, b = as_number(entry_value), as_number(query)
        if a is None or b is None:
            a, b = normalise(entry_value), normalise(query)
        if op == 'eq':
            return a == b
        if op == 'ne':
            return a != b
        if op == 'ge':
            return a >= b
        if op == 'le':
            return a <= b
        if op == 'gt':
            return a > b
        return a < b

    def check(self, entry, context):
        '''
        Test every rule.

        Returns:
            str or None: the first field failing its rule, None when all pass
        '''
        for field in self.rules:
            if not self.check_field(field, entry.get(field), context):
                return field
        return None


class CalibrationIndex(object):
    """
    Append-only store of calibration candidates for one role.

    Args:
        indexfile (str): path of the index file. Need not exist yet.
        rules (str or CalibrationRules): rules file or parsed rules
        logger (logging.Logger): logger for verification messages
        readonly (bool): refuse to add entries (static indexes)

    Entries keep their insertion order. Adding an entry under a name that is
    already present supersedes the values of the earlier entry, which keeps
    its position.
    """

    def __init__(self, indexfile, rules, logger=None, readonly=False):
        self.indexfile = indexfile
        if isinstance(rules, CalibrationRules):
            self.rules = rules
            self.rulesfile = None
        else:
            self.rulesfile = rules
            self.rules = CalibrationRules.from_file(rules)
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.readonly = readonly
        self.columns = [NAME_COL] + self.rules.fields
        self.table = pd.DataFrame([], columns=self.columns, dtype=object)
        self.slurpindex()

    def __len__(self):
        return len(self.entries())

    def slurpindex(self):
        ''' (re)read the index file '''
        if self.indexfile is None or not os.path.exists(self.indexfile):
            self.table = pd.DataFrame([], columns=self.columns, dtype=object)
            return self.table
        names, rows = read_table(self.indexfile, self.columns)
        if names != self.columns:
            raise PipelineError(
                f'Index file {self.indexfile} has columns {names} but the rules expect {self.columns}.'
                ' The index needs to be regenerated')
        for row in rows:
            if len(row) != len(self.columns):
                raise PipelineError(f'Corrupt entry {row[0]} in index file {self.indexfile}')
        self.table = pd.DataFrame(rows, columns=self.columns, dtype=object)
        return self.table

    reload = slurpindex

    def entries(self):
        '''
        current entries, one per name, in order of first insertion;
        a superseded name keeps its place but takes the latest values
        '''
        order = self.table[NAME_COL].drop_duplicates(keep='first')
        latest = self.table.drop_duplicates(subset=NAME_COL, keep='last').set_index(NAME_COL)
        return latest.loc[order.values].reset_index()[self.columns]

    def header_line(self):
        return '#' + ' '.join(self.columns)

    def add(self, name, header):
        '''
        Add an entry built from the rule fields of a header.

        Args:
            name (str): calibration name, usually the file name
            header (dict): header of the calibration frame
        '''
        if self.readonly:
            raise PipelineError(f'Index {self.indexfile} is read-only')
        values = [normalise(name)]
        for field in self.rules.fields:
            if field not in header or header[field] is None:
                raise PipelineError(f'Rules file specifies entry {field} unknown to file header')
            values.append(normalise(header[field]))
        if self.indexfile is not None:
            locked_append(self.indexfile, [' '.join(values)], header=self.header_line())
        row = pd.DataFrame([values], columns=self.columns, dtype=object)
        self.table = row if self.table.empty else pd.concat([self.table, row], ignore_index=True)
        self.logger.debug(f'Added {name} to {self.indexfile}')
        return name

    def indexentry(self, name):
        ''' the entry for name as a dict, None if unknown '''
        table = self.entries()
        match = table[table[NAME_COL] == normalise(name)]
        if match.empty:
            return None
        return match.iloc[-1].to_dict()

    def verify(self, name, context, warn=True):
        '''
        Check that the named calibration is suitable for the context.

        Returns:
            bool
        '''
        if name is None:
            return False
        entry = self.indexentry(name)
        if entry is None:
            if warn:
                self.logger.warning(f'{name} is unknown to the index {self.indexfile} and may not be used as calibration')
            return False
        failed = self.rules.check(entry, context)
        if failed is not None:
            if warn:
                op, arg = self.rules.rules[failed]
                self.logger.warning(f'{name} not a suitable calibration: failed {failed} {op} {arg or ""}'.rstrip())
            return False
        return True

    def _time_differences(self, timekey, context, earlier=False):
        table = self.entries()
        if timekey not in self.rules.rules:
            raise PipelineError(f'Key {timekey} not in rules of {self.indexfile}')
        query = as_number(context.get(timekey))
        if query is None:
            raise NoSuitableCalibration(f'Time key {timekey} missing from the header being calibrated')
        times = pd.to_numeric(table[timekey], errors='coerce').to_numpy(dtype=float)
        dt = np.abs(times - query)
        if earlier:
            dt = np.where(times > query, np.inf, dt)
        return table, np.where(np.isnan(dt), np.inf, dt)

    def choosebydt(self, timekey, context, earlier=False, warn=False):
        '''
        Choose the suitable calibration nearest in time to the context.
        Candidates are tried in order of increasing time difference; equal
        differences keep insertion order, so the earliest entry wins a tie.

        Args:
            timekey (str): the time column, e.g. ORACTIME
            context (dict): header of the frame being calibrated
            earlier (bool): only consider entries not later than the frame

        Returns:
            str: name of the chosen calibration

        Raises:
            NoSuitableCalibration: when no entry passes the rules
        '''
        table, dt = self._time_differences(timekey, context, earlier)
        order = np.argsort(dt, kind='stable')
        for i in order:
            if np.isinf(dt[i]):
                break
            entry = table.iloc[i].to_dict()
            if self.rules.check(entry, context) is None:
                return entry[NAME_COL]
            if warn:
                self.logger.debug(f'{entry[NAME_COL]} rejected for {context.get(timekey)}')
        raise NoSuitableCalibration(f'No suitable calibrations were found in index file {self.indexfile}')

    def chooseby_negativedt(self, timekey, context, warn=False):
        return self.choosebydt(timekey, context, earlier=True, warn=warn)
