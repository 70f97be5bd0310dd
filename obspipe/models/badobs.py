"""
Bad observation filter.

The observations to leave out of group processing are listed in an index
file whose columns are named by a rules file. With the default rules::

    rules.badobs              index.badobs
    ------------              ------------
    ORACUT                    #NAME ORACUT ORACNUM
    ORACNUM                   bad1 20240317 42
                              bad2 20240317 43

frames 42 and 43 of 20240317 are dropped from the members of their group.
"""

import os
import logging
from collections import OrderedDict

from obspipe.calibration.index import read_table, locked_append, normalise, as_number
from obspipe.constants import UT_KEY, NUM_KEY
from obspipe.errors import PipelineError

DEFAULT_FIELDS = (UT_KEY, NUM_KEY)


def _same(a, b):
    na, nb = as_number(a), as_number(b)
    if na is not None and nb is not None:
        return na == nb
    return normalise(a) == normalise(b)


class BadObservationFilter(object):
    """
    Decides whether an observation is excluded from group membership.

    Args:
        indexfile (str): index.badobs path, may not exist yet
        rulesfile (str): rules.badobs path, None for ORACUT and ORACNUM
        logger (logging.Logger): logger
    """

    def __init__(self, indexfile=None, rulesfile=None, logger=None):
        self.indexfile = indexfile
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.fields = list(DEFAULT_FIELDS)
        if rulesfile is not None:
            self.fields = self.read_rules(rulesfile)
        self.rows = OrderedDict()
        self.predicates = []
        self.reload()

    @staticmethod
    def read_rules(rulesfile):
        if not os.path.exists(rulesfile):
            raise PipelineError(f'Could not open bad observation rules {rulesfile}')
        fields = []
        with open(rulesfile) as fh:
            for line in fh:
                line = line.split('#', 1)[0].strip()
                if line:
                    fields.append(line.split()[0])
        if not fields:
            raise PipelineError(f'No fields in bad observation rules {rulesfile}')
        return fields

    def reload(self):
        self.rows = OrderedDict()
        if self.indexfile is None or not os.path.exists(self.indexfile):
            return self.rows
        names, rows = read_table(self.indexfile, ['NAME'] + self.fields)
        if names[1:] != self.fields:
            raise PipelineError(f'Bad observation index {self.indexfile} does not match its rules')
        for row in rows:
            self.rows[row[0]] = dict(zip(self.fields, row[1:]))
        return self.rows

    def add_predicate(self, predicate):
        '''
        Add a rule given as a function of the identity mapping of a frame,
        returning True when the frame is bad.
        '''
        self.predicates.append(predicate)
        return predicate

    def clear_predicates(self):
        self.predicates = []

    def cmp_with_hash(self, identity):
        '''
        Compare the identity of a frame with the index rows and the
        predicate rules.

        Args:
            identity (dict): values for the rule fields, e.g. ORACUT and ORACNUM

        Returns:
            str or None: the name of the matching row (or predicate), None when the frame is not bad
        '''
        for name, row in self.rows.items():
            if all(field in identity and _same(row[field], identity[field]) for field in self.fields):
                return name
        for predicate in self.predicates:
            if predicate(identity):
                return getattr(predicate, '__name__', 'predicate')
        return None

    def add(self, ut, obsnum, name=None):
        ''' mark observation obsnum of night ut as bad '''
        identity = {UT_KEY: ut, NUM_KEY: obsnum}
        missing = [f for f in self.fields if f not in identity]
        if missing:
            raise PipelineError(f'Can not add to bad observation index: rules need {missing}')
        if name is None:
            name = f'bad{len(self.rows) + 1}'
        values = [normalise(identity[f]) for f in self.fields]
        if self.indexfile is not None:
            locked_append(self.indexfile, [' '.join([name] + values)],
                          header='#' + ' '.join(['NAME'] + self.fields))
        self.rows[name] = dict(zip(self.fields, values))
        self.logger.info(f'Observation {obsnum} of {ut} marked as bad')
        return name
