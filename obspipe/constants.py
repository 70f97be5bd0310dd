"""
Status values shared by the recipe engine and the pipeline
"""
from enum import IntEnum


class Status(IntEnum):
    '''
    Recipe and engine status codes.
    The numeric values follow the historical pipeline constants so that
    status files written by older reductions stay readable.
    '''
    OK = 0
    ERROR = -1
    USER_ABORT = -2
    FATAL = -3
    PARSE_ERROR = -4
    TERMINATED = -5
    BAD_ENGINE = 2

    @classmethod
    def coerce(cls, value):
        """Turn an engine or action return value into a Status"""
        if isinstance(value, cls):
            return value
        if value is None or value is True:
            return cls.OK
        if value is False:
            return cls.ERROR
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.ERROR


# name of the generic "last status" variable available to recipes
LAST_STATUS = 'STATUS'

# names bound into every recipe scope
FRAME_NAME = 'Frm'
GROUP_NAME = 'Grp'
CALIB_NAME = 'Cal'
DISPLAY_NAME = 'Display'
RECPARS_NAME = 'RECPARS'

# header keys computed by the header translation
TIME_KEY = 'ORACTIME'
UT_KEY = 'ORACUT'
NUM_KEY = 'ORACNUM'
MODE_KEY = 'ORAC_OBSERVATION_MODE'
