"""
Instrument definitions.

An instrument is described by a few small capabilities instead of a class
hierarchy per instrument:

    RawNamingScheme          raw/flag/group file names and observation numbers
    GroupingRule             the group key of a Frame
    CalibrationRuleProvider  calibration roles, their rules and index files

plus the directories holding its recipes, primitives and calibration rules.
An Instrument bundles one of each and is what the rest of the pipeline is
handed.

Instruments can be defined in code, or from a directory tree::

    <root>/instrument.cfg    (optional)
    <root>/recipes/
    <root>/primitives/
    <root>/calib/            rules.<role>, rules.badobs, static index files
"""

import os
import re

from astropy.time import Time

from obspipe.config.pipeline_config import ConfigClass, ConfigHandler
from obspipe.constants import TIME_KEY, UT_KEY, NUM_KEY, MODE_KEY
from obspipe.errors import FatalError

INSTRUMENT_ROOT = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
                               'instruments')


class RawNamingScheme(object):
    """
    Raw file naming of the form <fixedpart><utdate>_<number><suffix>,
    e.g. ``o20240317_0042.fits``. The flag file of a raw file is the raw
    name with a leading dot and a ``.ok`` suffix.

    Args:
        fixedpart (str): constant prefix of raw file names
        suffix (str): raw file extension including the dot
        digits (int): zero padding of the observation number
    """

    flag_suffix = '.ok'

    def __init__(self, fixedpart='o', suffix='.fits', digits=4):
        self.fixedpart = fixedpart
        self.suffix = suffix
        self.digits = digits
        self._raw_re = re.compile('^' + re.escape(fixedpart) + r'(\d{8})_(\d+)' + re.escape(suffix) + '$')

    def file_from_bits(self, prefix, obsnum):
        return f'{self.fixedpart}{prefix}_{int(obsnum):0{self.digits}d}{self.suffix}'

    def pattern_from_bits(self, prefix, obsnum):
        return self.file_from_bits(prefix, obsnum)

    def flag_from_bits(self, prefix, obsnum):
        return '.' + self.file_from_bits(prefix, obsnum) + self.flag_suffix

    def number(self, fname):
        """
        Observation number from a file name: the digits at the end of the
        name once the extension is removed, -1 when there are none.
        """
        if fname is None:
            return -1
        m = re.search(r'(\d+)(\.\w+)?$', os.path.basename(str(fname)))
        if m is None:
            return -1
        return int(m.group(1))

    def utdate(self, fname):
        m = self._raw_re.match(os.path.basename(str(fname)))
        return m.group(1) if m else None

    def is_raw(self, fname, prefix=None):
        m = self._raw_re.match(os.path.basename(fname))
        if m is None:
            return False
        return prefix is None or m.group(1) == str(prefix)

    def is_flag(self, fname, prefix=None):
        base = os.path.basename(fname)
        if not (base.startswith('.') and base.endswith(self.flag_suffix)):
            return False
        return self.is_raw(base[1:-len(self.flag_suffix)], prefix)

    def group_file(self, group_name):
        safe = re.sub(r'[^\w.-]', '_', str(group_name))
        return f'g{self.fixedpart}{safe}{self.suffix}'


class GroupingRule(object):
    """
    Group key built from header values. Frames sharing the UT date and the
    values of ``keys`` end up in the same group. When none of the keys is
    present the observation number is used, i.e. the frame forms its own
    group.

    Args:
        keys (tuple): header keys, e.g. ('GRPNUM',)
    """

    def __init__(self, keys=('GRPNUM',)):
        self.keys = tuple(keys)

    def group_key(self, frame):
        values = [frame.hdr.get(k) for k in self.keys]
        values = [str(v) for v in values if v is not None]
        if not values:
            values = [str(frame.number)]
        ut = frame.uhdr.get(UT_KEY)
        if ut is not None:
            values.insert(0, str(ut))
        return '_'.join(values)


class CalibrationRole(object):
    """
    Declaration of one calibration role.

    Args:
        name (str): role name, e.g. 'dark'
        time_search (str): 'nearest' or 'earlier'
        default: value used when no index entry is suitable, None to fail
        index_mode (str): 'dynamic' (index lives in the output directory),
            'static' (read-only index from the calibration directory) or
            'copy' (static index copied into the output directory on first use)
    """

    def __init__(self, name, time_search='nearest', default=None, index_mode='dynamic'):
        if time_search not in ('nearest', 'earlier'):
            raise ValueError(f'Unknown time search {time_search} for calibration {name}')
        if index_mode not in ('dynamic', 'static', 'copy'):
            raise ValueError(f'Unknown index mode {index_mode} for calibration {name}')
        self.name = name
        self.time_search = time_search
        self.default = default
        self.index_mode = index_mode

    def __repr__(self):
        return f'CalibrationRole({self.name}, {self.time_search}, {self.index_mode})'


DEFAULT_ROLES = ('dark', 'flat', 'bias', 'sky', 'standard', 'readnoise', 'mask')


class CalibrationRuleProvider(object):
    """
    Knows which calibration roles an instrument has and where their rules
    and index files live.

    Args:
        calib_dirs (list): directories searched for rules.<role> files
        roles (list): CalibrationRole objects, defaults to DEFAULT_ROLES
    """

    def __init__(self, calib_dirs=(), roles=None):
        self.calib_dirs = list(calib_dirs)
        if roles is None:
            roles = [CalibrationRole(r) for r in DEFAULT_ROLES]
        self.roles = {r.name: r for r in roles}

    def role(self, name):
        try:
            return self.roles[name]
        except KeyError:
            raise KeyError(f'Calibration {name} unknown by this instrument')

    def find_file(self, fname, extra_dirs=()):
        for d in list(extra_dirs) + self.calib_dirs:
            if d is None:
                continue
            path = os.path.join(d, fname)
            if os.path.exists(path):
                return path
        return None

    def rules_file(self, role, extra_dirs=()):
        return self.find_file(f'rules.{role}', extra_dirs)

    def index_name(self, role):
        return f'index.{role}'


def ut_from_header(hdr):
    '''
    UT date (YYYYMMDD int) and MJD of an observation from its header.
    Returns (None, None) when no usable date is present.
    '''
    date = hdr.get('DATE-OBS')
    if date is None and 'UTDATE' in hdr:
        date = str(hdr['UTDATE'])
        if re.match(r'^\d{8}$', date):
            date = f'{date[0:4]}-{date[4:6]}-{date[6:8]}'
    mjd = hdr.get('MJD-OBS')
    t = None
    try:
        if date is not None:
            t = Time(str(date), format='isot' if 'T' in str(date) else 'iso', scale='utc')
        elif mjd is not None:
            t = Time(float(mjd), format='mjd', scale='utc')
    except ValueError:
        t = None
    if t is None:
        return None, None
    ut = int(t.strftime('%Y%m%d'))
    return ut, float(mjd) if mjd is not None else float(t.mjd)


class Instrument(object):
    """
    Everything the pipeline needs to know about one instrument.

    Args:
        name (str): instrument identifier, selects the recipe search path
        naming (RawNamingScheme): raw file names
        grouping (GroupingRule): group membership
        calibration (CalibrationRuleProvider): calibration rules
        recipe_dirs (list): built-in recipe directories
        primitive_dirs (list): built-in primitive directories
        default_recipe (str): recipe used when a header has no RECIPE entry
        mode_key (str): header holding the observation mode
    """

    def __init__(self, name, naming=None, grouping=None, calibration=None,
                 recipe_dirs=(), primitive_dirs=(), default_recipe='QUICK_LOOK',
                 mode_key='OBSMODE'):
        self.name = name
        self.naming = naming if naming is not None else RawNamingScheme()
        self.grouping = grouping if grouping is not None else GroupingRule()
        self.calibration = calibration if calibration is not None else CalibrationRuleProvider()
        self.recipe_dirs = list(recipe_dirs)
        self.primitive_dirs = list(primitive_dirs)
        self.default_recipe = default_recipe
        self.mode_key = mode_key

    def translate_hdr(self, frame):
        '''
        Derived headers for a frame: observation time (MJD) in ORACTIME, UT
        date in ORACUT, number in ORACNUM and the observation mode.
        Values already present in the raw header win.
        '''
        hdr = frame.hdr
        uhdr = {}
        ut, mjd = ut_from_header(hdr)
        if ut is None:
            fname_ut = self.naming.utdate(frame.raw) if frame.raw else None
            ut = int(fname_ut) if fname_ut else None
        uhdr[UT_KEY] = hdr.get(UT_KEY, ut)
        uhdr[TIME_KEY] = hdr.get(TIME_KEY, mjd)
        uhdr[NUM_KEY] = frame.number
        mode = hdr.get(self.mode_key)
        if mode is not None:
            uhdr[MODE_KEY] = str(mode).lower()
        return uhdr

    def __repr__(self):
        return f'Instrument({self.name})'

    @classmethod
    def from_directory(cls, name, root):
        """
        Define an instrument from a directory tree (see module documentation).
        instrument.cfg may hold an [INSTRUMENT] section with fixedpart, suffix,
        digits, default_recipe, mode_key and group_keys, and a [CALIBRATION]
        section with one ``role = time_search[,index_mode[,default]]`` line per role.
        """
        if not os.path.isdir(root):
            raise FatalError(f'Instrument directory {root} does not exist')
        cfgfile = os.path.join(root, 'instrument.cfg')
        config = ConfigClass(cfgfile) if os.path.exists(cfgfile) else None
        inst = ConfigHandler(config, 'INSTRUMENT')
        naming = RawNamingScheme(fixedpart=inst.get_config_value('fixedpart', 'o'),
                                 suffix=inst.get_config_value('suffix', '.fits'),
                                 digits=inst.get_config_value('digits', 4))
        group_keys = inst.get_config_value('group_keys', 'GRPNUM')
        if isinstance(group_keys, str):
            group_keys = [k.strip() for k in group_keys.split(',') if k.strip()]
        roles = None
        if config is not None and config.has_section('CALIBRATION'):
            roles = []
            for role, value in config.items('CALIBRATION', raw=True):
                parts = [p.strip() for p in value.split(',')]
                time_search = parts[0] or 'nearest'
                index_mode = parts[1] if len(parts) > 1 and parts[1] else 'dynamic'
                default = parts[2] if len(parts) > 2 and parts[2] else None
                roles.append(CalibrationRole(role, time_search, default, index_mode))
        calib = CalibrationRuleProvider([os.path.join(root, 'calib')], roles)
        return cls(name, naming=naming, grouping=GroupingRule(group_keys), calibration=calib,
                   recipe_dirs=[os.path.join(root, 'recipes')],
                   primitive_dirs=[os.path.join(root, 'primitives')],
                   default_recipe=inst.get_config_value('default_recipe', 'QUICK_LOOK'),
                   mode_key=inst.get_config_value('mode_key', 'OBSMODE'))


_INSTRUMENTS = {}


def register_instrument(instrument):
    _INSTRUMENTS[instrument.name.upper()] = instrument
    return instrument


def get_instrument(name):
    '''
    Look up an instrument by name. Instruments not registered in code are
    searched for as directories under obspipe/instruments/<name lower case>.
    '''
    if name is None:
        raise FatalError('No instrument specified')
    key = name.upper()
    if key not in _INSTRUMENTS:
        root = os.path.join(INSTRUMENT_ROOT, name.lower())
        if not os.path.isdir(root):
            raise FatalError(f'Unknown instrument {name}')
        register_instrument(Instrument.from_directory(key, root))
    return _INSTRUMENTS[key]
