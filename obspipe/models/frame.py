"""
Frame: one observation file with its headers and reduction state
"""
# Standard dependencies
import os
import logging
from datetime import datetime, timezone

# External dependencies
import pandas as pd
from astropy.io import fits

# Pipeline dependencies
from obspipe.constants import Status
from obspipe.errors import PipelineError

RECEIPT_COL = ['Time', 'Primitive', 'Parameters', 'Status']
PREVIOUS_TAG = 'PREVIOUS'

logger = logging.getLogger(__name__)


def suffixed_name(infile, suffix):
    '''
    infile with its last "_suffix" component replaced by suffix. With only
    two components, or when the last one is a number (as in
    o20240317_0042), the suffix is appended.
    '''
    directory, base = os.path.split(infile)
    root, ext = os.path.splitext(base)
    parts = root.split('_')
    if len(parts) > 2 and not parts[-1].isdigit():
        parts = parts[:-1]
    parts.append(suffix.lstrip('_'))
    outfile = os.path.join(directory, '_'.join(parts) + ext)
    if outfile == infile:
        logger.warning(f'inout - output filename equals input filename ({outfile})')
    return outfile


class Frame(object):
    '''
    In-memory representation of one observation.

    Attributes:
        raw (str): name of the raw data file as delivered
        file (str): current working file name. Starts as the raw name and is
            updated by recipes as intermediate products are written.
        files (list): all working files, file is the first of them
        tags (dict): lists of working files saved under a name
        intermediates (list): working files that have been replaced
        hdr (dict): header of the raw file
        uhdr (dict): values derived by the pipeline (ORACTIME, ORACUT, ...)
            and by recipes
        group (str): key of the group the frame belongs to
        recipe (str): name of the recipe used to reduce the frame
        isgood (bool): False once a recipe failed on this frame. Bad frames
            are dropped from group membership but their data are kept.
        receipt (pandas.DataFrame): one row per primitive run on the frame

    Examples:
        >>> frm = Frame(instrument, 'o20240317_0042.fits')
        >>> frm.number
        42
        >>> frm.inout('_dk')
        ('o20240317_0042.fits', 'o20240317_0042_dk.fits')
    '''

    def __init__(self, instrument, fname=None):
        self.instrument = instrument
        self.raw = None
        self.hdr = {}
        self.uhdr = {}
        self.group = None
        self.recipe = None
        self.isgood = True
        self.tempraw = False
        self.files = []
        self.tags = {}
        self.intermediates = []
        self.receipt = pd.DataFrame([], columns=RECEIPT_COL)
        if fname is not None:
            self.configure(fname)

    # --- identity -------------------------------------------------------

    @property
    def file(self):
        return self.get_file(1) if self.files else None

    @file.setter
    def file(self, fname):
        self.set_file(fname, 1)

    def get_file(self, num=1):
        ''' the num'th working file, counting from 1 '''
        if num < 1 or num > len(self.files):
            raise PipelineError(f'Frame {self.raw} has no file number {num}')
        return self.files[num - 1]

    def set_file(self, fname, num=1):
        '''
        Replace the num'th working file. num may be one past the last file
        to add a file. The replaced name is remembered as an intermediate.
        '''
        if num < 1 or num > len(self.files) + 1:
            raise PipelineError(f'Frame {self.raw} has no file number {num}')
        if num == len(self.files) + 1:
            self.files.append(fname)
            return fname
        old = self.files[num - 1]
        if old != fname:
            self.intermediates.append(old)
        self.files[num - 1] = fname
        return fname

    def set_files(self, *fnames):
        ''' replace every working file, e.g. after splitting one file into several '''
        for old in self.files:
            if old not in fnames:
                self.intermediates.append(old)
        self.files = list(fnames)
        return self.files

    def nfiles(self):
        return len(self.files)

    @property
    def number(self):
        return self.instrument.naming.number(self.raw)

    def __repr__(self):
        return f'Frame({self.raw}, group={self.group}, good={self.isgood})'

    # --- configuration --------------------------------------------------

    def configure(self, fname):
        '''
        Set up a frame from its raw file: read the header, compute derived
        headers, then find the group and recipe.
        '''
        self.raw = fname
        self.files = [fname]
        self.readhdr()
        self.calc_orac_headers()
        self.findgroup()
        self.findrecipe()
        return True

    def readhdr(self):
        '''
        Read the primary header of the file. Files that are not FITS give an
        empty header rather than an error, so that non-FITS formats can still
        be grouped by file name.
        '''
        self.hdr = {}
        if self.file is None or not os.path.exists(self.file):
            return self.hdr
        try:
            header = fits.getheader(self.file)
        except OSError as e:
            logger.warning(f'Could not read header from {self.file}: {e}')
            return self.hdr
        for key in header:
            if key in ('COMMENT', 'HISTORY', ''):
                continue
            self.hdr[key] = header[key]
        return self.hdr

    def calc_orac_headers(self):
        self.uhdr.update(self.instrument.translate_hdr(self))
        return self.uhdr

    def findgroup(self):
        self.group = self.instrument.grouping.group_key(self)
        return self.group

    def findrecipe(self):
        recipe = self.hdr.get('RECIPE')
        if recipe is None or not str(recipe).strip():
            recipe = self.instrument.default_recipe
        self.recipe = str(recipe).strip()
        return self.recipe

    # --- header helpers -------------------------------------------------

    def header(self, key, default=None):
        ''' a value from uhdr, falling back to hdr '''
        if key in self.uhdr:
            return self.uhdr[key]
        return self.hdr.get(key, default)

    def context(self):
        ''' merged header used to validate calibrations '''
        ctx = dict(self.hdr)
        ctx.update(self.uhdr)
        return ctx

    # --- file names -----------------------------------------------------

    def inout(self, suffix, num=1):
        '''
        Input and output file names for a processing step, see suffixed_name.

        Args:
            suffix (str): new suffix, with or without the leading underscore
            num (int): which working file, counting from 1

        Returns:
            tuple: (infile, outfile)
        '''
        infile = self.get_file(num)
        return infile, suffixed_name(infile, suffix)

    def file_exists(self, num=1):
        return num <= len(self.files) and os.path.exists(self.get_file(num))

    # --- tags -----------------------------------------------------------

    def tagset(self, tag):
        ''' remember the current working files under tag '''
        self.tags[tag] = list(self.files)

    def tagretrieve(self, tag):
        '''
        Make the files stored under tag the working files again. The current
        files are kept under PREVIOUS. Returns False for an unknown tag.
        '''
        if tag not in self.tags:
            return False
        if tag != PREVIOUS_TAG:
            self.tagset(PREVIOUS_TAG)
        self.files = list(self.tags[tag])
        return True

    def tagexists(self, tag):
        return tag in self.tags

    def erase_intermediates(self):
        '''
        Remove intermediate files from disk. The raw file, the working files
        and tagged files are kept.

        Returns:
            list: names of the removed files
        '''
        keep = set(self.files)
        keep.add(self.raw)
        for files in self.tags.values():
            keep.update(files)
        removed = []
        for fname in self.intermediates:
            if fname in keep or fname in removed:
                continue
            if os.path.exists(fname):
                os.remove(fname)
                removed.append(fname)
                logger.debug(f'Removed intermediate file {fname}')
        self.intermediates = [f for f in self.intermediates if f in keep]
        return removed

    # --- provenance -----------------------------------------------------

    def receipt_add_entry(self, primitive, params, status):
        '''
        Record a processing step in the receipt.

        Args:
            primitive (str): name of the primitive
            params (str): arguments the primitive was run with
            status (Status or str): outcome
        '''
        if isinstance(status, Status):
            status = status.name
        row = pd.DataFrame([[datetime.now(timezone.utc).isoformat(), primitive, params, str(status)]],
                           columns=RECEIPT_COL)
        if self.receipt.empty:
            self.receipt = row
        else:
            self.receipt = pd.concat([self.receipt, row], ignore_index=True)
