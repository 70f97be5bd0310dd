"""
Actions available to every recipe.

Functions in RUN_ACTIONS get the running recipe (RecipeRun) as their first
argument; PLAIN_ACTIONS are called with the recipe arguments only.
PRIMITIVE_ACTIONS are Obs_Primitive classes.

    print(*args)               log at info level
    warn(*args)                log at warning level
    set_file(name, num=1)      make name the num'th working file of the frame
    set_files(*names)          replace every working file of the frame
    files(), nfiles()          working files of the frame and their number
    inout(suffix, num=1)       (infile, outfile) of the frame
    tagset(tag)                save the working files under tag
    tagretrieve(tag)           make the files saved under tag current again
    erase_intermediates()      delete replaced working files from disk
    set_uhdr(key, value)       store a derived header value in the frame
    get_hdr(key, default)      header value of the frame
    set_group_file(name)       current file of the group
    group_inout(suffix)        (infile, outfile) of the group
    group_files()              current files of the group members
    calibration(role)          calibration of a role for the frame
    calibration_value(role, column)
    file_calibration(role)     file the frame as a calibration
    is_last_member()           True for the last member of the group
    require_last_member()      end the recipe quietly unless last member
    terminate(message)         end the recipe quietly
    fail(message)              end the recipe with an error
    exists, basename, int, float, str, len, join
"""

import os

from obspipe.errors import RecipeTerminated, PipelineError, RecipeError
from obspipe.primitives.calibration import SelectCalibration, CalibrationValue, FileCalibration


def _message(args):
    return ' '.join(str(a) for a in args)


def _group(run):
    if run.group is None:
        raise RecipeError('No group is available to this recipe')
    return run.group


def recipe_print(run, *args):
    run.logger.info(_message(args))


def recipe_warn(run, *args):
    run.logger.warning(_message(args))


def set_file(run, fname, num=1):
    return run.frame.set_file(fname, num)


def set_files(run, *fnames):
    return run.frame.set_files(*fnames)


def frame_files(run):
    return list(run.frame.files)


def nfiles(run):
    return run.frame.nfiles()


def inout(run, suffix, num=1):
    return run.frame.inout(suffix, num)


def tagset(run, tag):
    run.frame.tagset(tag)
    return tag


def tagretrieve(run, tag):
    if not run.frame.tagretrieve(tag):
        run.logger.warning(f'No files were saved under tag {tag}')
        return False
    return True


def erase_intermediates(run):
    removed = run.frame.erase_intermediates()
    run.logger.debug(f'Removed {len(removed)} intermediate files')
    return len(removed)


def set_uhdr(run, key, value):
    run.frame.uhdr[key] = value
    return value


def get_hdr(run, key, default=None):
    return run.frame.header(key, default)


def set_group_file(run, fname):
    _group(run).file = fname
    return fname


def group_inout(run, suffix):
    return _group(run).inout(suffix)


def group_files(run):
    return _group(run).membernames()


def is_last_member(run):
    return _group(run).lastmember(run.frame)


def require_last_member(run):
    group = _group(run)
    if not group.lastmember(run.frame):
        raise RecipeTerminated(f'Waiting for the last member of group {group.name}')
    return True


def terminate(run, message='Recipe terminated'):
    raise RecipeTerminated(message)


def fail(run, message='Recipe failed'):
    raise PipelineError(message)


RUN_ACTIONS = {
    'print': recipe_print,
    'warn': recipe_warn,
    'set_file': set_file,
    'set_files': set_files,
    'files': frame_files,
    'nfiles': nfiles,
    'inout': inout,
    'tagset': tagset,
    'tagretrieve': tagretrieve,
    'erase_intermediates': erase_intermediates,
    'set_uhdr': set_uhdr,
    'get_hdr': get_hdr,
    'set_group_file': set_group_file,
    'group_inout': group_inout,
    'group_files': group_files,
    'is_last_member': is_last_member,
    'require_last_member': require_last_member,
    'terminate': terminate,
    'fail': fail,
}

PLAIN_ACTIONS = {
    'int': int,
    'float': float,
    'str': str,
    'len': len,
    'exists': os.path.exists,
    'basename': os.path.basename,
    'join': os.path.join,
}

PRIMITIVE_ACTIONS = {
    'calibration': SelectCalibration,
    'calibration_value': CalibrationValue,
    'file_calibration': FileCalibration,
}
