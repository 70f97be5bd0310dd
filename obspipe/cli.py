#!/usr/bin/env python

import os
import sys
import argparse

from astropy.time import Time

from obspipe.calibration.selector import CalibrationSelector
from obspipe.config.pipeline_config import ConfigClass, ConfigHandler, PipelineEnvironment
from obspipe.engines.base import EngineSet
from obspipe.engines.command import command_factory
from obspipe.errors import FatalError, RunAbort, LoopTimeout
from obspipe.logger import start_logger
from obspipe.models.badobs import BadObservationFilter
from obspipe.models.instrument import get_instrument
from obspipe.pipelines.loop import DataLoop, make_cursor, LOOP_NAMES
from obspipe.pipelines.obspipeline import ObsPipeline
from obspipe.recipes.compiler import RecipeCompiler
from obspipe.recipes.executor import RecipeExecutor
from obspipe.recipes.parameters import RecipeParameters

# This is the default pipeline configuration file path
DEFAULT_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'configs', 'obspipe.cfg')


def parse_obslist(text):
    '''
    Observation numbers from a list such as "1,2,5:8".

    Returns:
        list: [1, 2, 5, 6, 7, 8]
    '''
    numbers = []
    for item in text.split(','):
        item = item.strip()
        if not item:
            continue
        try:
            if ':' in item:
                first, last = item.split(':', 1)
                numbers.extend(range(int(first), int(last) + 1))
            else:
                numbers.append(int(item))
        except ValueError:
            raise argparse.ArgumentTypeError(f'Bad observation list entry "{item}"')
    return numbers


def parse_files(path):
    ''' file names listed in a text file, ignoring blank lines and # comments '''
    if not os.path.exists(path):
        raise FatalError(f'File list {path} does not exist')
    files = []
    with open(path) as fh:
        for line in fh:
            line = line.split('#', 1)[0].strip()
            if line:
                files.append(line)
    return files


def _parseArguments(in_args: list) -> argparse.Namespace:
    description = "Recipe driven reduction of instrument observations"

    parser = argparse.ArgumentParser(description=description, prog='obspipe')
    parser.add_argument('-c', '--config', dest='config_file', type=str, default=None,
                        help="Configuration file")
    parser.add_argument('--instrument', dest='instrument', type=str, default=None, help="Instrument name")
    parser.add_argument('--ut', dest='ut', type=int, default=None, help="UT date (YYYYMMDD) of the data")
    parser.add_argument('--from', dest='obs_from', type=int, default=None, help="First observation number")
    parser.add_argument('--to', dest='obs_to', type=int, default=None, help="Last observation number")
    parser.add_argument('--list', dest='obslist', type=parse_obslist, default=None,
                        help="Observation numbers, e.g. 1,2,5:8")
    parser.add_argument('--files', dest='files', type=str, default=None,
                        help="File holding the names of the files to reduce")
    parser.add_argument('--loop', dest='loop', choices=LOOP_NAMES, default=None, help="Data arrival loop")
    parser.add_argument('--skip', dest='skip', action='store_true', help="Skip missing observations")
    parser.add_argument('--batch', dest='batch', action='store_true',
                        help="Read all data before reducing any of it")
    parser.add_argument('--resume', dest='resume', action='store_true', help="Keep existing group files")
    parser.add_argument('--calib', dest='calib', nargs='+', default=None,
                        help="Fixed calibrations as role=value pairs")
    parser.add_argument('--recipe', dest='recipe', type=str, default=None,
                        help="Recipe to use instead of the one in the data headers")
    parser.add_argument('--recpars', dest='recpars', type=str, default=None, help="Recipe parameter file")
    parser.add_argument('--grptrans', dest='grptrans', type=int, default=None,
                        help="1: forget earlier groups when a new one starts, -1: one group for all data")
    parser.add_argument('--timeout', dest='timeout', type=float, default=None,
                        help="Seconds to wait for new data")
    parser.add_argument('--poll', dest='poll', type=float, default=None, help="Seconds between data checks")
    parser.add_argument('--data-in', dest='data_in', type=str, default=None, help="Input data directory")
    parser.add_argument('--data-out', dest='data_out', type=str, default=None, help="Output data directory")
    parser.add_argument('--data-cal', dest='data_cal', type=str, default=None, help="Calibration directory")
    parser.add_argument('--recipe-dir', dest='recipe_dir', type=str, default=None,
                        help="Directories searched for recipes first (colon separated)")
    parser.add_argument('--primitive-dir', dest='primitive_dir', type=str, default=None,
                        help="Directories searched for primitives first (colon separated)")
    parser.add_argument('--engine', dest='engines', action='append', default=[],
                        help="Algorithm engine as name=command")
    parser.add_argument('--dump-recipe', dest='dump_recipe', type=str, default=None,
                        help="Print the compiled form of a recipe and exit")

    args = parser.parse_args(in_args)

    return args


def build_engines(config, engine_args, logger, cwd=None):
    engines = EngineSet(logger)
    commands = {}
    if config.has_section('ENGINES'):
        for name, command in config.items('ENGINES', raw=True):
            if name not in config.defaults():
                commands[name] = command
    for item in engine_args:
        if '=' not in item:
            raise FatalError(f'Bad engine definition "{item}", expected name=command')
        name, command = item.split('=', 1)
        commands[name.strip()] = command.strip()
    for name, command in commands.items():
        engines.register(name, command_factory(command, logger=logger, cwd=cwd))
    return engines


def main(argv=None) -> int:
    args = _parseArguments(sys.argv[1:] if argv is None else argv)

    config = ConfigClass(args.config_file or DEFAULT_CONFIG)
    logger = start_logger('obspipe', config)
    pipe_cfg = ConfigHandler(config, 'PIPELINE')

    env = PipelineEnvironment(config, instrument=args.instrument, data_in=args.data_in,
                              data_out=args.data_out, data_cal=args.data_cal,
                              recipe_dir=args.recipe_dir, primitive_dir=args.primitive_dir)
    pipeline = None
    try:
        instrument = get_instrument(env.instrument)
        compiler = RecipeCompiler(instrument, env.recipe_path, env.primitive_path, logger)
        if args.dump_recipe:
            print(compiler.compile(args.dump_recipe).dump(), end='')
            return 0

        env.check()
        logger.info(f'{env}')
        utdate = args.ut if args.ut is not None else int(Time.now().strftime('%Y%m%d'))
        files = parse_files(args.files) if args.files else None
        loop_name, cursor = make_cursor(args.obs_from, args.obs_to, args.obslist,
                                        args.loop or pipe_cfg.get_config_value('loop', None), files)

        engines = build_engines(config, args.engines, logger, env.data_out)
        parameters = RecipeParameters(args.recpars)
        executor = RecipeExecutor(engines, logger, parameters=parameters,
                                  data_in=env.data_in, data_out=env.data_out)
        calibration = CalibrationSelector(instrument.calibration, env.data_out, env.data_cal, logger)
        if config.has_section('CALIBRATION'):
            calibration.override({k: v for k, v in config.items('CALIBRATION', raw=True)
                                  if k not in config.defaults()})
        calibration.override(args.calib)

        badobs_rules = instrument.calibration.find_file('rules.badobs', [env.data_cal])
        badobs_index = os.path.join(env.data_out, 'index.badobs')
        badobs = BadObservationFilter(badobs_index, badobs_rules, logger)

        poll = args.poll if args.poll is not None else pipe_cfg.get_config_value('poll_interval', 2.0)
        timeout = args.timeout if args.timeout is not None else pipe_cfg.get_config_value('timeout', 7200.0)
        loop = DataLoop(instrument, env.data_in, env.data_out, logger, poll_interval=poll, timeout=timeout)

        grptrans = args.grptrans if args.grptrans is not None else pipe_cfg.get_config_value('group_transient', 0)
        pipeline = ObsPipeline(instrument, compiler, executor, calibration, loop, logger,
                               batch=args.batch or pipe_cfg.get_config_value('batch', False),
                               override_recipe=args.recipe,
                               resume=args.resume or pipe_cfg.get_config_value('resume', False),
                               group_transient=grptrans, badobs=badobs)
        skip = args.skip or pipe_cfg.get_config_value('skip', False)
        stats = pipeline.run(utdate, cursor, loop_name, skip)
    except RunAbort as e:
        logger.error(f'{type(e).__name__}: {e}')
        return 1
    except LoopTimeout as e:
        logger.error(str(e))
        if pipeline is not None:
            logger.info(pipeline.stats.summary())
        return 1
    except KeyboardInterrupt:
        logger.error('Interrupted')
        return 1

    return stats.exit_status()


if __name__ == '__main__':
    sys.exit(main())
