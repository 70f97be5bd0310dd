import logging
import configparser as cp


def get_level(lvl: str) -> int:
    '''
    read the logging level (string) from config file and return
    the corresponding logging level (technically of type int)
    '''
    if lvl == 'debug': return logging.DEBUG
    elif lvl == 'info': return logging.INFO
    elif lvl == 'warning': return logging.WARNING
    elif lvl == 'error': return logging.ERROR
    elif lvl == 'critical': return logging.CRITICAL
    else: return logging.NOTSET


def start_logger(logger_name: str, config) -> logging.Logger:
    '''
    Args:
        logger_name (str): name of the pipeline run, shown in each log msg
        config (str or configparser.ConfigParser): path to configuration file,
            or an already parsed configuration
    '''
    # start a logger instance:
    logger = logging.getLogger(logger_name)

    if isinstance(config, cp.ConfigParser):
        config_obj = config
    else:
        config_obj = cp.ConfigParser()
        res = config_obj.read(config)
        if res == []:
            # this will occur if configuration failed to read
            raise IOError('failed to read {}'.format(config))

    if not config_obj.has_section('LOGGER'):
        raise IOError('cannot find [LOGGER] section in config')
    log_cfg = config_obj['LOGGER']

    log_start = log_cfg.getboolean('start_log', False)
    log_path = log_cfg.get('log_path', 'obspipe.log')
    log_lvl = log_cfg.get('log_level', 'warning')
    log_verbose = log_cfg.getboolean('log_verbose', True)
    logger.setLevel(get_level(log_lvl))

    # a second start_logger() on the same name must not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_start:
        # setup a log format
        formatter = logging.Formatter('[%(name)s][%(levelname)s]:%(message)s')
        # setup a log file
        f_handle = logging.FileHandler(log_path, mode='w') # logging to file
        f_handle.setLevel(get_level(log_lvl))
        f_handle.setFormatter(formatter)
        logger.addHandler(f_handle)

        if log_verbose:
            # also print to terminal
            s_handle = logging.StreamHandler()
            s_handle.setLevel(get_level(log_lvl))
            s_handle.setFormatter(formatter)
            logger.addHandler(s_handle)
    return logger


class FrameLoggerAdapter(logging.LoggerAdapter):
    """
    Prefix every message with the observation number of the Frame being
    reduced, e.g. "#42 Recipe ended with status ERROR".
    """

    def process(self, msg, kwargs):
        number = self.extra.get('number')
        if number is None:
            return msg, kwargs
        return f'#{number} {msg}', kwargs


def frame_logger(logger, frame):
    '''wrap logger so that messages carry the frame's observation number'''
    number = getattr(frame, 'number', None)
    return FrameLoggerAdapter(logger, {'number': number})
