"""
Algorithm engines: external programs doing the number crunching for
recipe lines of the form ``engine.invoke("operation", "arguments")``.
"""

import logging

from obspipe.constants import Status
from obspipe.errors import EngineError


class AlgorithmEngine(object):
    """
    Interface of an algorithm engine. Engines answer one request at a time.

    Args:
        name (str): name the recipes use for the engine
    """

    def __init__(self, name):
        self.name = name

    def invoke(self, operation, arguments):
        '''
        Perform an operation.

        Args:
            operation (str): operation name, e.g. 'darksub'
            arguments (str): argument string with $variables already resolved

        Returns:
            Status
        '''
        raise NotImplementedError

    def shutdown(self):
        pass

    def __repr__(self):
        return f'{type(self).__name__}({self.name})'


class EngineSet(object):
    """
    The engines known to a run. Engines are launched on first use; an
    engine that failed is removed so that it is launched afresh next time.

    Args:
        logger (logging.Logger): logger
    """

    def __init__(self, logger=None):
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._factories = {}
        self._running = {}

    def register(self, name, factory):
        '''
        Args:
            name (str): engine name used in recipes
            factory (callable): called with the name, returns an AlgorithmEngine
        '''
        self._factories[name] = factory

    def __contains__(self, name):
        return name in self._factories

    def running(self):
        return list(self._running)

    def start(self, name):
        ''' the running engine of that name, launching it when needed '''
        if name in self._running:
            return self._running[name]
        factory = self._factories.get(name)
        if factory is None:
            raise EngineError(f'No algorithm engine named {name}')
        try:
            engine = factory(name)
        except EngineError:
            raise
        except Exception as e:
            raise EngineError(f'Could not launch algorithm engine {name}: {e}')
        self.logger.info(f'Started algorithm engine {name}')
        self._running[name] = engine
        return engine

    def invoke(self, name, operation, arguments):
        engine = self.start(name)
        return Status.coerce(engine.invoke(operation, arguments))

    def remove(self, name):
        ''' forget a running engine, shutting it down if possible '''
        engine = self._running.pop(name, None)
        if engine is None:
            return
        try:
            engine.shutdown()
        except Exception as e:
            self.logger.warning(f'Error shutting down engine {name}: {e}')
        self.logger.info(f'Removed algorithm engine {name}')

    def shutdown(self):
        for name in list(self._running):
            self.remove(name)
