import shlex
import subprocess

from obspipe.constants import Status
from obspipe.engines.base import AlgorithmEngine
from obspipe.errors import EngineError


class CommandEngine(AlgorithmEngine):
    """
    Engine running a command line program once per request as
    ``<command> <operation> <arguments...>``. Exit code 0 is OK, any other
    exit code is ERROR. A program that can not be started is a bad engine.

    Args:
        name (str): engine name
        command (str): program and fixed leading arguments
        timeout (float): seconds to wait for the program, None for no limit
        cwd (str): working directory of the program, usually the output directory
    """

    def __init__(self, name, command, timeout=None, logger=None, cwd=None):
        AlgorithmEngine.__init__(self, name)
        self.command = shlex.split(command)
        self.timeout = timeout
        self.cwd = cwd
        self.logger = logger
        if not self.command:
            raise EngineError(f'No command given for engine {name}')

    def invoke(self, operation, arguments):
        cmd = self.command + [operation] + shlex.split(arguments)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True,
                                    timeout=self.timeout, cwd=self.cwd)
        except OSError as e:
            raise EngineError(f'Engine {self.name} could not run {cmd[0]}: {e}')
        except subprocess.TimeoutExpired:
            raise EngineError(f'Engine {self.name} timed out performing {operation}')
        if self.logger is not None:
            for line in result.stdout.splitlines():
                self.logger.debug(f'{self.name}: {line}')
            if result.returncode != 0:
                for line in result.stderr.splitlines():
                    self.logger.warning(f'{self.name}: {line}')
        return Status.OK if result.returncode == 0 else Status.ERROR


def command_factory(command, timeout=None, logger=None, cwd=None):
    ''' EngineSet factory for a CommandEngine '''
    def factory(name):
        return CommandEngine(name, command, timeout, logger, cwd)
    return factory
