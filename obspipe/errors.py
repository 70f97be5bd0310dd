"""
Exceptions raised by the recipe engine and the pipeline.

Every exception carries the Status it is reported as. FatalError and
UserAbort derive from RunAbort: code that catches pipeline errors to turn
them into a status must let RunAbort through.
"""

from obspipe.constants import Status


class PipelineError(Exception):
    """
    Base class for all pipeline errors. A PipelineError raised while a recipe
    is running only stops the recipe for the current Frame.
    """
    status = Status.ERROR

    def __init__(self, message='', status=None):
        Exception.__init__(self, message)
        if status is not None:
            self.status = Status(status)


class RecipeError(PipelineError):
    """
    RecipeError is raised whenever an error in the recipe or recipe processing is
    encountered, e.g. an undefined variable, an unknown action or an action
    called with the wrong arguments.
    """


class RecipeSyntaxError(RecipeError):
    """
    A recipe or primitive line that can not be turned into a step.

    Args:
        message (str): description of the problem
        source (str): name of the recipe or primitive holding the line
        lineno (int): 1-based line number of the offending line
        lines (list): all lines of the source, used to build the context window
    """
    status = Status.PARSE_ERROR

    def __init__(self, message, source=None, lineno=None, lines=None, window=2):
        self.source = source
        self.lineno = lineno
        self.context = self.line_window(lines, lineno, window)
        text = message
        if source is not None:
            text = f'{message} ({source} line {lineno})'
        if self.context:
            text = text + '\n' + self.context
        RecipeError.__init__(self, text)

    @staticmethod
    def line_window(lines, lineno, window=2):
        if not lines or lineno is None:
            return ''
        first = max(1, lineno - window)
        last = min(len(lines), lineno + window)
        out = []
        for i in range(first, last + 1):
            marker = '>>' if i == lineno else '  '
            out.append(f'{marker}{i:4d}: {lines[i - 1].rstrip()}')
        return '\n'.join(out)


class RecipeTerminated(PipelineError):
    """The recipe ended early on purpose. Not counted as an error."""
    status = Status.TERMINATED


class NoSuitableCalibration(PipelineError):
    """No calibration in the index is compatible with the current context."""


class EngineError(PipelineError):
    """An algorithm engine could not be started or died during a call."""
    status = Status.BAD_ENGINE


class LoopTimeout(PipelineError):
    """The data-arrival loop gave up waiting for the next file."""
    status = Status.FATAL


class RunAbort(Exception):
    """
    Marker base class for errors that unwind the whole run. Never converted
    into a recipe status.
    """
    status = Status.FATAL


class FatalError(RunAbort):
    """Environment or setup failure. The run stops after cleanup."""

    def __init__(self, message='', status=Status.FATAL):
        RunAbort.__init__(self, message)
        self.status = Status(status)


class RecipeNotFound(FatalError):
    """A recipe file could not be found in the search path."""


class PrimitiveNotFound(FatalError):
    """A primitive file could not be found in the search path."""


class PrimitiveCycleError(FatalError):
    """
    A primitive invokes itself, directly or through other primitives.

    Args:
        path (list): primitive names from the outer call to the repeated name
    """

    def __init__(self, path):
        self.path = list(path)
        FatalError.__init__(self, 'Recursive primitive invocation: ' + ' -> '.join(self.path))


class UserAbort(RunAbort):
    """The operator asked the pipeline to stop."""
    status = Status.USER_ABORT
