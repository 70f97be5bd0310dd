# executor.py
"""
Recipe executor: runs the steps of a compiled recipe against one frame.

The outcome of a run is a Status. Errors raised by a step stop the recipe
for the current frame only and are turned into a status here; FatalError
and UserAbort are passed on to the caller.
"""

import os
import ast
import string
import logging
import traceback
from collections.abc import Mapping
from enum import Enum

from keckdrpframework.models.arguments import Arguments
from keckdrpframework.primitives.base_primitive import BasePrimitive

from obspipe.config.pipeline_config import Struct, get_type
from obspipe.constants import (Status, LAST_STATUS, FRAME_NAME, GROUP_NAME, CALIB_NAME,
                               DISPLAY_NAME, RECPARS_NAME)
from obspipe.errors import (PipelineError, RecipeError, RecipeSyntaxError, RecipeTerminated,
                            EngineError, RunAbort, UserAbort)
from obspipe.logger import frame_logger
from obspipe.primitives.core import PrimitiveAction
from obspipe.recipes.builtins import RUN_ACTIONS, PLAIN_ACTIONS, PRIMITIVE_ACTIONS
from obspipe.recipes.steps import (Comment, ScopeEnter, ArgBind, Action, Assign,
                                   EngineCall, StatusCheck, ScopeExit)


class ExecutorState(Enum):
    READY = 'ready'
    RUNNING = 'running'
    COMPLETED = 'completed'
    TERMINATED = 'terminated'
    FATAL_ABORTED = 'fatal_aborted'


class ExpressionEvaluator(ast.NodeVisitor):
    """
    Evaluates the expressions of a recipe line. Each visit_<node> method
    returns the value of its node; syntax outside the recipe subset ends
    in generic_visit and raises RecipeError.
    """

    BINARY = {
        ast.Add: lambda x, y: x + y,
        ast.Sub: lambda x, y: x - y,
        ast.Mult: lambda x, y: x * y,
        ast.Div: lambda x, y: x / y,
        ast.FloorDiv: lambda x, y: x // y,
        ast.Mod: lambda x, y: x % y,
        ast.Pow: lambda x, y: x ** y,
    }
    UNARY = {
        ast.UAdd: lambda x: +x,
        ast.USub: lambda x: -x,
        ast.Not: lambda x: not x,
    }
    COMPARE = {
        ast.Eq: lambda x, y: x == y,
        ast.NotEq: lambda x, y: x != y,
        ast.Lt: lambda x, y: x < y,
        ast.LtE: lambda x, y: x <= y,
        ast.Gt: lambda x, y: x > y,
        ast.GtE: lambda x, y: x >= y,
        ast.Is: lambda x, y: x is y,
        ast.IsNot: lambda x, y: x is not y,
        ast.In: lambda x, y: x in y,
        ast.NotIn: lambda x, y: x not in y,
    }

    def __init__(self, run):
        ast.NodeVisitor.__init__(self)
        self.run = run

    def generic_visit(self, node):
        raise RecipeError(f'{type(node).__name__} is not supported in recipes')

    def visit_Constant(self, node):
        return node.value

    def visit_Name(self, node):
        return self.run.lookup(node.id)

    def visit_Attribute(self, node):
        obj = self.visit(node.value)
        if isinstance(obj, Arguments):
            try:
                return obj[node.attr]
            except KeyError:
                raise RecipeError(f'No argument {node.attr}')
        try:
            return getattr(obj, node.attr)
        except AttributeError:
            raise RecipeError(f'{type(obj).__name__} has no attribute {node.attr}')

    def visit_Subscript(self, node):
        obj = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return obj[key]
        except (KeyError, IndexError, TypeError) as e:
            raise RecipeError(f'Bad subscript {key!r}: {e}')

    def visit_Index(self, node):
        return self.visit(node.value)

    def visit_Slice(self, node):
        return slice(*[self.visit(n) if n is not None else None for n in (node.lower, node.upper, node.step)])

    def visit_List(self, node):
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node):
        return tuple(self.visit(e) for e in node.elts)

    def visit_Dict(self, node):
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def visit_UnaryOp(self, node):
        return self.UNARY[type(node.op)](self.visit(node.operand))

    def visit_BinOp(self, node):
        func = self.BINARY.get(type(node.op))
        if func is None:
            raise RecipeError(f'Operator {type(node.op).__name__} is not supported in recipes')
        return func(self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node):
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not self.COMPARE[type(op)](left, right):
                return False
            left = right
        return True

    def visit_BoolOp(self, node):
        if isinstance(node.op, ast.And):
            value = True
            for v in node.values:
                value = self.visit(v)
                if not value:
                    return value
            return value
        value = False
        for v in node.values:
            value = self.visit(v)
            if value:
                return value
        return value

    def visit_IfExp(self, node):
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Call(self, node):
        args = [self.visit(a) for a in node.args]
        kwargs = {k.arg: self.visit(k.value) for k in node.keywords}
        if isinstance(node.func, ast.Name):
            return self.run.call_action(node.func.id, args, kwargs)
        func = self.visit(node.func)
        if not callable(func):
            raise RecipeError(f'{ast.unparse(node.func)} is not callable')
        return func(*args, **kwargs)


class ScopeMapping(Mapping):
    ''' $name resolution for argument strings '''

    def __init__(self, run):
        self.run = run

    def __getitem__(self, key):
        try:
            value = self.run.lookup(key)
        except RecipeError:
            raise KeyError(key)
        if isinstance(value, Status):
            value = int(value)
        return str(value)

    def __iter__(self):
        return iter(self.run.names())

    def __len__(self):
        return len(self.run.names())


class RecipeRun(object):
    """
    State of one recipe run: the scope stack, the stored primitive
    arguments, and the objects recipes can see. It is also the context
    handed to Obs_Primitive actions.
    """

    def __init__(self, executor, compiled, frame, group=None, calibration=None, display=None,
                 parameters=None, logger=None):
        self.executor = executor
        self.recipe = compiled.name
        self.frame = frame
        self.group = group
        self.calibration = calibration
        self.display = display
        self.logger = logger
        self.pipeline_logger = logger
        self.config = parameters if parameters is not None else Struct()
        self.scopes = [(compiled.name, {
            FRAME_NAME: frame,
            GROUP_NAME: group,
            CALIB_NAME: calibration,
            DISPLAY_NAME: display,
            RECPARS_NAME: self.config,
            LAST_STATUS: Status.OK,
            'ORAC_RECIPE': compiled.name,
        })]
        self.params = {}
        self.arg_text = {}
        self.pending = None
        self.evaluator = ExpressionEvaluator(self)

    @property
    def scope_name(self):
        return self.scopes[-1][0]

    def dynamic(self):
        ''' names that follow the frame as the recipe changes it '''
        return {
            'file': lambda: self.frame.file,
            'raw': lambda: self.frame.raw,
            'obsnum': lambda: self.frame.number,
            'groupfile': lambda: self.group.file if self.group is not None else None,
        }

    def names(self):
        out = set(self.dynamic()) | set(self.params)
        for _, scope in self.scopes:
            out |= set(scope)
        return sorted(out)

    def lookup(self, name):
        for _, scope in reversed(self.scopes):
            if name in scope:
                return scope[name]
        if name in self.params:
            return self.params[name]
        dynamic = self.dynamic()
        if name in dynamic:
            return dynamic[name]()
        raise RecipeError(f'Name {name} is not defined')

    def assign(self, name, value):
        self.scopes[-1][1][name] = value

    def interpolate(self, text):
        try:
            return string.Template(text).substitute(ScopeMapping(self))
        except KeyError as e:
            raise RecipeError(f'Undefined variable ${e.args[0]} in "{text}"')
        except ValueError as e:
            raise RecipeError(f'Bad variable reference in "{text}": {e}')

    def call_action(self, name, args, kwargs):
        return self.executor.call_action(self, name, args, kwargs)


class RecipeExecutor(object):
    """
    Runs compiled recipes.

    Args:
        engines (EngineSet): algorithm engines reachable from recipes
        logger (logging.Logger): logger
        actions (dict): extra actions, name -> function or Obs_Primitive class
        parameters (RecipeParameters): recipe parameters, may be None
        data_in (str): input directory
        data_out (str): output directory
    """

    def __init__(self, engines, logger=None, actions=None, parameters=None, data_in=None, data_out=None):
        self.engines = engines
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.parameters = parameters
        self.data_in = data_in
        self.data_out = data_out
        self.state = ExecutorState.READY
        self._actions = {}
        for name, func in RUN_ACTIONS.items():
            self.register_action(name, func, context=True)
        for name, func in PLAIN_ACTIONS.items():
            self.register_action(name, func)
        for name, cls in PRIMITIVE_ACTIONS.items():
            self.register_action(name, cls)
        for name, func in (actions or {}).items():
            self.register_action(name, func)

    def register_action(self, name, func, context=False):
        '''
        Make func callable from recipes under name.

        Args:
            name (str): name used in recipes
            func: plain function, or a BasePrimitive subclass run with (action, context)
            context (bool): pass the running recipe as first argument
        '''
        if isinstance(func, type) and issubclass(func, BasePrimitive):
            self._actions[name] = (func, True)
        elif callable(func):
            self._actions[name] = (func, context)
        else:
            raise TypeError(f'Action {name} is not callable')

    def call_action(self, run, name, args, kwargs):
        if name not in self._actions:
            raise RecipeError(f'Unknown action {name}')
        func, context = self._actions[name]
        if isinstance(func, type) and issubclass(func, BasePrimitive):
            primitive = func(PrimitiveAction(name, Arguments(*args, **kwargs)), run)
            return primitive.apply()
        if context:
            return func(run, *args, **kwargs)
        return func(*args, **kwargs)

    # --- running --------------------------------------------------------

    def execute(self, compiled, frame, group=None, calibration=None, display=None):
        '''
        Run a compiled recipe on a frame.

        Returns:
            Status: OK, ERROR, TERMINATED or BAD_ENGINE. Frames with any
            status other than OK and TERMINATED are marked bad.

        Raises:
            FatalError, UserAbort: the run must stop
        '''
        log = frame_logger(self.logger, frame)
        self.state = ExecutorState.READY
        parameters = self.parameters.for_recipe(compiled.name) if self.parameters is not None else None
        run = RecipeRun(self, compiled, frame, group, calibration, display, parameters, log)
        if calibration is not None:
            calibration.set_context(frame)
        log.info(f'Using recipe {compiled.name} on {frame.file}')
        self.state = ExecutorState.RUNNING
        try:
            status = self.run_steps(run, compiled)
        except RunAbort:
            self.state = ExecutorState.FATAL_ABORTED
            raise
        except KeyboardInterrupt:
            self.state = ExecutorState.FATAL_ABORTED
            raise UserAbort(f'Recipe {compiled.name} interrupted')
        except RecipeTerminated as e:
            log.info(f'Recipe {compiled.name} terminated in {run.scope_name}: {e}')
            status = Status.TERMINATED
        except EngineError as e:
            log.error(f'Engine failure in {compiled.name}/{run.scope_name}: {e}')
            status = Status.BAD_ENGINE
        except RecipeSyntaxError as e:
            log.error(f'Recipe syntax error in {compiled.name}/{run.scope_name}: {e}')
            status = Status.ERROR
        except PipelineError as e:
            log.error(f'Error in {compiled.name}/{run.scope_name}: {e}')
            status = Status.ERROR
        except Exception as e:
            log.error(f'Error in {compiled.name}/{run.scope_name}: {e}\n{traceback.format_exc()}')
            status = Status.ERROR

        if status != Status.OK and len(run.scopes) > 1:
            frame.receipt_add_entry(run.scope_name, '', status)
        self.state = ExecutorState.TERMINATED if status == Status.TERMINATED else ExecutorState.COMPLETED
        if status not in (Status.OK, Status.TERMINATED):
            frame.isgood = False
            if group is not None:
                group.check_membership()
            log.warning(f'Recipe ended with status {status.name}')
        self.remove_temp_raw(frame)
        return status

    def run_steps(self, run, compiled):
        for step in compiled.steps:
            status = self.run_step(run, step)
            if status is not None and status != Status.OK:
                return status
        return Status.OK

    def run_step(self, run, step):
        ''' run one step, returns a status when the recipe must stop '''
        if isinstance(step, Comment):
            return None
        if isinstance(step, ScopeEnter):
            run.scopes.append((step.primitive, {}))
            run.logger.debug(f'Entering {step.primitive}')
            return None
        if isinstance(step, ArgBind):
            values = {k: get_type(run.interpolate(v)) for k, v in step.pairs}
            run.scopes[-1][1].update(values)
            run.params[step.scope] = Arguments(**values)
            run.arg_text[step.scope] = step.text
            return None
        if isinstance(step, ScopeExit):
            name, _ = run.scopes.pop()
            run.frame.receipt_add_entry(name, run.arg_text.get(name, ""), Status.OK)
            return None
        if isinstance(step, Assign):
            self._store(run, step.targets, run.evaluator.visit(step.expr))
            return None
        if isinstance(step, Action):
            result = run.evaluator.visit(step.call)
            if step.targets == [LAST_STATUS]:
                result = Status.coerce(result)
                run.pending = result
            if step.targets:
                self._store(run, step.targets, result)
            return None
        if isinstance(step, EngineCall):
            arguments = run.interpolate(step.arguments)
            run.logger.debug(f'{step.engine}.invoke({step.operation}, {arguments})')
            try:
                status = self.engines.invoke(step.engine, step.operation, arguments)
            except EngineError:
                self.engines.remove(step.engine)
                raise
            if step.target is not None:
                run.assign(step.target, status)
            else:
                run.pending = status
            return None
        if isinstance(step, StatusCheck):
            return self.check_status(run, step)
        raise RecipeError(f'Unknown step {step!r}')

    def check_status(self, run, step):
        status = run.pending if run.pending is not None else Status.OK
        run.pending = None
        if status == Status.OK:
            return None
        if step.generic:
            run.logger.error(f'Recipe {run.recipe} stopped in {run.scope_name} ({step.location()}) '
                             f'with status {status.name}')
            return status
        run.logger.error(f'{step.engine} failed performing {step.operation} with arguments "{step.arguments}" '
                         f'in {run.scope_name} ({step.location()}): status {status.name}')
        if status == Status.BAD_ENGINE:
            self.engines.remove(step.engine)
            return Status.BAD_ENGINE
        return Status.ERROR

    @staticmethod
    def _store(run, targets, value):
        if isinstance(value, Arguments):
            value = tuple(value[i] for i in range(len(value)))
            if len(value) == 1:
                value = value[0]
            elif len(value) == 0:
                value = None
        if len(targets) == 1:
            run.assign(targets[0], value)
            return
        try:
            values = list(value)
        except TypeError:
            raise RecipeError(f'Can not unpack {type(value).__name__} into {len(targets)} names')
        if len(values) != len(targets):
            raise RecipeError(f'Expected {len(targets)} values, got {len(values)}')
        for name, v in zip(targets, values):
            run.assign(name, v)

    def remove_temp_raw(self, frame):
        ''' remove the link to the raw file made for this frame '''
        if not frame.tempraw or self.data_in is None or self.data_out is None:
            return
        if os.path.realpath(self.data_in) == os.path.realpath(self.data_out):
            return
        if frame.raw is not None and os.path.islink(frame.raw):
            os.remove(frame.raw)
            self.logger.debug(f'Removed raw link {frame.raw}')
        frame.tempraw = False
