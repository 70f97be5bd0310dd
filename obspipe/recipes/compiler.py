# compiler.py
"""
Recipe compiler.

A recipe is a text file. Lines starting with a name beginning with an
underscore invoke a primitive::

    _DARK_SUBTRACT method=median

and the primitive's own file is expanded in their place, recursively.
Every other line is a single Python statement from a small subset:

    engine.invoke("darksub", "in=$file method=$method")   # engine call
    st = engine.invoke("darksub", "in=$file")              # status kept in st
    out = inout("_dk")                                     # action call
    STATUS = check_frame(Frm)                              # checked action
    x = 2 * y                                              # assignment

After an engine call whose status is not stored, and after an action
assigned to STATUS, a status check is inserted so that the recipe stops
on the first failure.
"""

import os
import re
import ast
import shlex
import logging

from obspipe.constants import LAST_STATUS, Status
from obspipe.errors import (RecipeSyntaxError, RecipeNotFound, PrimitiveNotFound,
                            PrimitiveCycleError, FatalError)
from obspipe.recipes.steps import (Comment, ScopeEnter, ArgBind, Action, Assign,
                                   EngineCall, StatusCheck, ScopeExit, CompiledRecipe)

PRIMITIVE_RE = re.compile(r'^\s*(_\w+)(?:\s+(.*))?$')
ENGINE_METHOD = 'invoke'

RECIPE_SUFFIXES = ('', '.recipe')
PRIMITIVE_SUFFIXES = ('', '.prim')

EXPRESSION_NODES = tuple(n for n in (
    ast.Constant, ast.Name, ast.Attribute, ast.Subscript, ast.Slice, getattr(ast, 'Index', None),
    ast.List, ast.Tuple, ast.Dict, ast.UnaryOp, ast.BinOp, ast.Compare, ast.BoolOp, ast.IfExp,
    ast.Call, ast.keyword, ast.expr_context, ast.operator, ast.unaryop, ast.cmpop, ast.boolop)
    if n is not None)


def parse_arguments(text, source=None, lineno=None, lines=None):
    '''
    Split the argument text of a primitive invocation into (key, value)
    pairs. Values may be quoted to hold spaces.
    '''
    if not text or not text.strip():
        return []
    try:
        tokens = shlex.split(text, comments=True)
    except ValueError as e:
        raise RecipeSyntaxError(f'Bad primitive arguments: {e}', source, lineno, lines)
    pairs = []
    for token in tokens:
        key, sep, value = token.partition('=')
        if not sep or not re.match(r'^[A-Za-z_]\w*$', key):
            raise RecipeSyntaxError(f'Primitive argument "{token}" is not of the form key=value',
                                    source, lineno, lines)
        pairs.append((key, value))
    return pairs


def _target_names(target, source, lineno, lines):
    if isinstance(target, ast.Name):
        return [target.id]
    if isinstance(target, (ast.Tuple, ast.List)) and all(isinstance(t, ast.Name) for t in target.elts):
        return [t.id for t in target.elts]
    raise RecipeSyntaxError('Only names can be assigned to in recipes', source, lineno, lines)


def _check_expression(node, source, lineno, lines):
    for child in ast.walk(node):
        if not isinstance(child, EXPRESSION_NODES):
            raise RecipeSyntaxError(f'{type(child).__name__} is not supported in recipes',
                                    source, lineno, lines)


def _string_constant(node):
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value
    return None


def _call_name(func):
    if isinstance(func, ast.Name):
        return func.id
    if isinstance(func, ast.Attribute):
        return ast.unparse(func)
    return None


def parse_statement(text, source=None, lineno=None, lines=None):
    '''
    Turn one recipe line that is not a primitive invocation into steps.

    Returns:
        list: steps, including an inserted StatusCheck where needed
    '''
    try:
        tree = ast.parse(text.strip(), mode='exec')
    except SyntaxError as e:
        raise RecipeSyntaxError(f'Invalid recipe line: {e.msg}', source, lineno, lines)
    if len(tree.body) != 1:
        raise RecipeSyntaxError('Only one statement per recipe line', source, lineno, lines)
    stmt = tree.body[0]
    targets = None
    if isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Call):
        value = stmt.value
    elif isinstance(stmt, ast.Assign) and len(stmt.targets) == 1:
        targets = _target_names(stmt.targets[0], source, lineno, lines)
        value = stmt.value
    else:
        raise RecipeSyntaxError(f'{type(stmt).__name__} statements are not supported in recipes',
                                source, lineno, lines)

    _check_expression(value, source, lineno, lines)

    if not isinstance(value, ast.Call):
        return [Assign(targets, value, source, lineno)]

    func = value.func
    if (isinstance(func, ast.Attribute) and func.attr == ENGINE_METHOD
            and isinstance(func.value, ast.Name)):
        engine = func.value.id
        if len(value.args) != 2 or value.keywords:
            raise RecipeSyntaxError(f'{engine}.invoke takes an operation and an argument string',
                                    source, lineno, lines)
        operation = _string_constant(value.args[0])
        arguments = _string_constant(value.args[1])
        if operation is None or arguments is None:
            raise RecipeSyntaxError(f'{engine}.invoke arguments must be strings', source, lineno, lines)
        if targets is not None and len(targets) != 1:
            raise RecipeSyntaxError('An engine status can only be stored in one name',
                                    source, lineno, lines)
        target = targets[0] if targets else None
        steps = [EngineCall(engine, operation, arguments, target, source, lineno)]
        if target is None:
            steps.append(StatusCheck(engine, operation, arguments, source, lineno))
        return steps

    name = _call_name(func)
    if name is None:
        raise RecipeSyntaxError('Calls must name an action', source, lineno, lines)
    steps = [Action(name, value, targets, source, lineno)]
    if targets == [LAST_STATUS]:
        steps.append(StatusCheck(source=source, lineno=lineno))
    return steps


class RecipeCompiler(object):
    """
    Finds, expands and caches recipes.

    Args:
        instrument (Instrument): supplies the built-in recipe and primitive directories
        recipe_path (list): directories searched before the built-in ones
        primitive_path (list): directories searched before the built-in ones
        logger (logging.Logger): logger
        cache (bool): keep compiled recipes until one of their files changes
    """

    def __init__(self, instrument, recipe_path=(), primitive_path=(), logger=None, cache=True):
        self.instrument = instrument
        self.recipe_path = list(recipe_path) + list(instrument.recipe_dirs)
        self.primitive_path = list(primitive_path) + list(instrument.primitive_dirs)
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.cache = cache
        self._sources = {}
        self._compiled = {}

    # --- file lookup ----------------------------------------------------

    @staticmethod
    def _find(name, dirs, suffixes):
        if os.path.dirname(name):
            return name if os.path.isfile(name) else None
        for d in dirs:
            for suffix in suffixes:
                path = os.path.join(d, name + suffix)
                if os.path.isfile(path):
                    return path
        return None

    def find_recipe(self, name):
        path = self._find(name, self.recipe_path, RECIPE_SUFFIXES)
        if path is None:
            raise RecipeNotFound(f'Recipe {name} not found in {os.pathsep.join(self.recipe_path)}')
        return path

    def find_primitive(self, name):
        path = self._find(name, self.primitive_path, PRIMITIVE_SUFFIXES)
        if path is None:
            raise PrimitiveNotFound(f'Primitive {name} not found in {os.pathsep.join(self.primitive_path)}')
        return path

    def read_source(self, path):
        ''' lines of a recipe or primitive file, re-read when the file changes '''
        mtime = os.path.getmtime(path)
        cached = self._sources.get(path)
        if cached is not None and cached[0] == mtime:
            return cached[1]
        with open(path) as fh:
            lines = fh.read().splitlines()
        self._sources[path] = (mtime, lines)
        self.logger.debug(f'Read {path}')
        return lines

    # --- compilation ----------------------------------------------------

    def _is_current(self, compiled):
        for path, mtime in compiled.sources.items():
            if not os.path.exists(path) or os.path.getmtime(path) != mtime:
                return False
        return True

    def compile(self, name):
        '''
        Compile a recipe into steps.

        Raises:
            RecipeNotFound, PrimitiveNotFound, PrimitiveCycleError: missing files
                or recursive primitives
            FatalError: a line of the recipe or of one of its primitives can
                not be parsed (status PARSE_ERROR)
        '''
        compiled = self._compiled.get(name)
        if self.cache and compiled is not None and self._is_current(compiled):
            return compiled
        path = self.find_recipe(name)
        steps, sources, primitives = [], {}, []
        try:
            self.expand(os.path.basename(path), path, steps, [], sources, primitives)
        except RecipeSyntaxError as e:
            self.logger.error(f'Error compiling recipe {name}: {e}')
            raise FatalError(f'Can not compile recipe {name}: {e}', status=Status.PARSE_ERROR) from e
        compiled = CompiledRecipe(name, steps, sources, primitives)
        if self.cache:
            self._compiled[name] = compiled
        self.logger.debug(f'Compiled recipe {name} into {len(steps)} steps')
        return compiled

    def expand(self, source, path, out, stack, sources, primitives):
        '''
        Append the steps of one file to out, expanding primitive invocations.

        Args:
            source (str): name used for the steps of this file
            path (str): file to read
            out (list): steps so far
            stack (list): primitives being expanded, outermost first
            sources (dict): collects path -> mtime of the files read
            primitives (list): collects primitive names in order of first use
        '''
        lines = self.read_source(path)
        sources[path] = os.path.getmtime(path)
        for lineno, line in enumerate(lines, 1):
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.startswith('#'):
                out.append(Comment(stripped, source, lineno))
                continue
            m = PRIMITIVE_RE.match(line)
            if m is None:
                out.extend(parse_statement(stripped, source, lineno, lines))
                continue
            primitive, argtext = m.group(1), m.group(2)
            if primitive in stack:
                raise PrimitiveCycleError(stack[stack.index(primitive):] + [primitive])
            pairs = parse_arguments(argtext, source, lineno, lines)
            ppath = self.find_primitive(primitive)
            if primitive not in primitives:
                primitives.append(primitive)
            out.append(ScopeEnter(primitive, source, source, lineno))
            out.append(ArgBind(primitive, argtext, pairs, source, lineno))
            stack.append(primitive)
            self.expand(primitive, ppath, out, stack, sources, primitives)
            stack.pop()
            out.append(ScopeExit(primitive, source, lineno))
        return out

    def clear(self):
        self._sources = {}
        self._compiled = {}
