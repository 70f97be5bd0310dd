"""
Steps of a compiled recipe.

A recipe is compiled into a flat list of steps. Primitive invocations are
expanded in place, wrapped in a ScopeEnter / ScopeExit pair, so the list
holds nothing but the instructions below:

    Comment       a comment line, kept for listings
    ScopeEnter    start of an expanded primitive
    ArgBind       the key=value arguments of that primitive
    Action        call of a registered action, optionally storing the result
    Assign        plain assignment of an expression
    EngineCall    request to an algorithm engine
    StatusCheck   stop the recipe unless the last status is OK
    ScopeExit     end of an expanded primitive

Every step knows the file (recipe or primitive name) and line it came from.
"""

import ast


class Step(object):
    kind = 'STEP'

    def __init__(self, source=None, lineno=None):
        self.source = source
        self.lineno = lineno

    def render(self):
        return self.kind

    def location(self):
        return f'{self.source}:{self.lineno}'

    def __repr__(self):
        return f'<{self.location()} {self.render()}>'


class Comment(Step):
    kind = 'COMMENT'

    def __init__(self, text, source=None, lineno=None):
        Step.__init__(self, source, lineno)
        self.text = text

    def render(self):
        return self.text


class ScopeEnter(Step):
    kind = 'ENTER'

    def __init__(self, primitive, caller=None, source=None, lineno=None):
        Step.__init__(self, source, lineno)
        self.primitive = primitive
        self.caller = caller

    def render(self):
        return f'ENTER {self.primitive} from {self.caller}'


class ArgBind(Step):
    '''
    Arguments of a primitive invocation.

    Args:
        scope (str): primitive name
        text (str): argument text as written, e.g. "method=median"
        pairs (list): (key, value) tuples, values are unresolved strings
    '''
    kind = 'ARGS'

    def __init__(self, scope, text, pairs, source=None, lineno=None):
        Step.__init__(self, source, lineno)
        self.scope = scope
        self.text = text or ''
        self.pairs = list(pairs)

    def render(self):
        args = ' '.join(f'{k}="{v}"' for k, v in self.pairs)
        return f'ARGS {self.scope} {args}'.rstrip()


class Action(Step):
    '''
    Call of a registered action (or of a method of a recipe object, e.g.
    Frm.inout). The call is kept as a parsed expression and evaluated when
    the step runs.
    '''
    kind = 'ACTION'

    def __init__(self, name, call, targets=None, source=None, lineno=None):
        Step.__init__(self, source, lineno)
        self.name = name
        self.call = call
        self.targets = list(targets) if targets else []

    @property
    def args(self):
        return self.call.args

    @property
    def kwargs(self):
        return self.call.keywords

    def render(self):
        text = ast.unparse(self.call)
        if self.targets:
            text = ', '.join(self.targets) + ' = ' + text
        return f'ACTION {text}'


class Assign(Step):
    kind = 'ASSIGN'

    def __init__(self, targets, expr, source=None, lineno=None):
        Step.__init__(self, source, lineno)
        self.targets = list(targets)
        self.expr = expr

    def render(self):
        return 'ASSIGN ' + ', '.join(self.targets) + ' = ' + ast.unparse(self.expr)


class EngineCall(Step):
    '''
    Request to an algorithm engine.

    Args:
        engine (str): engine name
        operation (str): operation requested from the engine
        arguments (str): argument string, $name references are resolved at run time
        target (str): variable receiving the status, None when the status is
            checked by the StatusCheck that follows
    '''
    kind = 'ENGINE'

    def __init__(self, engine, operation, arguments, target=None, source=None, lineno=None):
        Step.__init__(self, source, lineno)
        self.engine = engine
        self.operation = operation
        self.arguments = arguments
        self.target = target

    def render(self):
        text = f'ENGINE {self.engine}.invoke("{self.operation}", "{self.arguments}")'
        if self.target is not None:
            text = text + f' -> {self.target}'
        return text


class StatusCheck(Step):
    '''
    Stop the recipe with the last status unless it is OK. Without an engine
    the check applies to the generic STATUS variable.
    '''
    kind = 'CHECK'

    def __init__(self, engine=None, operation=None, arguments=None, source=None, lineno=None):
        Step.__init__(self, source, lineno)
        self.engine = engine
        self.operation = operation
        self.arguments = arguments

    @property
    def generic(self):
        return self.engine is None

    def render(self):
        if self.generic:
            return 'CHECK STATUS'
        return f'CHECK {self.engine} {self.operation} "{self.arguments}"'


class ScopeExit(Step):
    kind = 'EXIT'

    def __init__(self, primitive, source=None, lineno=None):
        Step.__init__(self, source, lineno)
        self.primitive = primitive

    def render(self):
        return f'EXIT {self.primitive}'


class CompiledRecipe(object):
    '''
    Result of compiling a recipe.

    Attributes:
        name (str): recipe name
        steps (list): Step objects
        sources (dict): path -> modification time of every file read
        primitives (list): primitives used, in order of first use
    '''

    def __init__(self, name, steps, sources=None, primitives=None):
        self.name = name
        self.steps = list(steps)
        self.sources = dict(sources or {})
        self.primitives = list(primitives or [])

    def __iter__(self):
        return iter(self.steps)

    def __len__(self):
        return len(self.steps)

    def dump(self):
        ''' listing of the compiled recipe, one step per line '''
        return '\n'.join(f'{s.location()}: {s.render()}' for s in self.steps) + '\n'
