# Tests of recipe compilation

import os

import pytest

from obspipe.constants import Status
from obspipe.errors import FatalError, RecipeNotFound, PrimitiveNotFound, PrimitiveCycleError, RecipeSyntaxError
from obspipe.recipes.compiler import RecipeCompiler, parse_arguments, parse_statement
from obspipe.recipes.steps import Action, Assign, EngineCall, StatusCheck


@pytest.fixture
def compiler(instrument, logger):
    return RecipeCompiler(instrument, logger=logger)


def kinds(compiled):
    return [type(s).__name__ for s in compiled.steps]


def test_parse_arguments():
    assert parse_arguments('method=median clip=3') == [('method', 'median'), ('clip', '3')]
    assert parse_arguments('title="two words"') == [('title', 'two words')]
    assert parse_arguments('') == []
    with pytest.raises(RecipeSyntaxError):
        parse_arguments('median')


def test_engine_call_gets_a_check():
    steps = parse_statement('kappa.invoke("darksub", "in=$file")')
    assert [type(s) for s in steps] == [EngineCall, StatusCheck]
    assert steps[1].engine == 'kappa'
    assert steps[1].operation == 'darksub'


def test_stored_engine_status_is_not_checked():
    steps = parse_statement('st = kappa.invoke("darksub", "in=$file")')
    assert [type(s) for s in steps] == [EngineCall]
    assert steps[0].target == 'st'


def test_status_action_gets_generic_check():
    steps = parse_statement('STATUS = check_frame(Frm)')
    assert [type(s) for s in steps] == [Action, StatusCheck]
    assert steps[1].generic

    assert [type(s) for s in parse_statement('out = inout("_dk")')] == [Action]
    assert [type(s) for s in parse_statement('x = 2 * y')] == [Assign]


@pytest.mark.parametrize('line', [
    'for x in y: pass',
    'import os',
    'kappa.invoke(op, "x")',
    'a = lambda: 1',
    'a.b = 3',
])
def test_unsupported_lines(line):
    with pytest.raises(RecipeSyntaxError):
        parse_statement(line)


def test_primitive_expansion(compiler, add_recipe, add_primitive):
    add_primitive('_DARK_SUBTRACT', '# subtract\nkappa.invoke("darksub", "in=$file method=$method")\n')
    add_primitive('_WRAP', '_DARK_SUBTRACT method=$method\nprint("done")\n')
    add_recipe('REDUCE', '_WRAP method=median\n_DARK_SUBTRACT method=mean\n')

    compiled = compiler.compile('REDUCE')
    assert kinds(compiled) == [
        'ScopeEnter', 'ArgBind',
        'ScopeEnter', 'ArgBind', 'Comment', 'EngineCall', 'StatusCheck', 'ScopeExit',
        'Action', 'ScopeExit',
        'ScopeEnter', 'ArgBind', 'Comment', 'EngineCall', 'StatusCheck', 'ScopeExit',
    ]
    assert compiled.primitives == ['_WRAP', '_DARK_SUBTRACT']
    assert compiled.steps[1].pairs == [('method', 'median')]
    # no primitive invocation is left in the compiled recipe
    assert not any(isinstance(s, Action) and s.name.startswith("_") for s in compiled.steps)
    assert compiled.steps[5].location() == '_DARK_SUBTRACT:2'


def test_dump_is_deterministic(compiler, add_recipe, add_primitive):
    add_primitive('_DARK_SUBTRACT', 'kappa.invoke("darksub", "in=$file method=$method")\n')
    add_recipe('REDUCE', '_DARK_SUBTRACT method=median\n')

    first = compiler.compile('REDUCE').dump()
    compiler.clear()
    assert compiler.compile('REDUCE').dump() == first
    assert first.splitlines() == [
        'REDUCE:1: ENTER _DARK_SUBTRACT from REDUCE',
        'REDUCE:1: ARGS _DARK_SUBTRACT method="median"',
        '_DARK_SUBTRACT:1: ENGINE kappa.invoke("darksub", "in=$file method=$method")',
        '_DARK_SUBTRACT:1: CHECK kappa darksub "in=$file method=$method"',
        'REDUCE:1: EXIT _DARK_SUBTRACT',
    ]


def test_cycle_is_reported_with_its_path(compiler, add_recipe, add_primitive):
    add_primitive('_A', '_B\n')
    add_primitive('_B', '_A\n')
    add_recipe('LOOPY', '_A\n')

    with pytest.raises(PrimitiveCycleError) as e:
        compiler.compile('LOOPY')
    assert e.value.path == ['_A', '_B', '_A']
    assert '_A -> _B -> _A' in str(e.value)


def test_missing_files(compiler, add_recipe):
    with pytest.raises(RecipeNotFound):
        compiler.compile('NO_SUCH_RECIPE')
    add_recipe('USES_MISSING', '_NOT_THERE\n')
    with pytest.raises(PrimitiveNotFound):
        compiler.compile('USES_MISSING')


def test_syntax_error_is_fatal(compiler, add_recipe):
    add_recipe('BROKEN', 'print("ok")\nwhile True: pass\n')
    with pytest.raises(FatalError) as e:
        compiler.compile('BROKEN')
    assert e.value.status == Status.PARSE_ERROR
    assert 'BROKEN line 2' in str(e.value)


def test_cache_follows_file_changes(compiler, add_recipe):
    path = add_recipe('CHANGING', 'print("one")\n')
    first = compiler.compile('CHANGING')
    assert compiler.compile('CHANGING') is first

    add_recipe('CHANGING', 'print("one")\nprint("two")\n')
    mtime = os.path.getmtime(path) + 10
    os.utime(path, (mtime, mtime))
    assert len(compiler.compile('CHANGING')) == 2


def test_search_path_order(instrument, tmp_path, add_recipe):
    add_recipe('QUICK_LOOK', 'print("built in")\n')
    mine = tmp_path / 'mine'
    mine.mkdir()
    (mine / 'QUICK_LOOK.recipe').write_text('print("mine")\nprint("again")\n')

    compiler = RecipeCompiler(instrument, recipe_path=[str(mine)])
    assert len(compiler.compile('QUICK_LOOK')) == 2


def test_bundled_recipes_compile():
    from obspipe.models.instrument import get_instrument

    compiler = RecipeCompiler(get_instrument('generic'))
    for name in ('QUICK_LOOK', 'REDUCE_DARK', 'REDUCE_FLAT', 'REDUCE_SCIENCE'):
        steps = compiler.compile(name).steps
        for i, step in enumerate(steps):
            if isinstance(step, EngineCall):
                assert isinstance(steps[i + 1], StatusCheck)
