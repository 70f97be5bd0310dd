import traceback

from keckdrpframework.primitives.base_primitive import BasePrimitive
from keckdrpframework.models.arguments import Arguments


class PrimitiveAction(object):
    """
    What a primitive is called with: its name and the recipe arguments.

    Args:
        name (str): action name used in the recipe
        args (keckdrpframework.models.arguments.Arguments): positional and keyword arguments
    """

    def __init__(self, name, args=None):
        self.name = name
        self.args = args if args is not None else Arguments()


class Obs_Primitive(BasePrimitive):
    """
    Base primitive for pluggable recipe actions.
    Primitive classes registered with the recipe executor should inherit from this one.

    Args:
        action (PrimitiveAction): action.args holds the arguments given in the recipe
        context (obspipe.recipes.executor.RecipeRun): the running recipe, with the
            current Frm, Grp, Cal and logger

    """

    def __init__(self, action, context):
        BasePrimitive.__init__(self, action, context)

        self.action = action
        self.context = context
        self.logger = self.context.logger

    def _pre_condition(self):
        return True

    def _post_condition(self):
        return True

    def apply(self):
        try:
            if self._pre_condition():
                self.output = self._perform()
                if self._post_condition():
                    return self.output
        except Exception as e:
            self.logger.debug(f"Failed executing primitive {self.__class__.__name__}: {e}\n{traceback.format_exc()}")
            raise e
        return None
