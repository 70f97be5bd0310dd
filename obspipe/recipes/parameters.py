"""
Recipe parameters: values that tune a recipe without editing it.

The parameter file has one section per recipe name::

    [REDUCE_DARK]
    method = median
    clip = 3.0

and recipes read them through RECPARS, e.g. ``clip = RECPARS.clip``.
"""

import os

from obspipe.config.pipeline_config import ConfigClass, Struct
from obspipe.errors import FatalError


class RecipeParameters(object):
    """
    Args:
        path (str): parameter file, None for no parameters
    """

    def __init__(self, path=None):
        self.path = path
        self.config = None
        if path is not None:
            if not os.path.exists(path):
                raise FatalError(f'Recipe parameter file {path} does not exist')
            self.config = ConfigClass(path)

    def for_recipe(self, name):
        ''' the parameters of one recipe as a Struct, empty when there are none '''
        if self.config is None:
            return Struct()
        if self.config.has_section(name):
            # section items already include the [DEFAULT] values
            return Struct(dict(self.config.section(name).__dict__))
        return Struct(self.config.parameters())
