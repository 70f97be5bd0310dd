from obspipe.primitives.core import Obs_Primitive
from obspipe.errors import RecipeError


class CalibrationPrimitive(Obs_Primitive):

    def __init__(self, action, context):
        Obs_Primitive.__init__(self, action, context)
        self.selector = context.calibration
        try:
            self.role = self.action.args[0]
        except (IndexError, KeyError):
            raise RecipeError(f'{action.name} needs the calibration role as first argument')

    def _pre_condition(self):
        if self.selector is None:
            raise RecipeError(f'No calibration selector available for {self.action.name}')
        return True


class SelectCalibration(CalibrationPrimitive):
    """Looks up the calibration of a given role for the current frame.

    Usage:
        For the recipe, the primitive is called like::

            :
            dark = calibration("dark")
            :

        The value returned is the name of the calibration file, or the
        operator supplied value when the role was fixed on the command line.
    """

    def _perform(self):
        return self.selector.get(self.role)


class CalibrationValue(CalibrationPrimitive):
    """Returns a value stored with the selected calibration, e.g.::

        rn = calibration_value("readnoise", "READNOISE")
    """

    def __init__(self, action, context):
        CalibrationPrimitive.__init__(self, action, context)
        try:
            self.column = self.action.args[1]
        except (IndexError, KeyError):
            raise RecipeError('calibration_value needs a role and a column')

    def _perform(self):
        return self.selector.get_value(self.role, self.column)


class FileCalibration(CalibrationPrimitive):
    """Adds the current frame to the index of a calibration role and makes
    it the calibration in use, e.g. at the end of a dark reduction::

        file_calibration("dark")
    """

    def _perform(self):
        try:
            name = self.action.args[1]
        except (IndexError, KeyError):
            name = None
        return self.selector.file(self.role, self.context.frame, name)
