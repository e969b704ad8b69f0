"""
Main init file
"""

import logging

__all__ = (
    '__version__',
    'fit_normalform_coordinate_change',
    'validate_options',
    'DEFAULT_OPTIONS',
    'MapBundle',
    'PolynomialMap',
    'PolynomialBasis',
    'SparsityPattern',
    'CoefficientLayout',
    'SampleSet',
    'InvarianceContext',
    'InvalidConfiguration',
    'LinearAlgebraError',
    'GradientCheckError',
)
__version__ = '1.0'

logging.basicConfig(
    format='%(levelname) -6s %(asctime)s %(module)s %(message)s',
    level=logging.INFO,
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger(__name__)

from .exceptions import GradientCheckError, InvalidConfiguration, LinearAlgebraError  # noqa: E402
from .utils.preprocessing import PolynomialBasis  # noqa: E402
from .reduced_dynamics.coefficients import CoefficientLayout, SparsityPattern  # noqa: E402
from .reduced_dynamics.invariance import InvarianceContext, SampleSet  # noqa: E402
from .reduced_dynamics.normalform import (  # noqa: E402
    DEFAULT_OPTIONS,
    MapBundle,
    PolynomialMap,
    fit_normalform_coordinate_change,
    validate_options,
)
