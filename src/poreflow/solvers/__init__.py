from .linear import *  # noqa
from .pressure import *  # noqa
