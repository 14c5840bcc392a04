"""
*poreflow*

Multiphase displacement simulation on pore network models.
"""

from ._precision import *  # noqa
from .errors import *  # noqa
from .constants import *  # noqa
from .types import *  # noqa
from .config import *  # noqa
from .fluids import *  # noqa
from .context import *  # noqa
from .records import *  # noqa
from .timing import *  # noqa
from .network import *  # noqa
from .clusters import *  # noqa
from .capillary import *  # noqa
from .solvers import *  # noqa
from .models import *  # noqa
from .simulate import *  # noqa
from .utils import *  # noqa
