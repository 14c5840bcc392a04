from .base import *  # noqa
from .front import *  # noqa
from .quasi_static import *  # noqa
from .unsteady import *  # noqa
from .tracer import *  # noqa
