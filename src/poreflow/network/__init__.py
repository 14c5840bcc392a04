from .base import *  # noqa
from .elements import *  # noqa
from .factories import *  # noqa
