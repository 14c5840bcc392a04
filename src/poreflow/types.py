import enum
import typing

import numpy as np
from scipy.sparse import csr_array, csr_matrix
from scipy.sparse.linalg import LinearOperator
from typing_extensions import TypeAlias


__all__ = [
    "FloatArray",
    "IntArray",
    "BoolArray",
    "Phase",
    "Wettability",
    "ElementKind",
    "CrossSection",
    "ClusterKind",
    "StageKind",
    "Termination",
    "ModelType",
    "WaterDistribution",
    "Solver",
    "SolverFunc",
    "SolverStr",
    "Preconditioner",
    "PreconditionerFactory",
    "PreconditionerStr",
]

T = typing.TypeVar("T")

FloatArray: TypeAlias = np.typing.NDArray[np.floating]
"""1D array of floats indexed by element, pore or node."""
IntArray: TypeAlias = np.typing.NDArray[np.integer]
"""1D array of integers indexed by element, pore or node."""
BoolArray: TypeAlias = np.typing.NDArray[np.bool_]
"""1D boolean mask indexed by element, pore or node."""


class Phase(enum.IntEnum):
    """
    Fluid phase occupying the bulk (centre) of a network element.

    Integer valued so that phase occupancy can be stored in compact
    numpy arrays and read from numba kernels.
    """

    WATER = 0
    OIL = 1
    GAS = 2


class Wettability(enum.IntEnum):
    """Wettability class of a network element, derived from its contact angle."""

    WATER_WET = 0
    OIL_WET = 1


class ElementKind(enum.IntEnum):
    """Variant of a network element."""

    PORE = 0
    """Throat connecting two nodes (or a node and a boundary reservoir)."""
    NODE = 1
    """Junction joining several pores."""


class CrossSection(enum.IntEnum):
    """Idealised cross-section shape, classified from the shape factor."""

    TRIANGLE = 0
    SQUARE = 1
    CIRCLE = 2


class ClusterKind(enum.Enum):
    """Classification dimension used by the cluster analyzer."""

    WATER = "water"
    """Elements whose bulk holds water."""
    OIL = "oil"
    """Elements whose bulk holds oil."""
    GAS = "gas"
    """Elements whose bulk holds gas."""
    WATER_WET = "water_wet"
    """Water-wet elements."""
    OIL_WET = "oil_wet"
    """Oil-wet elements."""
    WATER_WITH_FILMS = "water_with_films"
    """Elements holding water either in bulk or as corner films."""
    OIL_WITH_FILMS = "oil_with_films"
    """Elements holding oil either in bulk or as corner films."""
    FLOWING = "flowing"
    """Elements carrying a flow above the flow epsilon."""
    OPEN = "open"
    """Elements that are not closed."""


class StageKind(enum.Enum):
    """Quasi-static displacement stages, in their conventional order."""

    PRIMARY_DRAINAGE = "primary_drainage"
    SPONTANEOUS_IMBIBITION = "spontaneous_imbibition"
    FORCED_WATER_INJECTION = "forced_water_injection"
    SPONTANEOUS_OIL_INVASION = "spontaneous_oil_invasion"
    SECONDARY_DRAINAGE = "secondary_drainage"
    UNSTEADY_DRAINAGE = "unsteady_drainage"
    TRACER = "tracer"


class Termination(enum.Enum):
    """Reason a stage or time-marching run stopped."""

    TARGET_SATURATION = "target_saturation"
    TARGET_PRESSURE = "target_pressure"
    NO_INVASIBLE_ELEMENTS = "no_invasible_elements"
    STEADY_STATE = "steady_state"
    TIME_LIMIT = "time_limit"
    INJECTED_VOLUME = "injected_volume"
    MAX_STEPS = "max_steps"
    CANCELLED = "cancelled"
    SOLVER_FAILURE = "solver_failure"


ModelType = typing.Literal["two_phase_steady_state", "unsteady_drainage", "tracer"]
"""Simulation models that can be run on a network."""

WaterDistribution = typing.Literal["random", "small_pores_first", "big_pores_first"]
"""
How an initial water saturation is spread over the network

- "random": elements are filled in a random (seeded) order
- "small_pores_first": smallest radii are filled first (water-wet initial state)
- "big_pores_first": largest radii are filled first
"""

PreconditionerStr = typing.Literal["amg", "ilu", "diagonal"]
PreconditionerFactory = typing.Callable[
    [typing.Union[csr_array, csr_matrix]], LinearOperator
]
Preconditioner = typing.Union[
    LinearOperator, PreconditionerStr, PreconditionerFactory, str
]

SolverStr = typing.Literal["direct", "cg", "bicgstab", "gmres", "lgmres"]


class SolverFunc(typing.Protocol):
    """
    Protocol for a (sparse) linear solver function with the SciPy iterative solver interface.
    """

    def __call__(
        self,
        A: typing.Any,
        b: typing.Any,
        x0: typing.Optional[typing.Any],
        *,
        rtol: float,
        atol: float,
        maxiter: typing.Optional[int],
        M: typing.Optional[typing.Any],
        callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
    ) -> typing.Tuple[np.typing.NDArray, int]: ...


Solver = typing.Union[SolverFunc, SolverStr, str]
