"""Physical and numerical constants for pore network flow"""

from contextvars import ContextVar
import math
import typing

import attrs


__all__ = ["Constant", "Constants", "c", "ConstantsContext", "get_constant"]


@attrs.frozen(slots=True)
class Constant:
    """
    A constant value with optional description and unit.
    """

    value: typing.Any
    """The actual value of the constant."""

    description: typing.Optional[str] = None
    """Optional description of what this constant represents."""

    unit: typing.Optional[str] = None
    """Optional unit of measurement for this constant."""

    def __str__(self) -> str:
        return f"{self.value}{self.unit or ''}"


DEFAULT_CONSTANTS: typing.Dict[str, typing.Union[typing.Any, Constant]] = {
    # Cross-section shape classes (Mason & Morrow / Valvatne & Blunt)
    "TRIANGLE_MAX_SHAPE_FACTOR": Constant(
        value=math.sqrt(3.0) / 36.0,
        description="Shape factor of an equilateral triangle. Upper bound of the triangular class",
        unit="dimensionless",
    ),
    "SQUARE_SHAPE_FACTOR": Constant(
        value=1.0 / 16.0,
        description="Shape factor of a square. Upper bound of the square class",
        unit="dimensionless",
    ),
    "CIRCLE_SHAPE_FACTOR": Constant(
        value=1.0 / (4.0 * math.pi),
        description="Shape factor of a circle",
        unit="dimensionless",
    ),
    # Single phase conductance g = k * A² * G / (mu * L)
    "TRIANGLE_CONDUCTANCE_COEFFICIENT": Constant(
        value=0.6,
        description="Hydraulic conductance coefficient for triangular cross-sections",
        unit="dimensionless",
    ),
    "SQUARE_CONDUCTANCE_COEFFICIENT": Constant(
        value=0.5623,
        description="Hydraulic conductance coefficient for square cross-sections",
        unit="dimensionless",
    ),
    "CIRCLE_CONDUCTANCE_COEFFICIENT": Constant(
        value=0.5,
        description="Hydraulic conductance coefficient for circular cross-sections (Hagen-Poiseuille)",
        unit="dimensionless",
    ),
    # Numerical thresholds
    "RELATIVE_FLOW_EPSILON": Constant(
        value=1e-10,
        description="Flow magnitude, relative to the largest pore flow, below which an element is considered stagnant",
        unit="fraction",
    ),
    "MIN_CAPILLARY_PRESSURE": Constant(
        value=1e-3,
        description="Capillary pressure magnitude below which corner films are not evaluated",
        unit="Pa",
    ),
}


class Constants:
    """
    Physical constants and numerical thresholds used in pore network simulations.

    Use attribute access for values and item access for the `Constant` object
    (with description and unit).
    """

    __slots__ = ("_store",)

    def __init__(self, **overrides: typing.Any) -> None:
        """
        Initialize the constants store with default values.

        :param overrides: Constant values to override by name.
        """
        store: typing.Dict[str, Constant] = {}
        for name, value in DEFAULT_CONSTANTS.items():
            store[name] = value if isinstance(value, Constant) else Constant(value)
        for name, value in overrides.items():
            if name in store and not isinstance(value, Constant):
                value = attrs.evolve(store[name], value=value)
            store[name] = value if isinstance(value, Constant) else Constant(value)
        object.__setattr__(self, "_store", store)

    def __getattr__(self, name: str) -> typing.Any:
        if name.startswith("_"):
            return object.__getattribute__(self, name)
        try:
            return self._store[name].value
        except KeyError:
            raise AttributeError(
                f"'{type(self).__name__}' object has no attribute '{name}'"
            ) from None

    def __getitem__(self, name: str) -> Constant:
        return self._store[name]

    def __setattr__(self, name: str, value: typing.Any) -> None:
        if isinstance(value, Constant):
            self._store[name] = value
        else:
            self._store[name] = Constant(value=value)

    def __contains__(self, name: str) -> bool:
        return name in self._store

    def __len__(self) -> int:
        return len(self._store)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Constants):
            return NotImplemented
        return self._store == other._store

    def __hash__(self) -> int:
        return hash(tuple(sorted((k, repr(v)) for k, v in self._store.items())))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(constants={len(self._store)})"

    def get(self, name: str, default: typing.Any = None) -> typing.Any:
        constant = self._store.get(name)
        if constant is None:
            return default
        return constant.value

    def get_constant(
        self, name: str, default: typing.Optional[Constant] = None
    ) -> typing.Optional[Constant]:
        return self._store.get(name, default)

    def __call__(self) -> "ConstantsContext":
        """
        Create a context manager that temporarily makes this instance the
        one served by the global proxy `poreflow.c`.
        """
        return ConstantsContext(self)


_constants_context: ContextVar[Constants] = ContextVar(
    "constants_context", default=Constants()
)


class ConstantsContext:
    """Context manager for temporary global `Constants` overrides."""

    def __init__(self, constants: Constants) -> None:
        self._new_constants = constants
        self._token = None

    def __enter__(self) -> Constants:
        self._token = _constants_context.set(self._new_constants)
        return self._new_constants

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if self._token is not None:
            _constants_context.reset(self._token)


class _ConstantsProxy:
    """Proxy to the current context's `Constants` instance."""

    @property
    def _constants(self) -> Constants:
        return _constants_context.get()

    def __getattr__(self, name: str) -> typing.Any:
        return getattr(self._constants, name)

    def __getitem__(self, name: str) -> Constant:
        return self._constants[name]


c = _ConstantsProxy()
"""Global proxy to access physical constants and numerical thresholds."""


def get_constant(name: str) -> typing.Optional[Constant]:
    """Get a `Constant` object by name from the global constants.

    :param name: Name of the constant
    :return: `Constant` object or None if not found
    """
    return c._constants.get_constant(name)
