import math
import typing

import attrs

from poreflow.constants import Constants
from poreflow.errors import ValidationError
from poreflow.types import (
    ModelType,
    Preconditioner,
    Solver,
    WaterDistribution,
)

__all__ = ["Config", "SteadyStateConfig", "UnsteadyConfig", "TracerConfig"]


_fraction = attrs.validators.and_(attrs.validators.ge(0.0), attrs.validators.le(1.0))
_positive = attrs.validators.gt(0.0)


def _not_nan(instance: typing.Any, attribute: attrs.Attribute, value: float) -> None:
    if math.isnan(value):
        raise ValidationError(f"'{attribute.name}' must not be NaN.")


@attrs.frozen
class SteadyStateConfig:
    """
    Quasi-static (steady-state) two-phase displacement cycle.

    Stages run in the order listed below. Each stage stops at the first of its
    final water saturation or final capillary pressure targets, or when no
    element is left to invade.
    """

    primary_drainage: bool = True
    """Oil displaces water from a fully water-saturated network."""
    spontaneous_imbibition: bool = False
    """Water re-enters water-wet elements as capillary pressure falls to zero."""
    forced_water_injection: bool = False
    """Water is forced into oil-wet elements at negative capillary pressure."""
    spontaneous_oil_invasion: bool = False
    """Oil re-enters oil-wet elements as capillary pressure rises to zero."""
    secondary_drainage: bool = False
    """Oil is forced into water-wet elements at positive capillary pressure."""

    final_saturation_primary_drainage: float = attrs.field(default=0.0, validator=_fraction)
    """Water saturation at which primary drainage stops."""
    final_pc_primary_drainage: float = attrs.field(default=math.inf, validator=_not_nan)
    """Capillary pressure (Pa) at which primary drainage stops."""
    final_saturation_spontaneous_imbibition: float = attrs.field(default=1.0, validator=_fraction)
    """Water saturation at which spontaneous imbibition stops."""
    final_pc_spontaneous_imbibition: float = attrs.field(default=0.0, validator=attrs.validators.ge(0.0))
    """Capillary pressure (Pa, non-negative) at which spontaneous imbibition stops."""
    final_saturation_forced_water_injection: float = attrs.field(default=1.0, validator=_fraction)
    """Water saturation at which forced water injection stops."""
    final_pc_forced_water_injection: float = attrs.field(default=-math.inf, validator=attrs.validators.le(0.0))
    """Capillary pressure (Pa, non-positive) at which forced water injection stops."""
    final_saturation_spontaneous_oil_invasion: float = attrs.field(default=0.0, validator=_fraction)
    """Water saturation at which spontaneous oil invasion stops."""
    final_pc_spontaneous_oil_invasion: float = attrs.field(default=0.0, validator=attrs.validators.le(0.0))
    """Capillary pressure (Pa, non-positive) at which spontaneous oil invasion stops."""
    final_saturation_secondary_drainage: float = attrs.field(default=0.0, validator=_fraction)
    """Water saturation at which secondary drainage stops."""
    final_pc_secondary_drainage: float = attrs.field(default=math.inf, validator=attrs.validators.ge(0.0))
    """Capillary pressure (Pa, non-negative) at which secondary drainage stops."""

    advanced_trapping: bool = False
    """
    Whether wetting films keep displaced-phase clusters connected.

    In basic mode only bulk occupancy defines connectivity, so a cluster cut
    off from the outlet is trapped at once. In advanced mode corner films of
    the displaced phase also connect elements, and such clusters keep draining
    until the films themselves are disconnected.
    """
    film_conductance_resistivity: float = attrs.field(default=1.0, validator=_positive)
    """Resistivity factor dividing corner film conductances in relative permeability solves."""
    primary_drainage_contact_angle: float = attrs.field(
        default=0.0,
        validator=attrs.validators.and_(
            attrs.validators.ge(0.0), attrs.validators.lt(math.pi / 2)
        ),
    )
    """Uniform (water-wet) receding contact angle used during primary drainage (radians)."""

    def __attrs_post_init__(self) -> None:
        if self.final_pc_primary_drainage <= 0:
            raise ValidationError(
                "Primary drainage final capillary pressure must be positive, "
                f"got {self.final_pc_primary_drainage}."
            )

    def enabled_stages(self) -> typing.List[str]:
        """Names of the enabled stages, in execution order."""
        names = [
            "primary_drainage",
            "spontaneous_imbibition",
            "forced_water_injection",
            "spontaneous_oil_invasion",
            "secondary_drainage",
        ]
        return [name for name in names if getattr(self, name)]


@attrs.frozen
class UnsteadyConfig:
    """Unsteady-state drainage: oil injected from the inlet into a water-filled network."""

    initial_water_saturation: float = attrs.field(default=1.0, validator=_fraction)
    """Water saturation of the network before injection starts."""
    water_distribution: WaterDistribution = attrs.field(
        default="small_pores_first",
        validator=attrs.validators.in_(("random", "small_pores_first", "big_pores_first")),
    )
    """How the initial water saturation is distributed over elements."""
    flow_rate: typing.Optional[float] = attrs.field(
        default=None, validator=attrs.validators.optional(_positive)
    )
    """
    Constant injection rate (m³/s).

    When set, the inlet pressure is adjusted every step so that the total flow
    matches this rate. Otherwise the pressure drop `Config.pressure_in -
    Config.pressure_out` is imposed.
    """
    simulation_time: float = attrs.field(default=1.0, validator=_positive)
    """Total simulated time (s)."""
    max_time_step: float = attrs.field(default=math.inf, validator=_positive)
    """Upper bound on a single time step (s)."""
    injected_pvs: typing.Optional[float] = attrs.field(
        default=None, validator=attrs.validators.optional(_positive)
    )
    """If set, the run stops after this many pore volumes are injected, instead of at `simulation_time`."""
    enhanced_water_connectivity: bool = False
    """Whether water corner films keep water-wet paths conductive and water clusters untrapped."""
    max_steps: int = attrs.field(default=100_000, validator=attrs.validators.ge(1))
    """Maximum number of time steps."""
    fill_tolerance: float = attrs.field(
        default=1e-9,
        validator=attrs.validators.and_(attrs.validators.gt(0.0), attrs.validators.lt(0.5)),
    )
    """Fraction tolerance at which an element is considered filled or emptied."""
    max_counter_imbibition_iterations: int = attrs.field(default=50, validator=attrs.validators.ge(1))
    """Maximum re-solves used to close counter-current imbibition paths in one step."""


@attrs.frozen
class TracerConfig:
    """Tracer injection through an oil-saturated network."""

    diffusion_coefficient: typing.Optional[float] = attrs.field(
        default=None, validator=attrs.validators.optional(attrs.validators.ge(0.0))
    )
    """Tracer diffusion coefficient (m²/s). Defaults to the oil diffusion coefficient of the fluids."""
    inlet_concentration: float = attrs.field(default=1.0, validator=_positive)
    """Concentration of the injected tracer."""
    simulation_time: float = attrs.field(default=1.0, validator=_positive)
    """Total simulated time (s)."""
    max_time_step: float = attrs.field(default=math.inf, validator=_positive)
    """Upper bound on a single time step (s)."""
    injected_pvs: typing.Optional[float] = attrs.field(
        default=None, validator=attrs.validators.optional(_positive)
    )
    """If set, the run stops after this many pore volumes are injected."""
    max_steps: int = attrs.field(default=100_000, validator=attrs.validators.ge(1))
    """Maximum number of time steps."""


@attrs.frozen
class Config:
    """Simulation run configuration and parameters."""

    model: ModelType = attrs.field(
        default="two_phase_steady_state",
        validator=attrs.validators.in_(("two_phase_steady_state", "unsteady_drainage", "tracer")),
    )
    """Displacement model to run after the absolute permeability calculation."""
    pressure_in: float = attrs.field(default=1.0, validator=_not_nan)
    """Inlet boundary pressure (Pa)."""
    pressure_out: float = attrs.field(default=0.0, validator=_not_nan)
    """Outlet boundary pressure (Pa)."""
    solver: typing.Union[Solver, typing.Tuple[Solver, ...]] = "direct"
    """
    Linear solver(s) for the pressure system.

    "direct" (sparse LU) is the default. For large extracted networks use
    ("cg", "bicgstab") with the "amg" preconditioner; solvers in a sequence are
    tried in order until one converges.
    """
    preconditioner: typing.Optional[Preconditioner] = "amg"
    """Preconditioner for iterative solvers."""
    convergence_tolerance: float = attrs.field(
        default=1e-10, validator=attrs.validators.le(1e-2)
    )
    """Relative tolerance for iterative solvers."""
    max_iterations: int = attrs.field(
        default=500,
        validator=attrs.validators.and_(attrs.validators.ge(1), attrs.validators.le(10_000)),
    )
    """Maximum number of iterations for iterative solvers."""
    fallback_to_direct: bool = True
    """Whether to fall back to the direct solver when all iterative solvers fail."""
    flow_balance_tolerance: float = attrs.field(default=1e-6, validator=_positive)
    """Maximum relative mismatch between inlet and outlet flow accepted from a pressure solve."""
    relative_permeabilities: bool = True
    """Whether relative permeabilities are computed at each output record."""
    output_frequency: int = attrs.field(default=1, validator=attrs.validators.ge(1))
    """Frequency (in invasion or time steps) at which records are emitted."""
    log_interval: int = attrs.field(default=50, validator=attrs.validators.ge(1))
    """Interval (in steps) at which to log simulation progress."""
    seed: typing.Optional[int] = None
    """Seed for the random generator used by random fills, when no generator is supplied."""
    steady_state: SteadyStateConfig = attrs.field(factory=SteadyStateConfig)
    """Quasi-static two-phase cycle configuration."""
    unsteady: UnsteadyConfig = attrs.field(factory=UnsteadyConfig)
    """Unsteady-state drainage configuration."""
    tracer: TracerConfig = attrs.field(factory=TracerConfig)
    """Tracer transport configuration."""
    constants: Constants = attrs.field(factory=Constants)
    """Numerical constants used in the simulation."""

    def __attrs_post_init__(self) -> None:
        if not self.pressure_in > self.pressure_out:
            raise ValidationError(
                f"Inlet pressure ({self.pressure_in}) must exceed outlet pressure ({self.pressure_out})."
            )

    @property
    def pressure_drop(self) -> float:
        """Imposed pressure drop across the network (Pa)."""
        return self.pressure_in - self.pressure_out
