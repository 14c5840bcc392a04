"""
Unsteady-state drainage: explicit time marching of oil injected into a water-filled network.

Each step solves the pressure field for the current occupancy, moves fluid
with the resulting pore flows, and advances time by exactly the interval
after which the next element fills with oil (or empties), so no element's
oil fraction ever leaves [0, 1].
"""

import logging
import math
import typing

import numpy as np

from poreflow.capillary import entry_pressure
from poreflow.clusters import ClusterAnalyzer
from poreflow.config import Config
from poreflow.constants import c
from poreflow.context import RunContext
from poreflow.errors import DegenerateSystemError, SolverError, ValidationError
from poreflow.fluids import FluidProperties
from poreflow.models.base import StageResult, log_progress
from poreflow.records import Record
from poreflow.solvers.pressure import (
    PressureSolution,
    mixture_viscosity,
    solve_pressure,
    solver_options,
)
from poreflow.timing import Timer
from poreflow.types import ClusterKind, FloatArray, Phase, StageKind, Termination

if typing.TYPE_CHECKING:
    from poreflow.network.base import Network

logger = logging.getLogger(__name__)

__all__ = ["StepFluxes", "UnsteadyDrainage", "upstream_ends"]


def upstream_ends(
    network: "Network", pore_flow: FloatArray
) -> typing.Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Upstream and downstream ends of every pore under a flow field.

    :return: (source, destination, from_inlet_side). Sources and destinations
        are node ids, or -1 for a reservoir. `from_inlet_side` tells whether
        the flow runs from the pore's inlet-side end to its outlet-side end.
    """
    forward = pore_flow > 0.0
    a_end = network.pore_nodes[:, 0]
    b_end = network.pore_nodes[:, 1]
    source = np.where(forward, a_end, b_end)
    destination = np.where(forward, b_end, a_end)
    return source, destination, forward


class StepFluxes(typing.NamedTuple):
    """Oil volume rates of one step."""

    oil_rate: FloatArray
    """Net oil volume rate into each element (m³/s)."""
    oil_outflow: float
    """Oil leaving through the outlet (m³/s)."""
    water_outflow: float
    """Water leaving through the outlet (m³/s)."""


class UnsteadyDrainage:
    """
    Time-marching oil injection at a fixed pressure drop or a fixed flow rate.

    Oil leaves an element only once the element is full of oil; until then
    the element expels water. Pores whose meniscus would retreat (water
    flowing back into oil) are closed and the pressure field is solved again.
    Under a fixed flow rate, when every path is closed the meniscus with the
    lowest entry pressure is forced open instead.
    """

    def __init__(
        self,
        network: "Network",
        fluids: FluidProperties,
        config: Config,
        context: typing.Optional[RunContext] = None,
        absolute_permeability: typing.Optional[float] = None,
        analyzer: typing.Optional[ClusterAnalyzer] = None,
        rng: typing.Optional[np.random.Generator] = None,
    ) -> None:
        self.network = network
        self.fluids = fluids
        self.config = config
        self.settings = config.unsteady
        self.context = context if context is not None else RunContext()
        self.absolute_permeability = absolute_permeability
        self.analyzer = analyzer if analyzer is not None else ClusterAnalyzer(network)
        self.rng = rng if rng is not None else np.random.default_rng(config.seed)
        self.injected_volume = 0.0
        self.thresholds = entry_pressure(
            network.radius,
            network.shape_factor,
            network.theta,
            fluids.oil_water_surface_tension,
        )

    @property
    def injected_pvs(self) -> float:
        pore_volume = self.network.pore_volume
        return self.injected_volume / pore_volume if pore_volume > 0 else 0.0

    def initialize(self) -> float:
        """
        Fill the network with its initial water saturation.

        :return: The achieved water saturation.
        """
        network = self.network
        if np.any(network.volume[network.accessible] <= 0.0):
            raise ValidationError("Time marching requires positive volumes for all accessible elements.")
        network.reset_state()
        saturation = network.fill_with_phase(
            Phase.WATER,
            self.settings.initial_water_saturation,
            distribution=self.settings.water_distribution,
            other_phase=Phase.OIL,
            rng=self.rng,
        )
        full = network.phase == Phase.OIL
        network.water_film[:] = full & network.water_film_stable
        self.update_trapping()
        self.injected_volume = 0.0
        return saturation

    def update_trapping(self) -> None:
        """Water not connected to the outlet is trapped and stops flowing."""
        network = self.network
        kind = (
            ClusterKind.WATER_WITH_FILMS
            if self.settings.enhanced_water_connectivity
            else ClusterKind.WATER
        )
        escaped = self.analyzer.classify(kind).outlet_connected_mask()
        network.water_trapped[:] = (
            (network.phase == Phase.WATER) & network.accessible & ~escaped
        )

    def _full(self) -> np.ndarray:
        return self.network.oil_fraction >= 1.0 - self.settings.fill_tolerance

    def meniscus_orientation(self) -> np.ndarray:
        """
        Direction in which oil would advance through each pore.

        +1 when oil sits at the inlet-side end only, -1 when it sits at the
        outlet-side end only, 0 when the pore holds no advancing meniscus. The
        inlet reservoir holds oil and the outlet reservoir holds water.
        """
        network = self.network
        P = network.pore_count
        full = self._full()
        a_end = network.pore_nodes[:, 0]
        b_end = network.pore_nodes[:, 1]
        a_oil = np.where(a_end < 0, True, full[np.maximum(a_end, 0) + P])
        b_oil = np.where(b_end < 0, False, full[np.maximum(b_end, 0) + P])
        orientation = np.where(a_oil & ~b_oil, 1, np.where(b_oil & ~a_oil, -1, 0))
        orientation[full[:P] | ~network.accessible[:P]] = 0
        return orientation.astype(np.int8)

    def conductance(self) -> FloatArray:
        """Element conductances for the current mixture, with trapped water blocked."""
        network = self.network
        conductance = network.conductance / mixture_viscosity(network, self.fluids)
        blocked = ~network.accessible | network.water_trapped
        return np.where(blocked, 0.0, conductance)

    def solve_flow(self) -> typing.Optional[PressureSolution]:
        """
        Solve the pressure field, closing pores where a meniscus would retreat.

        :return: The solution, or None when capillary forces block every path
            under a fixed pressure drop.
        :raises SolverError: If the pressure solve fails.
        """
        network = self.network
        config = self.config
        P = network.pore_count
        orientation = self.meniscus_orientation()
        meniscus = orientation != 0
        offsets = np.where(meniscus, orientation * self.thresholds[:P], 0.0)
        base = self.conductance()
        flow_rate = self.settings.flow_rate
        closed = np.zeros(P, dtype=np.bool_)
        forced = np.zeros(P, dtype=np.bool_)
        options = solver_options(config)

        solution = None
        for iteration in range(self.settings.max_counter_imbibition_iterations):
            conductance = base.copy()
            conductance[:P][closed] = 0.0
            try:
                solution = solve_pressure(
                    network,
                    conductance,
                    config.pressure_in,
                    config.pressure_out,
                    capillary_offsets=offsets,
                    flow_rate=flow_rate,
                    **options,
                )
            except DegenerateSystemError:
                if not closed.any():
                    raise
                if flow_rate is None:
                    logger.debug("Capillary forces block every path at the imposed pressure drop")
                    return None
                candidates = np.flatnonzero(closed)
                reopen = candidates[np.argmin(np.abs(offsets[candidates]))]
                closed[reopen] = False
                forced[reopen] = True
                continue

            oriented = solution.pore_flow * orientation
            scale = float(np.abs(solution.pore_flow).max(initial=0.0))
            retreating = (
                meniscus
                & ~closed
                & ~forced
                & (oriented < -c.RELATIVE_FLOW_EPSILON * scale)
            )
            if not retreating.any():
                return solution
            closed |= retreating
            logger.debug(
                f"Closed {int(retreating.sum())} counter-current pores (iteration {iteration + 1})"
            )

        logger.warning(
            "Counter-current pores still present after "
            f"{self.settings.max_counter_imbibition_iterations} iterations"
        )
        return solution

    def fluxes(self, solution: PressureSolution) -> StepFluxes:
        """Net oil volume rate of every element under a flow field."""
        network = self.network
        P = network.pore_count
        oil_out = self._full().astype(np.float64)
        magnitude = np.abs(solution.pore_flow)
        source, destination, forward = upstream_ends(network, solution.pore_flow)

        source_oil = np.where(
            source >= 0, oil_out[np.maximum(source, 0) + P], np.where(forward, 1.0, 0.0)
        )
        rate = np.zeros(network.element_count)
        rate[:P] = magnitude * (source_oil - oil_out[:P])
        into_node = destination >= 0
        np.add.at(rate, destination[into_node] + P, (magnitude * oil_out[:P])[into_node])
        from_node = source >= 0
        np.add.at(
            rate,
            source[from_node] + P,
            -(magnitude * oil_out[np.maximum(source, 0) + P])[from_node],
        )
        rate[~solution.active] = 0.0
        # Drop round-off from the flow balance of elements that pass oil straight through
        scale = float(magnitude[solution.active[:P]].max(initial=0.0))
        rate[np.abs(rate) <= c.RELATIVE_FLOW_EPSILON * scale] = 0.0

        to_outlet = forward & (network.pore_nodes[:, 1] < 0)
        oil_outflow = float((magnitude * oil_out[:P])[to_outlet].sum())
        water_outflow = float((magnitude * (1.0 - oil_out[:P]))[to_outlet].sum())
        return StepFluxes(rate, oil_outflow, water_outflow)

    def step_size(self, oil_rate: FloatArray, timer: Timer, inlet_flow: float) -> float:
        """
        Largest step that keeps every oil fraction within [0, 1].

        dt = min((1 - f) V / r for filling elements, f V / |r| for emptying
        elements, the maximum step size, the time left, the volume left to inject).
        """
        network = self.network
        fraction = network.oil_fraction
        volume = network.volume
        filling = (oil_rate > 0.0) & (fraction < 1.0)
        emptying = (oil_rate < 0.0) & (fraction > 0.0)
        candidates = [math.inf]
        if filling.any():
            candidates.append(float(((1.0 - fraction[filling]) * volume[filling] / oil_rate[filling]).min()))
        if emptying.any():
            candidates.append(float((fraction[emptying] * volume[emptying] / -oil_rate[emptying]).min()))
        dt = min(candidates)
        target_pvs = self.settings.injected_pvs
        if target_pvs is not None and inlet_flow > 0:
            remaining = (target_pvs - self.injected_pvs) * network.pore_volume
            dt = min(dt, max(remaining, 0.0) / inlet_flow)
        return timer.bound_step_size(dt)

    def advance(self, oil_rate: FloatArray, dt: float) -> int:
        """
        Integrate oil fractions over a step and flip occupancy flags.

        :return: Number of elements whose occupancy flag changed.
        """
        network = self.network
        tolerance = self.settings.fill_tolerance
        moving = oil_rate != 0.0
        fraction = network.oil_fraction.copy()
        fraction[moving] += oil_rate[moving] * dt / network.volume[moving]
        np.clip(fraction, 0.0, 1.0, out=fraction)
        fraction[fraction >= 1.0 - tolerance] = 1.0
        fraction[fraction <= tolerance] = 0.0

        was_oil = network.phase == Phase.OIL
        now_oil = fraction >= 1.0
        network.oil_fraction[:] = fraction
        network.phase[:] = np.where(now_oil, Phase.OIL, Phase.WATER)
        filled = now_oil & ~was_oil
        network.water_film[filled] = network.water_film_stable[filled]
        network.water_film[~now_oil] = False
        return int(np.count_nonzero(now_oil != was_oil))

    def record(
        self,
        step: int,
        timer: Timer,
        solution: typing.Optional[PressureSolution],
        fluxes: typing.Optional[StepFluxes],
    ) -> Record:
        network = self.network
        if solution is None or fluxes is None:
            return Record(
                step=step,
                stage=StageKind.UNSTEADY_DRAINAGE.value,
                time=timer.elapsed_time,
                injected_pvs=self.injected_pvs,
                water_saturation=network.water_saturation(),
                flow_rate=0.0,
            )

        total = fluxes.oil_outflow + fluxes.water_outflow
        fractional_flow = fluxes.water_outflow / total if total > 0 else math.nan
        krw = kro = math.nan
        pressure_drop = solution.pressure_drop
        permeability = self.absolute_permeability
        if permeability and pressure_drop > 0:
            factor = network.x_edge_length / (
                permeability * network.cross_section_area * pressure_drop
            )
            krw = self.fluids.water_viscosity * fluxes.water_outflow * factor
            kro = self.fluids.oil_viscosity * fluxes.oil_outflow * factor
        return Record(
            step=step,
            stage=StageKind.UNSTEADY_DRAINAGE.value,
            time=timer.elapsed_time,
            injected_pvs=self.injected_pvs,
            water_saturation=network.water_saturation(),
            pressure_drop=pressure_drop,
            flow_rate=solution.flow_rate,
            water_flow_rate=fluxes.water_outflow,
            oil_flow_rate=fluxes.oil_outflow,
            fractional_flow=fractional_flow,
            krw=krw,
            kro=kro,
        )

    def run(self, first_step: int = 0) -> typing.Generator[Record, None, StageResult]:
        """
        Run the drainage until a termination condition holds.

        :param first_step: Step counter of the run before this model starts.
        :yield: The initial record, then records of committed time steps.
        :return: The run result.
        """
        settings = self.settings
        config = self.config
        context = self.context
        network = self.network
        stage = StageKind.UNSTEADY_DRAINAGE

        self.initialize()
        simulation_time = math.inf if settings.injected_pvs is not None else settings.simulation_time
        timer = Timer(
            simulation_time=simulation_time,
            max_step_size=settings.max_time_step,
            max_steps=settings.max_steps,
        )
        logger.info(
            f"Starting unsteady drainage: Sw0 = {network.water_saturation():.4f}, "
            + (
                f"flow rate {settings.flow_rate:.4e} m³/s"
                if settings.flow_rate is not None
                else f"pressure drop {config.pressure_drop:.4e} Pa"
            )
        )
        context.notify(f"Running {stage.value}")
        yield self.record(first_step, timer, None, None)

        termination = Termination.TIME_LIMIT
        message = None
        emitted = True
        solution = None
        fluxes = None
        while True:
            if context.cancelled:
                termination = Termination.CANCELLED
                break
            if settings.injected_pvs is not None and self.injected_pvs >= settings.injected_pvs * (1.0 - 1e-12):
                termination = Termination.INJECTED_VOLUME
                break
            if timer.done():
                termination = (
                    Termination.MAX_STEPS
                    if timer.time_remaining > 0
                    else Termination.TIME_LIMIT
                )
                break

            try:
                solution = self.solve_flow()
            except SolverError as exc:
                logger.error(f"Pressure solve failed at time step {timer.next_step}: {exc}")
                termination = Termination.SOLVER_FAILURE
                message = str(exc)
                break
            if solution is None:
                termination = Termination.STEADY_STATE
                break

            fluxes = self.fluxes(solution)
            if not np.any(fluxes.oil_rate != 0.0):
                # Report the flow of the steady state reached
                termination = Termination.STEADY_STATE
                emitted = False
                break
            dt = self.step_size(fluxes.oil_rate, timer, solution.inlet_flow)
            if not math.isfinite(dt) or dt <= 0.0:
                termination = Termination.STEADY_STATE
                emitted = False
                break

            flipped = self.advance(fluxes.oil_rate, dt)
            self.injected_volume += max(solution.inlet_flow, 0.0) * dt
            timer.accept_step(dt)
            if flipped:
                self.update_trapping()

            emitted = False
            status = log_progress(
                stage,
                timer.step,
                network.water_saturation(),
                config.log_interval,
                time=timer.elapsed_time,
                total_time=settings.simulation_time if settings.injected_pvs is None else None,
            )
            if status is not None:
                context.notify(status)
            if timer.step % config.output_frequency == 0:
                yield self.record(first_step + timer.step, timer, solution, fluxes)
                emitted = True

        if not emitted:
            yield self.record(first_step + timer.step, timer, solution, fluxes)

        result = StageResult(
            stage=stage,
            termination=termination,
            steps=timer.step,
            water_saturation=network.water_saturation(),
            time=timer.elapsed_time,
            message=message,
        )
        logger.info(
            f"Finished unsteady drainage after {timer.step} steps ({termination.value}), "
            f"t = {timer.elapsed_time:.4e}s, Sw = {result.water_saturation:.4f}, "
            f"injected {self.injected_pvs:.4f} PV"
        )
        return result
