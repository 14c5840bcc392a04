"""
Tracer transport through an oil-saturated network.

The oil pressure field is solved once. A passive tracer is then advected
upwind along the pore flows and diffuses between pore centres and their end
nodes. Time steps are explicit and bounded so that each new concentration is
a weighted average of old ones, which keeps it within [0, inlet concentration].
"""

import logging
import math
import typing

import numpy as np

from poreflow.config import Config
from poreflow.constants import c
from poreflow.context import RunContext
from poreflow.errors import SolverError, ValidationError
from poreflow.fluids import FluidProperties
from poreflow.models.base import StageResult, log_progress
from poreflow.models.unsteady import upstream_ends
from poreflow.records import Record
from poreflow.solvers.pressure import PressureSolution, solve_pressure, solver_options
from poreflow.timing import Timer
from poreflow.types import FloatArray, Phase, StageKind, Termination
from poreflow.utils import clip

if typing.TYPE_CHECKING:
    from poreflow.network.base import Network

logger = logging.getLogger(__name__)

__all__ = ["TracerTransport"]


class TracerTransport:
    """
    Explicit upwind advection and diffusion of a tracer in the oil phase.

    Only the conductive spanning part of the network carries tracer; all other
    elements keep a zero concentration.
    """

    def __init__(
        self,
        network: "Network",
        fluids: FluidProperties,
        config: Config,
        context: typing.Optional[RunContext] = None,
    ) -> None:
        self.network = network
        self.fluids = fluids
        self.config = config
        self.settings = config.tracer
        self.context = context if context is not None else RunContext()
        self.diffusion_coefficient = (
            self.settings.diffusion_coefficient
            if self.settings.diffusion_coefficient is not None
            else fluids.oil_diffusion_coefficient
        )
        self.injected_volume = 0.0
        self.solution: typing.Optional[PressureSolution] = None
        self._source: typing.Optional[np.ndarray] = None
        self._destination: typing.Optional[np.ndarray] = None
        self._forward: typing.Optional[np.ndarray] = None
        self._magnitude: typing.Optional[FloatArray] = None
        self._diffusivity: typing.Optional[FloatArray] = None
        self._exchange: typing.Optional[FloatArray] = None

    @property
    def injected_pvs(self) -> float:
        pore_volume = self.network.pore_volume
        return self.injected_volume / pore_volume if pore_volume > 0 else 0.0

    def initialize(self) -> PressureSolution:
        """
        Saturate the network with oil, clear the tracer and solve the oil flow field.

        :raises SolverError: If the pressure solve fails.
        """
        network = self.network
        if np.any(network.volume[network.accessible] <= 0.0):
            raise ValidationError("Time marching requires positive volumes for all accessible elements.")
        network.reset_state()
        network.set_phase(network.accessible, Phase.OIL)

        conductance = np.where(
            network.accessible, network.conductance / self.fluids.oil_viscosity, 0.0
        )
        solution = solve_pressure(
            network,
            conductance,
            self.config.pressure_in,
            self.config.pressure_out,
            **solver_options(self.config),
        )
        self.solution = solution
        self._prepare(solution)
        self.injected_volume = 0.0
        return solution

    def _prepare(self, solution: PressureSolution) -> None:
        network = self.network
        P = network.pore_count
        active = solution.active
        source, destination, forward = upstream_ends(network, solution.pore_flow)
        magnitude = np.where(active[:P], np.abs(solution.pore_flow), 0.0)

        length = network.length[:P]
        diffusivity = np.zeros(P)
        has_length = (length > 0.0) & active[:P]
        diffusivity[has_length] = (
            self.diffusion_coefficient
            * network.area[:P][has_length]
            / (0.5 * length[has_length])
        )

        # Sum of the coefficients of every term that carries tracer out of each element
        exchange = np.zeros(network.element_count)
        exchange[:P] = magnitude
        from_node = source >= 0
        np.add.at(exchange, source[from_node] + P, magnitude[from_node])
        coupled = diffusivity > 0.0
        for end in (0, 1):
            nodes = network.pore_nodes[:, end]
            to_node = coupled & (nodes >= 0)
            exchange[:P][to_node] += diffusivity[to_node]
            np.add.at(exchange, nodes[to_node] + P, diffusivity[to_node])
        from_inlet = coupled & (network.pore_nodes[:, 0] < 0)
        exchange[:P][from_inlet] += diffusivity[from_inlet]

        self._source = source
        self._forward = forward
        self._destination = destination
        self._magnitude = magnitude
        self._diffusivity = diffusivity
        self._exchange = exchange

    def mass_rate(self, concentration: FloatArray) -> FloatArray:
        """Net tracer rate into each element (concentration · m³/s)."""
        network = self.network
        P = network.pore_count
        inlet = self.settings.inlet_concentration
        source = typing.cast(np.ndarray, self._source)
        destination = typing.cast(np.ndarray, self._destination)
        magnitude = typing.cast(np.ndarray, self._magnitude)
        diffusivity = typing.cast(np.ndarray, self._diffusivity)

        # Upwind advection. The inlet reservoir supplies tracer, backflow from the outlet does not.
        forward = typing.cast(np.ndarray, self._forward)
        reservoir = np.where(forward & (network.pore_nodes[:, 0] < 0), inlet, 0.0)
        upstream = np.where(source >= 0, concentration[np.maximum(source, 0) + P], reservoir)
        pore = concentration[:P]
        rate = np.zeros(network.element_count)
        rate[:P] = magnitude * (upstream - pore)
        into_node = destination >= 0
        np.add.at(rate, destination[into_node] + P, (magnitude * pore)[into_node])
        from_node = source >= 0
        np.add.at(rate, source[from_node] + P, -(magnitude * upstream)[from_node])

        coupled = diffusivity > 0.0
        for end in (0, 1):
            nodes = network.pore_nodes[:, end]
            to_node = coupled & (nodes >= 0)
            flux = diffusivity[to_node] * (concentration[nodes[to_node] + P] - pore[to_node])
            rate[:P][to_node] += flux
            np.add.at(rate, nodes[to_node] + P, -flux)
        from_inlet = coupled & (network.pore_nodes[:, 0] < 0)
        rate[:P][from_inlet] += diffusivity[from_inlet] * (inlet - pore[from_inlet])
        return rate

    def step_size(self, timer: Timer) -> float:
        """
        Largest stable step: dt = min(V / (outflow + diffusive couplings)) over active elements,
        further bounded by the maximum step size, the time left and the volume left to inject.
        """
        network = self.network
        exchange = typing.cast(np.ndarray, self._exchange)
        coupled = exchange > 0.0
        dt = math.inf
        if coupled.any():
            dt = float((network.volume[coupled] / exchange[coupled]).min())
        target_pvs = self.settings.injected_pvs
        inlet_flow = self.solution.inlet_flow if self.solution is not None else 0.0
        if target_pvs is not None and inlet_flow > 0:
            remaining = (target_pvs - self.injected_pvs) * network.pore_volume
            dt = min(dt, max(remaining, 0.0) / inlet_flow)
        return timer.bound_step_size(dt)

    def advance(self, rate: FloatArray, dt: float) -> None:
        network = self.network
        active = typing.cast(PressureSolution, self.solution).active
        concentration = network.concentration.copy()
        concentration[active] += rate[active] * dt / network.volume[active]
        network.concentration[:] = clip(concentration, 0.0, self.settings.inlet_concentration)

    def mean_concentration(self) -> float:
        """Volume-averaged concentration over the accessible elements."""
        network = self.network
        accessible = network.accessible
        volume = network.volume[accessible].sum()
        if volume <= 0:
            return 0.0
        return float((network.concentration[accessible] * network.volume[accessible]).sum() / volume)

    def outlet_concentration(self) -> float:
        """Flow-averaged concentration of the fluid leaving through the outlet."""
        network = self.network
        P = network.pore_count
        solution = typing.cast(PressureSolution, self.solution)
        leaving = (network.pore_nodes[:, 1] < 0) & (solution.pore_flow > 0.0) & solution.active[:P]
        flow = solution.pore_flow[leaving]
        total = flow.sum()
        if total <= 0:
            return 0.0
        return float((flow * network.concentration[:P][leaving]).sum() / total)

    def record(self, step: int, timer: Timer) -> Record:
        solution = typing.cast(PressureSolution, self.solution)
        return Record(
            step=step,
            stage=StageKind.TRACER.value,
            time=timer.elapsed_time,
            injected_pvs=self.injected_pvs,
            water_saturation=self.network.water_saturation(),
            pressure_drop=solution.pressure_drop,
            flow_rate=solution.flow_rate,
            mean_concentration=self.mean_concentration(),
            outlet_concentration=self.outlet_concentration(),
        )

    def run(self, first_step: int = 0) -> typing.Generator[Record, None, StageResult]:
        """
        Inject tracer until a termination condition holds.

        :param first_step: Step counter of the run before this model starts.
        :yield: The initial record, then records of committed time steps.
        :return: The run result.
        """
        settings = self.settings
        config = self.config
        context = self.context
        stage = StageKind.TRACER

        simulation_time = math.inf if settings.injected_pvs is not None else settings.simulation_time
        timer = Timer(
            simulation_time=simulation_time,
            max_step_size=settings.max_time_step,
            max_steps=settings.max_steps,
        )
        try:
            self.initialize()
        except SolverError as exc:
            logger.error(f"Oil pressure solve failed, tracer transport skipped: {exc}")
            return StageResult(
                stage=stage,
                termination=Termination.SOLVER_FAILURE,
                water_saturation=self.network.water_saturation(),
                message=str(exc),
            )

        solution = typing.cast(PressureSolution, self.solution)
        logger.info(
            f"Starting tracer transport: D = {self.diffusion_coefficient:.4e} m²/s, "
            f"flow rate {solution.flow_rate:.4e} m³/s"
        )
        context.notify(f"Running {stage.value}")
        yield self.record(first_step, timer)

        exchange = typing.cast(np.ndarray, self._exchange)
        scale = settings.inlet_concentration * float(exchange.max(initial=0.0))
        termination = Termination.TIME_LIMIT
        emitted = True
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

            rate = self.mass_rate(self.network.concentration)
            if float(np.abs(rate).max(initial=0.0)) <= c.RELATIVE_FLOW_EPSILON * scale:
                termination = Termination.STEADY_STATE
                break
            dt = self.step_size(timer)
            if not math.isfinite(dt) or dt <= 0.0:
                termination = Termination.STEADY_STATE
                break

            self.advance(rate, dt)
            self.injected_volume += max(solution.inlet_flow, 0.0) * dt
            timer.accept_step(dt)

            emitted = False
            status = log_progress(
                stage,
                timer.step,
                self.network.water_saturation(),
                config.log_interval,
                time=timer.elapsed_time,
                total_time=settings.simulation_time if settings.injected_pvs is None else None,
            )
            if status is not None:
                context.notify(status)
            if timer.step % config.output_frequency == 0:
                yield self.record(first_step + timer.step, timer)
                emitted = True

        if not emitted:
            yield self.record(first_step + timer.step, timer)

        result = StageResult(
            stage=stage,
            termination=termination,
            steps=timer.step,
            water_saturation=self.network.water_saturation(),
            time=timer.elapsed_time,
        )
        logger.info(
            f"Finished tracer transport after {timer.step} steps ({termination.value}), "
            f"t = {timer.elapsed_time:.4e}s, mean concentration {self.mean_concentration():.4f}"
        )
        return result
