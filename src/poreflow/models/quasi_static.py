"""
Quasi-static (capillary dominated) two-phase displacement.

Each stage invades one element at a time, always the invasible element with
the most favourable threshold capillary pressure, so the sequence of events
is ordered by capillary pressure rather than by time:

- primary drainage: oil into a water-filled, water-wet network (Pc rising);
- spontaneous imbibition: water into water-wet elements (Pc falling to 0);
- forced water injection: water into oil-wet elements (Pc falling below 0);
- spontaneous oil invasion: oil into oil-wet elements (Pc rising to 0);
- secondary drainage: oil into water-wet elements (Pc rising above 0).

Both phases are connected to the inlet reservoir, and the displaced phase
escapes through the outlet. An element is invasible when it holds the
displaced phase in bulk, that displaced phase is not trapped, and it touches
the inlet reservoir or an element connected to the inlet through the
displacing phase.
"""

import logging
import math
import typing

import attrs
import numpy as np

from poreflow.capillary import entry_pressure
from poreflow.clusters import ClusterAnalyzer
from poreflow.config import Config
from poreflow.context import RunContext
from poreflow.errors import SolverError
from poreflow.fluids import FluidProperties
from poreflow.models.base import StageResult, log_progress
from poreflow.models.front import InvasionFront
from poreflow.records import Record
from poreflow.solvers.pressure import compute_relative_permeabilities, solver_options
from poreflow.types import BoolArray, ClusterKind, FloatArray, Phase, StageKind, Termination

if typing.TYPE_CHECKING:
    from poreflow.network.base import Network

logger = logging.getLogger(__name__)

__all__ = ["StageSpec", "stage_specs", "QuasiStaticEngine"]


def _any(thresholds: FloatArray) -> BoolArray:
    return np.ones(thresholds.shape, dtype=np.bool_)


def _non_negative(thresholds: FloatArray) -> BoolArray:
    return thresholds >= 0.0


def _negative(thresholds: FloatArray) -> BoolArray:
    return thresholds < 0.0


def _non_positive(thresholds: FloatArray) -> BoolArray:
    return thresholds <= 0.0


def _positive(thresholds: FloatArray) -> BoolArray:
    return thresholds > 0.0


@attrs.frozen
class StageSpec:
    """Displacement rules of one quasi-static stage."""

    kind: StageKind
    displacing: Phase
    """Phase injected from the inlet."""
    window: typing.Callable[[FloatArray], BoolArray] = attrs.field(eq=False)
    """Selects the elements whose threshold capillary pressure this stage can reach."""
    final_saturation: float
    """Water saturation at which the stage stops."""
    final_capillary_pressure: float
    """Capillary pressure at which the stage stops."""

    @property
    def displaced(self) -> Phase:
        return Phase.WATER if self.displacing == Phase.OIL else Phase.OIL

    @property
    def ascending(self) -> bool:
        """Oil invasion raises capillary pressure; water invasion lowers it."""
        return self.displacing == Phase.OIL

    def saturation_reached(self, water_saturation: float) -> bool:
        if self.ascending:
            return water_saturation <= self.final_saturation
        return water_saturation >= self.final_saturation

    def pressure_exceeded(self, threshold: float) -> bool:
        if self.ascending:
            return threshold > self.final_capillary_pressure
        return threshold < self.final_capillary_pressure


def stage_specs(config: Config) -> typing.Dict[StageKind, StageSpec]:
    """Stage rules for every quasi-static stage, built from the run configuration."""
    ss = config.steady_state
    return {
        StageKind.PRIMARY_DRAINAGE: StageSpec(
            StageKind.PRIMARY_DRAINAGE,
            Phase.OIL,
            _any,
            ss.final_saturation_primary_drainage,
            ss.final_pc_primary_drainage,
        ),
        StageKind.SPONTANEOUS_IMBIBITION: StageSpec(
            StageKind.SPONTANEOUS_IMBIBITION,
            Phase.WATER,
            _non_negative,
            ss.final_saturation_spontaneous_imbibition,
            ss.final_pc_spontaneous_imbibition,
        ),
        StageKind.FORCED_WATER_INJECTION: StageSpec(
            StageKind.FORCED_WATER_INJECTION,
            Phase.WATER,
            _negative,
            ss.final_saturation_forced_water_injection,
            ss.final_pc_forced_water_injection,
        ),
        StageKind.SPONTANEOUS_OIL_INVASION: StageSpec(
            StageKind.SPONTANEOUS_OIL_INVASION,
            Phase.OIL,
            _non_positive,
            ss.final_saturation_spontaneous_oil_invasion,
            ss.final_pc_spontaneous_oil_invasion,
        ),
        StageKind.SECONDARY_DRAINAGE: StageSpec(
            StageKind.SECONDARY_DRAINAGE,
            Phase.OIL,
            _positive,
            ss.final_saturation_secondary_drainage,
            ss.final_pc_secondary_drainage,
        ),
    }


class QuasiStaticEngine:
    """
    Runs the quasi-static stage cycle on a network.

    Stages are generators: they yield a `Record` after every
    `Config.output_frequency` invasions and return a `StageResult`.
    Each invasion is committed fully (occupancy, films, trapping) before a
    record is yielded, so observers never see a partial step.
    """

    def __init__(
        self,
        network: "Network",
        fluids: FluidProperties,
        config: Config,
        context: typing.Optional[RunContext] = None,
        reference_flow: typing.Optional[float] = None,
        analyzer: typing.Optional[ClusterAnalyzer] = None,
    ) -> None:
        """
        :param network: The network, already validated.
        :param fluids: Fluid properties.
        :param config: Run configuration.
        :param context: Run context for cancellation and status.
        :param reference_flow: Single phase flow at the configured pressure drop and
            unit viscosity, used for relative permeabilities. Relative permeabilities
            are not computed when None.
        :param analyzer: Cluster analyzer of the network.
        """
        self.network = network
        self.fluids = fluids
        self.config = config
        self.context = context if context is not None else RunContext()
        self.reference_flow = reference_flow
        self.analyzer = analyzer if analyzer is not None else ClusterAnalyzer(network)
        self.specs = stage_specs(config)
        self.capillary_pressure = 0.0
        self.step = 0

    @property
    def surface_tension(self) -> float:
        return self.fluids.oil_water_surface_tension

    def _trapped(self, phase: Phase) -> np.ndarray:
        network = self.network
        return network.water_trapped if phase == Phase.WATER else network.oil_trapped

    def _carries(self, index: int, phase: Phase) -> bool:
        """Whether an element conducts `phase` from the inlet, in bulk or (advanced mode) in films."""
        network = self.network
        if network.phase[index] == phase:
            return True
        if not self.config.steady_state.advanced_trapping:
            return False
        film = network.water_film if phase == Phase.WATER else network.oil_film
        return bool(film[index])

    def update_trapping(self, displaced: Phase) -> None:
        """
        Mark displaced-phase elements that lost their connection to the outlet as trapped.

        In advanced mode the displaced phase stays connected through its corner films.
        """
        network = self.network
        advanced = self.config.steady_state.advanced_trapping
        if displaced == Phase.WATER:
            kind = ClusterKind.WATER_WITH_FILMS if advanced else ClusterKind.WATER
        else:
            kind = ClusterKind.OIL_WITH_FILMS if advanced else ClusterKind.OIL
        escaped = self.analyzer.classify(kind).outlet_connected_mask()
        bulk = (network.phase == displaced) & network.accessible
        self._trapped(displaced)[:] = bulk & ~escaped

    def _invade(self, index: int, spec: StageSpec) -> None:
        network = self.network
        network.set_phase(index, spec.displacing)
        network.water_trapped[index] = False
        network.oil_trapped[index] = False
        if spec.displacing == Phase.OIL:
            network.oil_film[index] = False
            network.water_film[index] = bool(network.water_film_stable[index])
        else:
            network.water_film[index] = False
            network.oil_film[index] = bool(network.oil_film_stable[index])

    def _flood(
        self,
        seeds: typing.Iterable[int],
        connected: np.ndarray,
        spec: StageSpec,
        front: InvasionFront,
        thresholds: FloatArray,
        candidate: np.ndarray,
    ) -> None:
        """Extend the inlet-connected displacing region from `seeds`, queueing displaced neighbours."""
        network = self.network
        ptr, adjacency = network.adjacency_ptr, network.adjacency
        trapped = self._trapped(spec.displacing)
        stack = list(seeds)
        while stack:
            element = stack.pop()
            for neighbour in adjacency[ptr[element] : ptr[element + 1]]:
                if connected[neighbour] or not network.accessible[neighbour]:
                    continue
                if self._carries(neighbour, spec.displacing):
                    connected[neighbour] = True
                    trapped[neighbour] = False
                    stack.append(neighbour)
                if candidate[neighbour] and self._is_invasible(neighbour, spec):
                    front.push(neighbour, thresholds[neighbour])

    def _is_invasible(self, index: int, spec: StageSpec) -> bool:
        network = self.network
        return bool(
            network.phase[index] == spec.displaced
            and network.accessible[index]
            and not self._trapped(spec.displaced)[index]
        )

    def record(self, stage: StageKind) -> Record:
        """Snapshot record of the current state."""
        network = self.network
        sw = network.water_saturation()
        sw_films = network.water_saturation(
            capillary_pressure=self.capillary_pressure,
            surface_tension=self.surface_tension,
            films=True,
        )
        krw = kro = math.nan
        if self.config.relative_permeabilities and self.reference_flow is not None:
            krw, kro = compute_relative_permeabilities(
                network,
                reference_flow=self.reference_flow,
                pressure_in=self.config.pressure_in,
                pressure_out=self.config.pressure_out,
                capillary_pressure=self.capillary_pressure,
                surface_tension=self.surface_tension,
                resistivity=self.config.steady_state.film_conductance_resistivity,
                **solver_options(self.config),
            )
        return Record(
            step=self.step,
            stage=stage.value,
            capillary_pressure=self.capillary_pressure,
            water_saturation=sw,
            water_saturation_with_films=sw_films,
            krw=krw,
            kro=kro,
        )

    def run_stage(self, kind: StageKind) -> typing.Generator[Record, None, StageResult]:
        """
        Run one stage to completion.

        :param kind: The stage to run.
        :yield: Records of the committed invasion steps.
        :return: The stage result.
        """
        spec = self.specs[kind]
        network = self.network
        context = self.context
        config = self.config
        primary = kind is StageKind.PRIMARY_DRAINAGE

        logger.info(f"Starting {kind.value}")
        context.notify(f"Running {kind.value}")
        if primary:
            network.backup_wettability()
            network.assign_wettability(config.steady_state.primary_drainage_contact_angle)

        steps = 0
        termination = Termination.NO_INVASIBLE_ELEMENTS
        message = None
        emitted = True
        try:
            thresholds = entry_pressure(
                network.radius, network.shape_factor, network.theta, self.surface_tension
            )
            candidate = spec.window(thresholds) & network.accessible
            self.update_trapping(spec.displaced)

            front = InvasionFront(network.element_count, ascending=spec.ascending)
            connected = np.zeros(network.element_count, dtype=np.bool_)
            seeds = []
            for index in np.flatnonzero(network.inlet & network.accessible):
                if self._carries(index, spec.displacing):
                    connected[index] = True
                    self._trapped(spec.displacing)[index] = False
                    seeds.append(index)
                if candidate[index] and self._is_invasible(index, spec):
                    front.push(index, thresholds[index])
            self._flood(seeds, connected, spec, front, thresholds, candidate)

            def is_valid(index: int) -> bool:
                return self._is_invasible(index, spec)

            while True:
                if context.cancelled:
                    termination = Termination.CANCELLED
                    break
                water_saturation = network.water_saturation()
                if spec.saturation_reached(water_saturation):
                    termination = Termination.TARGET_SATURATION
                    break
                entry = front.peek(is_valid)
                if entry is None:
                    termination = Termination.NO_INVASIBLE_ELEMENTS
                    break
                threshold, index = entry
                if spec.pressure_exceeded(threshold):
                    termination = Termination.TARGET_PRESSURE
                    break
                front.pop(is_valid)

                self._invade(index, spec)
                if spec.ascending:
                    self.capillary_pressure = max(self.capillary_pressure, threshold)
                else:
                    self.capillary_pressure = min(self.capillary_pressure, threshold)
                self.update_trapping(spec.displaced)
                if self._carries(index, spec.displacing):
                    connected[index] = True
                    self._flood([index], connected, spec, front, thresholds, candidate)

                steps += 1
                self.step += 1
                emitted = False
                status = log_progress(
                    kind,
                    steps,
                    network.water_saturation(),
                    config.log_interval,
                    capillary_pressure=self.capillary_pressure,
                )
                if status is not None:
                    context.notify(status)
                if steps % config.output_frequency == 0:
                    yield self.record(kind)
                    emitted = True

            if not emitted:
                yield self.record(kind)
        except SolverError as exc:
            logger.error(f"{kind.value} failed after {steps} steps: {exc}")
            termination = Termination.SOLVER_FAILURE
            message = str(exc)
        finally:
            if primary:
                network.restore_wettability()

        result = StageResult(
            stage=kind,
            termination=termination,
            steps=steps,
            water_saturation=network.water_saturation(),
            capillary_pressure=self.capillary_pressure,
            message=message,
        )
        logger.info(
            f"Finished {kind.value} after {steps} invasions ({termination.value}), "
            f"Sw = {result.water_saturation:.4f}, Pc = {self.capillary_pressure:.4f} Pa"
        )
        return result

    def run(self) -> typing.Generator[Record, None, typing.List[StageResult]]:
        """
        Run every enabled stage in order.

        A stage that fails on a numerical error is reported and the cycle
        continues with the next enabled stage. Cancellation ends the cycle.

        :return: The result of each stage that ran.
        """
        results = []
        for name in self.config.steady_state.enabled_stages():
            kind = StageKind(name)
            result = yield from self.run_stage(kind)
            results.append(result)
            self.context.results.append(result)
            if not result.success:
                logger.warning(f"Skipping to the next stage after {kind.value} failed")
            if result.termination is Termination.CANCELLED:
                break
        return results
