"""Run orchestration: absolute permeability first, then the configured displacement model."""

import logging
import typing

import numpy as np

from poreflow.clusters import ClusterAnalyzer
from poreflow.config import Config
from poreflow.context import RunContext
from poreflow.errors import SolverError
from poreflow.fluids import FluidProperties
from poreflow.models.base import StageResult
from poreflow.models.quasi_static import QuasiStaticEngine
from poreflow.models.tracer import TracerTransport
from poreflow.models.unsteady import UnsteadyDrainage
from poreflow.records import Record, RecordTable
from poreflow.solvers.pressure import compute_absolute_permeability, solver_options
from poreflow.types import StageKind, Termination

if typing.TYPE_CHECKING:
    from poreflow.network.base import Network

logger = logging.getLogger(__name__)

__all__ = ["run", "simulate"]

_MODEL_STAGES = {
    "two_phase_steady_state": StageKind.PRIMARY_DRAINAGE,
    "unsteady_drainage": StageKind.UNSTEADY_DRAINAGE,
    "tracer": StageKind.TRACER,
}


def _absolute_permeability_record(
    network: "Network", permeability: float, flow_rate: float, pressure_drop: float
) -> Record:
    return Record(
        step=0,
        stage="absolute_permeability",
        capillary_pressure=0.0,
        water_saturation=network.water_saturation(),
        water_saturation_with_films=network.water_saturation(),
        pressure_drop=pressure_drop,
        flow_rate=flow_rate,
        krw=1.0,
        kro=0.0,
        absolute_permeability=permeability,
    )


def run(
    network: "Network",
    fluids: FluidProperties,
    config: typing.Optional[Config] = None,
    context: typing.Optional[RunContext] = None,
    rng: typing.Optional[np.random.Generator] = None,
) -> typing.Generator[Record, None, typing.List[StageResult]]:
    """
    Runs a pore network simulation.

    The network is filled with water and its absolute permeability computed
    first. The configured model then runs: the quasi-static two-phase cycle,
    unsteady-state drainage or tracer transport.

    :param network: The pore network. Its occupancy state is reset and then mutated by the run.
    :param fluids: Fluid properties.
    :param config: Run configuration. Defaults to `Config()`.
    :param context: Run context for cancellation and status. A new one is created if not given.
    :param rng: Random generator for random fills. Defaults to one seeded with `config.seed`.
    :yield: Records, in non-decreasing step and time order.
    :return: The result of every stage or model run.
    :raises ValidationError: If the network cannot host a simulation.
    """
    config = config if config is not None else Config()
    context = context if context is not None else RunContext()
    rng = rng if rng is not None else np.random.default_rng(config.seed)

    logger.info("Starting pore network simulation workflow...")
    network.validate()
    network.define_accessible_elements()
    logger.debug(
        f"Network: {network.pore_count} pores, {network.node_count} nodes, "
        f"{int(network.accessible.sum())} accessible elements"
    )
    logger.debug(f"Model: {config.model}")
    logger.debug(f"Imposed pressure drop: {config.pressure_drop} Pa")
    logger.debug(f"Output frequency: every {config.output_frequency} steps")

    context.start()
    message = "Simulation finished"
    try:
        with config.constants():
            network.reset_state()
            analyzer = ClusterAnalyzer(network)
            try:
                permeability, solution = compute_absolute_permeability(
                    network,
                    config.pressure_in,
                    config.pressure_out,
                    **solver_options(config),
                )
            except SolverError as exc:
                logger.error(f"Absolute permeability calculation failed: {exc}")
                message = f"Simulation failed: {exc}"
                context.results.append(
                    StageResult(
                        stage=_MODEL_STAGES[config.model],
                        termination=Termination.SOLVER_FAILURE,
                        message=str(exc),
                    )
                )
                return list(context.results)

            logger.info(
                f"Absolute permeability: {permeability:.6e} m², porosity: {network.porosity:.4f}"
            )
            yield _absolute_permeability_record(
                network, permeability, solution.flow_rate, solution.pressure_drop
            )

            if config.model == "two_phase_steady_state":
                engine = QuasiStaticEngine(
                    network,
                    fluids,
                    config,
                    context=context,
                    reference_flow=solution.flow_rate,
                    analyzer=analyzer,
                )
                yield from engine.run()
            elif config.model == "unsteady_drainage":
                drainage = UnsteadyDrainage(
                    network,
                    fluids,
                    config,
                    context=context,
                    absolute_permeability=permeability,
                    analyzer=analyzer,
                    rng=rng,
                )
                result = yield from drainage.run(first_step=0)
                context.results.append(result)
            else:
                transport = TracerTransport(network, fluids, config, context=context)
                result = yield from transport.run(first_step=0)
                context.results.append(result)

            if context.cancelled:
                message = "Simulation cancelled"
            return list(context.results)
    finally:
        context.finish(message)
        logger.info(message)


def simulate(
    network: "Network",
    fluids: FluidProperties,
    config: typing.Optional[Config] = None,
    context: typing.Optional[RunContext] = None,
    rng: typing.Optional[np.random.Generator] = None,
) -> RecordTable:
    """
    Run a simulation to completion and collect its records.

    Stage outcomes are available from `context.results` afterwards.

    :return: The record table of the run.
    """
    table = RecordTable()
    for record in run(network, fluids, config=config, context=context, rng=rng):
        table.append(record)
    return table
