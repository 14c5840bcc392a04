"""
Pressure and flow over the conductive part of a pore network.

One pressure unknown is kept per node of the conductive clusters that span
inlet to outlet. Each pore contributes the local mass balance

    q = G * (p_in_side - p_out_side - offset)

where G combines the pore and half of each end node in series, and `offset`
is an optional capillary pressure jump across a meniscus held in the pore.
Inlet and outlet reservoirs are fixed pressure boundaries.
"""

import logging
import typing

import attrs
import numpy as np
from scipy.sparse import csr_array  # type: ignore[import-untyped]

from poreflow.capillary import film_area_fraction, film_conductance
from poreflow.clusters import label_clusters
from poreflow.errors import DegenerateSystemError, SolverError
from poreflow.fluids import FluidProperties
from poreflow.solvers.linear import solve_linear_system
from poreflow.types import BoolArray, FloatArray, Phase, Preconditioner, Solver
from poreflow.utils import safe_inverse

if typing.TYPE_CHECKING:
    from poreflow.config import Config
    from poreflow.network.base import Network

logger = logging.getLogger(__name__)

__all__ = [
    "PressureSolution",
    "solver_options",
    "edge_conductance",
    "conductive_spanning_mask",
    "solve_pressure",
    "phase_conductance",
    "compute_absolute_permeability",
    "compute_relative_permeabilities",
    "mixture_viscosity",
]


@attrs.frozen
class PressureSolution:
    """Result of a pressure solve."""

    node_pressure: FloatArray = attrs.field(eq=False, repr=False)
    """Pressure of every node (Pa). NaN for nodes outside the conductive spanning clusters."""
    pore_flow: FloatArray = attrs.field(eq=False, repr=False)
    """Volumetric flow through every pore (m³/s), positive from its inlet-side to its outlet-side end."""
    element_flow: FloatArray = attrs.field(eq=False, repr=False)
    """Flow magnitude through every element. Nodes carry half the sum over their pores."""
    active: BoolArray = attrs.field(eq=False, repr=False)
    """Elements that took part in the solve."""
    inlet_flow: float
    """Total flow entering from the inlet reservoir (m³/s)."""
    outlet_flow: float
    """Total flow leaving to the outlet reservoir (m³/s)."""
    pressure_in: float
    pressure_out: float

    @property
    def pressure_drop(self) -> float:
        return self.pressure_in - self.pressure_out

    @property
    def flow_rate(self) -> float:
        """Mean of inlet and outlet flows."""
        return 0.5 * (self.inlet_flow + self.outlet_flow)

    @property
    def balance_error(self) -> float:
        """Relative mismatch between inlet and outlet flow."""
        scale = max(abs(self.inlet_flow), abs(self.outlet_flow))
        if scale == 0.0:
            return 0.0
        return abs(self.inlet_flow - self.outlet_flow) / scale


def solver_options(config: "Config") -> typing.Dict[str, typing.Any]:
    """Keyword arguments for `solve_pressure` taken from a run configuration."""
    return {
        "solver": config.solver,
        "preconditioner": config.preconditioner,
        "rtol": config.convergence_tolerance,
        "max_iterations": config.max_iterations,
        "fallback_to_direct": config.fallback_to_direct,
        "flow_balance_tolerance": config.flow_balance_tolerance,
    }


def edge_conductance(network: "Network", conductance: FloatArray) -> FloatArray:
    """
    Conductance of each pore in series with half of each end node.

    Reservoir ends add no resistance. A zero conductance anywhere along the
    series gives a zero edge conductance.

    :param network: The network.
    :param conductance: Element conductances, shape (E,).
    :return: Pore edge conductances, shape (P,).
    """
    P = network.pore_count
    resistance = safe_inverse(conductance[:P])
    for column in (0, 1):
        ends = network.pore_nodes[:, column]
        connected = ends >= 0
        resistance[connected] += 0.5 * safe_inverse(conductance[ends[connected] + P])
    return safe_inverse(resistance)


def conductive_spanning_mask(network: "Network", conductance: FloatArray) -> BoolArray:
    """Elements of the conductive accessible clusters that connect inlet to outlet."""
    conductive = network.accessible & (conductance > 0.0)
    labels, count = label_clusters(conductive, network.adjacency_ptr, network.adjacency)
    if count == 0:
        return np.zeros(network.element_count, dtype=np.bool_)
    inlet_hits = np.bincount(labels[network.inlet & (labels >= 0)], minlength=count)
    outlet_hits = np.bincount(labels[network.outlet & (labels >= 0)], minlength=count)
    spanning = (inlet_hits > 0) & (outlet_hits > 0)
    mask = np.zeros(network.element_count, dtype=np.bool_)
    valid = labels >= 0
    mask[valid] = spanning[labels[valid]]
    return mask


def _assemble(
    network: "Network",
    G: FloatArray,
    active_pores: np.ndarray,
    unknown: np.ndarray,
    unknown_count: int,
    offsets: FloatArray,
) -> typing.Tuple[csr_array, FloatArray, FloatArray, FloatArray]:
    """
    Build the conductance matrix and right-hand side vectors.

    :return: (A, b_offsets, b_inlet, b_outlet) such that
        A·p = b_offsets + p_in * b_inlet + p_out * b_outlet.
    """
    a_end = network.pore_nodes[active_pores, 0]
    b_end = network.pore_nodes[active_pores, 1]
    g = G[active_pores]
    delta = offsets[active_pores]
    P = network.pore_count

    a_idx = np.where(a_end >= 0, unknown[np.maximum(a_end, 0) + P], -1)
    b_idx = np.where(b_end >= 0, unknown[np.maximum(b_end, 0) + P], -1)

    b_offsets = np.zeros(unknown_count)
    b_inlet = np.zeros(unknown_count)
    b_outlet = np.zeros(unknown_count)
    rows = []
    cols = []
    data = []

    internal = (a_idx >= 0) & (b_idx >= 0)
    ia, ib, gi = a_idx[internal], b_idx[internal], g[internal]
    rows.extend([ia, ib, ia, ib])
    cols.extend([ia, ib, ib, ia])
    data.extend([gi, gi, -gi, -gi])
    np.add.at(b_offsets, ia, gi * delta[internal])
    np.add.at(b_offsets, ib, -gi * delta[internal])

    from_inlet = (a_idx < 0) & (b_idx >= 0)
    ib, gi = b_idx[from_inlet], g[from_inlet]
    rows.append(ib)
    cols.append(ib)
    data.append(gi)
    np.add.at(b_inlet, ib, gi)
    np.add.at(b_offsets, ib, -gi * delta[from_inlet])

    to_outlet = (a_idx >= 0) & (b_idx < 0)
    ia, gi = a_idx[to_outlet], g[to_outlet]
    rows.append(ia)
    cols.append(ia)
    data.append(gi)
    np.add.at(b_outlet, ia, gi)
    np.add.at(b_offsets, ia, gi * delta[to_outlet])

    A = csr_array(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(unknown_count, unknown_count),
    )
    return A, b_offsets, b_inlet, b_outlet


def _pore_flows(
    network: "Network",
    G: FloatArray,
    active_pores: np.ndarray,
    node_pressure: FloatArray,
    offsets: FloatArray,
    pressure_in: float,
    pressure_out: float,
) -> FloatArray:
    a_end = network.pore_nodes[active_pores, 0]
    b_end = network.pore_nodes[active_pores, 1]
    p_a = np.where(a_end >= 0, node_pressure[np.maximum(a_end, 0)], pressure_in)
    p_b = np.where(b_end >= 0, node_pressure[np.maximum(b_end, 0)], pressure_out)
    flows = np.zeros(network.pore_count)
    flows[active_pores] = G[active_pores] * (p_a - p_b - offsets[active_pores])
    return flows


def _element_flow(network: "Network", pore_flow: FloatArray) -> FloatArray:
    P = network.pore_count
    magnitude = np.abs(pore_flow)
    element_flow = np.zeros(network.element_count)
    element_flow[:P] = magnitude
    for column in (0, 1):
        ends = network.pore_nodes[:, column]
        connected = ends >= 0
        np.add.at(element_flow, ends[connected] + P, 0.5 * magnitude[connected])
    return element_flow


def solve_pressure(
    network: "Network",
    conductance: FloatArray,
    pressure_in: float,
    pressure_out: float,
    capillary_offsets: typing.Optional[FloatArray] = None,
    flow_rate: typing.Optional[float] = None,
    solver: typing.Union[Solver, typing.Iterable[Solver]] = "direct",
    preconditioner: typing.Optional[Preconditioner] = "amg",
    rtol: float = 1e-10,
    max_iterations: int = 500,
    fallback_to_direct: bool = True,
    flow_balance_tolerance: float = 1e-6,
) -> PressureSolution:
    """
    Solve the pressure field over the conductive spanning part of the network.

    :param network: The network.
    :param conductance: Element conductances (m³/(Pa·s)), shape (E,). Zero blocks an element.
    :param pressure_in: Inlet reservoir pressure (Pa).
    :param pressure_out: Outlet reservoir pressure (Pa).
    :param capillary_offsets: Optional per-pore pressure jump (Pa) opposing flow
        from the inlet-side to the outlet-side end, shape (P,).
    :param flow_rate: If set, the inlet pressure is chosen so that the total
        flow equals this rate (m³/s) and `pressure_in` is ignored.
    :param solver: Linear solver name(s).
    :param preconditioner: Preconditioner for iterative solvers.
    :param rtol: Relative tolerance for iterative solvers.
    :param max_iterations: Maximum iterations for iterative solvers.
    :param fallback_to_direct: Whether to fall back to the direct solver.
    :param flow_balance_tolerance: Maximum accepted relative inlet/outlet mismatch.
    :return: The pressure solution.
    :raises DegenerateSystemError: If no conductive cluster connects inlet to outlet.
    :raises SolverError: If the solve fails, is non-finite or does not conserve flow.
    """
    conductance = np.asarray(conductance, dtype=np.float64)
    P = network.pore_count
    offsets = (
        np.zeros(P)
        if capillary_offsets is None
        else np.asarray(capillary_offsets, dtype=np.float64)
    )

    active = conductive_spanning_mask(network, conductance)
    if not active.any():
        raise DegenerateSystemError(
            "No conductive path connects the inlet to the outlet."
        )
    G = edge_conductance(network, conductance)
    active_pores = np.flatnonzero(active[:P] & (G > 0.0))
    active_nodes = np.flatnonzero(active[P:])
    unknown = np.full(network.element_count, -1, dtype=np.int64)
    unknown[active_nodes + P] = np.arange(active_nodes.shape[0])

    node_pressure = np.full(network.node_count, np.nan)
    solve_kwargs = {
        "solver": solver,
        "preconditioner": preconditioner,
        "rtol": rtol,
        "max_iterations": max_iterations,
        "fallback_to_direct": fallback_to_direct,
    }

    if active_nodes.shape[0] > 0:
        A, b_offsets, b_inlet, b_outlet = _assemble(
            network, G, active_pores, unknown, active_nodes.shape[0], offsets
        )
    if flow_rate is not None:
        # Superpose an offsets-only field (both reservoirs at pressure_out)
        # and a unit pressure drop field without offsets
        base_pressure = np.full(network.node_count, np.nan)
        unit_pressure = np.full(network.node_count, np.nan)
        if active_nodes.shape[0] > 0:
            base_pressure[active_nodes] = solve_linear_system(
                A, b_offsets + pressure_out * (b_inlet + b_outlet), **solve_kwargs
            )
            unit_pressure[active_nodes] = solve_linear_system(A, b_inlet, **solve_kwargs)
        base_flow = _pore_flows(
            network, G, active_pores, base_pressure, offsets, pressure_out, pressure_out
        )
        unit_flow = _pore_flows(
            network, G, active_pores, unit_pressure, np.zeros(P), 1.0, 0.0
        )
        inlet_pores = active_pores[network.pore_nodes[active_pores, 0] < 0]
        unit_rate = float(unit_flow[inlet_pores].sum())
        if unit_rate <= 0.0:
            raise DegenerateSystemError("Network does not conduct under a unit pressure drop.")
        scale = (flow_rate - float(base_flow[inlet_pores].sum())) / unit_rate
        pressure_in = pressure_out + scale
        if active_nodes.shape[0] > 0:
            node_pressure[active_nodes] = (
                base_pressure[active_nodes] + scale * unit_pressure[active_nodes]
            )
    elif active_nodes.shape[0] > 0:
        rhs = b_offsets + pressure_in * b_inlet + pressure_out * b_outlet
        node_pressure[active_nodes] = solve_linear_system(A, rhs, **solve_kwargs)

    pore_flow = _pore_flows(
        network, G, active_pores, node_pressure, offsets, pressure_in, pressure_out
    )
    if not np.all(np.isfinite(pore_flow)):
        raise SolverError("Pressure solve produced non-finite flows.")

    in_mask = network.pore_nodes[active_pores, 0] < 0
    out_mask = network.pore_nodes[active_pores, 1] < 0
    solution = PressureSolution(
        node_pressure=node_pressure,
        pore_flow=pore_flow,
        element_flow=_element_flow(network, pore_flow),
        active=active,
        inlet_flow=float(pore_flow[active_pores[in_mask]].sum()),
        outlet_flow=float(pore_flow[active_pores[out_mask]].sum()),
        pressure_in=float(pressure_in),
        pressure_out=float(pressure_out),
    )
    if solution.balance_error > flow_balance_tolerance:
        raise SolverError(
            f"Inlet flow {solution.inlet_flow:.6e} and outlet flow "
            f"{solution.outlet_flow:.6e} do not balance "
            f"(relative error {solution.balance_error:.3e})."
        )
    logger.debug(
        f"Solved pressure over {active_nodes.shape[0]} nodes and {active_pores.shape[0]} pores, "
        f"Q = {solution.flow_rate:.6e} m³/s"
    )
    return solution


def phase_conductance(
    network: "Network",
    phase: Phase,
    viscosity: float = 1.0,
    capillary_pressure: typing.Optional[float] = None,
    surface_tension: typing.Optional[float] = None,
    resistivity: float = 1.0,
) -> FloatArray:
    """
    Conductance of each element to one phase.

    Bulk conductance is carried where the phase fills the element and is not
    trapped. When `capillary_pressure` and `surface_tension` are given, corner
    films of the phase add a film conductance in elements filled by the other
    phase.

    :param network: The network.
    :param phase: Flowing phase (water or oil).
    :param viscosity: Phase viscosity (Pa·s).
    :param capillary_pressure: Current capillary pressure (Pa), for film conductance.
    :param surface_tension: Oil-water interfacial tension (N/m), for film conductance.
    :param resistivity: Film conductance resistivity factor.
    :return: Element conductances, shape (E,).
    """
    if phase == Phase.WATER:
        trapped = network.water_trapped
        film = network.water_film & (network.phase == Phase.OIL)
        film_theta = network.theta
    elif phase == Phase.OIL:
        trapped = network.oil_trapped
        film = network.oil_film & (network.phase == Phase.WATER)
        film_theta = np.pi - network.theta
    else:
        raise ValueError(f"Unsupported flowing phase: {phase!r}")

    bulk = (network.phase == phase) & ~trapped & network.accessible
    conductance = np.where(bulk, network.conductance, 0.0)
    if (
        capillary_pressure is not None
        and surface_tension is not None
        and np.any(film & network.accessible)
    ):
        fraction = film_area_fraction(
            capillary_pressure,
            surface_tension,
            film_theta,
            network.half_angles,
            network.corner_count,
            network.area,
        )
        films = film_conductance(network.conductance, fraction, resistivity)
        conductance = conductance + np.where(film & network.accessible, films, 0.0)
    return conductance / viscosity


def compute_absolute_permeability(
    network: "Network",
    pressure_in: float = 1.0,
    pressure_out: float = 0.0,
    **solver_kwargs: typing.Any,
) -> typing.Tuple[float, PressureSolution]:
    """
    Absolute permeability from a single phase solve at unit viscosity.

    K = mu * Q * L / (A * dP) with the sample length along the flow and the
    sample cross-section normal to it.

    :param network: The network.
    :param pressure_in: Inlet pressure (Pa).
    :param pressure_out: Outlet pressure (Pa).
    :param solver_kwargs: Options forwarded to `solve_pressure`.
    :return: (permeability in m², pressure solution).
    """
    conductance = np.where(network.accessible, network.conductance, 0.0)
    solution = solve_pressure(
        network, conductance, pressure_in, pressure_out, **solver_kwargs
    )
    permeability = (
        solution.flow_rate
        * network.x_edge_length
        / (network.cross_section_area * solution.pressure_drop)
    )
    logger.debug(f"Absolute permeability: {permeability:.6e} m²")
    return float(permeability), solution


def compute_relative_permeabilities(
    network: "Network",
    reference_flow: float,
    pressure_in: float = 1.0,
    pressure_out: float = 0.0,
    capillary_pressure: typing.Optional[float] = None,
    surface_tension: typing.Optional[float] = None,
    resistivity: float = 1.0,
    **solver_kwargs: typing.Any,
) -> typing.Tuple[float, float]:
    """
    Water and oil relative permeabilities of the current occupancy.

    Each phase is solved alone at unit viscosity under the same boundary
    condition as the single phase reference, so kr = Q_phase / Q_reference.
    A phase without a conductive spanning path has zero relative permeability.

    :param network: The network.
    :param reference_flow: Single phase flow at the same pressure drop (m³/s).
    :param pressure_in: Inlet pressure (Pa).
    :param pressure_out: Outlet pressure (Pa).
    :param capillary_pressure: Current capillary pressure, to include film conductance.
    :param surface_tension: Oil-water interfacial tension (N/m).
    :param resistivity: Film conductance resistivity factor.
    :param solver_kwargs: Options forwarded to `solve_pressure`.
    :return: (krw, kro).
    """
    if reference_flow <= 0.0:
        raise SolverError("Reference flow must be positive.")

    values = []
    for phase in (Phase.WATER, Phase.OIL):
        conductance = phase_conductance(
            network,
            phase,
            capillary_pressure=capillary_pressure,
            surface_tension=surface_tension,
            resistivity=resistivity,
        )
        try:
            solution = solve_pressure(
                network, conductance, pressure_in, pressure_out, **solver_kwargs
            )
        except DegenerateSystemError:
            values.append(0.0)
            continue
        values.append(max(solution.flow_rate / reference_flow, 0.0))
    return values[0], values[1]


def mixture_viscosity(network: "Network", fluids: FluidProperties) -> FloatArray:
    """Volume-weighted arithmetic viscosity of each element's oil/water mixture."""
    fraction = network.oil_fraction
    return fraction * fluids.oil_viscosity + (1.0 - fraction) * fluids.water_viscosity
