import numpy as np
import pytest
from scipy.sparse import csr_matrix, diags

from poreflow import (
    DegenerateSystemError,
    PreconditionerError,
    FluidProperties,
    Phase,
    SolverError,
    ValidationError,
    build_lattice_network,
    compute_absolute_permeability,
    compute_relative_permeabilities,
    get_solver_func,
    list_preconditioner_factories,
    list_solver_funcs,
    mixture_viscosity,
    phase_conductance,
    solve_linear_system,
    solve_pressure,
    solver_func,
)

ANALYTIC_PERMEABILITY = np.pi * 1e-5**4 / (8 * 1e-4**2)


def _conductance(network):
    return np.where(network.accessible, network.conductance, 0.0)


def test_lattice_permeability_matches_poiseuille():
    network = build_lattice_network(5, 5, 5, radius=1e-5, length=1e-4)
    permeability, solution = compute_absolute_permeability(network, 1.0, 0.0)
    assert permeability == pytest.approx(ANALYTIC_PERMEABILITY, rel=1e-2)
    assert permeability == pytest.approx(3.93e-13, rel=1e-2)
    assert solution.balance_error < 1e-8


@pytest.mark.parametrize("solver", ["direct", "cg", ("bicgstab", "gmres"), "lgmres"])
def test_permeability_does_not_depend_on_solver(lattice, solver):
    permeability, _ = compute_absolute_permeability(
        lattice, 2.0, 1.0, solver=solver, preconditioner="amg", rtol=1e-12
    )
    assert permeability == pytest.approx(ANALYTIC_PERMEABILITY, rel=1e-6)


def test_flow_is_conserved_at_every_node(random_lattice):
    solution = solve_pressure(random_lattice, _conductance(random_lattice), 5.0, 1.0)
    P = random_lattice.pore_count
    net = np.zeros(random_lattice.node_count)
    a_end, b_end = random_lattice.pore_nodes[:, 0], random_lattice.pore_nodes[:, 1]
    np.add.at(net, a_end[a_end >= 0], -solution.pore_flow[a_end >= 0])
    np.add.at(net, b_end[b_end >= 0], solution.pore_flow[b_end >= 0])
    scale = np.abs(solution.pore_flow).max()
    assert np.all(np.abs(net) <= 1e-8 * scale)
    assert solution.inlet_flow == pytest.approx(solution.outlet_flow, rel=1e-8)
    assert solution.inlet_flow > 0
    pressures = solution.node_pressure
    assert np.all((pressures >= 1.0 - 1e-9) & (pressures <= 5.0 + 1e-9))
    assert solution.active[:P].all()


def test_flow_rate_boundary_condition(lattice):
    target = 1e-12
    solution = solve_pressure(lattice, _conductance(lattice), 1.0, 0.0, flow_rate=target)
    assert solution.flow_rate == pytest.approx(target, rel=1e-8)
    _, reference = compute_absolute_permeability(lattice, 1.0, 0.0)
    # Linear system: the pressure drop scales with the imposed rate
    assert solution.pressure_drop == pytest.approx(target / reference.flow_rate, rel=1e-8)


def test_capillary_offsets_oppose_flow(lattice):
    P = lattice.pore_count
    offsets = np.zeros(P)
    offsets[lattice.inlet_pores] = 0.5
    free = solve_pressure(lattice, _conductance(lattice), 1.0, 0.0)
    opposed = solve_pressure(lattice, _conductance(lattice), 1.0, 0.0, capillary_offsets=offsets)
    assert opposed.flow_rate == pytest.approx(0.5 * free.flow_rate, rel=1e-8)


def test_disconnected_network_is_degenerate():
    closed = np.array([False, True, False])
    network = build_lattice_network(2, 1, 1, radius=1e-5, length=1e-4, closed=closed)
    with pytest.raises(DegenerateSystemError):
        compute_absolute_permeability(network)
    with pytest.raises(SolverError):
        solve_pressure(network, np.ones(network.element_count), 1.0, 0.0)


def test_blocked_pores_only_carry_no_flow(lattice):
    conductance = _conductance(lattice)
    # Block the middle pore of the first x-row: that row is rerouted through y and z pores
    conductance[1] = 0.0
    solution = solve_pressure(lattice, conductance, 1.0, 0.0)
    assert solution.pore_flow[1] == 0.0
    assert not solution.active[1]
    assert solution.balance_error < 1e-8


def test_relative_permeabilities_of_end_states(lattice):
    _, reference = compute_absolute_permeability(lattice)
    krw, kro = compute_relative_permeabilities(lattice, reference.flow_rate)
    assert krw == pytest.approx(1.0, rel=1e-8)
    assert kro == 0.0
    lattice.set_phase(slice(None), Phase.OIL)
    krw, kro = compute_relative_permeabilities(lattice, reference.flow_rate)
    assert krw == 0.0
    assert kro == pytest.approx(1.0, rel=1e-8)
    with pytest.raises(SolverError):
        compute_relative_permeabilities(lattice, 0.0)


def test_trapped_water_does_not_conduct(lattice):
    lattice.water_trapped[:4] = True
    conductance = phase_conductance(lattice, Phase.WATER, viscosity=1e-3)
    assert np.all(conductance[:4] == 0.0)
    assert np.allclose(conductance[4:], lattice.conductance[4:] / 1e-3)
    with pytest.raises(ValueError):
        phase_conductance(lattice, Phase.GAS)


def test_mixture_viscosity(lattice):
    fluids = FluidProperties(oil_viscosity=5e-3, water_viscosity=1e-3)
    lattice.oil_fraction[:2] = [0.5, 1.0]
    viscosity = mixture_viscosity(lattice, fluids)
    assert viscosity[:3].tolist() == pytest.approx([3e-3, 5e-3, 1e-3])


def test_solver_registry():
    assert {"direct", "cg", "bicgstab", "gmres", "lgmres"} <= set(list_solver_funcs())
    assert {"amg", "ilu", "diagonal"} <= set(list_preconditioner_factories())
    with pytest.raises(ValidationError):
        get_solver_func("unknown")
    with pytest.raises(ValidationError):
        solver_func(get_solver_func("cg"), name="cg")


def test_linear_solve_falls_back_to_direct():
    A = csr_matrix(diags([-1.0, 2.0, -1.0], [-1, 0, 1], shape=(20, 20)))
    b = np.ones(20)
    expected = solve_linear_system(A, b, solver="direct")
    x = solve_linear_system(A, b, solver="cg", preconditioner=None, max_iterations=1)
    assert np.allclose(x, expected)
    with pytest.raises(SolverError):
        solve_linear_system(
            A, b, solver="cg", preconditioner=None, max_iterations=1, fallback_to_direct=False
        )


@pytest.mark.parametrize("preconditioner", ["amg", "ilu", "diagonal", None])
def test_iterative_solve_with_each_preconditioner(random_lattice, preconditioner):
    expected, _ = compute_absolute_permeability(random_lattice, solver="direct")
    permeability, solution = compute_absolute_permeability(
        random_lattice,
        solver="cg",
        preconditioner=preconditioner,
        rtol=1e-12,
        max_iterations=2000,
        fallback_to_direct=False,
    )
    assert permeability == pytest.approx(expected, rel=1e-6)
    assert solution.balance_error < 1e-6


def test_failed_preconditioner_falls_back_to_direct():
    A = csr_matrix(diags([-1.0, 2.0, -1.0], [-1, 0, 1], shape=(20, 20)))
    b = np.ones(20)

    def broken(matrix):
        raise RuntimeError("factorization failed")

    expected = solve_linear_system(A, b, solver="direct")
    assert np.allclose(solve_linear_system(A, b, solver="cg", preconditioner=broken), expected)
    with pytest.raises(PreconditionerError):
        solve_linear_system(A, b, solver="cg", preconditioner=broken, fallback_to_direct=False)
    assert issubclass(PreconditionerError, SolverError)


def test_water_films_conduct_in_oil_filled_elements(angular_lattice):
    network = angular_lattice
    _, reference = compute_absolute_permeability(network)
    network.set_phase(np.arange(network.element_count), Phase.OIL)
    network.water_film[:] = network.water_film_stable
    assert network.water_film.all()

    krw, kro = compute_relative_permeabilities(network, reference.flow_rate)
    assert krw == 0.0
    assert kro == pytest.approx(1.0, rel=1e-6)
    krw_films, kro_films = compute_relative_permeabilities(
        network, reference.flow_rate, capillary_pressure=1e4, surface_tension=0.03
    )
    assert 0.0 < krw_films < kro_films
    # Larger resistivity means weaker films
    krw_resistive, _ = compute_relative_permeabilities(
        network, reference.flow_rate, capillary_pressure=1e4, surface_tension=0.03, resistivity=10.0
    )
    assert krw_resistive == pytest.approx(krw_films / 10.0, rel=1e-6)

    assert network.water_saturation() == 0.0
    assert network.water_saturation(capillary_pressure=1e4, surface_tension=0.03, films=True) > 0.0
