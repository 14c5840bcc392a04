import math

import numpy as np
import pytest

from poreflow import (
    Config,
    Phase,
    RunContext,
    StageKind,
    Termination,
    Timer,
    UnsteadyConfig,
    UnsteadyDrainage,
    ValidationError,
    upstream_ends,
)


def _drain(generator):
    records = []
    while True:
        try:
            records.append(next(generator))
        except StopIteration as stop:
            return records, stop.value


def _config(**unsteady):
    return Config(model="unsteady_drainage", unsteady=UnsteadyConfig(**unsteady))


def test_upstream_ends(lattice):
    flow = np.zeros(lattice.pore_count)
    flow[0] = 1.0
    flow[1] = -1.0
    source, destination, forward = upstream_ends(lattice, flow)
    assert (source[0], destination[0], forward[0]) == (-1, 0, True)
    assert (source[1], destination[1], forward[1]) == (1, 0, False)


def test_initial_fill(random_lattice, fluids):
    config = _config(initial_water_saturation=0.7, water_distribution="big_pores_first")
    drainage = UnsteadyDrainage(random_lattice, fluids, config)
    saturation = drainage.initialize()
    assert 0.0 < saturation <= 0.7
    assert random_lattice.water_saturation() == pytest.approx(saturation)
    oil = random_lattice.phase == Phase.OIL
    assert np.all(random_lattice.oil_fraction[oil] == 1.0)
    assert np.all(random_lattice.oil_fraction[~oil] == 0.0)


def test_meniscus_orientation(lattice, fluids):
    drainage = UnsteadyDrainage(lattice, fluids, _config())
    drainage.initialize()
    orientation = drainage.meniscus_orientation()
    # The inlet reservoir holds oil: inlet pores advance oil forwards
    assert np.all(orientation[lattice.inlet_pores] == 1)
    assert np.count_nonzero(orientation) == len(lattice.inlet_pores)


def test_capillary_barrier_blocks_low_pressure_drop(lattice, fluids):
    # Entry pressure 2 sigma / r = 6000 Pa far exceeds the 1 Pa drop
    drainage = UnsteadyDrainage(lattice, fluids, _config())
    records, result = _drain(drainage.run())
    assert result.termination is Termination.STEADY_STATE
    assert result.steps == 0
    assert len(records) == 1
    assert records[0].water_saturation == pytest.approx(1.0)


def test_constant_rate_injection_keeps_fractions_bounded(lattice, fluids):
    config = _config(flow_rate=1e-12, injected_pvs=0.5)
    drainage = UnsteadyDrainage(lattice, fluids, config, absolute_permeability=3.93e-13)
    generator = drainage.run()
    records = []
    while True:
        try:
            records.append(next(generator))
        except StopIteration as stop:
            result = stop.value
            break
        assert np.all(lattice.oil_fraction >= 0.0)
        assert np.all(lattice.oil_fraction <= 1.0)
        oil = lattice.phase == Phase.OIL
        assert np.all(lattice.oil_fraction[oil] == 1.0)

    assert result.success
    assert result.termination in (Termination.INJECTED_VOLUME, Termination.STEADY_STATE)
    assert result.steps > 0
    times = [record.time for record in records]
    assert times == sorted(times)
    assert records[-1].water_saturation < 1.0
    if result.termination is Termination.INJECTED_VOLUME:
        assert drainage.injected_pvs == pytest.approx(0.5, rel=1e-6)
    # Injected oil volume matches the water saturation loss while nothing has broken through
    for record in records:
        if record.oil_flow_rate == 0.0:
            assert 1.0 - record.water_saturation == pytest.approx(record.injected_pvs, rel=1e-6, abs=1e-12)
    flowing = [r for r in records[1:] if not math.isnan(r.flow_rate)]
    assert all(r.flow_rate == pytest.approx(1e-12, rel=1e-6) for r in flowing)


def test_high_pressure_drop_breaks_through(lattice, fluids):
    config = Config(
        model="unsteady_drainage",
        pressure_in=2e4,
        pressure_out=0.0,
        unsteady=UnsteadyConfig(simulation_time=10.0, max_steps=5000),
    )
    drainage = UnsteadyDrainage(lattice, fluids, config, absolute_permeability=3.93e-13)
    records, result = _drain(drainage.run())
    assert result.success
    assert result.steps > 0
    assert records[-1].water_saturation < 1.0
    assert any(record.oil_flow_rate > 0.0 for record in records)
    for record in records[1:]:
        if not math.isnan(record.fractional_flow):
            assert 0.0 <= record.fractional_flow <= 1.0
    # Once every path is full of oil the run settles and reports the oil it passes
    assert result.termination is Termination.STEADY_STATE
    assert records[-1].oil_flow_rate > 0.0
    assert records[-1].fractional_flow < 1.0
    assert records[-1].kro > 0.0


def test_oil_filled_network_only_passes_oil_through(lattice, fluids):
    drainage = UnsteadyDrainage(lattice, fluids, _config())
    drainage.initialize()
    lattice.set_phase(np.arange(lattice.element_count), Phase.OIL)
    lattice.oil_fraction[:] = 1.0
    drainage.update_trapping()
    solution = drainage.solve_flow()
    fluxes = drainage.fluxes(solution)
    assert np.all(fluxes.oil_rate == 0.0)
    assert fluxes.water_outflow == 0.0
    assert fluxes.oil_outflow == pytest.approx(solution.outlet_flow, rel=1e-9)


def test_step_size_never_overshoots(lattice, fluids):
    drainage = UnsteadyDrainage(lattice, fluids, _config(max_time_step=10.0))
    drainage.initialize()
    lattice.oil_fraction[:3] = [0.5, 0.9, 0.2]
    rate = np.zeros(lattice.element_count)
    rate[:3] = [1e-14, 2e-14, -1e-14]
    timer = Timer(simulation_time=100.0, max_step_size=10.0)
    dt = drainage.step_size(rate, timer, inlet_flow=1e-12)
    volume = lattice.volume[:3]
    expected = min(0.5 * volume[0] / 1e-14, 0.1 * volume[1] / 2e-14, 0.2 * volume[2] / 1e-14, 10.0)
    assert dt == pytest.approx(expected)
    flipped = drainage.advance(rate, dt)
    assert flipped == 1
    assert lattice.phase[1] == Phase.OIL
    assert lattice.oil_fraction[1] == 1.0


def test_cancellation(lattice, fluids):
    context = RunContext()
    context.request_cancel()
    drainage = UnsteadyDrainage(lattice, fluids, _config(flow_rate=1e-12), context=context)
    records, result = _drain(drainage.run())
    assert result.termination is Termination.CANCELLED
    assert [record.stage for record in records] == [StageKind.UNSTEADY_DRAINAGE.value]


def test_zero_volume_elements_are_rejected(lattice, fluids):
    lattice.volume[0] = 0.0
    drainage = UnsteadyDrainage(lattice, fluids, _config())
    with pytest.raises(ValidationError):
        drainage.initialize()


def test_enhanced_connectivity_keeps_film_water_untrapped(angular_lattice, fluids):
    network = angular_lattice
    P = network.pore_count
    # Oil surrounds the first node, cutting the water in the first inlet pore off in bulk
    node = P
    neighbours = network.adjacency[network.adjacency_ptr[node] : network.adjacency_ptr[node + 1]]
    oil = np.append(neighbours[neighbours != 0], node)

    for enhanced, trapped in ((False, True), (True, False)):
        drainage = UnsteadyDrainage(network, fluids, _config(enhanced_water_connectivity=enhanced))
        drainage.initialize()
        network.set_phase(oil, Phase.OIL)
        network.water_film[oil] = network.water_film_stable[oil]
        drainage.update_trapping()
        assert bool(network.water_trapped[0]) is trapped
        assert not network.water_trapped[oil].any()
