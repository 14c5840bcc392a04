import numpy as np
import pytest

from poreflow import (
    Config,
    InvasionFront,
    Phase,
    QuasiStaticEngine,
    RunContext,
    StageKind,
    SteadyStateConfig,
    Termination,
    compute_absolute_permeability,
)


def _drain(generator):
    records = []
    while True:
        try:
            records.append(next(generator))
        except StopIteration as stop:
            return records, stop.value


def test_front_orders_by_threshold_then_index():
    front = InvasionFront(6)
    front.push(4, 10.0)
    front.push(2, 10.0)
    front.push(5, 3.0)
    assert not front.push(5, 1.0)
    assert front.pop() == (3.0, 5)
    assert front.pop() == (10.0, 2)
    assert front.pop() == (10.0, 4)
    assert front.pop() is None

    descending = InvasionFront(6, ascending=False)
    descending.push(1, -5.0)
    descending.push(3, 2.0)
    descending.push(0, 2.0)
    assert descending.pop() == (2.0, 0)
    assert descending.pop(lambda index: index != 3) == (-5.0, 1)
    assert not descending


def test_primary_drainage_is_monotonic(random_lattice, fluids, config):
    random_lattice.assign_wettability(0.4)
    engine = QuasiStaticEngine(random_lattice, fluids, config)
    records, result = _drain(engine.run_stage(StageKind.PRIMARY_DRAINAGE))

    assert result.success
    assert result.termination in (Termination.NO_INVASIBLE_ELEMENTS, Termination.TARGET_SATURATION)
    assert result.steps == len(records)
    saturations = [record.water_saturation for record in records]
    pressures = [record.capillary_pressure for record in records]
    assert all(b <= a + 1e-12 for a, b in zip(saturations, saturations[1:]))
    assert all(b >= a for a, b in zip(pressures, pressures[1:]))
    assert saturations[-1] < 1.0
    assert pressures[0] > 0.0
    # Contact angles are restored after the uniform water-wet drainage
    assert np.allclose(random_lattice.theta, 0.4)


def test_trapped_water_never_reconnects(random_lattice, fluids, config):
    engine = QuasiStaticEngine(random_lattice, fluids, config)
    previous = np.zeros(random_lattice.element_count, dtype=bool)
    for _ in engine.run_stage(StageKind.PRIMARY_DRAINAGE):
        trapped = random_lattice.water_trapped & (random_lattice.phase == Phase.WATER)
        assert np.all(trapped[previous])
        previous = trapped
    # Trapped water is never invaded
    assert np.all(random_lattice.phase[previous] == Phase.WATER)


def test_capillary_pressure_target_stops_drainage(random_lattice, fluids):
    config = Config(
        relative_permeabilities=False,
        steady_state=SteadyStateConfig(final_pc_primary_drainage=7000.0),
    )
    engine = QuasiStaticEngine(random_lattice, fluids, config)
    records, result = _drain(engine.run_stage(StageKind.PRIMARY_DRAINAGE))
    assert result.termination in (Termination.TARGET_PRESSURE, Termination.NO_INVASIBLE_ELEMENTS)
    assert all(record.capillary_pressure <= 7000.0 for record in records)


def test_saturation_target_stops_drainage(random_lattice, fluids):
    config = Config(
        relative_permeabilities=False,
        steady_state=SteadyStateConfig(final_saturation_primary_drainage=0.6),
    )
    engine = QuasiStaticEngine(random_lattice, fluids, config)
    records, result = _drain(engine.run_stage(StageKind.PRIMARY_DRAINAGE))
    assert result.termination is Termination.TARGET_SATURATION
    assert records[-1].water_saturation <= 0.6
    assert records[-2].water_saturation > 0.6


def test_relative_permeabilities_during_drainage(random_lattice, fluids):
    config = Config(output_frequency=10)
    _, reference = compute_absolute_permeability(random_lattice)
    engine = QuasiStaticEngine(random_lattice, fluids, config, reference_flow=reference.flow_rate)
    records, _ = _drain(engine.run_stage(StageKind.PRIMARY_DRAINAGE))
    for record in records:
        assert 0.0 <= record.krw <= 1.0 + 1e-9
        assert 0.0 <= record.kro <= 1.0 + 1e-9
    assert records[-1].krw < 1.0
    assert records[-1].kro > 0.0


def test_full_cycle_respects_sign_windows(random_lattice, fluids):
    rng = np.random.default_rng(1)
    theta = np.where(rng.random(random_lattice.element_count) < 0.5, 0.5, 2.5)
    random_lattice.assign_wettability(theta)
    config = Config(
        relative_permeabilities=False,
        steady_state=SteadyStateConfig(
            spontaneous_imbibition=True,
            forced_water_injection=True,
            spontaneous_oil_invasion=True,
            secondary_drainage=True,
        ),
    )
    context = RunContext()
    engine = QuasiStaticEngine(random_lattice, fluids, config, context=context)
    records, results = _drain(engine.run())

    assert [result.stage for result in results] == [
        StageKind.PRIMARY_DRAINAGE,
        StageKind.SPONTANEOUS_IMBIBITION,
        StageKind.FORCED_WATER_INJECTION,
        StageKind.SPONTANEOUS_OIL_INVASION,
        StageKind.SECONDARY_DRAINAGE,
    ]
    assert context.results == results
    assert all(result.success for result in results)

    by_stage = {kind: [r for r in records if r.stage == kind.value] for kind in StageKind}
    assert all(r.capillary_pressure >= 0.0 for r in by_stage[StageKind.SPONTANEOUS_IMBIBITION])
    assert all(r.capillary_pressure < 0.0 for r in by_stage[StageKind.FORCED_WATER_INJECTION])
    assert all(r.capillary_pressure <= 0.0 for r in by_stage[StageKind.SPONTANEOUS_OIL_INVASION])
    assert all(r.capillary_pressure > 0.0 for r in by_stage[StageKind.SECONDARY_DRAINAGE])

    for kind in (StageKind.SPONTANEOUS_IMBIBITION, StageKind.FORCED_WATER_INJECTION):
        saturations = [r.water_saturation for r in by_stage[kind]]
        assert all(b >= a - 1e-12 for a, b in zip(saturations, saturations[1:]))
    for kind in (StageKind.SPONTANEOUS_OIL_INVASION, StageKind.SECONDARY_DRAINAGE):
        saturations = [r.water_saturation for r in by_stage[kind]]
        assert all(b <= a + 1e-12 for a, b in zip(saturations, saturations[1:]))
    # Mixed wettability network: water imbibes spontaneously after drainage
    assert by_stage[StageKind.SPONTANEOUS_IMBIBITION]
    assert np.allclose(random_lattice.theta, theta)


def test_cancelled_run_stops_before_any_invasion(random_lattice, fluids, config):
    context = RunContext()
    context.request_cancel()
    engine = QuasiStaticEngine(random_lattice, fluids, config, context=context)
    records, results = _drain(engine.run())
    assert records == []
    assert len(results) == 1
    assert results[0].termination is Termination.CANCELLED
    assert random_lattice.water_saturation() == pytest.approx(1.0)


def _primary_drainage(network, fluids, advanced_trapping):
    config = Config(
        relative_permeabilities=False,
        steady_state=SteadyStateConfig(advanced_trapping=advanced_trapping),
    )
    engine = QuasiStaticEngine(network, fluids, config)
    return _drain(engine.run_stage(StageKind.PRIMARY_DRAINAGE))


def test_corner_films_keep_water_connected(angular_lattice, fluids):
    network = angular_lattice
    assert np.all(network.corner_count == 3)

    _, basic = _primary_drainage(network, fluids, advanced_trapping=False)
    basic_trapped = int(np.count_nonzero(network.water_trapped))
    assert basic.success

    network.reset_state()
    records, advanced = _primary_drainage(network, fluids, advanced_trapping=True)
    assert advanced.success
    # Every invaded triangle leaves water films behind, so no water loses the outlet
    assert np.count_nonzero(network.water_trapped) == 0
    assert np.count_nonzero(network.water_trapped) <= basic_trapped
    assert advanced.water_saturation <= basic.water_saturation + 1e-12
    invaded = network.phase == Phase.OIL
    assert invaded.any()
    assert np.all(network.water_film[invaded])

    for record in records:
        assert record.water_saturation_with_films >= record.water_saturation - 1e-12
    assert records[-1].water_saturation_with_films > records[-1].water_saturation
