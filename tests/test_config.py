import math

import numpy as np
import pytest

from poreflow import (
    Config,
    Constants,
    DegenerateSystemError,
    FluidProperties,
    PoreFlowError,
    PreconditionerError,
    SolverError,
    SteadyStateConfig,
    TimingError,
    TracerConfig,
    UnsteadyConfig,
    ValidationError,
    c,
    get_constant,
    get_dtype,
    use_32bit_precision,
    use_64bit_precision,
    with_precision,
)


def test_defaults():
    config = Config()
    assert config.model == "two_phase_steady_state"
    assert config.pressure_drop == 1.0
    assert config.steady_state.enabled_stages() == ["primary_drainage"]
    assert config.unsteady.flow_rate is None
    assert config.tracer.diffusion_coefficient is None


def test_pressure_ordering_is_validated():
    with pytest.raises(ValidationError):
        Config(pressure_in=0.0, pressure_out=1.0)
    with pytest.raises(ValidationError):
        Config(pressure_in=math.nan)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"final_saturation_primary_drainage": 1.5},
        {"final_saturation_spontaneous_imbibition": -0.1},
        {"final_pc_primary_drainage": -10.0},
        {"final_pc_spontaneous_imbibition": -1.0},
        {"final_pc_forced_water_injection": 5.0},
        {"final_pc_secondary_drainage": -5.0},
        {"primary_drainage_contact_angle": 2.0},
    ],
)
def test_stage_targets_are_validated(kwargs):
    with pytest.raises(ValueError):
        SteadyStateConfig(**kwargs)


def test_enabled_stages_keep_cycle_order():
    config = SteadyStateConfig(
        primary_drainage=True, secondary_drainage=True, spontaneous_imbibition=True
    )
    assert config.enabled_stages() == [
        "primary_drainage",
        "spontaneous_imbibition",
        "secondary_drainage",
    ]


def test_model_settings_are_validated():
    with pytest.raises(ValueError):
        Config(model="three_phase")
    with pytest.raises(ValueError):
        UnsteadyConfig(initial_water_saturation=1.2)
    with pytest.raises(ValueError):
        UnsteadyConfig(flow_rate=0.0)
    with pytest.raises(ValueError):
        UnsteadyConfig(water_distribution="sorted")
    with pytest.raises(ValueError):
        TracerConfig(inlet_concentration=0.0)
    with pytest.raises(ValueError):
        FluidProperties(oil_viscosity=0.0)


def test_fluid_properties():
    fluids = FluidProperties(oil_viscosity=4e-3, water_viscosity=1e-3)
    assert fluids.viscosity_ratio == pytest.approx(4.0)
    assert fluids.viscosities() == (1e-3, 4e-3, 1.8e-5)


def test_constants_context_overrides_global_proxy():
    default = c.RELATIVE_FLOW_EPSILON
    constants = Constants(RELATIVE_FLOW_EPSILON=1e-6)
    assert constants["RELATIVE_FLOW_EPSILON"].unit == "fraction"
    with constants():
        assert c.RELATIVE_FLOW_EPSILON == 1e-6
        assert get_constant("RELATIVE_FLOW_EPSILON").value == 1e-6
    assert c.RELATIVE_FLOW_EPSILON == default
    with pytest.raises(AttributeError):
        constants.UNKNOWN_CONSTANT


def test_precision_context():
    assert get_dtype() == np.float64
    with with_precision(np.float32):
        assert get_dtype() == np.float32
    assert get_dtype() == np.float64


def test_global_precision_switch():
    try:
        use_32bit_precision()
        assert get_dtype() == np.float32
    finally:
        use_64bit_precision()
    assert get_dtype() == np.float64


def test_error_hierarchy():
    assert issubclass(ValidationError, ValueError)
    for error in (ValidationError, SolverError, TimingError):
        assert issubclass(error, PoreFlowError)
    assert issubclass(DegenerateSystemError, SolverError)
    assert issubclass(PreconditionerError, SolverError)
