import numpy as np
import pytest

from poreflow import Config, FluidProperties, build_lattice_network

RADIUS = 1e-5
LENGTH = 1e-4


@pytest.fixture
def fluids():
    return FluidProperties()


@pytest.fixture
def lattice():
    """Uniform 3 x 2 x 2 lattice of circular pores."""
    return build_lattice_network(3, 2, 2, radius=RADIUS, length=LENGTH)


@pytest.fixture
def random_lattice():
    """4 x 3 x 3 lattice with randomly sized pores."""
    rng = np.random.default_rng(7)
    pore_count = 5 * 3 * 3 + 3 * 2 * 4 + 2 * 3 * 4
    radius = rng.uniform(4e-6, 2e-5, size=pore_count)
    return build_lattice_network(4, 3, 3, radius=radius, length=LENGTH)


@pytest.fixture
def config():
    return Config(relative_permeabilities=False)


@pytest.fixture
def angular_lattice():
    """4 x 3 x 3 lattice of randomly sized triangular pores and nodes."""
    rng = np.random.default_rng(7)
    pore_count = 5 * 3 * 3 + 3 * 2 * 4 + 2 * 3 * 4
    radius = rng.uniform(4e-6, 2e-5, size=pore_count)
    return build_lattice_network(
        4, 3, 3, radius=radius, length=LENGTH, shape_factor=0.03, node_shape_factor=0.03
    )
