import math

import numpy as np
import pytest

from poreflow import (
    CrossSection,
    assign_half_angles,
    classify_cross_sections,
    corner_film_area,
    entry_pressure,
    film_conductance,
    oil_film_stability,
    single_phase_conductance,
    water_film_stability,
)
from poreflow.constants import c

TRIANGLE = math.sqrt(3.0) / 36.0
SQUARE = 1.0 / 16.0
CIRCLE = 1.0 / (4.0 * math.pi)


def test_cross_section_classes():
    kinds = classify_cross_sections(np.array([0.03, TRIANGLE, 0.055, SQUARE, 0.07]))
    assert kinds.tolist() == [
        CrossSection.TRIANGLE,
        CrossSection.TRIANGLE,
        CrossSection.SQUARE,
        CrossSection.SQUARE,
        CrossSection.CIRCLE,
    ]


def test_half_angles():
    half_angles, corners = assign_half_angles(np.array([TRIANGLE, SQUARE, CIRCLE]))
    assert corners.tolist() == [3, 4, 0]
    assert np.allclose(half_angles[0, :3], np.pi / 6)
    assert np.allclose(half_angles[1], np.pi / 4)
    assert np.allclose(half_angles[2], 0.0)
    # Irregular triangle: half-angles still sum to pi/2
    half_angles, _ = assign_half_angles(np.array([0.03]))
    assert half_angles[0, :3].sum() == pytest.approx(np.pi / 2)


def test_circular_conductance_is_hagen_poiseuille():
    radius, length = 1e-5, 1e-4
    g = single_phase_conductance(np.array([radius]), np.array([length]), np.array([CIRCLE]), viscosity=1e-3)
    assert g[0] == pytest.approx(np.pi * radius**4 / (8e-3 * length))
    assert np.isinf(single_phase_conductance(np.array([radius]), np.array([0.0]), np.array([CIRCLE])))[0]


def test_entry_pressure_sign_follows_wettability():
    sigma = 0.03
    radius = np.full(3, 1e-5)
    shape = np.full(3, CIRCLE)
    pc = entry_pressure(radius, shape, np.array([0.0, np.pi / 2, np.pi]), sigma)
    assert pc[0] == pytest.approx(2 * sigma / 1e-5)
    assert pc[1] == pytest.approx(0.0, abs=1e-9)
    assert pc[2] == pytest.approx(-2 * sigma / 1e-5)
    # Smaller elements are harder to drain
    small, large = entry_pressure(np.array([5e-6, 2e-5]), np.full(2, CIRCLE), np.zeros(2), sigma)
    assert small > large


def test_film_stability():
    half_angles, corners = assign_half_angles(np.array([TRIANGLE, TRIANGLE, CIRCLE]))
    theta = np.array([0.2, 1.2, 0.2])
    assert water_film_stability(theta, half_angles, corners).tolist() == [True, False, False]
    theta = np.array([2.9, 1.2, 2.9])
    assert oil_film_stability(theta, half_angles, corners).tolist() == [True, False, False]


def test_corner_films_shrink_with_capillary_pressure():
    half_angles, corners = assign_half_angles(np.array([SQUARE]))
    low = corner_film_area(1e3, 0.03, 0.0, half_angles, corners)[0]
    high = corner_film_area(1e4, 0.03, 0.0, half_angles, corners)[0]
    assert low > high > 0.0
    # Square corner, theta = 0: 4 (sigma/Pc)² (1 - pi/4)
    assert high == pytest.approx(4 * (0.03 / 1e4) ** 2 * (1 - np.pi / 4))
    assert corner_film_area(c.MIN_CAPILLARY_PRESSURE / 2, 0.03, 0.0, half_angles, corners)[0] == 0.0


def test_film_conductance_scales_with_area_squared():
    g = film_conductance(np.array([2.0, 2.0, np.inf]), np.array([0.5, 0.0, 0.0]), resistivity=2.0)
    assert g.tolist() == [0.25, 0.0, 0.0]
