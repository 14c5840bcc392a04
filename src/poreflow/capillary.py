"""
Capillary physics of angular pore-network elements.

Cross-sections are idealised as triangles, squares or circles according to
their shape factor G = A / P² (Mason & Morrow). Angular cross-sections keep the
wetting phase in their corners after the bulk has been invaded, as films whose
size is set by the capillary pressure (Valvatne & Blunt, 2004).
"""

import typing

import numpy as np

from poreflow.constants import c
from poreflow.types import BoolArray, CrossSection, FloatArray, IntArray

__all__ = [
    "classify_cross_sections",
    "cross_section_area",
    "single_phase_conductance",
    "assign_half_angles",
    "entry_pressure",
    "water_film_stability",
    "oil_film_stability",
    "corner_film_area",
    "film_area_fraction",
    "film_conductance",
]


def classify_cross_sections(shape_factor: FloatArray) -> IntArray:
    """
    Classify each element's cross-section from its shape factor.

    :param shape_factor: Shape factors (dimensionless).
    :return: Array of `CrossSection` values.
    """
    shape_factor = np.asarray(shape_factor, dtype=np.float64)
    kinds = np.full(shape_factor.shape, CrossSection.CIRCLE, dtype=np.int8)
    kinds[shape_factor <= c.SQUARE_SHAPE_FACTOR] = CrossSection.SQUARE
    kinds[shape_factor <= c.TRIANGLE_MAX_SHAPE_FACTOR] = CrossSection.TRIANGLE
    return kinds


def cross_section_area(radius: FloatArray, shape_factor: FloatArray) -> FloatArray:
    """Cross-sectional area A = r² / (4G) of an element with inscribed radius r."""
    return np.asarray(radius) ** 2 / (4.0 * np.asarray(shape_factor))


def single_phase_conductance(
    radius: FloatArray,
    length: FloatArray,
    shape_factor: FloatArray,
    viscosity: float = 1.0,
) -> FloatArray:
    """
    Hydraulic conductance g = k * A² * G / (mu * L) of fully saturated elements.

    Elements with zero length offer no resistance and get an infinite conductance.

    :param radius: Inscribed radii (m).
    :param length: Element lengths (m).
    :param shape_factor: Shape factors.
    :param viscosity: Fluid viscosity (Pa·s).
    :return: Conductances (m³/(Pa·s)).
    """
    radius = np.asarray(radius, dtype=np.float64)
    length = np.asarray(length, dtype=np.float64)
    shape_factor = np.asarray(shape_factor, dtype=np.float64)

    kinds = classify_cross_sections(shape_factor)
    coefficient = np.where(
        kinds == CrossSection.TRIANGLE,
        c.TRIANGLE_CONDUCTANCE_COEFFICIENT,
        np.where(
            kinds == CrossSection.SQUARE,
            c.SQUARE_CONDUCTANCE_COEFFICIENT,
            c.CIRCLE_CONDUCTANCE_COEFFICIENT,
        ),
    )
    area = cross_section_area(radius, shape_factor)
    per_length = coefficient * area**2 * shape_factor / viscosity

    conductance = np.full(radius.shape, np.inf)
    finite = length > 0.0
    conductance[finite] = per_length[finite] / length[finite]
    return conductance


def assign_half_angles(
    shape_factor: FloatArray,
) -> typing.Tuple[FloatArray, IntArray]:
    """
    Corner half-angles of each element's cross-section.

    Triangles are taken as isosceles, with the two equal half-angles solved
    from the shape factor and the third closing the sum to pi/2. Squares have
    four half-angles of pi/4 and circles have none.

    :param shape_factor: Shape factors.
    :return: (half_angles, corner_count) where half_angles has shape (E, 4),
        sorted ascending within the used corners and zero-padded.
    """
    shape_factor = np.asarray(shape_factor, dtype=np.float64)
    kinds = classify_cross_sections(shape_factor)
    count = shape_factor.shape[0]
    half_angles = np.zeros((count, 4), dtype=np.float64)
    corner_count = np.zeros(count, dtype=np.int8)

    triangles = kinds == CrossSection.TRIANGLE
    if np.any(triangles):
        g = np.clip(shape_factor[triangles], 1e-16, c.TRIANGLE_MAX_SHAPE_FACTOR)
        angle = np.arccos(np.clip(-12.0 * np.sqrt(3.0) * g, -1.0, 1.0)) / 3.0
        beta_equal = np.arctan(2.0 / np.sqrt(3.0) * np.cos(angle))
        betas = np.stack([beta_equal, beta_equal, np.pi / 2 - 2.0 * beta_equal], axis=1)
        half_angles[triangles, :3] = np.sort(betas, axis=1)
        corner_count[triangles] = 3

    squares = kinds == CrossSection.SQUARE
    half_angles[squares, :] = np.pi / 4
    corner_count[squares] = 4
    return half_angles, corner_count


def entry_pressure(
    radius: FloatArray,
    shape_factor: FloatArray,
    theta: FloatArray,
    surface_tension: float,
) -> FloatArray:
    """
    Piston-like threshold capillary pressure Pc = p_oil - p_water of each element.

    Pc = sigma * cos(theta) * (1 + 2 * sqrt(pi * G)) / r

    which reduces to the Young-Laplace 2 sigma cos(theta) / r for circular
    tubes. Positive values (water-wet) require oil to be forced in; negative
    values (oil-wet) require water to be forced in.

    :param radius: Inscribed radii (m).
    :param shape_factor: Shape factors.
    :param theta: Contact angles measured through water (radians).
    :param surface_tension: Oil-water interfacial tension (N/m).
    :return: Threshold capillary pressures (Pa).
    """
    radius = np.asarray(radius, dtype=np.float64)
    shape_factor = np.asarray(shape_factor, dtype=np.float64)
    theta = np.asarray(theta, dtype=np.float64)
    return (
        surface_tension
        * np.cos(theta)
        * (1.0 + 2.0 * np.sqrt(np.pi * shape_factor))
        / radius
    )


def water_film_stability(
    theta: FloatArray, half_angles: FloatArray, corner_count: IntArray
) -> BoolArray:
    """
    Whether water can remain in the corners once oil fills the bulk.

    Water films exist in a corner with half-angle beta if beta < pi/2 - theta.
    """
    smallest = half_angles[:, 0]
    return (np.asarray(corner_count) > 0) & (smallest < np.pi / 2 - np.asarray(theta))


def oil_film_stability(
    theta: FloatArray, half_angles: FloatArray, corner_count: IntArray
) -> BoolArray:
    """
    Whether oil can remain in the corners once water fills the bulk.

    The contact angle through oil is pi - theta, so oil films need
    beta < theta - pi/2 (strongly oil-wet corners).
    """
    smallest = half_angles[:, 0]
    return (np.asarray(corner_count) > 0) & (smallest < np.asarray(theta) - np.pi / 2)


def corner_film_area(
    capillary_pressure: float,
    surface_tension: float,
    theta: FloatArray,
    half_angles: FloatArray,
    corner_count: IntArray,
) -> FloatArray:
    """
    Total corner film area of each element at a given capillary pressure.

    Each corner with beta < pi/2 - theta holds

        A_c = (sigma / |Pc|)² * (cos(theta) cos(theta + beta) / sin(beta) + theta + beta - pi/2)

    :param capillary_pressure: Capillary pressure (Pa).
    :param surface_tension: Interfacial tension (N/m).
    :param theta: Contact angles measured through the film phase (radians).
    :param half_angles: Corner half-angles, shape (E, 4).
    :param corner_count: Number of corners of each element.
    :return: Film areas (m²). Zero where no film can exist.
    """
    pc = abs(capillary_pressure)
    count = half_angles.shape[0]
    if pc < c.MIN_CAPILLARY_PRESSURE:
        return np.zeros(count, dtype=np.float64)

    theta = np.broadcast_to(np.asarray(theta, dtype=np.float64), (count,))[:, None]
    corners = np.arange(4)[None, :] < np.asarray(corner_count)[:, None]
    beta = np.where(corners, half_angles, np.pi / 4)
    holds_film = corners & (beta < np.pi / 2 - theta)

    radius_of_curvature = surface_tension / pc
    shape_term = (
        np.cos(theta) * np.cos(theta + beta) / np.sin(beta) + theta + beta - np.pi / 2
    )
    area = np.where(holds_film, radius_of_curvature**2 * shape_term, 0.0)
    return np.clip(area, 0.0, None).sum(axis=1)


def film_area_fraction(
    capillary_pressure: float,
    surface_tension: float,
    theta: FloatArray,
    half_angles: FloatArray,
    corner_count: IntArray,
    area: FloatArray,
) -> FloatArray:
    """Fraction of each element's cross-section occupied by corner films, in [0, 1]."""
    film = corner_film_area(
        capillary_pressure, surface_tension, theta, half_angles, corner_count
    )
    return np.clip(film / np.asarray(area), 0.0, 1.0)


def film_conductance(
    conductance: FloatArray,
    area_fraction: FloatArray,
    resistivity: float = 1.0,
) -> FloatArray:
    """
    Conductance of corner films.

    Conductance scales with the square of the conducting area at fixed shape
    factor, so films carry g * (A_film / A)² divided by a resistivity factor
    that accounts for the extra wall friction in corners.
    """
    conductance = np.asarray(conductance, dtype=np.float64)
    area_fraction = np.asarray(area_fraction, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        films = conductance * area_fraction**2 / resistivity
    return np.where(area_fraction > 0.0, films, 0.0)
