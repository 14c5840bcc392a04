"""Pore network graph: fixed topology and geometry, mutable phase occupancy state."""

import logging
import typing

import attrs
import numpy as np

from poreflow._precision import get_dtype
from poreflow.capillary import (
    assign_half_angles,
    classify_cross_sections,
    cross_section_area,
    film_area_fraction,
    oil_film_stability,
    single_phase_conductance,
    water_film_stability,
)
from poreflow.clusters import label_clusters
from poreflow.errors import ValidationError
from poreflow.network.elements import Element, Node, Pore
from poreflow.types import (
    BoolArray,
    FloatArray,
    IntArray,
    Phase,
    WaterDistribution,
    Wettability,
)

logger = logging.getLogger(__name__)

__all__ = ["Network"]


def _as_float_array(value: typing.Any) -> FloatArray:
    return np.ascontiguousarray(value, dtype=np.float64)


def _as_bool_array(value: typing.Any) -> typing.Optional[BoolArray]:
    if value is None:
        return None
    return np.ascontiguousarray(value, dtype=np.bool_)


@attrs.define(eq=False)
class Network:
    """
    Pore network made of pores (throats) and nodes (junctions).

    Elements are indexed pores first, `[0, pore_count)`, then nodes,
    `[pore_count, pore_count + node_count)`. Each pore joins the two nodes in
    `pore_nodes`; an endpoint of -1 is the inlet reservoir (first column) or
    the outlet reservoir (second column). Pores touching a reservoir are the
    inlet and outlet boundary elements.

    Topology and geometry are supplied by the network construction layer and
    stay fixed. The phase occupancy state is owned and mutated by the
    displacement models.
    """

    pore_nodes: IntArray = attrs.field(converter=lambda v: np.ascontiguousarray(v, dtype=np.int64))
    """(P, 2) array of node ids at the inlet-side and outlet-side ends of each pore."""
    node_count: int = attrs.field(validator=attrs.validators.ge(1))
    """Number of nodes."""
    radius: FloatArray = attrs.field(converter=_as_float_array)
    """Inscribed radius of each element (m)."""
    length: FloatArray = attrs.field(converter=_as_float_array)
    """Length of each element (m). Zero-length nodes offer no flow resistance."""
    shape_factor: FloatArray = attrs.field(converter=_as_float_array)
    """Shape factor G = A/P² of each element."""
    volume: FloatArray = attrs.field(converter=_as_float_array)
    """Pore volume of each element (m³)."""
    x_edge_length: float = attrs.field(validator=attrs.validators.gt(0.0))
    """Sample length along the flow (x) direction (m)."""
    y_edge_length: float = attrs.field(validator=attrs.validators.gt(0.0))
    """Sample length along y (m)."""
    z_edge_length: float = attrs.field(validator=attrs.validators.gt(0.0))
    """Sample length along z (m)."""
    conductance: typing.Optional[FloatArray] = attrs.field(
        default=None, converter=attrs.converters.optional(_as_float_array)
    )
    """
    Single phase hydraulic conductance of each element at unit viscosity (m³).

    Computed from radius, length and shape factor when not supplied.
    """
    closed: typing.Optional[BoolArray] = attrs.field(default=None, converter=_as_bool_array)
    """Elements removed from the network (e.g. to reduce the coordination number)."""
    theta: typing.Optional[FloatArray] = attrs.field(
        default=None, converter=attrs.converters.optional(_as_float_array)
    )
    """Contact angle of each element measured through water (radians). Defaults to 0."""

    pore_count: int = attrs.field(init=False)
    adjacency_ptr: IntArray = attrs.field(init=False, repr=False)
    """CSR row pointer of the element adjacency."""
    adjacency: IntArray = attrs.field(init=False, repr=False)
    """CSR column indices of the element adjacency."""
    inlet: BoolArray = attrs.field(init=False, repr=False)
    outlet: BoolArray = attrs.field(init=False, repr=False)
    accessible: BoolArray = attrs.field(init=False, repr=False)
    """Open elements on a path from inlet to outlet. Isolated elements are excluded."""
    area: FloatArray = attrs.field(init=False, repr=False)
    cross_section: IntArray = attrs.field(init=False, repr=False)
    half_angles: FloatArray = attrs.field(init=False, repr=False)
    corner_count: IntArray = attrs.field(init=False, repr=False)

    # Mutable state
    phase: IntArray = attrs.field(init=False, repr=False)
    """Phase occupying the bulk of each element."""
    oil_fraction: FloatArray = attrs.field(init=False, repr=False)
    """Volume fraction of oil in each element (0 or 1 outside of time-marching models)."""
    water_trapped: BoolArray = attrs.field(init=False, repr=False)
    oil_trapped: BoolArray = attrs.field(init=False, repr=False)
    water_film: BoolArray = attrs.field(init=False, repr=False)
    """Water held in the corners of an oil-filled element."""
    oil_film: BoolArray = attrs.field(init=False, repr=False)
    """Oil held in the corners of a water-filled element."""
    water_film_stable: BoolArray = attrs.field(init=False, repr=False)
    oil_film_stable: BoolArray = attrs.field(init=False, repr=False)
    concentration: FloatArray = attrs.field(init=False, repr=False)
    """Tracer concentration of each element."""
    _theta_backup: typing.Optional[FloatArray] = attrs.field(init=False, default=None, repr=False)

    def __attrs_post_init__(self) -> None:
        if self.pore_nodes.ndim != 2 or self.pore_nodes.shape[1] != 2:
            raise ValidationError(
                f"pore_nodes must have shape (P, 2), got {self.pore_nodes.shape}."
            )
        self.pore_count = int(self.pore_nodes.shape[0])
        count = self.element_count
        for name in ("radius", "length", "shape_factor", "volume"):
            values = getattr(self, name)
            if values.shape != (count,):
                raise ValidationError(
                    f"'{name}' has shape {values.shape}, expected ({count},)."
                )
        if np.any(self.radius <= 0) or np.any(self.shape_factor <= 0):
            raise ValidationError("Element radii and shape factors must be positive.")
        if np.any(self.length < 0) or np.any(self.volume < 0):
            raise ValidationError("Element lengths and volumes must be non-negative.")
        if np.any(self.pore_nodes < -1) or np.any(self.pore_nodes >= self.node_count):
            raise ValidationError("pore_nodes references unknown nodes.")
        if np.any((self.pore_nodes[:, 0] == -1) & (self.pore_nodes[:, 1] == -1)):
            raise ValidationError("A pore cannot join the inlet reservoir directly to the outlet reservoir.")

        self.area = cross_section_area(self.radius, self.shape_factor)
        self.cross_section = classify_cross_sections(self.shape_factor)
        self.half_angles, self.corner_count = assign_half_angles(self.shape_factor)
        if self.conductance is None:
            self.conductance = single_phase_conductance(
                self.radius, self.length, self.shape_factor
            )
        elif self.conductance.shape != (count,):
            raise ValidationError(
                f"'conductance' has shape {self.conductance.shape}, expected ({count},)."
            )
        if self.closed is None:
            self.closed = np.zeros(count, dtype=np.bool_)
        if self.theta is None:
            self.theta = np.zeros(count, dtype=np.float64)

        self._build_adjacency()
        self.inlet = np.zeros(count, dtype=np.bool_)
        self.outlet = np.zeros(count, dtype=np.bool_)
        self.inlet[: self.pore_count] = self.pore_nodes[:, 0] == -1
        self.outlet[: self.pore_count] = self.pore_nodes[:, 1] == -1

        dtype = get_dtype()
        self.phase = np.full(count, Phase.WATER, dtype=np.int8)
        self.oil_fraction = np.zeros(count, dtype=dtype)
        self.water_trapped = np.zeros(count, dtype=np.bool_)
        self.oil_trapped = np.zeros(count, dtype=np.bool_)
        self.water_film = np.zeros(count, dtype=np.bool_)
        self.oil_film = np.zeros(count, dtype=np.bool_)
        self.concentration = np.zeros(count, dtype=dtype)
        self.assign_film_stability()
        self.define_accessible_elements()

    def _build_adjacency(self) -> None:
        pores = np.arange(self.pore_count, dtype=np.int64)
        rows = []
        cols = []
        for column in (0, 1):
            ends = self.pore_nodes[:, column]
            connected = ends >= 0
            node_elements = ends[connected] + self.pore_count
            rows.extend([pores[connected], node_elements])
            cols.extend([node_elements, pores[connected]])
        row = np.concatenate(rows)
        col = np.concatenate(cols)
        order = np.lexsort((col, row))
        row, col = row[order], col[order]
        counts = np.bincount(row, minlength=self.element_count)
        self.adjacency_ptr = np.concatenate(([0], np.cumsum(counts))).astype(np.int64)
        self.adjacency = col.astype(np.int64)

    @property
    def element_count(self) -> int:
        return self.pore_count + self.node_count

    @property
    def wettability(self) -> IntArray:
        """Wettability class of each element, derived from its contact angle."""
        return np.where(
            self.theta > np.pi / 2, Wettability.OIL_WET, Wettability.WATER_WET
        ).astype(np.int8)

    @property
    def inlet_pores(self) -> IntArray:
        return np.flatnonzero(self.inlet[: self.pore_count])

    @property
    def outlet_pores(self) -> IntArray:
        return np.flatnonzero(self.outlet[: self.pore_count])

    @property
    def cross_section_area(self) -> float:
        """Sample cross-section normal to the flow direction (m²)."""
        return self.y_edge_length * self.z_edge_length

    @property
    def bulk_volume(self) -> float:
        return self.x_edge_length * self.y_edge_length * self.z_edge_length

    @property
    def pore_volume(self) -> float:
        """Total volume of accessible elements (m³)."""
        return float(self.volume[self.accessible].sum())

    @property
    def porosity(self) -> float:
        return self.pore_volume / self.bulk_volume

    def element(self, index: int) -> Element:
        """View of the element at `index`, as a `Pore` or a `Node`."""
        if not 0 <= index < self.element_count:
            raise IndexError(f"Element index {index} out of range.")
        if index < self.pore_count:
            return Pore(self, index)
        return Node(self, index)

    def pore(self, index: int) -> Pore:
        if not 0 <= index < self.pore_count:
            raise IndexError(f"Pore index {index} out of range.")
        return Pore(self, index)

    def node(self, node_id: int) -> Node:
        if not 0 <= node_id < self.node_count:
            raise IndexError(f"Node id {node_id} out of range.")
        return Node(self, self.pore_count + node_id)

    def elements(self) -> typing.Iterator[Element]:
        for index in range(self.element_count):
            yield self.element(index)

    def define_accessible_elements(self) -> None:
        """
        Mark the elements on an open path from inlet to outlet as accessible.

        Open elements that belong to clusters not spanning the network are
        isolated: they keep their geometry but take no part in displacement or flow.
        """
        labels, count = label_clusters(~self.closed, self.adjacency_ptr, self.adjacency)
        if count == 0:
            self.accessible = np.zeros(self.element_count, dtype=np.bool_)
            return
        inlet_hits = np.bincount(labels[self.inlet & (labels >= 0)], minlength=count)
        outlet_hits = np.bincount(labels[self.outlet & (labels >= 0)], minlength=count)
        spanning = (inlet_hits > 0) & (outlet_hits > 0)
        accessible = np.zeros(self.element_count, dtype=np.bool_)
        valid = labels >= 0
        accessible[valid] = spanning[labels[valid]]
        self.accessible = accessible
        logger.debug(
            f"{int(accessible.sum())} of {self.element_count} elements are accessible"
        )

    def validate(self) -> None:
        """
        Check that the network can host a displacement simulation.

        :raises ValidationError: If there are no open inlet or outlet elements.
        """
        if not np.any(self.inlet & ~self.closed):
            raise ValidationError("Network has no open inlet boundary elements.")
        if not np.any(self.outlet & ~self.closed):
            raise ValidationError("Network has no open outlet boundary elements.")

    def assign_wettability(self, theta: typing.Union[float, FloatArray]) -> None:
        """Assign contact angles (radians) and refresh film stability flags."""
        theta = np.broadcast_to(np.asarray(theta, dtype=np.float64), (self.element_count,))
        if np.any((theta < 0) | (theta > np.pi)):
            raise ValidationError("Contact angles must lie in [0, pi].")
        self.theta = theta.copy()
        self.assign_film_stability()

    def backup_wettability(self) -> None:
        """Save the current contact angles so they can be restored after a wettability change."""
        self._theta_backup = self.theta.copy()

    def restore_wettability(self) -> None:
        """Restore contact angles saved by `backup_wettability`."""
        if self._theta_backup is None:
            raise ValidationError("No wettability backup to restore.")
        self.assign_wettability(self._theta_backup)
        self._theta_backup = None

    def assign_film_stability(self) -> None:
        """Flag the elements whose corners can hold water or oil films."""
        self.water_film_stable = water_film_stability(
            self.theta, self.half_angles, self.corner_count
        )
        self.oil_film_stable = oil_film_stability(
            self.theta, self.half_angles, self.corner_count
        )

    def set_phase(self, elements: typing.Union[int, IntArray, BoolArray], phase: Phase) -> None:
        """Fill the bulk of the given elements with `phase`."""
        self.phase[elements] = phase
        self.oil_fraction[elements] = 1.0 if phase == Phase.OIL else 0.0

    def reset_state(self) -> None:
        """Fill the network with water and clear trapping, films and tracer."""
        self.set_phase(slice(None), Phase.WATER)  # type: ignore[arg-type]
        self.water_trapped[:] = False
        self.oil_trapped[:] = False
        self.water_film[:] = False
        self.oil_film[:] = False
        self.concentration[:] = 0.0

    def fill_with_phase(
        self,
        phase: Phase,
        saturation: float = 1.0,
        distribution: WaterDistribution = "random",
        other_phase: Phase = Phase.OIL,
        rng: typing.Optional[np.random.Generator] = None,
    ) -> float:
        """
        Fill accessible elements with `phase` up to a target saturation, the rest with `other_phase`.

        Elements are filled whole, in the order given by `distribution`, until
        the filled volume reaches `saturation` of the accessible pore volume.

        :param phase: Phase to place.
        :param saturation: Target volume fraction of `phase`, in [0, 1].
        :param distribution: Fill order.
        :param other_phase: Phase filling the remaining elements.
        :param rng: Random generator for the "random" distribution.
        :return: The achieved saturation of `phase`.
        """
        if not 0.0 <= saturation <= 1.0:
            raise ValidationError(f"Saturation must lie in [0, 1], got {saturation}.")

        candidates = np.flatnonzero(self.accessible)
        self.set_phase(candidates, other_phase)
        self.water_trapped[:] = False
        self.oil_trapped[:] = False
        self.water_film[:] = False
        self.oil_film[:] = False

        if distribution == "random":
            rng = rng if rng is not None else np.random.default_rng()
            order = rng.permutation(candidates)
        elif distribution == "small_pores_first":
            order = candidates[np.argsort(self.radius[candidates], kind="stable")]
        elif distribution == "big_pores_first":
            order = candidates[np.argsort(-self.radius[candidates], kind="stable")]
        else:
            raise ValidationError(f"Unknown distribution: {distribution!r}")

        total = self.pore_volume
        if total <= 0:
            return 0.0
        target = saturation * total
        cumulative = np.cumsum(self.volume[order])
        # Fill whole elements until the next one would overshoot the target
        fill_count = int(np.searchsorted(cumulative, target, side="right"))
        if fill_count < order.shape[0] and saturation >= 1.0:
            fill_count = order.shape[0]
        self.set_phase(order[:fill_count], phase)
        achieved = float(cumulative[fill_count - 1] / total) if fill_count else 0.0
        logger.debug(
            f"Filled {fill_count} elements with {phase.name.lower()} "
            f"(target saturation {saturation:.4f}, achieved {achieved:.4f})"
        )
        return achieved

    def water_saturation(
        self,
        capillary_pressure: typing.Optional[float] = None,
        surface_tension: typing.Optional[float] = None,
        films: bool = False,
    ) -> float:
        """
        Water saturation of the accessible pore volume.

        :param capillary_pressure: Current capillary pressure (Pa); needed when `films` is True.
        :param surface_tension: Oil-water interfacial tension (N/m); needed when `films` is True.
        :param films: Whether to account for water and oil corner films.
        :return: Water saturation in [0, 1].
        """
        accessible = self.accessible
        total = float(self.volume[accessible].sum())
        if total <= 0:
            return 0.0
        water = self.volume * (1.0 - self.oil_fraction)

        if films and capillary_pressure is not None and surface_tension is not None:
            if capillary_pressure > 0:
                fraction = film_area_fraction(
                    capillary_pressure,
                    surface_tension,
                    self.theta,
                    self.half_angles,
                    self.corner_count,
                    self.area,
                )
                water = water + np.where(
                    self.water_film & (self.phase == Phase.OIL), self.volume * fraction, 0.0
                )
            elif capillary_pressure < 0:
                fraction = film_area_fraction(
                    capillary_pressure,
                    surface_tension,
                    np.pi - self.theta,
                    self.half_angles,
                    self.corner_count,
                    self.area,
                )
                water = water - np.where(
                    self.oil_film & (self.phase == Phase.WATER), self.volume * fraction, 0.0
                )
        return float(np.clip(water[accessible].sum() / total, 0.0, 1.0))

    def snapshot(self) -> typing.Dict[str, np.typing.NDArray]:
        """Copies of the mutable state arrays."""
        return {
            "phase": self.phase.copy(),
            "oil_fraction": self.oil_fraction.copy(),
            "water_trapped": self.water_trapped.copy(),
            "oil_trapped": self.oil_trapped.copy(),
            "water_film": self.water_film.copy(),
            "oil_film": self.oil_film.copy(),
            "concentration": self.concentration.copy(),
        }

    def restore(self, snapshot: typing.Mapping[str, np.typing.NDArray]) -> None:
        """Restore mutable state arrays saved by `snapshot`."""
        for name, values in snapshot.items():
            getattr(self, name)[:] = values
