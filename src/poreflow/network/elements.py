"""Read-only views of individual network elements."""

import typing

import attrs
import numpy as np

from poreflow.types import CrossSection, ElementKind, Phase, Wettability

if typing.TYPE_CHECKING:
    from poreflow.network.base import Network

__all__ = ["Element", "Pore", "Node"]


@attrs.frozen(slots=True)
class Element:
    """
    View of one element of a network.

    Exposes the geometry, boundary membership and current state of the
    element without copying it. Views are cheap and always reflect the
    network's current state.
    """

    network: "Network" = attrs.field(repr=False, eq=False)
    """The network the element belongs to."""
    index: int
    """Element index (pores first, then nodes)."""

    @property
    def kind(self) -> ElementKind:
        raise NotImplementedError

    @property
    def radius(self) -> float:
        return float(self.network.radius[self.index])

    @property
    def length(self) -> float:
        return float(self.network.length[self.index])

    @property
    def shape_factor(self) -> float:
        return float(self.network.shape_factor[self.index])

    @property
    def volume(self) -> float:
        return float(self.network.volume[self.index])

    @property
    def area(self) -> float:
        return float(self.network.area[self.index])

    @property
    def conductance(self) -> float:
        """Single phase hydraulic conductance at unit viscosity."""
        return float(self.network.conductance[self.index])

    @property
    def cross_section(self) -> CrossSection:
        return CrossSection(int(self.network.cross_section[self.index]))

    @property
    def half_angles(self) -> typing.Tuple[float, ...]:
        count = int(self.network.corner_count[self.index])
        return tuple(float(b) for b in self.network.half_angles[self.index, :count])

    @property
    def inlet(self) -> bool:
        return bool(self.network.inlet[self.index])

    @property
    def outlet(self) -> bool:
        return bool(self.network.outlet[self.index])

    @property
    def closed(self) -> bool:
        return bool(self.network.closed[self.index])

    @property
    def accessible(self) -> bool:
        return bool(self.network.accessible[self.index])

    @property
    def phase(self) -> Phase:
        return Phase(int(self.network.phase[self.index]))

    @property
    def theta(self) -> float:
        """Contact angle measured through water (radians)."""
        return float(self.network.theta[self.index])

    @property
    def wettability(self) -> Wettability:
        return Wettability(int(self.network.wettability[self.index]))

    @property
    def oil_fraction(self) -> float:
        return float(self.network.oil_fraction[self.index])

    @property
    def water_trapped(self) -> bool:
        return bool(self.network.water_trapped[self.index])

    @property
    def oil_trapped(self) -> bool:
        return bool(self.network.oil_trapped[self.index])

    @property
    def water_film(self) -> bool:
        return bool(self.network.water_film[self.index])

    @property
    def oil_film(self) -> bool:
        return bool(self.network.oil_film[self.index])

    @property
    def neighbours(self) -> np.typing.NDArray:
        """Indices of adjacent elements."""
        network = self.network
        start = network.adjacency_ptr[self.index]
        stop = network.adjacency_ptr[self.index + 1]
        return network.adjacency[start:stop]


@attrs.frozen(slots=True)
class Pore(Element):
    """Throat element connecting two nodes, or a node and a boundary reservoir."""

    @property
    def kind(self) -> ElementKind:
        return ElementKind.PORE

    @property
    def nodes(self) -> typing.Tuple[int, int]:
        """Node ids at the (in, out) ends. -1 marks the inlet or outlet reservoir."""
        node_in, node_out = self.network.pore_nodes[self.index]
        return int(node_in), int(node_out)


@attrs.frozen(slots=True)
class Node(Element):
    """Junction element joining several pores."""

    @property
    def kind(self) -> ElementKind:
        return ElementKind.NODE

    @property
    def node_id(self) -> int:
        return self.index - self.network.pore_count

    @property
    def pores(self) -> np.typing.NDArray:
        """Indices of the pores meeting at this node."""
        return self.neighbours
