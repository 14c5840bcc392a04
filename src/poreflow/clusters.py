"""
Connectivity analysis of network elements.

Elements selected by a predicate (phase occupancy, wettability, flow
activity, ...) are partitioned into maximal connected clusters with the
Hoshen-Kopelman union-find labelling. Clusters touching both an inlet and an
outlet element are spanning (percolating).

Classification is a pure function of the current network state. Each pass
produces a fresh `ClusterSet`; the `ClusterAnalyzer` keeps the latest set per
classification dimension so that elements can be looked up by cluster id
without holding references to cluster objects.
"""

import logging
import typing

import attrs
import numba  # type: ignore[import-untyped]
import numpy as np

from poreflow.constants import c
from poreflow.errors import ValidationError
from poreflow.types import BoolArray, ClusterKind, FloatArray, IntArray, Phase, Wettability

if typing.TYPE_CHECKING:
    from poreflow.network.base import Network

logger = logging.getLogger(__name__)

__all__ = [
    "Cluster",
    "ClusterSet",
    "ClusterAnalyzer",
    "label_clusters",
    "predicate_mask",
]


@numba.njit(cache=True)
def _find(parent: np.ndarray, x: int) -> int:
    while parent[x] != x:
        parent[x] = parent[parent[x]]
        x = parent[x]
    return x


@numba.njit(cache=True)
def _union(parent: np.ndarray, a: int, b: int) -> int:
    root_a = _find(parent, a)
    root_b = _find(parent, b)
    if root_a == root_b:
        return root_a
    # Smaller label wins so the union is independent of argument order
    if root_a < root_b:
        parent[root_b] = root_a
        return root_a
    parent[root_a] = root_b
    return root_b


@numba.njit(cache=True)
def _hoshen_kopelman(
    mask: np.ndarray,
    order: np.ndarray,
    adjacency_ptr: np.ndarray,
    adjacency: np.ndarray,
) -> typing.Tuple[np.ndarray, int]:
    count = mask.shape[0]
    provisional = np.full(count, -1, dtype=np.int64)
    parent = np.empty(count, dtype=np.int64)
    next_label = 0

    for position in range(order.shape[0]):
        element = order[position]
        if not mask[element]:
            continue

        label = -1
        for k in range(adjacency_ptr[element], adjacency_ptr[element + 1]):
            other = provisional[adjacency[k]]
            if other < 0:
                continue
            if label < 0:
                label = _find(parent, other)
            else:
                label = _union(parent, label, other)

        if label < 0:
            parent[next_label] = next_label
            label = next_label
            next_label += 1
        provisional[element] = label

    # Canonical ids follow the smallest member index of each cluster
    canonical = np.full(max(next_label, 1), -1, dtype=np.int64)
    labels = np.full(count, -1, dtype=np.int64)
    cluster_count = 0
    for element in range(count):
        if provisional[element] < 0:
            continue
        root = _find(parent, provisional[element])
        if canonical[root] < 0:
            canonical[root] = cluster_count
            cluster_count += 1
        labels[element] = canonical[root]
    return labels, cluster_count


def label_clusters(
    mask: BoolArray,
    adjacency_ptr: IntArray,
    adjacency: IntArray,
    order: typing.Optional[IntArray] = None,
) -> typing.Tuple[IntArray, int]:
    """
    Label the connected components of the elements selected by `mask`.

    :param mask: Boolean mask of qualifying elements.
    :param adjacency_ptr: CSR row pointer of the element adjacency.
    :param adjacency: CSR column indices of the element adjacency.
    :param order: Optional processing order (a permutation of element indices).
        The resulting labels do not depend on it.
    :return: (labels, count). Labels are -1 for unselected elements and
        0..count-1 otherwise, numbered by the smallest member index.
    """
    mask = np.ascontiguousarray(mask, dtype=np.bool_)
    if order is None:
        order = np.arange(mask.shape[0], dtype=np.int64)
    else:
        order = np.ascontiguousarray(order, dtype=np.int64)
        if order.shape[0] != mask.shape[0]:
            raise ValidationError(
                f"Processing order has {order.shape[0]} entries, expected {mask.shape[0]}."
            )
    labels, count = _hoshen_kopelman(
        mask,
        order,
        np.ascontiguousarray(adjacency_ptr, dtype=np.int64),
        np.ascontiguousarray(adjacency, dtype=np.int64),
    )
    return labels, int(count)


@attrs.frozen(slots=True)
class Cluster:
    """A maximal connected set of elements satisfying a predicate."""

    id: int
    """Cluster id, unique within its `ClusterSet`."""
    members: IntArray = attrs.field(eq=False, repr=False)
    """Sorted element indices of the cluster."""
    inlet: bool
    """Whether the cluster contains an inlet element."""
    outlet: bool
    """Whether the cluster contains an outlet element."""

    @property
    def spanning(self) -> bool:
        """Whether the cluster connects the inlet to the outlet."""
        return self.inlet and self.outlet

    @property
    def size(self) -> int:
        return int(self.members.shape[0])

    def __len__(self) -> int:
        return self.size

    def __contains__(self, element: int) -> bool:
        index = np.searchsorted(self.members, element)
        return bool(index < self.members.shape[0] and self.members[index] == element)


@attrs.frozen(slots=True)
class ClusterSet:
    """Result of one classification pass."""

    kind: typing.Optional[ClusterKind]
    """Classification dimension, or None for an ad-hoc predicate."""
    labels: IntArray = attrs.field(eq=False, repr=False)
    """Cluster id of every element (-1 when the element is not selected)."""
    clusters: typing.Tuple[Cluster, ...] = attrs.field(repr=False)
    """Clusters ordered by id."""

    @property
    def count(self) -> int:
        return len(self.clusters)

    def __len__(self) -> int:
        return len(self.clusters)

    def __iter__(self) -> typing.Iterator[Cluster]:
        return iter(self.clusters)

    def cluster_of(self, element: int) -> typing.Optional[Cluster]:
        """The cluster containing `element`, if any."""
        label = int(self.labels[element])
        return self.clusters[label] if label >= 0 else None

    def spanning_clusters(self) -> typing.List[Cluster]:
        return [cluster for cluster in self.clusters if cluster.spanning]

    @property
    def is_spanning(self) -> bool:
        """Whether any cluster percolates from inlet to outlet."""
        return any(cluster.spanning for cluster in self.clusters)

    def _mask_for(self, selected: np.ndarray) -> BoolArray:
        mask = np.zeros(self.labels.shape[0], dtype=np.bool_)
        valid = self.labels >= 0
        mask[valid] = selected[self.labels[valid]]
        return mask

    def spanning_mask(self) -> BoolArray:
        """Elements belonging to spanning clusters."""
        return self._mask_for(np.array([cl.spanning for cl in self.clusters], dtype=np.bool_))

    def outlet_connected_mask(self) -> BoolArray:
        """Elements belonging to clusters that touch the outlet."""
        return self._mask_for(np.array([cl.outlet for cl in self.clusters], dtype=np.bool_))

    def inlet_connected_mask(self) -> BoolArray:
        """Elements belonging to clusters that touch the inlet."""
        return self._mask_for(np.array([cl.inlet for cl in self.clusters], dtype=np.bool_))

    def partition(self) -> typing.FrozenSet[typing.Tuple[int, ...]]:
        """The partition of selected elements, independent of cluster ids."""
        return frozenset(tuple(int(m) for m in cluster.members) for cluster in self.clusters)


def _build_cluster_set(
    kind: typing.Optional[ClusterKind],
    labels: IntArray,
    count: int,
    inlet: BoolArray,
    outlet: BoolArray,
) -> ClusterSet:
    selected = np.flatnonzero(labels >= 0)
    selected_labels = labels[selected]
    # Stable sort keeps member indices ascending inside each cluster
    sort_order = np.argsort(selected_labels, kind="stable")
    sorted_members = selected[sort_order]
    boundaries = np.searchsorted(selected_labels[sort_order], np.arange(count + 1))

    inlet_hits = np.bincount(labels[inlet & (labels >= 0)], minlength=count)
    outlet_hits = np.bincount(labels[outlet & (labels >= 0)], minlength=count)

    clusters = tuple(
        Cluster(
            id=label,
            members=sorted_members[boundaries[label] : boundaries[label + 1]],
            inlet=bool(inlet_hits[label] > 0),
            outlet=bool(outlet_hits[label] > 0),
        )
        for label in range(count)
    )
    return ClusterSet(kind=kind, labels=labels, clusters=clusters)


def predicate_mask(
    network: "Network",
    kind: ClusterKind,
    flows: typing.Optional[FloatArray] = None,
) -> BoolArray:
    """
    Boolean mask of the elements selected by a classification dimension.

    All dimensions except `ClusterKind.OPEN` are restricted to accessible elements.

    :param network: The network.
    :param kind: Classification dimension.
    :param flows: Element flow magnitudes, required for `ClusterKind.FLOWING`.
    :return: Mask over all elements.
    """
    if kind is ClusterKind.OPEN:
        return ~network.closed

    phase = network.phase
    if kind is ClusterKind.WATER:
        mask = phase == Phase.WATER
    elif kind is ClusterKind.OIL:
        mask = phase == Phase.OIL
    elif kind is ClusterKind.GAS:
        mask = phase == Phase.GAS
    elif kind is ClusterKind.WATER_WET:
        mask = network.wettability == Wettability.WATER_WET
    elif kind is ClusterKind.OIL_WET:
        mask = network.wettability == Wettability.OIL_WET
    elif kind is ClusterKind.WATER_WITH_FILMS:
        mask = (phase == Phase.WATER) | network.water_film
    elif kind is ClusterKind.OIL_WITH_FILMS:
        mask = (phase == Phase.OIL) | network.oil_film
    elif kind is ClusterKind.FLOWING:
        if flows is None:
            raise ValidationError("Flow-activity classification requires element flows.")
        magnitude = np.abs(np.asarray(flows, dtype=np.float64))
        largest = float(magnitude.max()) if magnitude.size else 0.0
        mask = magnitude > c.RELATIVE_FLOW_EPSILON * largest if largest > 0 else np.zeros_like(magnitude, dtype=np.bool_)
    else:
        raise ValidationError(f"Unknown cluster kind: {kind!r}")
    return mask & network.accessible


class ClusterAnalyzer:
    """
    Owner of the cluster arena of a network.

    Keeps the latest `ClusterSet` of each classification dimension. Elements
    are never given references to clusters; their cluster ids are looked up
    here by element index.
    """

    def __init__(self, network: "Network") -> None:
        self.network = network
        self._sets: typing.Dict[ClusterKind, ClusterSet] = {}

    def classify(
        self,
        kind: typing.Union[ClusterKind, BoolArray],
        order: typing.Optional[IntArray] = None,
        flows: typing.Optional[FloatArray] = None,
    ) -> ClusterSet:
        """
        Run a classification pass.

        :param kind: A classification dimension, or an explicit element mask for an
            ad-hoc predicate (ad-hoc results are returned but not stored).
        :param order: Optional element processing order.
        :param flows: Element flow magnitudes for `ClusterKind.FLOWING`.
        :return: The fresh cluster set.
        """
        network = self.network
        if isinstance(kind, ClusterKind):
            mask = predicate_mask(network, kind, flows=flows)
            cluster_kind: typing.Optional[ClusterKind] = kind
        else:
            mask = np.asarray(kind, dtype=np.bool_)
            if mask.shape != (network.element_count,):
                raise ValidationError(
                    f"Element mask has shape {mask.shape}, expected ({network.element_count},)."
                )
            cluster_kind = None

        labels, count = label_clusters(
            mask, network.adjacency_ptr, network.adjacency, order=order
        )
        cluster_set = _build_cluster_set(
            cluster_kind, labels, count, network.inlet, network.outlet
        )
        if cluster_kind is not None:
            self._sets[cluster_kind] = cluster_set
        logger.debug(
            f"Classified {int(mask.sum())} elements into {count} "
            f"{cluster_kind.value if cluster_kind else 'ad-hoc'} clusters "
            f"(spanning: {cluster_set.is_spanning})"
        )
        return cluster_set

    def latest(self, kind: ClusterKind) -> typing.Optional[ClusterSet]:
        """The most recent cluster set of a dimension, if it has been classified."""
        return self._sets.get(kind)

    def cluster_id(self, kind: ClusterKind, element: int) -> int:
        """Cluster id of an element in the latest pass of `kind` (-1 if none)."""
        cluster_set = self._sets.get(kind)
        if cluster_set is None:
            return -1
        return int(cluster_set.labels[element])

    def reset(self) -> None:
        """Discard all stored cluster sets."""
        self._sets.clear()
