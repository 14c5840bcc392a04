import logging
import typing

import numpy as np

from poreflow.capillary import cross_section_area
from poreflow.constants import c
from poreflow.errors import ValidationError
from poreflow.network.base import Network
from poreflow.types import BoolArray, FloatArray

logger = logging.getLogger(__name__)

__all__ = ["build_lattice_network", "lattice_node_id"]


def lattice_node_id(i: int, j: int, k: int, nx: int, ny: int) -> int:
    """Node id of lattice point (i, j, k), x varying fastest."""
    return i + nx * (j + ny * k)


def _per_pore(
    value: typing.Union[float, FloatArray], count: int, name: str
) -> FloatArray:
    array = np.asarray(value, dtype=np.float64)
    if array.ndim == 0:
        return np.full(count, float(array))
    if array.shape != (count,):
        raise ValidationError(f"'{name}' must be a scalar or have shape ({count},), got {array.shape}.")
    return array.copy()


def build_lattice_network(
    nx: int,
    ny: int,
    nz: int,
    radius: typing.Union[float, FloatArray],
    length: float,
    shape_factor: typing.Union[float, FloatArray, None] = None,
    node_radius: typing.Optional[float] = None,
    node_shape_factor: typing.Optional[float] = None,
    closed: typing.Optional[BoolArray] = None,
    theta: typing.Union[float, FloatArray] = 0.0,
) -> Network:
    """
    Build a uniform regular cubic lattice network with flow along x.

    Nodes sit on an nx × ny × nz grid with spacing `length`. Every node is
    joined to its neighbours along x, y and z by a pore of that length. Each
    row along x starts with an inlet pore (reservoir to the first node) and
    ends with an outlet pore (last node to reservoir), so a row holds nx + 1
    pores in series.

    Pores are ordered: x-direction pores row by row (inlet pore first, outlet
    pore last), then y-direction pores, then z-direction pores. Nodes have
    zero length and therefore no flow resistance, but they have volume.

    :param nx: Number of nodes along x (flow direction).
    :param ny: Number of nodes along y.
    :param nz: Number of nodes along z.
    :param radius: Pore inscribed radius (m), a scalar or one value per pore.
    :param length: Pore length and lattice spacing (m).
    :param shape_factor: Pore shape factor(s). Defaults to a circle.
    :param node_radius: Node inscribed radius (m). Defaults to the largest pore radius.
    :param node_shape_factor: Node shape factor. Defaults to the pore default.
    :param closed: Optional boolean mask over pores marking removed pores.
    :param theta: Contact angle(s) for all elements (radians).
    :return: The lattice network.
    """
    if min(nx, ny, nz) < 1:
        raise ValidationError(f"Lattice dimensions must be positive, got ({nx}, {ny}, {nz}).")
    if length <= 0:
        raise ValidationError(f"Pore length must be positive, got {length}.")

    node_count = nx * ny * nz
    ids = np.arange(node_count, dtype=np.int64).reshape((nz, ny, nx))

    x_pores = []
    for k in range(nz):
        for j in range(ny):
            row = ids[k, j, :]
            x_pores.append(np.stack([np.concatenate(([-1], row)), np.concatenate((row, [-1]))], axis=1))
    y_pores = np.stack([ids[:, :-1, :].ravel(), ids[:, 1:, :].ravel()], axis=1)
    z_pores = np.stack([ids[:-1, :, :].ravel(), ids[1:, :, :].ravel()], axis=1)
    pore_nodes = np.concatenate(x_pores + [y_pores.reshape(-1, 2), z_pores.reshape(-1, 2)])
    pore_count = pore_nodes.shape[0]

    default_shape = c.CIRCLE_SHAPE_FACTOR
    pore_radius = _per_pore(radius, pore_count, "radius")
    pore_shape = _per_pore(
        default_shape if shape_factor is None else shape_factor, pore_count, "shape_factor"
    )
    pore_length = np.full(pore_count, float(length))
    pore_volume = cross_section_area(pore_radius, pore_shape) * pore_length

    node_radius = float(pore_radius.max()) if node_radius is None else float(node_radius)
    node_shape = default_shape if node_shape_factor is None else float(node_shape_factor)
    node_radii = np.full(node_count, node_radius)
    node_shapes = np.full(node_count, node_shape)
    node_volume = cross_section_area(node_radii, node_shapes) * 2.0 * node_radii

    closed_elements = None
    if closed is not None:
        closed = np.asarray(closed, dtype=np.bool_)
        if closed.shape != (pore_count,):
            raise ValidationError(f"'closed' must have shape ({pore_count},), got {closed.shape}.")
        closed_elements = np.concatenate((closed, np.zeros(node_count, dtype=np.bool_)))

    element_count = pore_count + node_count
    network = Network(
        pore_nodes=pore_nodes,
        node_count=node_count,
        radius=np.concatenate((pore_radius, node_radii)),
        length=np.concatenate((pore_length, np.zeros(node_count))),
        shape_factor=np.concatenate((pore_shape, node_shapes)),
        volume=np.concatenate((pore_volume, node_volume)),
        x_edge_length=(nx + 1) * length,
        y_edge_length=ny * length,
        z_edge_length=nz * length,
        closed=closed_elements,
        theta=np.broadcast_to(np.asarray(theta, dtype=np.float64), (element_count,)).copy(),
    )
    logger.debug(
        f"Built {nx}x{ny}x{nz} lattice with {pore_count} pores and {node_count} nodes"
    )
    return network
