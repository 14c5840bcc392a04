import typing

import numba
import numpy as np

__all__ = ["clip", "safe_inverse"]


@numba.vectorize(cache=True)
def clip(val, min_, max_):
    return np.maximum(np.minimum(val, max_), min_)


def safe_inverse(values: np.typing.NDArray) -> np.typing.NDArray:
    """
    Elementwise 1/x with 1/0 = inf and 1/inf = 0, without floating point warnings.

    Used to combine resistances in series where zero conductance means a
    blocked element and infinite conductance means no resistance.
    """
    values = np.asarray(values, dtype=np.float64)
    out = np.full(values.shape, np.inf)
    nonzero = values != 0.0
    with np.errstate(divide="ignore", over="ignore"):
        out[nonzero] = 1.0 / values[nonzero]
    return typing.cast(np.typing.NDArray, out)
