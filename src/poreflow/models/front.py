import heapq
import typing

import numpy as np

__all__ = ["InvasionFront"]


class InvasionFront:
    """
    Priority set of invasible elements of one displacing phase.

    Entries are keyed by `(key, element_index)`, so equal thresholds are
    broken by the lower element index. With `ascending=True` the lowest
    threshold pops first (oil displacing water); otherwise the highest
    threshold pops first (water displacing oil).

    An element is queued at most once. Entries whose element stopped being
    invasible since they were queued are discarded lazily on `pop`.
    """

    def __init__(self, element_count: int, ascending: bool = True) -> None:
        self.ascending = ascending
        self._heap: typing.List[typing.Tuple[float, int]] = []
        self._queued = np.zeros(element_count, dtype=np.bool_)

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)

    def __contains__(self, index: int) -> bool:
        return bool(self._queued[index])

    def push(self, index: int, threshold: float) -> bool:
        """
        Queue an element with its threshold capillary pressure.

        :return: False if the element was already queued.
        """
        if self._queued[index]:
            return False
        key = threshold if self.ascending else -threshold
        heapq.heappush(self._heap, (key, int(index)))
        self._queued[index] = True
        return True

    def _threshold(self, key: float) -> float:
        return key if self.ascending else -key

    def peek(
        self, is_valid: typing.Optional[typing.Callable[[int], bool]] = None
    ) -> typing.Optional[typing.Tuple[float, int]]:
        """The next valid `(threshold, index)` without removing it."""
        while self._heap:
            key, index = self._heap[0]
            if is_valid is None or is_valid(index):
                return self._threshold(key), index
            heapq.heappop(self._heap)
            self._queued[index] = False
        return None

    def pop(
        self, is_valid: typing.Optional[typing.Callable[[int], bool]] = None
    ) -> typing.Optional[typing.Tuple[float, int]]:
        """
        Remove and return the next valid `(threshold, index)`.

        :param is_valid: Predicate telling whether a queued element is still invasible.
        :return: The entry, or None when no invasible element is left.
        """
        entry = self.peek(is_valid)
        if entry is None:
            return None
        heapq.heappop(self._heap)
        self._queued[entry[1]] = False
        return entry

    def clear(self) -> None:
        self._heap.clear()
        self._queued[:] = False
