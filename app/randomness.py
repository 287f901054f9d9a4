"""Injectable randomness used by seed selection and result sampling."""

from __future__ import annotations

import math
import random
from typing import Protocol, Sequence, TypeVar

T = TypeVar("T")


class RandomSource(Protocol):
    """Anything producing floats uniformly distributed in ``[0, 1)``."""

    def next(self) -> float:  # pragma: no cover - protocol definition
        ...


class SystemRandomSource:
    """Random source backed by :class:`random.Random`."""

    def __init__(self, seed: int | None = None) -> None:
        self._random = random.Random(seed)

    def next(self) -> float:
        return self._random.random()


def random_int(source: RandomSource, low: int, high: int) -> int:
    """Return an integer in ``[low, high]`` drawn from ``source``."""

    if high < low:
        raise ValueError("high must not be lower than low")
    span = high - low + 1
    return low + min(math.floor(source.next() * span), span - 1)


def shuffled(source: RandomSource, items: Sequence[T]) -> list[T]:
    """Return a Fisher-Yates shuffled copy of ``items``."""

    result = list(items)
    for index in range(len(result) - 1, 0, -1):
        swap = random_int(source, 0, index)
        result[index], result[swap] = result[swap], result[index]
    return result


def sample(source: RandomSource, items: Sequence[T], count: int) -> list[T]:
    """Pick ``count`` items uniformly without replacement."""

    if count <= 0:
        return []
    return shuffled(source, items)[:count]
