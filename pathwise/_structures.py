"""
Pathwise data structures: small primitives used on the request path.

Structures::

    BloomFilter       seeded-hash probabilistic set for route gating
    ExponentialDecay  EWMA (exponentially weighted moving average)
    percentile        nearest-rank percentile over a sorted sample
"""

from __future__ import annotations

import math
from typing import Iterable, List, Optional, Sequence

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193
_MASK32 = 0xFFFFFFFF


# ═══════════════════════════════════════════════════════════════════════════
# Bloom Filter (probabilistic membership)
# ═══════════════════════════════════════════════════════════════════════════


def _fmix32(h: int) -> int:
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _MASK32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _MASK32
    h ^= h >> 16
    return h


def _seeded_hash(data: bytes, seed: int) -> int:
    """32-bit FNV-1a with the seed folded into the offset basis."""
    h = (_FNV_OFFSET ^ seed) & _MASK32
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK32
    return _fmix32(h)


class BloomFilter:
    """
    Space-efficient probabilistic set with no false negatives.

    Parameters:
        capacity:    anticipated number of elements
        fp_rate:     desired false-positive probability at ``capacity``
        size_bits:   explicit bit-array size (overrides the formula)
        hash_count:  explicit number of hash functions

    When ``size_bits`` / ``hash_count`` are not given the filter uses the
    standard formulas::

        m = -n * ln(p) / ln(2)^2
        k = (m / n) * ln(2)

    Each of the ``k`` hash functions is a seeded 32-bit FNV-1a reduced
    modulo ``m``.  There is no removal: rebuild the filter from the
    current set instead.

    >>> bf = BloomFilter(capacity=100, fp_rate=0.01)
    >>> bf.add("/api/users")
    >>> "/api/users" in bf
    True
    """

    __slots__ = ("_bits", "_m", "_k", "_seeds", "_count", "_capacity")

    def __init__(
        self,
        capacity: int = 10_000,
        fp_rate: float = 0.01,
        *,
        size_bits: Optional[int] = None,
        hash_count: Optional[int] = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if not (0.0 < fp_rate < 1.0):
            raise ValueError("fp_rate must be in (0, 1)")
        ln2 = math.log(2)
        if size_bits is None:
            size_bits = max(64, int(math.ceil(-capacity * math.log(fp_rate) / (ln2 * ln2))))
        if size_bits <= 0:
            raise ValueError("size_bits must be > 0")
        if hash_count is None:
            hash_count = max(1, int(round((size_bits / capacity) * ln2)))
        if hash_count <= 0:
            raise ValueError("hash_count must be > 0")

        self._m = size_bits
        self._k = hash_count
        self._capacity = capacity
        self._seeds = [(0x9E3779B1 * (i + 1)) & _MASK32 for i in range(hash_count)]
        self._bits = bytearray(size_bits // 8 + 1)
        self._count = 0

    def _indices(self, value: str) -> List[int]:
        data = value.encode("utf-8")
        return [_seeded_hash(data, seed) % self._m for seed in self._seeds]

    def add(self, value: str) -> None:
        for idx in self._indices(value):
            self._bits[idx >> 3] |= 1 << (idx & 7)
        self._count += 1

    def update(self, values: Iterable[str]) -> None:
        for value in values:
            self.add(value)

    def test(self, value: str) -> bool:
        return all(
            self._bits[idx >> 3] & (1 << (idx & 7))
            for idx in self._indices(value)
        )

    __contains__ = test

    def expected_fp_rate(self, items: Optional[int] = None) -> float:
        """Theoretical false-positive rate after ``items`` insertions.

        Defaults to the number of ``add()`` calls so far.
        """
        n = self._count if items is None else items
        if n <= 0:
            return 0.0
        return (1.0 - math.exp(-self._k * n / self._m)) ** self._k

    @property
    def size_bits(self) -> int:
        return self._m

    @property
    def hash_count(self) -> int:
        return self._k

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size_bytes(self) -> int:
        return len(self._bits)

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return f"<BloomFilter m={self._m} k={self._k} items={self._count}>"


# ═══════════════════════════════════════════════════════════════════════════
# Exponential Weighted Moving Average
# ═══════════════════════════════════════════════════════════════════════════


class ExponentialDecay:
    """
    EWMA (Exponentially Weighted Moving Average).

    The smoothing factor ``alpha`` ∈ (0, 1].  Higher alpha puts more
    weight on recent observations.  The first sample seeds the average.

    >>> e = ExponentialDecay(alpha=0.3)
    >>> for v in [10, 12, 11, 13, 12]:
    ...     _ = e.update(v)
    >>> round(e.value, 2)
    11.58
    """

    __slots__ = ("_alpha", "_value", "_initialized")

    def __init__(self, alpha: float = 0.1) -> None:
        if not (0.0 < alpha <= 1.0):
            raise ValueError("alpha must be in (0, 1]")
        self._alpha = alpha
        self._value = 0.0
        self._initialized = False

    def update(self, sample: float) -> float:
        if not self._initialized:
            self._value = float(sample)
            self._initialized = True
        else:
            self._value = self._alpha * sample + (1 - self._alpha) * self._value
        return self._value

    @property
    def value(self) -> float:
        return self._value

    @property
    def initialized(self) -> bool:
        return self._initialized

    def reset(self) -> None:
        self._value = 0.0
        self._initialized = False


def smooth(values: Sequence[float], alpha: float) -> float:
    """Exponentially smoothed forecast over an ordered series."""
    e = ExponentialDecay(alpha)
    for v in values:
        e.update(v)
    return e.value


# ═══════════════════════════════════════════════════════════════════════════
# Percentiles
# ═══════════════════════════════════════════════════════════════════════════


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Index-based percentile (``p`` in [0, 100]) over pre-sorted values."""
    if not sorted_values:
        return 0.0
    idx = int(len(sorted_values) * p / 100.0)
    return float(sorted_values[min(idx, len(sorted_values) - 1)])
