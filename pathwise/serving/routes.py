"""
Route gate backed by a bloom filter.

Requests whose path was never registered are rejected with a 404 before
any downstream work.  The filter has no false negatives, so a registered
route is never rejected; an unregistered one slips through only at the
filter's false-positive rate.

A registered ``/prefix/*`` admits any single path segment under
``/prefix``.  The gate is inactive until at least one route is
registered.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, List

from .._structures import BloomFilter
from .._types import Response

logger = logging.getLogger("pathwise.serving.routes")

WILDCARD = "/*"


def _normalise(path: str) -> str:
    if len(path) > 1 and path.endswith("/"):
        return path.rstrip("/") or "/"
    return path


class RouteFilter:
    """Known-route membership gate."""

    def __init__(self, routes: Iterable[str] = (), capacity: int = 10_000, fp_rate: float = 0.01):
        self.capacity = capacity
        self.fp_rate = fp_rate
        self._routes: List[str] = []
        self._filter = BloomFilter(capacity=capacity, fp_rate=fp_rate)
        self._lock = threading.Lock()
        routes = list(routes)
        if routes:
            self.rebuild(routes)

    @property
    def active(self) -> bool:
        return bool(self._routes)

    @property
    def routes(self) -> List[str]:
        return list(self._routes)

    @property
    def bloom(self) -> BloomFilter:
        return self._filter

    def register(self, route: str) -> None:
        route = _normalise(route)
        with self._lock:
            self._filter.add(route)
            self._routes.append(route)
        if len(self._routes) > self.capacity:
            logger.warning(
                "Route filter holds %d routes, above its capacity of %d; "
                "false-positive rate now ~%.4f",
                len(self._routes), self.capacity, self._filter.expected_fp_rate(),
            )

    def rebuild(self, routes: Iterable[str]) -> None:
        """Replace the filter with one built from ``routes``."""
        routes = [_normalise(r) for r in routes]
        fresh = BloomFilter(capacity=max(self.capacity, len(routes)), fp_rate=self.fp_rate)
        fresh.update(routes)
        with self._lock:
            self._filter = fresh
            self._routes = routes
        logger.info("Route filter rebuilt with %d routes (%d bits, k=%d)",
                    len(routes), fresh.size_bits, fresh.hash_count)

    def allows(self, path: str) -> bool:
        if not self.active:
            return True
        path = _normalise(path)
        bloom = self._filter
        if path in bloom:
            return True
        parent, _, segment = path.rpartition("/")
        return bool(segment) and (parent + WILDCARD) in bloom

    def reject(self, path: str) -> Response:
        logger.debug("Rejected unknown route %s", path)
        return Response(
            status=404,
            headers={"content-type": "application/json"},
            body=b'{"error": "Not Found"}',
        )
