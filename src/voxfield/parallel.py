"""
Worker-pool helpers for data-parallel stages.

Every stage partitions its output by layer, slab or voxel chunk so that
workers write disjoint locations. numpy releases the GIL inside the heavy
kernels, so a thread pool is enough.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def resolve_workers(n_workers: Optional[int] = None) -> int:
    """Number of workers to use (None or < 1 means one per CPU)."""
    if n_workers is None or n_workers < 1:
        return os.cpu_count() or 1
    return n_workers


def map_partitions(
    fn: Callable[[T], R],
    items: Iterable[T],
    n_workers: Optional[int] = None
) -> List[R]:
    """
    Apply ``fn`` to every item on the worker pool.

    Returns results in input order, only once every item has completed, so
    a call doubles as a barrier between dependent passes. The first
    exception raised by a worker is re-raised here.
    """
    items = list(items)
    workers = min(resolve_workers(n_workers), max(len(items), 1))

    if workers == 1:
        return [fn(item) for item in items]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(fn, items))


def split_range(n: int, parts: int) -> List[Tuple[int, int]]:
    """Split ``range(n)`` into at most ``parts`` contiguous (start, stop) chunks."""
    parts = max(1, min(parts, n))
    bounds = [round(i * n / parts) for i in range(parts + 1)]
    return [(bounds[i], bounds[i + 1]) for i in range(parts) if bounds[i] < bounds[i + 1]]
