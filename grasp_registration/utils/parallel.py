"""
Chunked data-parallel map for the per-point stages.

Workers receive a [start, stop) range and write into their own slice of
preallocated output arrays, so no locking is needed beyond the pool queue.
"""

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

# Points per task. Small enough to balance, large enough to amortise dispatch.
CHUNK_SIZE = 256


def resolve_workers(num_workers: Optional[int]) -> int:
    if num_workers is None:
        return os.cpu_count() or 1
    return max(1, int(num_workers))


def parallel_for_chunks(count: int, worker: Callable[[int, int], None],
                        num_workers: Optional[int] = None, chunk_size: int = CHUNK_SIZE):
    """
    Run worker(start, stop) over [0, count) in chunks on a thread pool.

    Returns once every chunk has finished. The first worker exception is
    re-raised in the caller.
    """
    if count <= 0:
        return
    num_workers = resolve_workers(num_workers)
    ranges = [(start, min(start + chunk_size, count)) for start in range(0, count, chunk_size)]

    if num_workers == 1 or len(ranges) == 1:
        for start, stop in ranges:
            worker(start, stop)
        return

    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        futures = [executor.submit(worker, start, stop) for start, stop in ranges]
        for future in as_completed(futures):
            future.result()
