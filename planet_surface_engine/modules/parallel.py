from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Sequence, TypeVar

ResultT = TypeVar("ResultT")


def column_bands(width: int, band_count: int) -> list[tuple[int, int]]:
    """Split [0, width) into at most `band_count` contiguous half-open ranges."""
    band_count = max(1, min(band_count, width))
    base, extra = divmod(width, band_count)
    bands: list[tuple[int, int]] = []
    start = 0
    for idx in range(band_count):
        end = start + base + (1 if idx < extra else 0)
        bands.append((start, end))
        start = end
    return bands


def run_bands(
    fn: Callable[[int, int], ResultT],
    bands: Sequence[tuple[int, int]],
    workers: int,
) -> list[ResultT]:
    """Run `fn(start, end)` for every band and wait for all of them.

    Results come back in band order; the first task error is re-raised.
    """
    if workers <= 1 or len(bands) <= 1:
        return [fn(start, end) for start, end in bands]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pse-band") as pool:
        futures = [pool.submit(fn, start, end) for start, end in bands]
        return [future.result() for future in futures]
