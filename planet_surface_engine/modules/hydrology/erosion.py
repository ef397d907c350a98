from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import Callable, Iterable

import numpy as np

from ...errors import CoreInvariantViolation
from ...models import ErosionRules
from ..grid import GridCoordinate, SphericalGrid
from ..parallel import column_bands, run_bands
from ..validation import validate_height_map, validate_rainfall_map
from .rainfall import band_count

logger = logging.getLogger(__name__)

# Lakes may not be raised more than this far above the highest input cell.
LAKE_HEADROOM = 1.0


@dataclass
class ErosionResult:
    water: np.ndarray
    erosion: np.ndarray
    flow: np.ndarray
    contained: np.ndarray
    lakes: np.ndarray
    filled_height: np.ndarray
    raises: int = 0


class WaterRouter:
    """Steepest-descent routing with lake raising over a shared height field.

    Concurrent `drain` calls are safe as long as their cells (and the
    neighbours those cells route into) do not overlap.
    """

    def __init__(self, grid: SphericalGrid, height: np.ndarray, water: np.ndarray, rules: ErosionRules):
        self.grid = grid
        self.height = height.astype(np.float64).copy()
        self.ocean = height == 0
        self.contained = water.astype(np.float64).copy()
        self.flow = np.zeros(grid.shape, dtype=np.float64)
        self.lakes = np.zeros(grid.shape, dtype=bool)
        self.lake_threshold = rules.waterThreshold * grid.cos_phi
        self.ceiling = float(height.max()) + LAKE_HEADROOM
        land = ~self.ocean
        self.raise_budget = int(np.ceil(self.ceiling - self.height[land]).sum()) + int(land.sum())

    def lowest_neighbor(self, x: int, y: int) -> GridCoordinate | None:
        """Strictly lowest neighbour below (x, y); the first in neighbour order wins ties."""
        best: GridCoordinate | None = None
        best_height = self.height[x, y]
        for neighbor in self.grid.neighbors(GridCoordinate(x, y)):
            value = self.height[neighbor.x, neighbor.y]
            if value < best_height:
                best = neighbor
                best_height = value
        return best

    def _raise_lake(self, x: int, y: int) -> bool:
        floor = min(self.height[n.x, n.y] for n in self.grid.neighbors(GridCoordinate(x, y)))
        level = floor + 1.0
        if level > self.ceiling:
            self.lakes[x, y] = True
            return False
        self.height[x, y] = level
        self.lakes[x, y] = True
        return True

    def drain(self, cells: Iterable[tuple[int, int]], may_enqueue: Callable[[int, int], bool]) -> int:
        heap = [(-self.height[x, y], x, y) for x, y in cells]
        heapq.heapify(heap)
        raises = 0
        while heap:
            neg_height, x, y = heapq.heappop(heap)
            if -neg_height != self.height[x, y]:
                continue
            water = self.contained[x, y]
            if water <= 0.0:
                continue
            target = self.lowest_neighbor(x, y)
            if target is None:
                if water > self.lake_threshold[y] and self._raise_lake(x, y):
                    raises += 1
                    if raises > self.raise_budget:
                        raise CoreInvariantViolation(f"lake filling exceeded {self.raise_budget} raises")
                    heapq.heappush(heap, (-self.height[x, y], x, y))
                continue
            self.contained[x, y] = 0.0
            self.flow[x, y] += water
            self.contained[target.x, target.y] += water
            if may_enqueue(target.x, target.y):
                heapq.heappush(heap, (-self.height[target.x, target.y], target.x, target.y))
        return raises


def route_water(
    grid: SphericalGrid,
    height: np.ndarray,
    water: np.ndarray,
    rules: ErosionRules,
    workers: int = 1,
) -> tuple[WaterRouter, int]:
    router = WaterRouter(grid, height, water, rules)
    last_row = grid.height - 2
    bands = column_bands(grid.width, band_count(workers, grid.width))

    def drain_band(start: int, end: int) -> int:
        def interior(x: int, y: int) -> bool:
            return start < x < end - 1 and 1 <= y <= last_row and not router.ocean[x, y]

        cells = [(x, y) for x in range(start + 1, end - 1) for y in range(1, last_row + 1) if not router.ocean[x, y]]
        return router.drain(cells, interior)

    raises = sum(run_bands(drain_band, bands, workers))

    # Band edges and pole rows were sinks above; settle them and everything downstream.
    pending = [(x, y) for x, y in zip(*np.nonzero((router.contained > 0) & ~router.ocean))]
    raises += router.drain(pending, lambda x, y: not router.ocean[x, y])
    logger.debug(f"water routed over {len(bands)} bands, {raises} lake raises")
    return router, raises


def erode(
    grid: SphericalGrid,
    height: np.ndarray,
    rainfall: np.ndarray,
    rules: ErosionRules,
    workers: int = 1,
) -> ErosionResult:
    validate_height_map(height, rules)
    validate_rainfall_map(rainfall, rules)
    height = np.asarray(height, dtype=np.float64)
    water = np.asarray(rainfall, dtype=np.float64).sum(axis=0)

    router, raises = route_water(grid, height, water, rules, workers)
    area = grid.cos_phi[None, :]
    is_water = (
        (height == 0)
        | (router.flow > rules.riverThreshold * area)
        | (router.contained > rules.waterThreshold * area)
        | router.lakes
    )
    erosion = router.flow * rules.erosionRate
    logger.info(
        f"erosion map built: {int(is_water.sum())} water cells, {int(router.lakes.sum())} lake cells, "
        f"max flow {float(router.flow.max()) if router.flow.size else 0.0:.1f}"
    )
    return ErosionResult(
        water=is_water,
        erosion=erosion,
        flow=router.flow,
        contained=router.contained,
        lakes=router.lakes,
        filled_height=router.height,
        raises=raises,
    )

