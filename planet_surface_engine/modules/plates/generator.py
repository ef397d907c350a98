from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from ...errors import CoreInvariantViolation
from ...models import GenerateRules
from ..grid import GridCoordinate, SphericalGrid
from ..parallel import run_bands
from .state import CrustOrigin, PlatePoint, PlatePointGrid
from .wavefront import expand_wavefront

logger = logging.getLogger(__name__)

# Centers per fork-join task. Fixed so the summation order does not depend on worker count.
CENTER_BATCH = 256


@dataclass
class GenerationResult:
    points: PlatePointGrid
    magnitude: np.ndarray
    active: np.ndarray
    seeds: list[list[GridCoordinate]]


def _stamp(grid: SphericalGrid, field: np.ndarray, center: GridCoordinate, radius: float, weight: float) -> None:
    x_min, x_max, y_min, y_max = grid.range_bounds(center, radius)
    if y_max <= y_min:
        return
    xs = np.arange(x_min, x_max) % grid.width
    ys = np.arange(y_min, y_max)
    inside = grid.distance_field(center, xs, ys) < radius * radius
    field[np.ix_(xs, ys)] += weight * inside


def accumulate_noise(
    grid: SphericalGrid,
    rules: GenerateRules,
    rng: np.random.Generator,
    workers: int = 1,
) -> np.ndarray:
    magnitude = np.zeros(grid.shape, dtype=np.float64)
    for octave, (radius, weight, concentration) in enumerate(zip(rules.radius, rules.magnitude, rules.concentration)):
        uniforms = rng.random(grid.shape)
        centers = [GridCoordinate(int(x), int(y)) for x, y in np.argwhere(grid.momentum_mask(uniforms, concentration))]

        def octave_field(start: int, end: int) -> np.ndarray:
            field = np.zeros(grid.shape, dtype=np.float64)
            for center in centers[start:end]:
                _stamp(grid, field, center, radius, weight)
            return field

        batches = [(start, min(start + CENTER_BATCH, len(centers))) for start in range(0, len(centers), CENTER_BATCH)]
        for field in run_bands(octave_field, batches, workers):
            magnitude += field
        logger.debug(f"noise octave {octave}: {len(centers)} centers, radius {radius}")
    return magnitude


def threshold_mask(magnitude: np.ndarray, cut_off: int) -> np.ndarray:
    cut_value = np.sort(magnitude, axis=None)[cut_off]
    return magnitude > cut_value


def _flood_fill(grid: SphericalGrid, remaining: np.ndarray, start: GridCoordinate) -> list[GridCoordinate]:
    stack = [start]
    remaining[start.x, start.y] = False
    region: list[GridCoordinate] = []
    while stack:
        cell = stack.pop()
        region.append(cell)
        for neighbor in grid.neighbors(cell):
            if remaining[neighbor.x, neighbor.y]:
                remaining[neighbor.x, neighbor.y] = False
                stack.append(neighbor)
    return region


def seed_plates(grid: SphericalGrid, active: np.ndarray, plate_count: int) -> list[list[GridCoordinate]]:
    """Keep the `plate_count` largest connected active regions found in raster order."""
    remaining = active.copy()
    plates: list[list[GridCoordinate]] = [[] for _ in range(plate_count)]
    discarded = 0
    for x in range(grid.width):
        for y in range(grid.height):
            if not remaining[x, y]:
                continue
            region = _flood_fill(grid, remaining, GridCoordinate(x, y))
            slot = next((idx for idx, cells in enumerate(plates) if not cells), None)
            if slot is None:
                slot = min(range(plate_count), key=lambda idx: len(plates[idx]))
                # Either this region or the one it displaces is dropped.
                discarded += 1
                if len(region) <= len(plates[slot]):
                    continue
            plates[slot] = region

    missing = sum(1 for cells in plates if not cells)
    if missing:
        raise CoreInvariantViolation(
            f"noise field produced only {plate_count - missing} seed regions for {plate_count} plates; "
            "lower cutOff or widen the noise octaves"
        )
    logger.debug(f"seeded {plate_count} plates, {discarded} regions discarded")
    return plates


def generate_plates(
    grid: SphericalGrid,
    rules: GenerateRules,
    rng: np.random.Generator,
    workers: int = 1,
) -> GenerationResult:
    magnitude = accumulate_noise(grid, rules, rng, workers)
    active = threshold_mask(magnitude, rules.cutOff)
    seeds = seed_plates(grid, active, rules.plateCount)

    owner = np.full(grid.shape, -1, dtype=np.int64)
    for plate_id, cells in enumerate(seeds):
        for cell in cells:
            owner[cell.x, cell.y] = plate_id
    grown = expand_wavefront(grid, owner, seeds)

    points = [
        PlatePoint.fresh(cell, plate_id, rules.currentTime, CrustOrigin.seed)
        for plate_id, cells in enumerate(seeds)
        for cell in cells
    ]
    points.extend(PlatePoint.fresh(cell, plate_id, rules.currentTime, CrustOrigin.seed) for cell, plate_id in grown)
    logger.info(
        f"generated {rules.plateCount} plates on a {grid.width}x{grid.height} grid "
        f"({int(active.sum())} active cells)"
    )
    return GenerationResult(
        points=PlatePointGrid.from_points(grid.shape, points),
        magnitude=magnitude,
        active=active,
        seeds=seeds,
    )
