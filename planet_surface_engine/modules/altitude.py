from __future__ import annotations

import logging

import numpy as np

from ..errors import InvalidInput
from ..models import AltitudeRules
from .plates.state import PlatePointGrid

logger = logging.getLogger(__name__)

COLLISION_GAIN = 10


def collision_uplift(buildup: np.ndarray, recency: np.ndarray, current_time: int) -> np.ndarray:
    """Uplift in whole units: the product is floor-divided by the clock."""
    return (COLLISION_GAIN * buildup.astype(np.int64) * (recency.astype(np.int64) + 1)) // int(current_time)


def synthesize_altitude(
    points: PlatePointGrid,
    rules: AltitudeRules,
    rng: np.random.Generator,
) -> np.ndarray:
    """Height field: zero on oceanic crust, base + jitter + collision uplift on continents.

    One uniform draw per cell in raster order, whether or not the cell is continental.
    """
    expected = (rules.grid_width, rules.gridHeight)
    if points.shape != expected:
        raise InvalidInput(f"plate grid shape {points.shape} does not match rules grid {expected}")

    jitter = rng.random(expected)
    height = (
        rules.baseHeight
        + rules.jitter * jitter
        + collision_uplift(points.continental_buildup, points.continental_recency, rules.currentTime)
        + collision_uplift(points.oceanic_buildup, points.oceanic_recency, rules.currentTime)
    )
    height = np.where(points.is_continental, height, 0.0)
    logger.info(
        f"altitude synthesized: {int(points.is_continental.sum())} continental cells, "
        f"max height {float(height.max()):.1f}"
    )
    return height
