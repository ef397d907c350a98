from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from ...models import RainfallRules
from ..grid import SphericalGrid
from ..parallel import column_bands, run_bands
from ..validation import validate_height_map

logger = logging.getLogger(__name__)

SMOOTHING_PASSES = 10
ADVECTION_SUBSTEPS = 10

# Pressure belt amplitudes and half-widths (radians).
ITC_DEPTH = 1.0
ITC_WIDTH = math.radians(10.0)
SUBTROPICAL_HIGH = 0.8
SUBTROPICAL_OFFSET = math.radians(30.0)
SUBPOLAR_LOW = 0.6
SUBPOLAR_LATITUDE = math.radians(60.0)
BELT_WIDTH = math.radians(12.0)
LAND_CONTRAST = 0.5


@dataclass
class WindField:
    """Share of each cell's moisture carried to (above, below, left, right) per substep."""

    fractions: np.ndarray

    @property
    def total(self) -> np.ndarray:
        return self.fractions.sum(axis=0)


def band_count(workers: int, width: int) -> int:
    if workers <= 1 or width < 16:
        return 1
    return min(2 * workers, width // 8)


def itc_latitudes(grid: SphericalGrid, land: np.ndarray, declination: float, rules: RainfallRules) -> np.ndarray:
    """Convergence latitude per longitude, walking from the equator toward the summer hemisphere."""
    target = abs(declination) / grid.d_phi
    if target == 0.0:
        return np.zeros(grid.width)
    weights = np.where(land, rules.landWeight, rules.oceanWeight)
    if declination > 0:
        walk = weights[:, grid.height // 2 :]
    else:
        walk = weights[:, (grid.height - 1) // 2 :: -1]
    score = np.cumsum(walk, axis=1)
    reached = score >= target
    rows = np.where(reached.any(axis=1), reached.argmax(axis=1) + 1, walk.shape[1])
    return math.copysign(1.0, declination) * np.minimum(rows * grid.d_phi, 0.5 * math.pi)


def _belt(offset: np.ndarray, width: float) -> np.ndarray:
    return np.exp(-((offset / width) ** 2))


def base_pressure(grid: SphericalGrid, land: np.ndarray, itc: np.ndarray, phase: float) -> np.ndarray:
    phi = grid.phi[None, :]
    relative = phi - itc[:, None]
    pressure = -ITC_DEPTH * _belt(relative, ITC_WIDTH)
    pressure = pressure + SUBTROPICAL_HIGH * (
        _belt(relative - SUBTROPICAL_OFFSET, BELT_WIDTH) + _belt(relative + SUBTROPICAL_OFFSET, BELT_WIDTH)
    )
    pressure = pressure - SUBPOLAR_LOW * (
        _belt(phi - SUBPOLAR_LATITUDE, BELT_WIDTH) + _belt(phi + SUBPOLAR_LATITUDE, BELT_WIDTH)
    )
    # Summer land runs low, winter land runs high.
    seasonal = math.sin(phase) * np.sign(phi)
    return pressure - LAND_CONTRAST * land.astype(np.float64) * seasonal


def smooth_pressure(grid: SphericalGrid, pressure: np.ndarray, workers: int = 1) -> np.ndarray:
    nx, ny = grid.neighbor_arrays()
    bands = column_bands(grid.width, band_count(workers, grid.width))
    current = pressure.copy()
    for _ in range(SMOOTHING_PASSES):
        source = current
        target = np.empty_like(source)

        def smooth_band(start: int, end: int) -> None:
            neighbors = source[nx[:, start:end], ny[:, start:end]].sum(axis=0)
            target[start:end] = (4.0 * source[start:end] + neighbors) / 8.0

        run_bands(smooth_band, bands, workers)
        current = target
    return current


def wind_transport(grid: SphericalGrid, pressure: np.ndarray, rules: RainfallRules, workers: int = 1) -> WindField:
    nx, ny = grid.neighbor_arrays()
    bands = column_bands(grid.width, band_count(workers, grid.width))
    fractions = np.zeros((4, grid.width, grid.height), dtype=np.float64)
    north = grid.phi > 0

    def wind_band(start: int, end: int) -> None:
        around = pressure[nx[:, start:end], ny[:, start:end]]
        # Wind runs down the gradient; y + 1 (below) is north.
        wind_x = -(around[3] - around[2]) / 2.0
        wind_y = -(around[1] - around[0]) / 2.0
        strength = np.hypot(wind_x, wind_y)
        heading = np.arctan2(wind_y, wind_x)
        heading = np.where(north[None, :], heading - rules.deflectionAngle, heading + rules.deflectionAngle)
        total = np.minimum(rules.maxTransport, rules.windScale * strength)
        along_x = np.abs(np.cos(heading))
        along_y = np.abs(np.sin(heading))
        norm = np.maximum(along_x + along_y, 1e-12)
        share_x = total * along_x / norm
        share_y = total * along_y / norm
        sin_h = np.sin(heading)
        cos_h = np.cos(heading)
        fractions[0, start:end] = np.where(sin_h < 0, share_y, 0.0)
        fractions[1, start:end] = np.where(sin_h > 0, share_y, 0.0)
        fractions[2, start:end] = np.where(cos_h < 0, share_x, 0.0)
        fractions[3, start:end] = np.where(cos_h > 0, share_x, 0.0)

    run_bands(wind_band, bands, workers)
    return WindField(fractions=fractions)


def deposition_rate(height: np.ndarray, rules: RainfallRules) -> np.ndarray:
    relief = float(height.max())
    land_fraction = np.clip(height / relief, 0.0, 1.0) if relief > 0 else np.zeros_like(height)
    return np.clip(rules.baseDeposition + rules.landDeposition * land_fraction, 0.0, 1.0)


def advect_substep(
    grid: SphericalGrid,
    moisture: np.ndarray,
    deposit_rate: np.ndarray,
    wind: WindField,
) -> tuple[np.ndarray, np.ndarray]:
    """Rain out part of the moisture and carry the rest downwind.

    Returns (next moisture, rainfall deposited this substep).
    """
    nx, ny = grid.neighbor_arrays()
    deposit = moisture * deposit_rate
    remainder = moisture - deposit
    outflow = remainder[None, :, :] * wind.fractions
    following = remainder - outflow.sum(axis=0)
    for direction in range(4):
        np.add.at(following, (nx[direction], ny[direction]), outflow[direction])
    return np.maximum(following, 0.0), deposit


def seasonal_rainfall(
    grid: SphericalGrid,
    height: np.ndarray,
    rules: RainfallRules,
    season: int,
    workers: int = 1,
) -> np.ndarray:
    land = height > 0
    phase = 2.0 * math.pi * season / rules.numberSeasons
    declination = rules.axisTilt * math.sin(phase)

    itc = itc_latitudes(grid, land, declination, rules)
    pressure = smooth_pressure(grid, base_pressure(grid, land, itc, phase), workers)
    wind = wind_transport(grid, pressure, rules, workers)
    deposit_rate = deposition_rate(height, rules)

    evaporation = np.where(land, 0.0, rules.evaporationRate)
    moisture = np.zeros(grid.shape, dtype=np.float64)
    rainfall = np.zeros(grid.shape, dtype=np.float64)
    for _ in range(ADVECTION_SUBSTEPS):
        moisture = moisture + evaporation
        moisture, deposit = advect_substep(grid, moisture, deposit_rate, wind)
        rainfall += deposit
    return rainfall


def generate_rainfall(
    grid: SphericalGrid,
    height: np.ndarray,
    rules: RainfallRules,
    workers: int = 1,
) -> np.ndarray:
    """Rainfall per season, shaped (numberSeasons, width, height)."""
    validate_height_map(height, rules)
    seasons = np.stack(
        [seasonal_rainfall(grid, height, rules, season, workers) for season in range(rules.numberSeasons)]
    )
    logger.info(f"rainfall generated for {rules.numberSeasons} seasons, total {float(seasons.sum()):.1f}")
    return seasons
