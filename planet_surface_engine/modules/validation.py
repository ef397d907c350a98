from __future__ import annotations

import numpy as np

from ..errors import CoreInvariantViolation, InvalidInput
from ..models import ErosionRules, GeneralRules
from .plates.state import PlatePointGrid


def _raise_for_issues(subject: str, issues: list[str]) -> None:
    if issues:
        raise InvalidInput(f"{subject}: " + "; ".join(issues))


def grid_shape(rules: GeneralRules) -> tuple[int, int]:
    return (rules.grid_width, rules.gridHeight)


def validate_height_map(height: np.ndarray, rules: GeneralRules) -> None:
    issues: list[str] = []
    height = np.asarray(height)
    if height.shape != grid_shape(rules):
        issues.append(f"shape {height.shape} does not match grid {grid_shape(rules)}")
    elif not np.issubdtype(height.dtype, np.number):
        issues.append(f"dtype {height.dtype} is not numeric")
    elif not np.isfinite(height).all():
        issues.append("contains non-finite values")
    _raise_for_issues("height map", issues)


def validate_rainfall_map(rainfall: np.ndarray, rules: ErosionRules) -> None:
    issues: list[str] = []
    rainfall = np.asarray(rainfall)
    expected = (rules.numberSeasons, *grid_shape(rules))
    if rainfall.ndim != 3:
        issues.append(f"expected a 3D [season][x][y] array, got {rainfall.ndim} dimensions")
    elif rainfall.shape[0] != rules.numberSeasons:
        issues.append(f"holds {rainfall.shape[0]} seasons but rules expect {rules.numberSeasons}")
    elif rainfall.shape != expected:
        issues.append(f"shape {rainfall.shape} does not match {expected}")
    elif not np.isfinite(rainfall).all():
        issues.append("contains non-finite values")
    elif (rainfall < 0).any():
        issues.append("contains negative rainfall")
    _raise_for_issues("rainfall map", issues)


def validate_plate_grid(points: PlatePointGrid, rules: GeneralRules) -> None:
    issues: list[str] = []
    if points.shape != grid_shape(rules):
        issues.append(f"shape {points.shape} does not match grid {grid_shape(rules)}")
    else:
        ids = points.plate_id
        if (ids < 0).any() or (ids >= rules.plateCount).any():
            issues.append(f"plate ids must lie in [0, {rules.plateCount})")
        if (points.birth_y < 0).any() or (points.birth_y >= rules.gridHeight).any():
            issues.append("birthplace y outside the grid")
        if (points.birth_x < 0).any() or (points.birth_x >= rules.grid_width).any():
            issues.append("birthplace x outside the grid")
        for name, values in points.histories().items():
            if (values < 0).any():
                issues.append(f"{name} contains negative values")
    _raise_for_issues("plate grid", issues)


def check_coverage(owner: np.ndarray, plate_count: int) -> None:
    """Every cell must belong to exactly one plate in [0, plate_count)."""
    unowned = int((owner < 0).sum())
    unknown = int((owner >= plate_count).sum())
    if unowned or unknown:
        raise CoreInvariantViolation(f"plate coverage broken: {unowned} unowned cells, {unknown} cells with unknown plate ids")
