from __future__ import annotations

import numpy as np
import pytest

from planet_surface_engine.errors import InvalidInput
from planet_surface_engine.models import AltitudeRules
from planet_surface_engine.modules.altitude import COLLISION_GAIN, synthesize_altitude
from planet_surface_engine.modules.grid import GridCoordinate, SphericalGrid
from planet_surface_engine.modules.plates import BoundaryHistory, CrustOrigin, PlatePoint, PlatePointGrid


class FixedRandom:
    def __init__(self, value: float):
        self.value = value
        self.calls: list[tuple[int, ...]] = []

    def random(self, size):
        self.calls.append(tuple(size))
        return np.full(size, self.value)


def _rules(**overrides) -> AltitudeRules:
    payload = {"plateCount": 1, "gridHalfWidth": 1, "gridHeight": 2, "currentTime": 10, "baseHeight": 500.0, "jitter": 50.0}
    payload.update(overrides)
    return AltitudeRules(**payload)


def _points(histories: dict[tuple[int, int], BoundaryHistory], continental: set[tuple[int, int]]) -> PlatePointGrid:
    grid = SphericalGrid(1, 2)
    points = []
    for cell in grid.coordinates():
        key = (cell.x, cell.y)
        points.append(
            PlatePoint(
                position=cell,
                birthplace=cell,
                birth_date=1,
                plate_id=0,
                is_continental=key in continental,
                origin=CrustOrigin.seed,
                history=histories.get(key, BoundaryHistory()),
            )
        )
    return PlatePointGrid.from_points(grid.shape, points)


def test_continental_height_adds_jitter_and_collision_uplift():
    points = _points(
        {(0, 0): BoundaryHistory(2, 4, 0, 0), (1, 1): BoundaryHistory(0, 0, 3, 9)},
        continental={(0, 0), (1, 0), (1, 1)},
    )
    rng = FixedRandom(0.5)

    height = synthesize_altitude(points, _rules(), rng)

    assert rng.calls == [(2, 2)]
    assert height[0, 0] == pytest.approx(500.0 + 25.0 + COLLISION_GAIN * 2 * 5 // 10)
    assert height[1, 0] == pytest.approx(525.0)
    assert height[1, 1] == pytest.approx(525.0 + COLLISION_GAIN * 3 * 10 // 10)


def test_collision_uplift_is_floor_divided_by_the_clock():
    points = _points(
        {(0, 0): BoundaryHistory(1, 0, 0, 0), (1, 0): BoundaryHistory(0, 0, 2, 1)},
        continental={(0, 0), (1, 0)},
    )

    height = synthesize_altitude(points, _rules(currentTime=3, jitter=0.0), FixedRandom(0.7))

    assert height[0, 0] == 503.0
    assert height[1, 0] == 513.0


def test_oceanic_cells_are_sea_level_regardless_of_history():
    points = _points({(0, 1): BoundaryHistory(5, 5, 5, 5)}, continental={(1, 1)})

    height = synthesize_altitude(points, _rules(), FixedRandom(0.9))

    assert height[0, 1] == 0.0
    assert height[0, 0] == 0.0
    assert height[1, 1] > 0.0


def test_real_rng_heights_stay_within_jitter_band():
    points = _points({}, continental={(0, 0), (0, 1), (1, 0), (1, 1)})

    height = synthesize_altitude(points, _rules(), np.random.default_rng(3))

    assert ((height >= 500.0) & (height < 550.0)).all()


def test_shape_mismatch_is_rejected():
    points = _points({}, continental=set())
    with pytest.raises(InvalidInput):
        synthesize_altitude(points, _rules(gridHalfWidth=2), FixedRandom(0.1))


def test_point_lookup_matches_grid_record():
    points = _points({(1, 0): BoundaryHistory(1, 2, 3, 4)}, continental={(1, 0)})
    point = points.point_at(1, 0)
    assert point.position == GridCoordinate(1, 0)
    assert point.is_continental
    assert point.history.as_tuple() == (1, 2, 3, 4)
