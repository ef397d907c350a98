from __future__ import annotations

import numpy as np
import pytest

from planet_surface_engine.errors import CoreInvariantViolation
from planet_surface_engine.models import GenerateRules
from planet_surface_engine.modules.grid import GridCoordinate, SphericalGrid
from planet_surface_engine.modules.plates.generator import generate_plates, seed_plates, threshold_mask
from planet_surface_engine.modules.plates.state import CrustOrigin
from planet_surface_engine.modules.plates.wavefront import expand_wavefront


class ScriptedRandom:
    """Stands in for numpy's Generator: hands out prepared uniform fields in call order."""

    def __init__(self, *fields: np.ndarray):
        self._fields = list(fields)

    def random(self, size):
        field = self._fields.pop(0)
        assert field.shape == tuple(size)
        return field.copy()


def _small_rules(**overrides) -> GenerateRules:
    payload = {
        "plateCount": 2,
        "gridHalfWidth": 2,
        "gridHeight": 4,
        "currentTime": 5,
        "cutOff": 0,
        "radius": [0.1],
        "magnitude": [1.0],
        "concentration": [0.5],
    }
    payload.update(overrides)
    return GenerateRules(**payload)


def _hotspots(shape, cells) -> np.ndarray:
    field = np.zeros(shape)
    for x, y in cells:
        field[x, y] = 0.999
    return field


def test_recorded_assignment_on_small_grid():
    rules = _small_rules()
    grid = SphericalGrid.from_rules(rules)
    rng = ScriptedRandom(_hotspots(grid.shape, [(0, 0), (0, 1), (2, 2), (3, 2), (2, 3)]))

    result = generate_plates(grid, rules, rng)

    assert result.seeds[0] == [GridCoordinate(0, 0), GridCoordinate(0, 1)]
    assert result.seeds[1] == [GridCoordinate(2, 2), GridCoordinate(3, 2), GridCoordinate(2, 3)]
    expected = np.array(
        [
            [0, 0, 0, 1],
            [0, 0, 1, 1],
            [0, 1, 1, 1],
            [0, 0, 1, 1],
        ]
    )
    assert np.array_equal(result.points.plate_id, expected)
    assert result.points.plate_areas(2) == [8, 8]


def test_generated_points_are_fresh_seed_crust():
    rules = _small_rules()
    grid = SphericalGrid.from_rules(rules)
    rng = ScriptedRandom(_hotspots(grid.shape, [(0, 0), (0, 1), (2, 2), (3, 2), (2, 3)]))

    points = generate_plates(grid, rules, rng).points

    assert (points.birth_date == 5).all()
    assert points.is_seed.all()
    assert not points.is_continental.any()
    sample = points.point_at(3, 1)
    assert sample.birthplace == GridCoordinate(3, 1)
    assert sample.origin == CrustOrigin.seed
    assert sample.history.as_tuple() == (0, 0, 0, 0)


def test_generation_with_real_rng_covers_grid_and_is_deterministic():
    rules = GenerateRules(
        plateCount=5,
        gridHalfWidth=12,
        gridHeight=12,
        cutOff=200,
        radius=[0.4, 0.2],
        magnitude=[1.0, 0.5],
        concentration=[0.97, 0.9],
    )
    grid = SphericalGrid.from_rules(rules)

    first = generate_plates(grid, rules, np.random.default_rng(7), workers=1)
    second = generate_plates(grid, rules, np.random.default_rng(7), workers=4)

    assert (first.points.plate_id >= 0).all()
    assert sorted(np.unique(first.points.plate_id).tolist()) == [0, 1, 2, 3, 4]
    assert sum(first.points.plate_areas(5)) == grid.size
    assert np.array_equal(first.points.plate_id, second.points.plate_id)
    assert np.allclose(first.magnitude, second.magnitude)


def test_threshold_uses_ascending_order_statistic():
    magnitude = np.array([[0.0, 3.0], [2.0, 1.0]])
    assert threshold_mask(magnitude, 0).tolist() == [[False, True], [True, True]]
    assert threshold_mask(magnitude, 2).tolist() == [[False, True], [False, False]]


def test_larger_region_replaces_smallest_plate():
    grid = SphericalGrid(4, 4)
    active = np.zeros(grid.shape, dtype=bool)
    active[0, 1] = True
    active[2, 1] = True
    active[2, 2] = True
    active[5, 1] = True
    active[5, 2] = True
    active[6, 1] = True

    plates = seed_plates(grid, active, 2)

    assert len(plates[0]) == 3
    assert len(plates[1]) == 2
    assert GridCoordinate(0, 1) not in plates[0] + plates[1]


def test_too_few_regions_is_an_invariant_violation():
    grid = SphericalGrid(2, 4)
    active = np.zeros(grid.shape, dtype=bool)
    active[1, 1] = True
    with pytest.raises(CoreInvariantViolation):
        seed_plates(grid, active, 2)


def test_wavefront_first_plate_to_queue_wins():
    grid = SphericalGrid(2, 1)
    owner = np.full(grid.shape, -1, dtype=np.int64)
    owner[0, 0] = 0
    owner[2, 0] = 1

    claimed = expand_wavefront(grid, owner, [[GridCoordinate(0, 0)], [GridCoordinate(2, 0)]])

    # Cells 1 and 3 neighbour both seeds; plate 0 queues them first.
    assert owner.ravel().tolist() == [0, 0, 1, 0]
    assert claimed == [(GridCoordinate(3, 0), 0), (GridCoordinate(1, 0), 0)]
