from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Sequence

import numpy as np

from ...errors import InvalidInput
from ...models import MoveRules, PlateKinematics
from ..grid import GridCoordinate, SphericalGrid
from ..validation import check_coverage
from .state import BoundaryHistory, CrustOrigin, Plate, PlatePoint, PlatePointGrid, weighted_history
from .wavefront import expand_wavefront

logger = logging.getLogger(__name__)

_MIN_WEIGHT_DISTANCE = 1e-12

Claims = dict[GridCoordinate, dict[int, list[PlatePoint]]]


@dataclass
class MoveResult:
    points: PlatePointGrid
    final_time: int
    subductions: int = 0
    rift_cells: int = 0
    bonus_cells: int = 0


def draw_kinematics(rng: np.random.Generator, grid: SphericalGrid, plate_count: int) -> list[PlateKinematics]:
    """Random per-plate rotation axes with speeds of roughly one grid row per time unit."""
    kinematics: list[PlateKinematics] = []
    for _ in range(plate_count):
        direction = (float(rng.uniform(0.0, 2.0 * math.pi)), float(rng.uniform(0.0, math.pi)))
        speed = float(rng.uniform(0.5, 1.5)) * grid.d_phi
        kinematics.append(PlateKinematics(direction=direction, speed=speed))
    return kinematics


class PlateMover:
    def __init__(self, grid: SphericalGrid, rules: MoveRules, plates: list[Plate]):
        self.grid = grid
        self.rules = rules
        self.plates = plates
        self.clock = rules.currentTime
        self.subductions = 0
        self.rift_cells = 0
        self.bonus_cells = 0
        self._equator = (grid.height - 1) / 2.0
        self._reindex()

    def _reindex(self) -> None:
        self.owner = np.full(self.grid.shape, -1, dtype=np.int64)
        self.previous: dict[GridCoordinate, PlatePoint] = {}
        for plate in self.plates:
            for point in plate.points:
                self.owner[point.position.x, point.position.y] = plate.plate_id
                self.previous[point.position] = point

    # interlacing

    def _surrounding(self, center: GridCoordinate) -> list[GridCoordinate]:
        cells = [center]
        for dy in (-1, 0, 1):
            y = center.y + dy
            if y < 0 or y >= self.grid.height:
                continue
            for dx in (-1, 0, 1):
                cell = GridCoordinate((center.x + dx) % self.grid.width, y)
                if cell not in cells:
                    cells.append(cell)
        return cells

    def _unwrapped_x(self, anchor: int, x: int) -> int:
        return ((x - anchor + self.grid.half_width) % self.grid.width) - self.grid.half_width

    def interlace(self, cell: GridCoordinate, plate_id: int, inverse_angle: tuple[float, float, float]) -> PlatePoint | None:
        """Synthesize a point for `cell` from the plate's previous points around its back-rotated position."""
        xf, yf = self.grid.grid_transform(cell, inverse_angle)
        center = self.grid.round_coordinate(xf, yf)
        donors = [
            self.previous[candidate]
            for candidate in self._surrounding(center)
            if self.owner[candidate.x, candidate.y] == plate_id
        ]
        if not donors:
            return None

        weights = np.array(
            [1.0 / max(self.grid.distance_to(donor.position, xf, yf), _MIN_WEIGHT_DISTANCE) for donor in donors]
        )
        total = float(weights.sum())

        anchor = donors[0].birthplace.x
        offsets = np.array([self._unwrapped_x(anchor, donor.birthplace.x) for donor in donors], dtype=np.float64)
        birth_x = (anchor + round(float(offsets @ weights) / total)) % self.grid.width
        birth_y = round(float(np.array([donor.birthplace.y for donor in donors]) @ weights) / total)
        birth_y = min(max(birth_y, 0), self.grid.height - 1)
        birth_date = round(float(np.array([donor.birth_date for donor in donors]) @ weights) / total)

        continental_weight = float(sum(w for w, donor in zip(weights, donors) if donor.is_continental))
        seed_weight = float(sum(w for w, donor in zip(weights, donors) if donor.origin == CrustOrigin.seed))
        return PlatePoint(
            position=cell,
            birthplace=GridCoordinate(birth_x, birth_y),
            birth_date=birth_date,
            plate_id=plate_id,
            is_continental=continental_weight >= 0.5 * total,
            origin=CrustOrigin.seed if seed_weight >= 0.5 * total else CrustOrigin.rift,
            history=weighted_history([donor.history for donor in donors], weights),
        )

    # forward pass

    def _row_gap(self, x_from: int, x_to: int, y: int) -> list[GridCoordinate]:
        delta = (x_to - x_from) % self.grid.width
        if delta == 0:
            return []
        step = 1
        if delta > self.grid.half_width:
            step = -1
            delta = self.grid.width - delta
        return [GridCoordinate((x_from + step * k) % self.grid.width, y) for k in range(1, delta)]

    def _fill_fold(
        self,
        plate: Plate,
        point: PlatePoint,
        dest: GridCoordinate,
        field: tuple[np.ndarray, np.ndarray],
        inverse_angle: tuple[float, float, float],
        claims: Claims,
    ) -> None:
        fx, fy = field
        _, _, left, right = self.grid.neighbors(point.position)
        for neighbor in (left, right):
            if self.owner[neighbor.x, neighbor.y] != plate.plate_id:
                continue
            if int(fy[neighbor.x, neighbor.y]) != dest.y:
                continue
            for cell in self._row_gap(dest.x, int(fx[neighbor.x, neighbor.y]), dest.y):
                if plate.plate_id in claims.get(cell, {}):
                    continue
                bonus = self.interlace(cell, plate.plate_id, inverse_angle)
                if bonus is not None:
                    _claim(claims, bonus)
                    self.bonus_cells += 1

    def _forward(self, claims: Claims) -> None:
        time_step = self.rules.timeStep
        for plate in self.plates:
            field = self.grid.rotate_field(plate.angle(time_step))
            inverse_angle = plate.angle(time_step, reverse=True)
            fx, fy = field
            for point in plate.points:
                x, y = point.position.x, point.position.y
                dest = GridCoordinate(int(fx[x, y]), int(fy[x, y]))
                _claim(claims, replace(point, position=dest))
                if dest.y == y or abs(dest.y - self._equator) < abs(y - self._equator):
                    continue
                self._fill_fold(plate, point, dest, field, inverse_angle, claims)

    def _reverse(self, claims: Claims) -> None:
        time_step = self.rules.timeStep
        back_fields = [self.grid.rotate_field(plate.angle(time_step, reverse=True)) for plate in self.plates]
        for x in range(self.grid.width):
            for y in range(self.grid.height):
                cell = GridCoordinate(x, y)
                if cell in claims:
                    continue
                for plate, (bx, by) in zip(self.plates, back_fields):
                    if self.owner[bx[x, y], by[x, y]] != plate.plate_id:
                        continue
                    recovered = self.interlace(cell, plate.plate_id, plate.angle(time_step, reverse=True))
                    if recovered is not None:
                        _claim(claims, recovered)

    # overlap resolution

    def merge_same_plate(self, points: Sequence[PlatePoint]) -> PlatePoint:
        if len(points) == 1:
            return points[0]
        continental = [point for point in points if point.is_continental]
        basis = continental or list(points)
        count = len(basis)
        anchor = basis[0].birthplace.x
        offset = sum(self._unwrapped_x(anchor, point.birthplace.x) for point in basis)
        history = BoundaryHistory()
        for point in basis:
            history = history + point.history
        return PlatePoint(
            position=points[0].position,
            birthplace=GridCoordinate(
                (anchor + round(offset / count)) % self.grid.width,
                round(sum(point.birthplace.y for point in basis) / count),
            ),
            birth_date=round(sum(point.birth_date for point in basis) / count),
            plate_id=points[0].plate_id,
            is_continental=bool(continental),
            origin=CrustOrigin.seed if any(p.origin == CrustOrigin.seed for p in points) else CrustOrigin.rift,
            history=history.averaged(count),
        )

    def resolve_cell(self, by_plate: dict[int, list[PlatePoint]]) -> PlatePoint:
        contenders = [self.merge_same_plate(by_plate[plate_id]) for plate_id in sorted(by_plate)]
        survivor = next((point for point in contenders if point.is_continental), contenders[0])
        if len(contenders) == 1:
            return survivor
        history = survivor.history
        for loser in contenders:
            if loser is survivor:
                continue
            history = history.record_subduction(
                continental=loser.is_continental,
                time=self.clock,
                max_buildup=self.rules.maxBuildup,
            )
            self.subductions += 1
        return replace(survivor, history=history)

    # step driver

    def step(self) -> None:
        claims: Claims = {}
        self._forward(claims)
        self._reverse(claims)

        resolved = sorted(
            (self.resolve_cell(by_plate) for by_plate in claims.values()),
            key=lambda point: (point.plate_id, point.position),
        )
        owner = np.full(self.grid.shape, -1, dtype=np.int64)
        seeds: list[list[GridCoordinate]] = [[] for _ in self.plates]
        for point in resolved:
            owner[point.position.x, point.position.y] = point.plate_id
            seeds[point.plate_id].append(point.position)
        grown = expand_wavefront(self.grid, owner, seeds)
        check_coverage(owner, len(self.plates))
        rifts = [PlatePoint.fresh(cell, plate_id, self.clock, CrustOrigin.rift) for cell, plate_id in grown]
        self.rift_cells += len(rifts)

        state = PlatePointGrid.from_points(self.grid.shape, resolved + rifts)
        for plate in self.plates:
            plate.points = []
        for x in range(self.grid.width):
            for y in range(self.grid.height):
                self.plates[int(state.plate_id[x, y])].points.append(state.point_at(x, y))
        self._reindex()
        self.clock += self.rules.timeStep

    def finalize(self) -> None:
        """Crust that survived from generation becomes continental."""
        for plate in self.plates:
            plate.points = [
                replace(point, is_continental=True) if point.origin == CrustOrigin.seed else point
                for point in plate.points
            ]
        self._reindex()

    def run(self) -> MoveResult:
        for step in range(self.rules.numberSteps):
            self.step()
            logger.debug(
                f"move step {step + 1}/{self.rules.numberSteps} done at t={self.clock} "
                f"({self.subductions} subductions, {self.rift_cells} rift cells so far)"
            )
        self.finalize()
        return MoveResult(
            points=PlatePointGrid.from_plates(self.grid.shape, self.plates),
            final_time=self.clock,
            subductions=self.subductions,
            rift_cells=self.rift_cells,
            bonus_cells=self.bonus_cells,
        )


def _claim(claims: Claims, point: PlatePoint) -> None:
    claims.setdefault(point.position, {}).setdefault(point.plate_id, []).append(point)


def move_plates(
    grid: SphericalGrid,
    points: PlatePointGrid,
    rules: MoveRules,
    kinematics: Sequence[PlateKinematics],
) -> MoveResult:
    if points.shape != grid.shape:
        raise InvalidInput(f"plate grid shape {points.shape} does not match grid {grid.shape}")
    if len(kinematics) != rules.plateCount:
        raise InvalidInput(f"expected {rules.plateCount} plate kinematics entries, got {len(kinematics)}")
    plates = points.to_plates(rules.plateCount, kinematics)
    mover = PlateMover(grid, rules, plates)
    result = mover.run()
    logger.info(
        f"moved {rules.plateCount} plates for {rules.numberSteps} steps: "
        f"{result.subductions} subductions, {result.rift_cells} rift cells"
    )
    return result
