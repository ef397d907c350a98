from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Sequence

import numpy as np

from ...errors import CoreInvariantViolation, InvalidInput
from ..grid import GridCoordinate


@dataclass(frozen=True)
class BoundaryHistory:
    continental_buildup: int = 0
    continental_recency: int = 0
    oceanic_buildup: int = 0
    oceanic_recency: int = 0

    def __add__(self, other: "BoundaryHistory") -> "BoundaryHistory":
        return BoundaryHistory(
            continental_buildup=self.continental_buildup + other.continental_buildup,
            continental_recency=self.continental_recency + other.continental_recency,
            oceanic_buildup=self.oceanic_buildup + other.oceanic_buildup,
            oceanic_recency=self.oceanic_recency + other.oceanic_recency,
        )

    def averaged(self, count: int) -> "BoundaryHistory":
        return BoundaryHistory(
            continental_buildup=round(self.continental_buildup / count),
            continental_recency=round(self.continental_recency / count),
            oceanic_buildup=round(self.oceanic_buildup / count),
            oceanic_recency=round(self.oceanic_recency / count),
        )

    def record_subduction(self, *, continental: bool, time: int, max_buildup: int = 0) -> "BoundaryHistory":
        if continental:
            buildup = self.continental_buildup + 1
            if max_buildup > 0:
                buildup = min(buildup, max_buildup)
            return replace(self, continental_buildup=buildup, continental_recency=time)
        buildup = self.oceanic_buildup + 1
        if max_buildup > 0:
            buildup = min(buildup, max_buildup)
        return replace(self, oceanic_buildup=buildup, oceanic_recency=time)

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.continental_buildup, self.continental_recency, self.oceanic_buildup, self.oceanic_recency)


def weighted_history(histories: Sequence[BoundaryHistory], weights: Sequence[float]) -> BoundaryHistory:
    total = float(sum(weights))
    values = np.array([history.as_tuple() for history in histories], dtype=np.float64)
    mean = (values * np.asarray(weights, dtype=np.float64)[:, None]).sum(axis=0) / total
    return BoundaryHistory(*(round(float(v)) for v in mean))


class CrustOrigin(str, Enum):
    seed = "seed"
    rift = "rift"


@dataclass(frozen=True)
class PlatePoint:
    position: GridCoordinate
    birthplace: GridCoordinate
    birth_date: int
    plate_id: int
    is_continental: bool = False
    origin: CrustOrigin = CrustOrigin.seed
    history: BoundaryHistory = field(default_factory=BoundaryHistory)

    @classmethod
    def fresh(cls, position: GridCoordinate, plate_id: int, time: int, origin: CrustOrigin) -> "PlatePoint":
        return cls(position=position, birthplace=position, birth_date=time, plate_id=plate_id, origin=origin)


@dataclass
class Plate:
    plate_id: int
    direction: tuple[float, float] = (0.0, 0.0)
    speed: float = 0.0
    points: list[PlatePoint] = field(default_factory=list)

    def angle(self, time_step: int, reverse: bool = False) -> tuple[float, float, float]:
        spin = self.speed * time_step
        return (self.direction[0], self.direction[1], -spin if reverse else spin)

    @property
    def area(self) -> int:
        return len(self.points)


def _int_field(shape: tuple[int, int], fill: int = 0) -> np.ndarray:
    return np.full(shape, fill, dtype=np.int64)


@dataclass
class PlatePointGrid:
    """Dense [x][y] arrays describing which plate owns each cell and its crust record."""

    plate_id: np.ndarray
    is_continental: np.ndarray
    is_seed: np.ndarray
    birth_x: np.ndarray
    birth_y: np.ndarray
    birth_date: np.ndarray
    continental_buildup: np.ndarray
    continental_recency: np.ndarray
    oceanic_buildup: np.ndarray
    oceanic_recency: np.ndarray

    @property
    def shape(self) -> tuple[int, int]:
        return self.plate_id.shape

    @classmethod
    def empty(cls, shape: tuple[int, int]) -> "PlatePointGrid":
        return cls(
            plate_id=_int_field(shape, -1),
            is_continental=np.zeros(shape, dtype=bool),
            is_seed=np.zeros(shape, dtype=bool),
            birth_x=_int_field(shape),
            birth_y=_int_field(shape),
            birth_date=_int_field(shape),
            continental_buildup=_int_field(shape),
            continental_recency=_int_field(shape),
            oceanic_buildup=_int_field(shape),
            oceanic_recency=_int_field(shape),
        )

    @classmethod
    def from_points(cls, shape: tuple[int, int], points: Iterable[PlatePoint]) -> "PlatePointGrid":
        grid = cls.empty(shape)
        for point in points:
            x, y = point.position.x, point.position.y
            if grid.plate_id[x, y] != -1:
                raise CoreInvariantViolation(f"cell ({x}, {y}) is owned by more than one plate")
            grid.plate_id[x, y] = point.plate_id
            grid.is_continental[x, y] = point.is_continental
            grid.is_seed[x, y] = point.origin == CrustOrigin.seed
            grid.birth_x[x, y] = point.birthplace.x
            grid.birth_y[x, y] = point.birthplace.y
            grid.birth_date[x, y] = point.birth_date
            (
                grid.continental_buildup[x, y],
                grid.continental_recency[x, y],
                grid.oceanic_buildup[x, y],
                grid.oceanic_recency[x, y],
            ) = point.history.as_tuple()
        gaps = int((grid.plate_id == -1).sum())
        if gaps:
            raise CoreInvariantViolation(f"{gaps} cells are not owned by any plate")
        return grid

    @classmethod
    def from_plates(cls, shape: tuple[int, int], plates: Sequence[Plate]) -> "PlatePointGrid":
        return cls.from_points(shape, (point for plate in plates for point in plate.points))

    def point_at(self, x: int, y: int) -> PlatePoint:
        return PlatePoint(
            position=GridCoordinate(x, y),
            birthplace=GridCoordinate(int(self.birth_x[x, y]), int(self.birth_y[x, y])),
            birth_date=int(self.birth_date[x, y]),
            plate_id=int(self.plate_id[x, y]),
            is_continental=bool(self.is_continental[x, y]),
            origin=CrustOrigin.seed if self.is_seed[x, y] else CrustOrigin.rift,
            history=BoundaryHistory(
                int(self.continental_buildup[x, y]),
                int(self.continental_recency[x, y]),
                int(self.oceanic_buildup[x, y]),
                int(self.oceanic_recency[x, y]),
            ),
        )

    def to_plates(self, plate_count: int, kinematics: Sequence | None = None) -> list[Plate]:
        """Plates in id order, each holding its points in raster order."""
        if kinematics is not None and len(kinematics) != plate_count:
            raise InvalidInput(f"expected {plate_count} plate kinematics entries, got {len(kinematics)}")
        plates: list[Plate] = []
        for plate_id in range(plate_count):
            plate = Plate(plate_id=plate_id)
            if kinematics is not None:
                plate.direction = (float(kinematics[plate_id].direction[0]), float(kinematics[plate_id].direction[1]))
                plate.speed = float(kinematics[plate_id].speed)
            plates.append(plate)
        width, height = self.shape
        for x in range(width):
            for y in range(height):
                owner = int(self.plate_id[x, y])
                if owner < 0 or owner >= plate_count:
                    raise InvalidInput(f"cell ({x}, {y}) references unknown plate {owner}")
                plates[owner].points.append(self.point_at(x, y))
        return plates

    def plate_areas(self, plate_count: int) -> list[int]:
        counts = np.bincount(self.plate_id.ravel(), minlength=plate_count)
        return [int(value) for value in counts[:plate_count]]

    def histories(self) -> dict[str, np.ndarray]:
        return {
            "continental_buildup": self.continental_buildup,
            "continental_recency": self.continental_recency,
            "oceanic_buildup": self.oceanic_buildup,
            "oceanic_recency": self.oceanic_recency,
        }
