from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator

import numpy as np

from ..errors import InvalidConfiguration

# cos(x) through the x**6 term; worst error below 1.5e-7 for |x| < pi / 6.
SMALL_ANGLE_EPSILON = 1e-6


@dataclass(frozen=True, order=True)
class GridCoordinate:
    x: int
    y: int


@dataclass(frozen=True)
class AngularPoint:
    theta: float
    phi: float
    cos_phi: float
    sin_phi: float

    def to_cartesian(self) -> np.ndarray:
        return np.array(
            [self.cos_phi * math.cos(self.theta), self.cos_phi * math.sin(self.theta), self.sin_phi],
            dtype=np.float64,
        )


def small_angle_cos(angle):
    """Polynomial cosine used for short longitude spans (scalar or array)."""
    sq = angle * angle
    return 1.0 - sq / 2.0 + sq * sq / 24.0 - sq * sq * sq / 720.0


def _rx(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


def _ry(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def _rz(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def rotation_matrix(angle: tuple[float, float, float]) -> np.ndarray:
    """Rotation by angle[2] about the axis reached by tilting z by angle[0] (X) then angle[1] (Y).

    Applied to column vectors: X, then Y, then Z, then Y and X undone.
    Negating angle[2] yields the exact inverse.
    """
    ax, ay, az = angle
    return _rx(-ax) @ _ry(-ay) @ _rz(az) @ _ry(ay) @ _rx(ax)


class SphericalGrid:
    def __init__(self, half_width: int, height: int):
        if half_width < 1 or height < 1:
            raise InvalidConfiguration("grid halfWidth and height must be at least 1")
        self.half_width = int(half_width)
        self.height = int(height)
        self.width = 2 * self.half_width
        self.d_theta = math.pi / self.half_width
        self.d_phi = math.pi / self.height
        self.phi_shift = 0.5 * self.d_phi - 0.5 * math.pi

        self.theta = np.arange(self.width, dtype=np.float64) * self.d_theta
        self.phi = np.arange(self.height, dtype=np.float64) * self.d_phi + self.phi_shift
        self.cos_phi = np.cos(self.phi)
        self.sin_phi = np.sin(self.phi)

        self._angular: dict[GridCoordinate, AngularPoint] = {}
        self._neighbor_arrays: tuple[np.ndarray, np.ndarray] | None = None

    @classmethod
    def from_rules(cls, rules) -> "SphericalGrid":
        return cls(rules.gridHalfWidth, rules.gridHeight)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.width, self.height)

    @property
    def size(self) -> int:
        return self.width * self.height

    def contains(self, point: GridCoordinate) -> bool:
        return 0 <= point.x < self.width and 0 <= point.y < self.height

    def coordinates(self) -> Iterator[GridCoordinate]:
        for x in range(self.width):
            for y in range(self.height):
                yield GridCoordinate(x, y)

    def angular(self, point: GridCoordinate) -> AngularPoint:
        cached = self._angular.get(point)
        if cached is None:
            cached = AngularPoint(
                theta=float(self.theta[point.x]),
                phi=float(self.phi[point.y]),
                cos_phi=float(self.cos_phi[point.y]),
                sin_phi=float(self.sin_phi[point.y]),
            )
            self._angular[point] = cached
        return cached

    def area_weight(self, y: int) -> float:
        return float(self.cos_phi[y])

    # adjacency

    def neighbors(self, point: GridCoordinate) -> tuple[GridCoordinate, GridCoordinate, GridCoordinate, GridCoordinate]:
        """Return (above, below, left, right); rows past a pole continue on the antipodal longitude."""
        x, y = point.x, point.y
        antipode = (x + self.half_width) % self.width
        above = GridCoordinate(antipode, 0) if y == 0 else GridCoordinate(x, y - 1)
        below = GridCoordinate(antipode, self.height - 1) if y == self.height - 1 else GridCoordinate(x, y + 1)
        left = GridCoordinate((x - 1) % self.width, y)
        right = GridCoordinate((x + 1) % self.width, y)
        return above, below, left, right

    def neighbor_arrays(self) -> tuple[np.ndarray, np.ndarray]:
        """Neighbor indices shaped (4, width, height) in the same order as `neighbors`."""
        if self._neighbor_arrays is None:
            xs, ys = np.meshgrid(np.arange(self.width), np.arange(self.height), indexing="ij")
            antipode = (xs + self.half_width) % self.width
            nx = np.stack(
                [
                    np.where(ys == 0, antipode, xs),
                    np.where(ys == self.height - 1, antipode, xs),
                    (xs - 1) % self.width,
                    (xs + 1) % self.width,
                ]
            )
            ny = np.stack(
                [
                    np.maximum(ys - 1, 0),
                    np.minimum(ys + 1, self.height - 1),
                    ys,
                    ys,
                ]
            )
            self._neighbor_arrays = (nx, ny)
        return self._neighbor_arrays

    # distance

    def _wrapped_dx(self, dx):
        dx = np.abs(dx) % self.width
        return np.minimum(dx, self.width - dx)

    def distance(self, a: GridCoordinate, b: GridCoordinate) -> float:
        dx = abs(a.x - b.x)
        if dx > self.half_width:
            dx = self.width - dx
        angle = dx * self.d_theta
        if dx < self.half_width / 6.0:
            cos_dx = small_angle_cos(angle)
        else:
            cos_dx = math.cos(angle)
        pa = self.angular(a)
        pb = self.angular(b)
        return abs(2.0 * (1.0 - pa.sin_phi * pb.sin_phi - pa.cos_phi * pb.cos_phi * cos_dx))

    def distance_to(self, a: GridCoordinate, xf: float, yf: float) -> float:
        dx = float(self._wrapped_dx(a.x - xf))
        phi = yf * self.d_phi + self.phi_shift
        pa = self.angular(a)
        value = 1.0 - pa.sin_phi * math.sin(phi) - pa.cos_phi * math.cos(phi) * math.cos(dx * self.d_theta)
        return abs(2.0 * value)

    def distance_field(
        self,
        center: GridCoordinate,
        xs: np.ndarray | None = None,
        ys: np.ndarray | None = None,
    ) -> np.ndarray:
        """Distances from `center` to the block xs by ys (whole grid by default)."""
        xs = np.arange(self.width) if xs is None else np.asarray(xs) % self.width
        ys = np.arange(self.height) if ys is None else np.asarray(ys)
        dx = self._wrapped_dx(xs - center.x)
        angle = dx * self.d_theta
        cos_dx = np.where(dx < self.half_width / 6.0, small_angle_cos(angle), np.cos(angle))
        pc = self.angular(center)
        value = 1.0 - pc.sin_phi * self.sin_phi[ys][None, :] - pc.cos_phi * self.cos_phi[ys][None, :] * cos_dx[:, None]
        return np.abs(2.0 * value)

    def range_bounds(self, center: GridCoordinate, radius: float) -> tuple[int, int, int, int]:
        """Half-open (x_min, x_max, y_min, y_max) covering every cell with distance < radius**2.

        x_max may exceed the grid width when the box crosses the seam.
        """
        half_chord = abs(radius) / 2.0
        if half_chord >= 1.0:
            return (0, self.width, 0, self.height)
        alpha = 2.0 * math.asin(half_chord)
        phi_c = float(self.phi[center.y])

        y_min = max(0, math.floor((phi_c - alpha - self.phi_shift) / self.d_phi))
        y_max = min(self.height, math.ceil((phi_c + alpha - self.phi_shift) / self.d_phi) + 1)

        if phi_c - alpha <= -0.5 * math.pi or phi_c + alpha >= 0.5 * math.pi:
            return (0, self.width, y_min, y_max)
        ratio = math.sin(alpha) / math.cos(phi_c)
        if ratio >= 1.0:
            return (0, self.width, y_min, y_max)
        extent = math.ceil(math.asin(ratio) / self.d_theta) + 1
        if 2 * extent + 1 >= self.width:
            return (0, self.width, y_min, y_max)
        x_min = center.x - extent
        x_max = center.x + extent + 1
        if x_min < 0:
            x_min += self.width
            x_max += self.width
        return (x_min, x_max, y_min, y_max)

    # rotation

    def round_coordinate(self, xf: float, yf: float) -> GridCoordinate:
        x = int(math.floor(xf + 0.5)) % self.width
        y = min(max(int(math.floor(yf + 0.5)), 0), self.height - 1)
        return GridCoordinate(x, y)

    def _project(self, vectors: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        theta = np.mod(np.arctan2(vectors[1], vectors[0]), 2.0 * math.pi)
        phi = np.arcsin(np.clip(vectors[2], -1.0, 1.0))
        return theta / self.d_theta, (phi - self.phi_shift) / self.d_phi

    def grid_transform(self, point: GridCoordinate, angle: tuple[float, float, float]) -> tuple[float, float]:
        """Fractional grid position of `point` after rotation."""
        rotated = rotation_matrix(angle) @ self.angular(point).to_cartesian()
        xf, yf = self._project(rotated)
        return float(xf), float(yf)

    def rotate(self, point: GridCoordinate, angle: tuple[float, float, float]) -> GridCoordinate:
        xf, yf = self.grid_transform(point, angle)
        return self.round_coordinate(xf, yf)

    def transform_field(self, angle: tuple[float, float, float]) -> tuple[np.ndarray, np.ndarray]:
        cos_phi = self.cos_phi[None, :]
        vectors = np.stack(
            [
                cos_phi * np.cos(self.theta)[:, None],
                cos_phi * np.sin(self.theta)[:, None],
                np.broadcast_to(self.sin_phi[None, :], (self.width, self.height)),
            ]
        )
        rotated = np.tensordot(rotation_matrix(angle), vectors, axes=1)
        return self._project(rotated)

    def rotate_field(self, angle: tuple[float, float, float]) -> tuple[np.ndarray, np.ndarray]:
        """Rounded destination (x, y) of every cell, each shaped (width, height)."""
        xf, yf = self.transform_field(angle)
        x = np.mod(np.floor(xf + 0.5).astype(np.int64), self.width)
        y = np.clip(np.floor(yf + 0.5).astype(np.int64), 0, self.height - 1)
        return x, y

    def test_momentum(self, point: GridCoordinate, uniform: float, threshold: float) -> bool:
        return uniform > threshold ** self.cos_phi[point.y]

    def momentum_mask(self, uniforms: np.ndarray, threshold: float) -> np.ndarray:
        return uniforms > np.power(threshold, self.cos_phi)[None, :]
