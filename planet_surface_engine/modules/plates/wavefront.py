from __future__ import annotations

from collections import deque
from typing import Sequence

import numpy as np

from ..grid import GridCoordinate, SphericalGrid


def expand_wavefront(
    grid: SphericalGrid,
    owner: np.ndarray,
    seeds: Sequence[Sequence[GridCoordinate]],
) -> list[tuple[GridCoordinate, int]]:
    """Grow plates breadth-first into unowned cells (owner == -1).

    `seeds[plate_id]` lists the plate's claimed cells in the order their
    neighbours are queued. The first plate to queue a cell wins it. `owner`
    is updated in place; newly claimed cells are returned in claim order.
    """
    queue: deque[tuple[GridCoordinate, int]] = deque()
    for plate_id, cells in enumerate(seeds):
        for cell in cells:
            for neighbor in grid.neighbors(cell):
                if owner[neighbor.x, neighbor.y] == -1:
                    queue.append((neighbor, plate_id))

    claimed: list[tuple[GridCoordinate, int]] = []
    while queue:
        cell, plate_id = queue.popleft()
        if owner[cell.x, cell.y] != -1:
            continue
        owner[cell.x, cell.y] = plate_id
        claimed.append((cell, plate_id))
        for neighbor in grid.neighbors(cell):
            if owner[neighbor.x, neighbor.y] == -1:
                queue.append((neighbor, plate_id))
    return claimed
