from .generator import GenerationResult, generate_plates
from .mover import MoveResult, PlateMover, draw_kinematics, move_plates
from .state import BoundaryHistory, CrustOrigin, Plate, PlatePoint, PlatePointGrid

__all__ = [
    "GenerationResult",
    "generate_plates",
    "MoveResult",
    "PlateMover",
    "draw_kinematics",
    "move_plates",
    "BoundaryHistory",
    "CrustOrigin",
    "Plate",
    "PlatePoint",
    "PlatePointGrid",
]
