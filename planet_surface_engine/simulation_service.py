from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import numpy as np

from .errors import InvalidInput, parse_rules
from .models import (
    AltitudeRules,
    ErosionRules,
    GenerateRules,
    GeneralRules,
    GridPayload,
    MoveRules,
    PipelineStage,
    PlateKinematics,
    RainfallRules,
    WorldRequest,
    WorldSummary,
    utc_now_iso,
)
from .modules.altitude import synthesize_altitude
from .modules.grid import SphericalGrid
from .modules.hydrology.erosion import ErosionResult, erode
from .modules.hydrology.rainfall import generate_rainfall
from .modules.plates import GenerationResult, MoveResult, PlatePointGrid, draw_kinematics, generate_plates, move_plates
from .modules.validation import validate_plate_grid
from .settings import Settings
from .utils import array_digest

logger = logging.getLogger(__name__)

ENGINE_VERSION = "0.1.0"

JobCallback = Callable[[PipelineStage, float, str], None]


@dataclass
class SimulationContext:
    """Everything one run needs; nothing is shared between runs."""

    grid: SphericalGrid
    rng: np.random.Generator
    seed: int
    workers: int = 1


@dataclass
class WorldRecord:
    world_id: str
    seed: int
    request: WorldRequest
    kinematics: list[PlateKinematics]
    plates: PlatePointGrid
    altitude: np.ndarray
    rainfall: np.ndarray
    erosion: ErosionResult
    final_time: int
    created_at: str = field(default_factory=utc_now_iso)

    def layer(self, name: str) -> np.ndarray:
        layers = {
            "plates": self.plates.plate_id,
            "continental": self.plates.is_continental,
            "altitude": self.altitude,
            "rainfall": self.rainfall,
            "water": self.erosion.water,
            "erosion": self.erosion.erosion,
            "filled_height": self.erosion.filled_height,
        }
        if name not in layers:
            raise InvalidInput(f"unknown grid layer {name!r}")
        return layers[name]


class SimulationService:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._worlds: dict[str, WorldRecord] = {}
        self._lock = threading.Lock()

    def create_context(self, rules: GeneralRules, seed: int | None = None) -> SimulationContext:
        seed = self.settings.default_seed if seed is None else seed
        return SimulationContext(
            grid=SphericalGrid.from_rules(rules),
            rng=np.random.default_rng(seed),
            seed=seed,
            workers=self.settings.worker_count,
        )

    # single operations

    def generate(self, context: SimulationContext, rules: GenerateRules | dict[str, Any]) -> GenerationResult:
        rules = parse_rules(GenerateRules, rules)
        return generate_plates(context.grid, rules, context.rng, context.workers)

    def move(
        self,
        context: SimulationContext,
        points: PlatePointGrid,
        rules: MoveRules | dict[str, Any],
        kinematics: Sequence[PlateKinematics],
    ) -> MoveResult:
        rules = parse_rules(MoveRules, rules)
        validate_plate_grid(points, rules)
        return move_plates(context.grid, points, rules, kinematics)

    def altitude(
        self,
        context: SimulationContext,
        points: PlatePointGrid,
        rules: AltitudeRules | dict[str, Any],
    ) -> np.ndarray:
        rules = parse_rules(AltitudeRules, rules)
        validate_plate_grid(points, rules)
        return synthesize_altitude(points, rules, context.rng)

    def rainfall(
        self,
        context: SimulationContext,
        height: np.ndarray,
        rules: RainfallRules | dict[str, Any],
    ) -> np.ndarray:
        rules = parse_rules(RainfallRules, rules)
        return generate_rainfall(context.grid, height, rules, context.workers)

    def erosion(
        self,
        context: SimulationContext,
        height: np.ndarray,
        rainfall: np.ndarray,
        rules: ErosionRules | dict[str, Any],
    ) -> ErosionResult:
        rules = parse_rules(ErosionRules, rules)
        return erode(context.grid, height, rainfall, rules, context.workers)

    # pipeline

    def run_pipeline(
        self,
        world_id: str,
        request: WorldRequest,
        *,
        job_callback: JobCallback,
    ) -> WorldSummary:
        context = self.create_context(request.generate, request.seed)
        logger.info(f"world {world_id}: pipeline started with seed {context.seed}")

        job_callback(PipelineStage.generate, 0.05, "generating plates")
        generated = self.generate(context, request.generate)

        kinematics = list(request.kinematics) or draw_kinematics(
            context.rng, context.grid, request.generate.plateCount
        )
        # One clock runs through the pipeline: movement starts where generation stamped
        # its points, and uplift is scaled by the time movement ended at.
        move_rules = request.move.model_copy(update={"currentTime": request.generate.currentTime})
        job_callback(PipelineStage.move, 0.25, f"moving plates for {move_rules.numberSteps} steps")
        moved = self.move(context, generated.points, move_rules, kinematics)

        altitude_rules = request.altitude.model_copy(update={"currentTime": moved.final_time})
        job_callback(PipelineStage.altitude, 0.55, f"synthesizing altitude at t={moved.final_time}")
        height = self.altitude(context, moved.points, altitude_rules)

        job_callback(PipelineStage.rainfall, 0.65, f"simulating rainfall over {request.rainfall.numberSeasons} seasons")
        rainfall = self.rainfall(context, height, request.rainfall)

        job_callback(PipelineStage.erosion, 0.85, "routing water and erosion")
        eroded = self.erosion(context, height, rainfall, request.erosion)

        record = WorldRecord(
            world_id=world_id,
            seed=context.seed,
            request=request,
            kinematics=kinematics,
            plates=moved.points,
            altitude=height,
            rainfall=rainfall,
            erosion=eroded,
            final_time=moved.final_time,
        )
        with self._lock:
            self._worlds[world_id] = record
        job_callback(PipelineStage.done, 1.0, "world ready")
        logger.info(f"world {world_id}: pipeline finished at t={moved.final_time}")
        return self.summarize(record)

    def get_world(self, world_id: str) -> WorldRecord | None:
        with self._lock:
            return self._worlds.get(world_id)

    def summarize(self, record: WorldRecord) -> WorldSummary:
        rules = record.request.generate
        return WorldSummary(
            worldId=record.world_id,
            seed=record.seed,
            gridHalfWidth=rules.gridHalfWidth,
            gridHeight=rules.gridHeight,
            plateCount=rules.plateCount,
            plateAreas=record.plates.plate_areas(rules.plateCount),
            continentalFraction=float(record.plates.is_continental.mean()),
            waterFraction=float(record.erosion.water.mean()),
            finalTime=record.final_time,
            digests={
                "plates": array_digest(record.plates.plate_id),
                "altitude": array_digest(record.altitude),
                "rainfall": array_digest(record.rainfall),
                "erosion": array_digest(record.erosion.erosion),
            },
            createdAt=record.created_at,
        )

    def grid_payload(self, record: WorldRecord, layer: str) -> GridPayload:
        values = record.layer(layer)
        return GridPayload(
            worldId=record.world_id,
            layer=layer,
            shape=list(values.shape),
            values=values.tolist(),
        )
