from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class GeneralRules(BaseModel):
    plateCount: int = 8
    gridHalfWidth: int = 64
    gridHeight: int = 64
    currentTime: int = 1
    maxBuildup: int = 0

    @model_validator(mode="after")
    def validate_general(self) -> "GeneralRules":
        if self.gridHalfWidth < 1 or self.gridHeight < 1:
            raise ValueError("gridHalfWidth and gridHeight must be at least 1")
        if self.plateCount < 1:
            raise ValueError("plateCount must be at least 1")
        if self.plateCount > self.cell_count:
            raise ValueError("plateCount cannot exceed the number of grid cells")
        if self.maxBuildup < 0:
            raise ValueError("maxBuildup must be zero (uncapped) or positive")
        return self

    @property
    def grid_width(self) -> int:
        return 2 * self.gridHalfWidth

    @property
    def cell_count(self) -> int:
        return 2 * self.gridHalfWidth * self.gridHeight

    def grid_key(self) -> tuple[int, int, int]:
        return (self.plateCount, self.gridHalfWidth, self.gridHeight)


class GenerateRules(GeneralRules):
    cutOff: int = 0
    radius: list[float] = Field(default_factory=lambda: [0.3, 0.15])
    magnitude: list[float] = Field(default_factory=lambda: [1.0, 0.5])
    concentration: list[float] = Field(default_factory=lambda: [0.98, 0.95])

    @model_validator(mode="after")
    def validate_octaves(self) -> "GenerateRules":
        lengths = {len(self.radius), len(self.magnitude), len(self.concentration)}
        if len(lengths) != 1:
            raise ValueError("radius, magnitude and concentration must have the same length")
        if not self.radius:
            raise ValueError("at least one noise octave is required")
        for octave, values in enumerate(zip(self.radius, self.magnitude, self.concentration)):
            if any(value == 0 for value in values):
                raise ValueError(f"noise octave {octave} contains a zero value")
        if self.cutOff < 0 or self.cutOff >= self.cell_count:
            raise ValueError("cutOff must lie in [0, 2 * gridHalfWidth * gridHeight)")
        return self


class MoveRules(GeneralRules):
    numberSteps: int = 10
    timeStep: int = 1

    @model_validator(mode="after")
    def validate_steps(self) -> "MoveRules":
        if self.currentTime < 0:
            raise ValueError("currentTime cannot be negative when moving plates")
        if self.numberSteps < 0:
            raise ValueError("numberSteps cannot be negative")
        if self.timeStep < 1:
            raise ValueError("timeStep must be at least 1")
        return self


class AltitudeRules(GeneralRules):
    baseHeight: float = 1000.0
    jitter: float = 100.0

    @model_validator(mode="after")
    def validate_time(self) -> "AltitudeRules":
        if self.currentTime < 1:
            raise ValueError("currentTime must be at least 1 for altitude synthesis")
        if self.jitter < 0:
            raise ValueError("jitter must be non-negative")
        return self


class RainfallRules(GeneralRules):
    axisTilt: float = 0.41
    numberSeasons: int = 4
    oceanWeight: float = 1.0
    landWeight: float = 0.5
    evaporationRate: float = 1.0
    baseDeposition: float = 0.05
    landDeposition: float = 0.5
    windScale: float = 4.0
    maxTransport: float = 0.9
    deflectionAngle: float = 0.35

    @model_validator(mode="after")
    def validate_rainfall(self) -> "RainfallRules":
        if self.numberSeasons < 1:
            raise ValueError("numberSeasons must be at least 1")
        if self.oceanWeight <= 0 or self.landWeight <= 0:
            raise ValueError("oceanWeight and landWeight must be positive")
        if not 0.0 <= self.maxTransport < 1.0:
            raise ValueError("maxTransport must lie in [0, 1)")
        if self.evaporationRate < 0 or self.baseDeposition < 0 or self.landDeposition < 0:
            raise ValueError("evaporation and deposition rates must be non-negative")
        if self.windScale < 0:
            raise ValueError("windScale must be non-negative")
        return self


class ErosionRules(GeneralRules):
    numberSeasons: int = 4
    waterThreshold: float = 8.0
    riverThreshold: float = 16.0
    erosionRate: float = 0.01

    @model_validator(mode="after")
    def validate_erosion(self) -> "ErosionRules":
        if self.numberSeasons < 1:
            raise ValueError("numberSeasons must be at least 1")
        if self.waterThreshold < 0 or self.riverThreshold < 0:
            raise ValueError("thresholds must be non-negative")
        if self.erosionRate < 0:
            raise ValueError("erosionRate must be non-negative")
        return self


class PlateKinematics(BaseModel):
    direction: tuple[float, float] = (0.0, 0.0)
    speed: float = 0.0


class WorldRequest(BaseModel):
    seed: int | None = None
    generate: GenerateRules = Field(default_factory=GenerateRules)
    move: MoveRules = Field(default_factory=MoveRules)
    kinematics: list[PlateKinematics] = Field(default_factory=list)
    altitude: AltitudeRules = Field(default_factory=AltitudeRules)
    rainfall: RainfallRules = Field(default_factory=RainfallRules)
    erosion: ErosionRules = Field(default_factory=ErosionRules)

    @model_validator(mode="after")
    def validate_sections(self) -> "WorldRequest":
        expected = self.generate.grid_key()
        for name in ("move", "altitude", "rainfall", "erosion"):
            if getattr(self, name).grid_key() != expected:
                raise ValueError(f"{name} rules disagree with generate rules on plateCount or grid size")
        if self.kinematics and len(self.kinematics) != self.generate.plateCount:
            raise ValueError("kinematics must list exactly plateCount entries")
        if self.rainfall.numberSeasons != self.erosion.numberSeasons:
            raise ValueError("rainfall and erosion rules must agree on numberSeasons")
        # The pipeline clock starts at generate.currentTime; move and altitude follow it.
        if self.generate.currentTime < 1:
            raise ValueError("generate.currentTime must be at least 1")
        return self


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"


class PipelineStage(str, Enum):
    queued = "queued"
    generate = "generate"
    move = "move"
    altitude = "altitude"
    rainfall = "rainfall"
    erosion = "erosion"
    done = "done"


class JobSummary(BaseModel):
    jobId: str
    worldId: str
    kind: str
    status: JobStatus
    stage: PipelineStage = PipelineStage.queued
    progress: float = 0.0
    message: str = ""
    error: str | None = None
    stageSeconds: dict[str, float] = Field(default_factory=dict)
    startedAt: str | None = None
    finishedAt: str | None = None


class WorldSummary(BaseModel):
    worldId: str
    seed: int
    gridHalfWidth: int
    gridHeight: int
    plateCount: int
    plateAreas: list[int]
    continentalFraction: float = Field(ge=0.0, le=1.0)
    waterFraction: float = Field(ge=0.0, le=1.0)
    finalTime: int
    digests: dict[str, str] = Field(default_factory=dict)
    createdAt: str = Field(default_factory=utc_now_iso)


GridLayer = Literal["plates", "continental", "altitude", "rainfall", "water", "erosion", "filled_height"]


class GridPayload(BaseModel):
    worldId: str
    layer: GridLayer
    shape: list[int]
    values: list[Any]
