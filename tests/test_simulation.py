from __future__ import annotations

import numpy as np
import pytest

from planet_surface_engine import simulation_service
from planet_surface_engine.errors import CoreInvariantViolation, InvalidConfiguration, InvalidInput, parse_rules
from planet_surface_engine.models import PipelineStage, PlateKinematics, WorldRequest
from planet_surface_engine.settings import Settings
from planet_surface_engine.simulation_service import SimulationService


def _grid_fields():
    return {"plateCount": 3, "gridHalfWidth": 8, "gridHeight": 8}


def _payload(seed: int | None = 1337, **overrides) -> dict:
    grid = _grid_fields()
    payload = {
        "seed": seed,
        "generate": {**grid, "cutOff": 0, "radius": [0.05], "magnitude": [1.0], "concentration": [0.5]},
        "move": {**grid, "numberSteps": 2},
        "altitude": grid,
        "rainfall": {**grid, "numberSeasons": 2},
        "erosion": {**grid, "numberSeasons": 2},
    }
    payload.update(overrides)
    return payload


def _request(seed: int | None = 1337, **overrides) -> WorldRequest:
    return WorldRequest(**_payload(seed, **overrides))


def _build_service(workers: int = 1) -> SimulationService:
    return SimulationService(Settings(worker_count=workers, default_seed=5))


def test_world_pipeline_is_deterministic_for_a_seed():
    progress: list[float] = []

    first = _build_service().run_pipeline("w1", _request(), job_callback=lambda _stage, value, _msg: progress.append(value))
    second = _build_service().run_pipeline("w2", _request(), job_callback=lambda *_args: None)

    assert first.digests == second.digests
    assert first.plateAreas == second.plateAreas
    assert progress == sorted(progress)
    assert progress[-1] == 1.0


def test_world_summary_describes_the_grid():
    service = _build_service()
    summary = service.run_pipeline("w", _request(), job_callback=lambda *_args: None)

    assert summary.worldId == "w"
    assert summary.seed == 1337
    assert sum(summary.plateAreas) == 16 * 8
    assert summary.finalTime == 3
    assert 0.0 <= summary.continentalFraction <= 1.0
    assert set(summary.digests) == {"plates", "altitude", "rainfall", "erosion"}

    record = service.get_world("w")
    assert record is not None
    assert len(record.kinematics) == 3
    assert record.rainfall.shape == (2, 16, 8)
    assert record.altitude[~record.plates.is_continental].max(initial=0.0) == 0.0
    assert record.erosion.water[record.altitude == 0].all()


def test_missing_seed_falls_back_to_settings():
    summary = _build_service().run_pipeline("w", _request(seed=None), job_callback=lambda *_args: None)
    assert summary.seed == 5


def test_worker_count_does_not_change_the_world():
    single = _build_service(workers=1).run_pipeline("a", _request(), job_callback=lambda *_args: None)
    pooled = _build_service(workers=4).run_pipeline("b", _request(), job_callback=lambda *_args: None)
    assert single.digests["plates"] == pooled.digests["plates"]
    assert single.digests["altitude"] == pooled.digests["altitude"]
    assert single.digests["rainfall"] == pooled.digests["rainfall"]


def test_supplied_kinematics_are_used_as_given():
    kinematics = [PlateKinematics(direction=(0.1, 0.2), speed=0.0) for _ in range(3)]
    service = _build_service()
    service.run_pipeline("still", _request(kinematics=kinematics), job_callback=lambda *_args: None)

    record = service.get_world("still")
    assert record is not None
    assert record.kinematics == kinematics


def test_single_operations_validate_their_rules():
    service = _build_service()
    request = _request()
    context = service.create_context(request.generate, seed=3)

    generated = service.generate(context, request.generate.model_dump())
    assert generated.points.shape == (16, 8)

    with pytest.raises(InvalidConfiguration):
        service.generate(context, {**_grid_fields(), "radius": [0.0], "magnitude": [1.0], "concentration": [0.5]})

    other_grid = {"plateCount": 2, "gridHalfWidth": 8, "gridHeight": 8, "numberSteps": 1}
    with pytest.raises(InvalidInput):
        service.move(context, generated.points, other_grid, [PlateKinematics()] * 2)

    with pytest.raises(InvalidInput):
        service.rainfall(context, np.zeros((8, 8)), request.rainfall)


def test_failed_pipeline_does_not_store_a_world():
    service = _build_service()
    # Nothing clears the top cut-off, so no plate can be seeded.
    request = _request(generate={**_grid_fields(), "cutOff": 127, "radius": [0.05], "magnitude": [1.0], "concentration": [0.5]})

    with pytest.raises(CoreInvariantViolation):
        service.run_pipeline("broken", request, job_callback=lambda *_args: None)
    assert service.get_world("broken") is None


def test_grid_payloads_cover_every_layer():
    service = _build_service()
    service.run_pipeline("w", _request(), job_callback=lambda *_args: None)
    record = service.get_world("w")
    assert record is not None

    plates = service.grid_payload(record, "plates")
    assert plates.shape == [16, 8]
    assert len(plates.values) == 16
    assert service.grid_payload(record, "rainfall").shape == [2, 16, 8]
    for layer in ("continental", "altitude", "water", "erosion", "filled_height"):
        assert service.grid_payload(record, layer).shape == [16, 8]
    with pytest.raises(InvalidInput):
        service.grid_payload(record, "magma")


def test_stages_are_reported_in_pipeline_order():
    stages: list[PipelineStage] = []
    _build_service().run_pipeline("w", _request(), job_callback=lambda stage, _value, _msg: stages.append(stage))

    assert stages == [
        PipelineStage.generate,
        PipelineStage.move,
        PipelineStage.altitude,
        PipelineStage.rainfall,
        PipelineStage.erosion,
        PipelineStage.done,
    ]


def test_altitude_runs_at_the_clock_movement_ended_on(monkeypatch):
    seen: list[int] = []
    real = simulation_service.synthesize_altitude

    def _recording(points, rules, rng):
        seen.append(rules.currentTime)
        return real(points, rules, rng)

    monkeypatch.setattr(simulation_service, "synthesize_altitude", _recording)
    summary = _build_service().run_pipeline("w", _request(), job_callback=lambda *_args: None)

    assert seen == [summary.finalTime]
    assert summary.finalTime == 3


def test_movement_starts_at_the_generation_time():
    grid = _grid_fields()
    request = _request(
        generate={**grid, "currentTime": 4, "radius": [0.05], "magnitude": [1.0], "concentration": [0.5]},
        move={**grid, "currentTime": 50, "numberSteps": 2, "timeStep": 2},
        altitude={**grid, "currentTime": 1},
    )
    service = _build_service()
    summary = service.run_pipeline("w", request, job_callback=lambda *_args: None)

    assert summary.finalTime == 8
    record = service.get_world("w")
    assert record is not None
    assert record.plates.birth_date.min() >= 4
    assert record.plates.birth_date.max() <= 8


def test_negative_time_step_is_rejected_before_the_pipeline_runs():
    payload = _payload(move={**_grid_fields(), "numberSteps": 2, "timeStep": -1})
    with pytest.raises(InvalidConfiguration):
        parse_rules(WorldRequest, payload)
