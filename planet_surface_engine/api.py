from __future__ import annotations

import asyncio
import json
import uuid
from functools import partial
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .errors import InvalidInput
from .job_manager import JobManager
from .models import GridPayload, JobStatus, JobSummary, WorldRequest, WorldSummary
from .settings import Settings, configure_logging, load_settings
from .simulation_service import ENGINE_VERSION, SimulationService


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)
    simulation = SimulationService(settings)
    jobs = JobManager()

    app = FastAPI(title="Planet Surface Engine", version=ENGINE_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.simulation = simulation
    app.state.jobs = jobs

    def _raise_missing_world(world_id: str) -> None:
        job = jobs.job_for_world(world_id)
        if job is not None and job.status in (JobStatus.queued, JobStatus.running):
            raise HTTPException(status_code=409, detail=f"world is still generating (stage {job.stage.value})")
        raise HTTPException(status_code=404, detail="world not found")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/worlds", response_model=JobSummary)
    def create_world(request: WorldRequest) -> JobSummary:
        world_id = str(uuid.uuid4())
        job = jobs.create_job(world_id, "generate_world", message="queued world generation")

        def run(job_id: str) -> None:
            simulation.run_pipeline(world_id, request, job_callback=partial(jobs.advance_stage, job_id))

        jobs.submit(job.jobId, run)
        latest = jobs.get_job(job.jobId)
        if latest is None:
            raise HTTPException(status_code=500, detail="job not available")
        return latest

    @app.get("/v1/worlds/{world_id}", response_model=WorldSummary)
    def get_world(world_id: str) -> WorldSummary:
        record = simulation.get_world(world_id)
        if record is None:
            _raise_missing_world(world_id)
        return simulation.summarize(record)

    @app.get("/v1/worlds/{world_id}/grids/{layer}", response_model=GridPayload)
    def get_grid(world_id: str, layer: str) -> GridPayload:
        record = simulation.get_world(world_id)
        if record is None:
            _raise_missing_world(world_id)
        try:
            return simulation.grid_payload(record, layer)
        except InvalidInput as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/v1/jobs/{job_id}", response_model=JobSummary)
    def get_job(job_id: str) -> JobSummary:
        job = jobs.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        return job

    @app.get("/v1/jobs/{job_id}/events")
    async def stream_job(job_id: str) -> StreamingResponse:
        job = jobs.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")

        async def event_gen() -> AsyncGenerator[str, None]:
            last_version = -1
            while True:
                current = jobs.get_job(job_id)
                if current is None:
                    yield "event: error\ndata: {\"message\":\"job not found\"}\n\n"
                    return
                version = jobs.job_version(job_id)
                if version != last_version:
                    last_version = version
                    payload = current.model_dump(mode="json")
                    yield f"event: update\ndata: {json.dumps(payload)}\n\n"
                if current.status.value in ("completed", "failed"):
                    return
                await asyncio.sleep(0.4)

        return StreamingResponse(event_gen(), media_type="text/event-stream")

    return app
