from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Literal, Optional

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException, Query, Response
from pydantic import BaseModel, ConfigDict, Field

from .db import make_engine, make_sessionmaker
from .models import Base, InstanceRecord, RunRecord
from .settings import DATABASE_URL, RUNS_PAGE_SIZE

RunStatusName = Literal["succeeded", "failed", "cancelled"]
InstanceStatusName = Literal["succeeded", "failed", "skipped", "cancelled"]

# -------------------- Schemas --------------------

class InstanceIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    job: str
    label: str
    status: InstanceStatusName
    matrix: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    duration: Optional[float] = None
    environment: Optional[dict[str, Any]] = None

class RunIn(BaseModel):
    """RunResult.to_dict() as posted by `jobgraph run --report-url`."""
    model_config = ConfigDict(extra="allow")

    run_id: str
    name: str
    status: RunStatusName
    started_at: float
    finished_at: float
    instances: list[InstanceIn] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)

class CreateRunResponse(BaseModel):
    run_id: str
    instance_count: int

class RunSummary(BaseModel):
    run_id: str
    name: str
    status: str
    duration: float
    created_at: datetime

BADGE_COLORS = {
    "succeeded": "#4c1",
    "failed": "#e05d44",
    "cancelled": "#9f9f9f",
}

BADGE_TEMPLATE = """<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="20" role="img" aria-label="{label}: {status}">
<rect width="{lw}" height="20" fill="#555"/>
<rect x="{lw}" width="{sw}" height="20" fill="{color}"/>
<g fill="#fff" text-anchor="middle" font-family="Verdana,DejaVu Sans,sans-serif" font-size="11">
<text x="{lx}" y="14">{label}</text>
<text x="{sx}" y="14">{status}</text>
</g>
</svg>
"""


def render_badge(label: str, status: str) -> str:
    lw = 6 * len(label) + 10
    sw = 6 * len(status) + 10
    return BADGE_TEMPLATE.format(
        width=lw + sw,
        lw=lw,
        sw=sw,
        lx=lw // 2,
        sx=lw + sw // 2,
        label=label,
        status=status,
        color=BADGE_COLORS.get(status, "#9f9f9f"),
    )


def summarize(run: RunRecord) -> RunSummary:
    return RunSummary(
        run_id=run.id,
        name=run.name,
        status=run.status,
        duration=run.duration,
        created_at=run.created_at,
    )


def create_app(database_url: Optional[str] = None) -> FastAPI:
    engine = make_engine(database_url or DATABASE_URL)
    SessionLocal = make_sessionmaker(engine)

    # -------------------- Startup --------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield
        await engine.dispose()

    app = FastAPI(title="jobgraph run reports", lifespan=lifespan)

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=CreateRunResponse, status_code=201)
    async def create_run(req: RunIn):
        async with SessionLocal() as s:
            async with s.begin():
                if await s.get(RunRecord, req.run_id) is not None:
                    raise HTTPException(status_code=409, detail=f"Run {req.run_id} already reported")

                run = RunRecord(
                    id=req.run_id,
                    name=req.name,
                    status=req.status,
                    started_at=req.started_at,
                    finished_at=req.finished_at,
                    context=req.context,
                    errors=req.errors,
                )
                s.add(run)
                for position, inst in enumerate(req.instances):
                    s.add(InstanceRecord(
                        run_id=req.run_id,
                        position=position,
                        job=inst.job,
                        label=inst.label,
                        status=inst.status,
                        payload_json=inst.model_dump(mode="json"),
                    ))

        return CreateRunResponse(run_id=req.run_id, instance_count=len(req.instances))

    @app.get("/runs", response_model=list[RunSummary])
    async def list_runs(
        status: Optional[RunStatusName] = None,
        name: Optional[str] = None,
        limit: int = Query(default=RUNS_PAGE_SIZE, ge=1, le=500),
    ):
        q = sa.select(RunRecord).order_by(RunRecord.created_at.desc(), RunRecord.started_at.desc()).limit(limit)
        if status is not None:
            q = q.where(RunRecord.status == status)
        if name is not None:
            q = q.where(RunRecord.name == name)
        async with SessionLocal() as s:
            runs = (await s.execute(q)).scalars().all()
        return [summarize(r) for r in runs]

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str) -> dict[str, Any]:
        async with SessionLocal() as s:
            run = await s.get(RunRecord, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            return {
                "run_id": run.id,
                "name": run.name,
                "status": run.status,
                "started_at": run.started_at,
                "finished_at": run.finished_at,
                "duration": run.duration,
                "created_at": run.created_at.isoformat(),
                "context": run.context,
                "errors": run.errors,
                "instances": [i.payload_json for i in run.instances],
            }

    @app.get("/runs/{run_id}/badge.svg")
    async def badge(run_id: str) -> Response:
        async with SessionLocal() as s:
            run = await s.get(RunRecord, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            svg = render_badge(run.name, run.status)
        return Response(content=svg, media_type="image/svg+xml", headers={"Cache-Control": "no-cache"})

    return app
