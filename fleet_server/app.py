"""
HTTP API between the job scheduler and the pool controller.

The scheduler reports demand per label, asks for capacity, and tells the
controller when work starts and finishes on a node. The controller runs in
the same process and is started and stopped with the application.
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, status
from pydantic import BaseModel, Field

from fleet_common.errors import NoMatchingTemplate, NodeNotAccepting, UnknownNode
from fleet_common.models import WorkRun
from fleet_common.registry import FleetRegistry
from fleet_controller.controller import PoolController
from fleet_controller.demand import QueueStatistics
from fleet_persistence.sqlite_repository import SQLiteFleetRepository

logger = logging.getLogger(__name__)


@dataclass
class ServerSettings:
    """Settings the application builds its controller from."""

    db_path: str = "fleet.db"
    docker_host: str | None = None
    retention_interval: float = 60.0
    retention_disabled: bool = False
    log_dir: str = "fleet-logs"


def parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def settings_from_env() -> ServerSettings:
    """
    Build settings from environment variables.

    Environment variables:
    - FLEET_DB_PATH: Database path (default: fleet.db)
    - FLEET_DOCKER_HOST: Container engine address (default: local engine)
    - FLEET_RETENTION_INTERVAL: Seconds between retention checks (default: 60)
    - FLEET_RETENTION_DISABLED: Disable idle termination (default: false)
    - FLEET_LOG_DIR: Directory for per-node logs (default: fleet-logs)
    """
    try:
        interval = float(os.environ.get("FLEET_RETENTION_INTERVAL", "60.0"))
    except ValueError:
        logger.warning("Invalid FLEET_RETENTION_INTERVAL, using default 60.0")
        interval = 60.0

    return ServerSettings(
        db_path=os.environ.get("FLEET_DB_PATH", "fleet.db"),
        docker_host=os.environ.get("FLEET_DOCKER_HOST") or None,
        retention_interval=interval if interval > 0 else 60.0,
        retention_disabled=parse_bool(os.environ.get("FLEET_RETENTION_DISABLED")),
        log_dir=os.environ.get("FLEET_LOG_DIR", "fleet-logs"),
    )


# Global instances (initialized at startup)
repository: SQLiteFleetRepository | None = None
statistics: QueueStatistics | None = None
controller: PoolController | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    - Startup: open the database, load templates, start the pool controller
      (which reclaims nodes left registered by a previous process)
    - Shutdown: stop the controller (waiting for in-flight provisioning),
      close the database
    """
    global repository, statistics, controller

    settings = getattr(app.state, "settings", None) or settings_from_env()

    repository = SQLiteFleetRepository(settings.db_path)
    await repository.initialize()
    templates = await repository.list_templates()
    logger.info(f"Loaded {len(templates)} template(s) from {settings.db_path}")

    statistics = QueueStatistics()
    controller = PoolController(
        templates,
        statistics,
        registry=repository,
        server_url=settings.docker_host,
        retention_interval=settings.retention_interval,
        retention_disabled=settings.retention_disabled,
        log_root=Path(settings.log_dir),
    )
    await controller.start()

    yield

    await controller.stop()
    await repository.close()


app = FastAPI(lifespan=lifespan)


def get_controller() -> PoolController:
    """
    Get the global controller instance.

    Raises:
        RuntimeError: If the controller is not initialized
    """
    if controller is None:
        raise RuntimeError("Controller not initialized")
    return controller


def get_statistics() -> QueueStatistics:
    if statistics is None:
        raise RuntimeError("Statistics not initialized")
    return statistics


def get_registry() -> FleetRegistry:
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


class ProvisionRequest(BaseModel):
    label: str | None = None
    excess_workload: int = Field(ge=0)


class LoadReport(BaseModel):
    label: str = ""
    queue_length: int = Field(default=0, ge=0)
    compute_queue_length: int = Field(default=0, ge=0)
    idle_executors: int = Field(default=0, ge=0)


class WorkRunBody(BaseModel):
    job_name: str
    run_id: str
    problems: bool = False


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/templates")
async def list_templates(
    pool: PoolController = Depends(get_controller),
) -> list[dict[str, Any]]:
    """List the templates the controller provisions from, in routing order."""
    return [template.to_dict() for template in pool.templates]


@app.post("/provision")
async def provision(
    body: ProvisionRequest,
    pool: PoolController = Depends(get_controller),
) -> dict[str, Any]:
    """
    Ask for capacity for a label.

    Returns the provisioning units that were started; an empty list means
    the template is at its capacity cap.

    Raises:
        HTTPException: 404 if no template serves the label
        HTTPException: 400 if the label expression is malformed
    """
    try:
        planned = await pool.request_provision(body.label, body.excess_workload)
    except NoMatchingTemplate as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"planned": [p.to_dict() for p in planned]}


@app.post("/load")
async def report_load(
    body: LoadReport,
    stats: QueueStatistics = Depends(get_statistics),
) -> dict[str, str]:
    """Record the scheduler's current demand figures for a label."""
    stats.record(
        " ".join(body.label.split()),
        body.queue_length,
        body.compute_queue_length,
        body.idle_executors,
    )
    return {"status": "ok"}


@app.get("/pending")
async def list_pending(
    label: str = "",
    pool: PoolController = Depends(get_controller),
) -> list[dict[str, Any]]:
    """List provisioning units still in flight for a label."""
    return [p.to_dict() for p in pool.pending(label)]


@app.get("/nodes")
async def list_nodes(
    registry: FleetRegistry = Depends(get_registry),
) -> list[dict[str, Any]]:
    """List registered fleet members."""
    return [node.to_dict() for node in await registry.list_nodes()]


@app.get("/snapshots")
async def get_snapshot(
    job_name: str,
    run_id: str,
    registry: FleetRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """
    Get the image committed from the node that ran a job run.

    Raises:
        HTTPException: 404 if the run was not snapshotted
    """
    snapshot = await registry.get_snapshot(job_name, run_id)
    if snapshot is None:
        raise HTTPException(
            status_code=404, detail=f"No snapshot for {job_name} #{run_id}"
        )
    return snapshot.to_dict()


@app.post("/nodes/{name}/work-started")
async def work_started(
    name: str,
    body: WorkRunBody,
    pool: PoolController = Depends(get_controller),
) -> dict[str, str]:
    """
    Mark a node as busy with a unit of work.

    Raises:
        HTTPException: 404 if the node is unknown
        HTTPException: 409 if the node has already run work or is going away
    """
    try:
        pool.work_started(name, WorkRun(job_name=body.job_name, run_id=body.run_id))
    except UnknownNode as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NodeNotAccepting as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "busy"}


@app.post("/nodes/{name}/work-completed", status_code=status.HTTP_202_ACCEPTED)
async def work_completed(
    name: str,
    body: WorkRunBody,
    pool: PoolController = Depends(get_controller),
) -> dict[str, str]:
    """Report finished work; the node terminates in the background."""
    try:
        pool.work_completed(
            name,
            WorkRun(job_name=body.job_name, run_id=body.run_id),
            problems=body.problems,
        )
    except UnknownNode as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "terminating"}


@app.delete("/nodes/{name}", status_code=status.HTTP_202_ACCEPTED)
async def terminate_node(
    name: str,
    pool: PoolController = Depends(get_controller),
) -> dict[str, str]:
    """Schedule a node's termination."""
    try:
        pool.terminate_node(name)
    except UnknownNode as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "terminating"}
