"""Workflow Automaton FastAPI trigger.

Called by a scheduler (cron / CI pipeline schedule). POST /run has no body;
each call performs exactly one automaton run and returns its summary.

Status codes:
    200  completed / no_due_work / cancelled
    207  partial_failure (some projects failed, the rest were processed)
    503  fetch_failed (the candidate list could not be loaded)
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from .buckets import BUCKET_DEFINITIONS
from .config import get_config
from .database import close_db, get_engine, get_session_factory, init_db
from .errors import RepositoryError
from .rules import GOVERNED_BUCKETS
from .service import RunCoordinator, RunStatus

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"

STATUS_CODES = {
    RunStatus.COMPLETED: 200,
    RunStatus.NO_DUE_WORK: 200,
    RunStatus.CANCELLED: 200,
    RunStatus.PARTIAL_FAILURE: 207,
    RunStatus.FETCH_FAILED: 503,
}

coordinator: Optional[RunCoordinator] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and coordinator on startup."""
    global coordinator
    config = get_config()
    await init_db(get_engine())
    coordinator = RunCoordinator.from_config(config, get_session_factory())
    logger.info(
        f"Workflow Automaton v{app.version} started "
        f"(filter={config.run.candidate_filter.value})"
    )
    yield
    await close_db()
    coordinator = None
    logger.info("Shutting down")


app = FastAPI(
    title="Workflow Automaton",
    description="Bucket transitions for the Kanzlei pipeline",
    version=VERSION,
    lifespan=lifespan,
)


def _get_coordinator() -> RunCoordinator:
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return coordinator


# ---------------------------------------------------------------------------
# Health Check
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "workflow-automaton",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Board metadata
# ---------------------------------------------------------------------------

@app.get("/buckets")
async def buckets():
    """Board columns in order, with whether the automaton moves them."""
    return [
        {**d.to_dict(), "automated": d.bucket in GOVERNED_BUCKETS}
        for d in BUCKET_DEFINITIONS
    ]


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

@app.post("/run")
async def run(today: Optional[date] = None):
    """Run the automaton once. `today` back-dates the run (defaults to the server date)."""
    summary = await _get_coordinator().run_once(today=today)
    return JSONResponse(
        status_code=STATUS_CODES[summary.status],
        content=summary.to_dict(),
    )


@app.get("/preview")
async def preview(today: Optional[date] = None):
    """Dry run: which transitions would fire, without writing anything."""
    today = today or date.today()
    try:
        plans = await _get_coordinator().preview(today=today)
    except RepositoryError as e:
        logger.error(f"Preview failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "today": today.isoformat(),
        "count": len(plans),
        "transitions": [
            {"project_id": project_id, **plan.describe()}
            for project_id, plan in plans
        ],
    }
