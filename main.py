"""Settlement orchestrator service: scheduler host and operator API.

This file handles two concerns:

1. Hosting: builds the runtime at startup and runs the cron scheduler that
   triggers assessment runs.

2. Operator API: manual triggers and read endpoints for runs and
   transactions. There is no end-user surface here.

Endpoints:
    GET  /health                 liveness + whether a run is active
    POST /runs                   trigger a run now (409 if one is active)
    GET  /runs/latest            most recent run record
    GET  /runs/{run_id}          one run record
    GET  /transactions/{hash}    ledger state of a transaction, e.g. after a
                                 confirmation timeout

Run locally:
    uvicorn main:app --reload
"""

import logging
import logging.handlers
import pathlib
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Literal

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from pydantic import BaseModel

load_dotenv()

from config.settings import Settings
from core.bootstrap import build_runtime
from core.errors import LedgerError, RunInProgressError
from schemas.result import RunSummary
from schemas.transaction import TransactionState

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FILE = pathlib.Path(__file__).parent / "settlement.log"
LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_file_handler = logging.handlers.RotatingFileHandler(
    LOG_FILE, maxBytes=1_000_000, backupCount=3, encoding="utf-8",
)
_file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))

_root_logger = logging.getLogger()
_root_logger.setLevel(logging.INFO)
_root_logger.addHandler(_file_handler)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Run store
# ---------------------------------------------------------------------------

class RunRecord(BaseModel):
    """A single assessment run as the operator API reports it.

    status lifecycle:
        "pending"  → manual trigger accepted, run not finished
        "complete" → run finished, counts and outcomes populated
        "skipped"  → another run held the execution lock
        "failed"   → run aborted (e.g. policy-list consensus failed)
    """
    run_id: str
    status: Literal["pending", "complete", "skipped", "failed"]
    trigger: Literal["manual", "scheduled"]
    counts: dict[str, int] = {}
    outcomes: list[dict] = []
    error: str | None = None
    created_at: str = ""


# In-memory store: run_id → RunRecord. Lost on restart; the ledger remains
# the source of truth for what was paid.
_store: dict[str, RunRecord] = {}
_latest_id: str | None = None


def _save(record: RunRecord) -> None:
    """Write a record to the store and update the latest pointer."""
    global _latest_id
    _store[record.run_id] = record
    _latest_id = record.run_id


def _completed(summary: RunSummary, trigger: Literal["manual", "scheduled"]) -> RunRecord:
    return RunRecord(
        run_id=summary.run_id,
        status="complete",
        trigger=trigger,
        counts=summary.counts(),
        outcomes=[o.model_dump(mode="json") for o in summary.outcomes],
        created_at=datetime.fromtimestamp(summary.started_at, timezone.utc).isoformat(),
    )


def _record_scheduled(summary: RunSummary) -> None:
    _save(_completed(summary, "scheduled"))


def _record_scheduled_failure(exc: Exception) -> None:
    _save(RunRecord(
        run_id=str(uuid.uuid4()),
        status="failed",
        trigger="scheduled",
        error=str(exc),
        created_at=datetime.now(timezone.utc).isoformat(),
    ))


# ---------------------------------------------------------------------------
# App + lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime (unless one was injected) and run the scheduler."""
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime(Settings.from_env())
    runtime = app.state.runtime
    runtime.scheduler.on_summary = _record_scheduled
    runtime.scheduler.on_failure = _record_scheduled_failure
    runtime.scheduler.start()
    try:
        yield
    finally:
        await runtime.scheduler.stop()
        await runtime.aclose()


app = FastAPI(title="Crop Settlement Orchestrator", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Background run task
# ---------------------------------------------------------------------------

async def _run_assessment(runtime, run_id: str) -> None:
    """Run the reporter and update the store.

    All failures are recorded so the record always reaches a terminal state
    rather than staying "pending".
    """
    try:
        summary = await runtime.reporter.run(run_id=run_id)
        _save(_completed(summary, "manual"))
    except RunInProgressError as exc:
        logger.warning("Manual run %s skipped: %s", run_id, exc)
        _save(_store[run_id].model_copy(update={"status": "skipped", "error": str(exc)}))
    except Exception as exc:
        logger.error("Manual run %s failed: %s", run_id, exc)
        _save(_store[run_id].model_copy(update={"status": "failed", "error": str(exc)}))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health(request: Request):
    return {"status": "ok", "run_active": request.app.state.runtime.reporter.running}


@app.post("/runs", status_code=202)
async def trigger_run(request: Request, background_tasks: BackgroundTasks):
    """Start an assessment run in the background.

    Returns 409 when a run is already active; the trigger is not queued.
    """
    runtime = request.app.state.runtime
    if runtime.reporter.running:
        raise HTTPException(status_code=409, detail="An assessment run is already in progress.")

    run_id = str(uuid.uuid4())
    _save(RunRecord(
        run_id=run_id,
        status="pending",
        trigger="manual",
        created_at=datetime.now(timezone.utc).isoformat(),
    ))
    logger.info("Manual run %s accepted.", run_id)
    background_tasks.add_task(_run_assessment, runtime, run_id)
    return {"run_id": run_id, "status": "pending"}


@app.get("/runs/latest", response_model=RunRecord)
def get_latest_run():
    """Return the most recent run record. 404 if no run has happened yet."""
    if _latest_id is None or _latest_id not in _store:
        raise HTTPException(status_code=404, detail="No runs yet.")
    return _store[_latest_id]


@app.get("/runs/{run_id}", response_model=RunRecord)
def get_run(run_id: str):
    if run_id not in _store:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")
    return _store[run_id]


@app.get("/transactions/{tx_hash}", response_model=TransactionState)
async def get_transaction(tx_hash: str, request: Request):
    """Poll the ledger for a transaction's state.

    This is how a confirmation timeout is reconciled: the dispatcher never
    resubmits on its own.
    """
    try:
        return await request.app.state.runtime.dispatcher.transaction_status(tx_hash)
    except LedgerError as exc:
        logger.error("Status poll for %s failed: %s", tx_hash, exc)
        raise HTTPException(status_code=502, detail=f"Ledger unavailable: {exc}")
