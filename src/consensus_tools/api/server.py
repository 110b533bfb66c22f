"""FastAPI server exposing the job board and the ledger over HTTP."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from consensus_tools import __version__
from consensus_tools.config import Settings, load_settings
from consensus_tools.errors import ConsensusToolsError, NotFound, Unauthorized, ValidationError
from consensus_tools.jobs import JobDraft, JobEngine, SubmissionDraft, VoteDraft
from consensus_tools.ledger import LedgerEngine
from consensus_tools.storage import create_store

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "not_found": 404,
    "unauthorized": 403,
    "invalid_transition": 409,
    "insufficient_balance": 409,
    "validation_error": 422,
    "storage_corruption": 500,
}


def _agent(body: dict[str, Any]) -> str:
    agent_id = body.get("agent_id")
    if not agent_id or not isinstance(agent_id, str):
        raise ValidationError("agent_id is required")
    return agent_id


def _number(body: dict[str, Any], key: str, default: float | None = None) -> float | None:
    value = body.get(key, default)
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number") from None
    if not math.isfinite(number):
        raise ValidationError(f"{key} must be a finite number")
    return number


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build an app bound to one state store and its engines."""
    settings = settings or Settings()
    store = create_store(settings.storage)
    ledger = LedgerEngine(store, settings.ledger)
    engine = JobEngine(store, ledger, settings)
    started = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await store.init()
        await ledger.apply_config_balances(settings.ledger.balances, settings.ledger.balances_mode)
        logger.info("Serving state from %s (%s)", settings.storage.path, settings.storage.kind)
        yield

    app = FastAPI(
        title="consensus-tools",
        version=__version__,
        description="Job board with staked claims, votes and consensus resolution",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.ledger = ledger

    @app.exception_handler(ConsensusToolsError)
    async def handle_error(request: Request, exc: ConsensusToolsError) -> JSONResponse:
        status = STATUS_BY_KIND.get(exc.kind, 400)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"error": str(exc), "kind": exc.kind})

    async def require_token(request: Request) -> None:
        token = settings.server.auth_token
        if token and request.headers.get("authorization") != f"Bearer {token}":
            raise Unauthorized("Missing or invalid access token")

    guarded = [Depends(require_token)]

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Health check."""
        uptime = time.monotonic() - started
        return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}

    @app.post("/api/jobs", dependencies=guarded)
    async def post_job(body: dict[str, Any]) -> dict[str, Any]:
        job = await engine.post_job(_agent(body), JobDraft.from_dict(body))
        return job.to_dict()

    @app.get("/api/jobs", dependencies=guarded)
    async def list_jobs(
        status: str | None = None, tag: str | None = None, creator: str | None = None
    ) -> dict[str, Any]:
        jobs = await engine.list_jobs(status=status, tag=tag, creator=creator)
        return {"jobs": [job.to_dict() for job in jobs], "count": len(jobs)}

    @app.get("/api/jobs/{job_id}", dependencies=guarded)
    async def get_job(job_id: str) -> dict[str, Any]:
        job = await engine.get_job(job_id)
        if job is None:
            raise NotFound(f"Job not found: {job_id}")
        return job.to_dict()

    @app.get("/api/jobs/{job_id}/status", dependencies=guarded)
    async def get_status(job_id: str) -> dict[str, Any]:
        report = await engine.get_status(job_id)
        return {
            "job": report.job.to_dict(),
            "claims": [asdict(claim) for claim in report.claims],
            "bids": [asdict(bid) for bid in report.bids],
            "submissions": [asdict(sub) for sub in report.submissions],
            "votes": [asdict(vote) for vote in report.votes],
            "resolution": asdict(report.resolution) if report.resolution else None,
        }

    @app.post("/api/jobs/{job_id}/claim", dependencies=guarded)
    async def claim_job(job_id: str, body: dict[str, Any]) -> dict[str, Any]:
        lease = _number(body, "lease_seconds")
        assignment = await engine.claim_job(
            _agent(body),
            job_id,
            stake_amount=_number(body, "stake_amount", 0.0) or 0.0,
            lease_seconds=int(lease) if lease else None,
        )
        return asdict(assignment)

    @app.post("/api/jobs/{job_id}/heartbeat", dependencies=guarded)
    async def heartbeat(job_id: str, body: dict[str, Any]) -> dict[str, Any]:
        assignment = await engine.heartbeat(_agent(body), job_id)
        return {"ok": assignment is not None, "claim": asdict(assignment) if assignment else None}

    @app.post("/api/jobs/{job_id}/submit", dependencies=guarded)
    async def submit_job(job_id: str, body: dict[str, Any]) -> dict[str, Any]:
        submission = await engine.submit_job(_agent(body), job_id, SubmissionDraft.from_dict(body))
        return asdict(submission)

    @app.post("/api/jobs/{job_id}/vote", dependencies=guarded)
    async def vote(job_id: str, body: dict[str, Any]) -> dict[str, Any]:
        cast = await engine.vote(_agent(body), job_id, VoteDraft.from_dict(body))
        return asdict(cast)

    @app.post("/api/jobs/{job_id}/resolve", dependencies=guarded)
    async def resolve_job(job_id: str, body: dict[str, Any]) -> dict[str, Any]:
        resolution = await engine.resolve_job(
            _agent(body),
            job_id,
            manual_winners=body.get("manual_winners"),
            manual_submission_id=body.get("manual_submission_id"),
        )
        return asdict(resolution)

    @app.get("/api/ledger", dependencies=guarded)
    async def balances() -> dict[str, Any]:
        return {"balances": await ledger.get_balances()}

    @app.get("/api/ledger/{agent_id}", dependencies=guarded)
    async def balance(agent_id: str) -> dict[str, Any]:
        entries = await ledger.history(agent_id=agent_id)
        return {
            "agent_id": agent_id,
            "balance": await ledger.get_balance(agent_id),
            "entries": [asdict(entry) for entry in entries],
        }

    @app.post("/api/ledger/faucet", dependencies=guarded)
    async def faucet(body: dict[str, Any]) -> dict[str, Any]:
        if not settings.ledger.faucet_enabled:
            raise Unauthorized("Faucet is disabled")
        amount = _number(body, "amount")
        if amount is None or amount <= 0:
            raise ValidationError("amount must be a positive number")
        entry = await ledger.faucet(_agent(body), amount)
        return asdict(entry)

    return app


@click.command()
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None, help="TOML settings file")
@click.option("--port", type=int, default=None, help="Port to listen on")
@click.option("--host", default=None, help="Host to bind to")
def main(config_path: Path | None, port: int | None, host: str | None) -> None:
    """Start the consensus-tools API server."""
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    settings = load_settings(config_path)
    app = create_app(settings)
    uvicorn.run(app, host=host or settings.server.host, port=port or settings.server.port)
