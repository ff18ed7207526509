"""FastAPI application: operator triggers and the verification workflow."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Any, Literal, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

from ratewatch.audit import AuditLogger
from ratewatch.db.session import create_engine_from_env
from ratewatch.jobs.ingest import run_ingest
from ratewatch.scraper.identifiers import IdentifierResolver
from ratewatch.scraper.orchestrator import RateScraper, ScraperBusyError
from ratewatch.scraper.service import (
    DEFAULT_PENDING_LIMIT,
    ByItemKeys,
    ByPendingQueue,
    BySnapshot,
    RateScrapeService,
    ScrapeRequest,
)
from ratewatch.scraper.session import LoginRequiredError
from ratewatch.utils.scheduler import RequestScheduler
from ratewatch.verification.service import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    TaskNotFoundError,
    load_detail,
    load_queue,
    start_task,
    submit_verification,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_engine_from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    resolver = IdentifierResolver(engine)
    app.state.scraper = RateScraper(resolver=resolver, scheduler=RequestScheduler())
    try:
        yield
    finally:
        await app.state.scraper.close()
        await resolver.close()


app = FastAPI(title="Ratewatch API", lifespan=lifespan)


def get_scraper(request: Request) -> RateScraper:
    return request.app.state.scraper


class SnapshotScrape(BaseModel):
    mode: Literal["snapshot"]
    snapshotId: int


class PendingScrape(BaseModel):
    mode: Literal["pending"]
    limit: int = Field(default=DEFAULT_PENDING_LIMIT, gt=0)


class ItemsScrape(BaseModel):
    mode: Literal["items"]
    itemKeys: list[str] = Field(min_length=1)


ScrapeBody = Annotated[Union[SnapshotScrape, PendingScrape, ItemsScrape], Field(discriminator="mode")]


class StartRequest(BaseModel):
    assignee: str
    due_at: datetime | None = None


class VerificationRequest(BaseModel):
    verified_rate: float = Field(ge=0, le=100)
    actor_id: str
    evidence_url: str | None = None
    note: str | None = None


def _to_request(body: SnapshotScrape | PendingScrape | ItemsScrape) -> ScrapeRequest:
    if isinstance(body, SnapshotScrape):
        return BySnapshot(snapshot_id=body.snapshotId)
    if isinstance(body, PendingScrape):
        return ByPendingQueue(limit=body.limit)
    return ByItemKeys(item_keys=tuple(body.itemKeys))


@app.exception_handler(RequestValidationError)
async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"error": "invalid_request", "detail": jsonable_encoder(exc.errors())}, status_code=400)


@app.exception_handler(LoginRequiredError)
async def login_required(request: Request, exc: LoginRequiredError) -> JSONResponse:
    return JSONResponse({"error": "login_required", "message": str(exc)}, status_code=409)


@app.exception_handler(ScraperBusyError)
async def scraper_busy(request: Request, exc: ScraperBusyError) -> JSONResponse:
    return JSONResponse({"error": "scraper_busy", "message": str(exc)}, status_code=409)


@app.exception_handler(TaskNotFoundError)
async def task_not_found(request: Request, exc: TaskNotFoundError) -> JSONResponse:
    return JSONResponse({"error": "not_found", "message": f"No verification task for {exc}"}, status_code=404)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse({"error": "invalid_transition", "message": str(exc)}, status_code=409)


@app.exception_handler(ConcurrentUpdateError)
async def concurrent_update(request: Request, exc: ConcurrentUpdateError) -> JSONResponse:
    return JSONResponse({"error": "conflict", "message": str(exc)}, status_code=409)


@app.post("/jobs/ingest")
async def trigger_ingest(engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    try:
        return await run_ingest(engine)
    except KeyError as exc:
        raise HTTPException(status_code=500, detail=f"Missing configuration: {exc}") from exc


@app.post("/scrape")
async def trigger_scrape(
    body: ScrapeBody,
    engine: Engine = Depends(get_engine),
    scraper: RateScraper = Depends(get_scraper),
) -> dict[str, Any]:
    service = RateScrapeService(engine, scraper, audit=AuditLogger(engine))
    job = await service.run(_to_request(body))
    return {"success": True, "data": job.as_dict()}


@app.get("/verification/queue")
def verification_queue(
    limit: int = Query(20, gt=0, le=200),
    engine: Engine = Depends(get_engine),
) -> JSONResponse:
    return JSONResponse(jsonable_encoder({"tasks": load_queue(engine, limit)}))


@app.get("/verification/{item_key}")
def verification_detail(item_key: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    detail = load_detail(engine, item_key)
    if detail is None:
        raise TaskNotFoundError(item_key)
    return JSONResponse(jsonable_encoder(detail))


@app.post("/verification/{item_key}/start")
def verification_start(
    item_key: str, payload: StartRequest, engine: Engine = Depends(get_engine)
) -> dict[str, str]:
    start_task(engine, item_key, payload.assignee, payload.due_at)
    return {"status": "ok"}


@app.post("/verification/{item_key}")
def verification_submit(
    item_key: str, payload: VerificationRequest, engine: Engine = Depends(get_engine)
) -> dict[str, str]:
    submit_verification(
        engine,
        item_key,
        payload.verified_rate,
        payload.actor_id,
        evidence_url=payload.evidence_url,
        note=payload.note,
        audit=AuditLogger(engine),
    )
    return {"status": "ok"}
