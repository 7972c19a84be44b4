"""FastAPI app with health, actor submission/listing endpoints, and proper error handling.

Every actor route is served both at ``/actors/...`` and ``/api/actors/...``.
"""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ai.extraction import ExtractionClient
from config.content_rules import PROMPT_VALIDATION_MESSAGE

from . import models
from .cache import CacheBackend, get_cache
from .config import settings
from .db import get_session
from .errors import (
    BusinessRuleViolation,
    ExtractionError,
    IntakeError,
    ProcessingError,
    RateLimitExceeded,
    ValidationFailed,
)
from .events import EventBus, get_event_bus
from .logging_config import setup_logging
from .pipelines.query import ActorFilters, QueryService
from .pipelines.submission import SubmissionInput, SubmissionPipeline
from .security import issue_csrf_token, submission_rate_limit, verify_csrf

logger = logging.getLogger(__name__)


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    version: str
    timestamp: str
    circuit_breaker: str


class PromptValidationResponse(BaseModel):
    """Prompt validation message."""
    message: str


class SubmitActorRequest(BaseModel):
    """Actor submission; content rules are enforced by the pipeline."""
    email: str = Field(default="", max_length=1000)
    description: str = Field(default="", max_length=20000)


class CsrfTokenResponse(BaseModel):
    """Issued anti-forgery token."""
    csrf_token: str


# =============================================================================
# Dependencies
# =============================================================================

_extraction_client: ExtractionClient | None = None


def get_extraction_client() -> ExtractionClient:
    """Process-wide extraction client sharing the process cache."""
    global _extraction_client
    if _extraction_client is None:
        _extraction_client = ExtractionClient(get_cache())
    return _extraction_client


def get_pipeline(
    session: AsyncSession = Depends(get_session),
    client: ExtractionClient = Depends(get_extraction_client),
    cache: CacheBackend = Depends(get_cache),
    events: EventBus = Depends(get_event_bus),
) -> SubmissionPipeline:
    return SubmissionPipeline(session, client, cache, events)


def get_query_service(
    session: AsyncSession = Depends(get_session),
    cache: CacheBackend = Depends(get_cache),
) -> QueryService:
    return QueryService(session, cache)


# =============================================================================
# Serialization helpers
# =============================================================================


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def _elapsed_ms(request: Request) -> float | None:
    started = getattr(request.state, "started_at", None)
    if started is None:
        return None
    return round((time.perf_counter() - started) * 1000, 2)


def serialize_actor(actor: models.Actor) -> dict[str, Any]:
    """Public representation of an actor (no raw extraction payload)."""
    payload = actor.extraction_payload or {}
    return {
        "uuid": actor.uuid,
        "email": actor.email,
        "first_name": actor.first_name,
        "last_name": actor.last_name,
        "full_name": actor.full_name,
        "address": actor.address,
        "height": actor.height,
        "weight": actor.weight,
        "gender": actor.gender,
        "display_gender": actor.display_gender,
        "age": actor.age,
        "original_description": actor.original_description,
        "status": actor.status,
        "confidence_score": payload.get("confidence_score"),
        "processed_at": _iso(actor.processed_at),
        "created_at": _iso(actor.created_at),
        "updated_at": _iso(actor.updated_at),
    }


def _error_response(request: Request, exc: IntakeError, body: dict[str, Any] | None = None) -> JSONResponse:
    content = body or exc.to_dict()
    elapsed = _elapsed_ms(request)
    if elapsed is not None:
        content.setdefault("meta", {})["processing_time_ms"] = elapsed
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitExceeded) else None
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


# =============================================================================
# Application
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info(f"{settings.app_name} v{settings.version} starting up")

    yield

    # Shutdown
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Actor description intake with LLM-backed field extraction",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_timer(request: Request, call_next):
    request.state.started_at = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Process-Time-Ms"] = str(_elapsed_ms(request))
    return response


# Exception handlers
@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Map FastAPI body/query validation onto the field-map envelope."""
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.setdefault(".".join(loc) or "request", []).append(error.get("msg", "Invalid value."))
    return _error_response(request, ValidationFailed(errors))


@app.exception_handler(BusinessRuleViolation)
async def business_rule_handler(request: Request, exc: BusinessRuleViolation):
    """Handle rejected submissions and retries."""
    logger.info(f"Business rule violation: {exc.message}", extra={"reason": exc.reason})
    return _error_response(request, exc)


@app.exception_handler(ExtractionError)
async def extraction_error_handler(request: Request, exc: ExtractionError):
    """Handle extraction backend failures."""
    logger.error(
        f"Extraction error: {exc}",
        extra={"kind": type(exc).__name__, "retryable": exc.retryable},
    )
    return _error_response(request, exc)


@app.exception_handler(ProcessingError)
async def processing_error_handler(request: Request, exc: ProcessingError):
    """Handle unexpected pipeline errors."""
    logger.error(f"Processing error: {exc}", exc_info=exc)
    return _error_response(request, exc)


@app.exception_handler(IntakeError)
async def intake_error_handler(request: Request, exc: IntakeError):
    """Handle the remaining intake errors (not found, CSRF, rate limit)."""
    logger.warning(f"{exc.code}: {exc}")
    return _error_response(request, exc)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Last-resort handler; details stay in the logs."""
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    return _error_response(request, ProcessingError(str(exc)))


# =============================================================================
# Service endpoints
# =============================================================================


@app.get("/api/health", response_model=HealthResponse)
async def health(client: ExtractionClient = Depends(get_extraction_client)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        service=settings.service_name,
        version=settings.version,
        timestamp=_iso(datetime.now(timezone.utc)),
        circuit_breaker=await client.circuit_status(),
    )


@app.get("/api/csrf-token", response_model=CsrfTokenResponse)
async def csrf_token(request: Request, response: Response) -> CsrfTokenResponse:
    """Issue (or re-issue) the double-submit CSRF cookie."""
    token = request.cookies.get(settings.api.csrf_cookie_name) or issue_csrf_token()
    response.set_cookie(
        settings.api.csrf_cookie_name,
        token,
        httponly=False,
        samesite="lax",
        secure=settings.environment.value == "production",
    )
    return CsrfTokenResponse(csrf_token=token)


@app.get("/api/docs")
async def documentation() -> dict[str, Any]:
    """Static endpoint documentation."""
    return {
        "api": settings.app_name,
        "version": settings.version,
        "endpoints": [
            {
                "method": "GET",
                "path": "/api/actors/prompt-validation",
                "description": "Get prompt validation message",
                "response": {"message": "string"},
            },
            {
                "method": "POST",
                "path": "/api/actors",
                "description": "Submit actor information for processing",
                "parameters": {
                    "email": "required|email|unique",
                    "description": "required|string|min:10|max:2000",
                },
                "response": {"success": "boolean", "message": "string", "data": "object"},
            },
            {
                "method": "GET",
                "path": "/api/actors",
                "description": "Get paginated list of actors",
                "parameters": {
                    "page": "optional|integer",
                    "per_page": f"optional|integer|max:{settings.api.max_per_page}",
                    "status": "optional|string|in:pending,processed,failed",
                    "gender": "optional|string|in:male,female,other,prefer_not_to_say",
                    "search": "optional|string",
                    "date_from": "optional|date",
                    "date_to": "optional|date",
                },
            },
            {"method": "GET", "path": "/api/actors/{uuid}", "description": "Get specific actor by UUID"},
            {"method": "POST", "path": "/api/actors/{uuid}/retry", "description": "Retry processing for failed actor"},
            {"method": "DELETE", "path": "/api/actors/{uuid}", "description": "Delete an actor"},
        ],
        "authentication": "None required for public endpoints",
        "csrf": (
            f"Send the {settings.api.csrf_header_name} header matching the "
            f"{settings.api.csrf_cookie_name} cookie from /api/csrf-token"
        ),
        "rate_limiting": f"{settings.api.rate_limit_per_minute} submissions per minute per IP",
        "error_format": {
            "success": False,
            "error": "error_code",
            "message": "Human readable error message",
            "errors": "Validation errors object (if applicable)",
        },
    }


# =============================================================================
# Actor endpoints
# =============================================================================

actors = APIRouter(prefix="/actors", tags=["actors"])


@actors.get("/prompt-validation", response_model=PromptValidationResponse)
async def prompt_validation() -> PromptValidationResponse:
    """Message shown to users before they write a description."""
    return PromptValidationResponse(message=PROMPT_VALIDATION_MESSAGE)


@actors.get("")
async def list_actors(
    status_filter: models.ActorStatus | None = Query(default=None, alias="status"),
    gender: models.Gender | None = None,
    search: str | None = Query(default=None, max_length=255),
    date_from: date | None = None,
    date_to: date | None = None,
    per_page: int = Query(default=settings.api.default_per_page),
    page: int = Query(default=1),
    query: QueryService = Depends(get_query_service),
) -> dict[str, Any]:
    """Paginated list of live actors with aggregate statistics."""
    filters = ActorFilters(
        status=status_filter.value if status_filter else None,
        gender=gender.value if gender else None,
        search=search or None,
        date_from=date_from,
        date_to=date_to,
    )
    result = await query.list(filters, per_page=per_page, page=page)
    statistics = await query.statistics()

    return {
        "success": True,
        "data": {
            "actors": [serialize_actor(actor) for actor in result.items],
            "pagination": result.pagination(),
            "statistics": statistics,
        },
    }


@actors.post(
    "",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_csrf), Depends(submission_rate_limit)],
)
async def submit_actor(
    payload: SubmitActorRequest,
    request: Request,
    pipeline: SubmissionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Submit an actor description and extract its fields.

    This endpoint:
    1. Validates email/description and applies the quality gate
    2. Rejects duplicate emails
    3. Persists the actor and calls the extraction backend
    4. Returns the stored actor summary
    """
    logger.info("Received actor submission", extra={"client": request.client.host if request.client else None})

    actor = await pipeline.submit(
        SubmissionInput(
            email=payload.email,
            description=payload.description,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    )

    return {
        "success": True,
        "message": "Actor information submitted successfully",
        "data": {
            "actor": {
                "uuid": actor.uuid,
                "email": actor.email,
                "status": actor.status,
                "created_at": _iso(actor.created_at),
            },
        },
        "meta": {"processing_time_ms": _elapsed_ms(request)},
    }


@actors.get("/{uuid}")
async def show_actor(uuid: str, query: QueryService = Depends(get_query_service)) -> dict[str, Any]:
    """Single live actor by UUID."""
    actor = await query.get_by_uuid(uuid)
    return {"success": True, "data": {"actor": serialize_actor(actor)}}


@actors.post("/{uuid}/retry", dependencies=[Depends(verify_csrf)])
async def retry_actor(
    uuid: str,
    request: Request,
    query: QueryService = Depends(get_query_service),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Retry extraction for a failed actor."""
    actor = await query.get_by_uuid(uuid)

    try:
        actor = await pipeline.retry(actor)
    except BusinessRuleViolation as e:
        return _error_response(request, e, {**e.to_dict(), "error": "retry_failed"})
    except ExtractionError as e:
        logger.error(f"Actor retry failed: {e}", extra={"actor_uuid": uuid})
        return _error_response(
            request,
            e,
            {
                **e.to_dict(),
                "error": "retry_failed",
                "message": "Unable to retry actor processing at this time.",
            },
        )

    logger.info(f"Actor retry completed with status {actor.status}", extra={"actor_uuid": actor.uuid})
    return {
        "success": True,
        "message": "Actor processing retried successfully",
        "data": {
            "actor": {
                "uuid": actor.uuid,
                "status": actor.status,
                "processed_at": _iso(actor.processed_at),
            },
        },
        "meta": {"processing_time_ms": _elapsed_ms(request)},
    }


@actors.delete("/{uuid}", dependencies=[Depends(verify_csrf)])
async def delete_actor(
    uuid: str,
    query: QueryService = Depends(get_query_service),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Soft-delete an actor and its submission history."""
    actor = await query.get_by_uuid(uuid)
    await pipeline.delete(actor)
    return {"success": True, "message": "Actor deleted successfully", "data": {"uuid": uuid}}


app.include_router(actors)
app.include_router(actors, prefix="/api")
