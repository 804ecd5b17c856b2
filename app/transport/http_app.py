# app/transport/http_app.py
"""
Crisis dispatch HTTP application.

Security layers:
1. Public: liveness / readiness probes only
2. Actor: every /api route requires a signed actor token; roles and
   ownership are checked by the dispatch core against the user store
3. Monitoring: /health/detailed and /metrics behind METRICS_TOKEN or internal network
4. No information leakage in production
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings, validate_or_warn
from app.core.dispatch.domain import Crisis, VolunteerProfile
from app.core.dispatch.errors import DispatchError
from app.core.dispatch.service import DispatchService, get_dispatch_service
from app.infra.db_async import close_pool, init_pool
from app.infra.schema_validator import validate_schema_version
from app.infra.logging_config import setup_logging, get_logger
from app.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from app.infra.metrics import get_metrics_collector
from app.infra.health_checks_async import get_async_health_checker
from app.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from app.transport.schemas import (
    AdminAssignIn,
    FailAssignmentIn,
    HelpRequestOut,
    ProfileUpdateIn,
    ProgressIn,
    RatingIn,
)
from app.transport.security import (
    actor_id_from_request,
    check_configured_tokens,
    require_actor,
    require_metrics_auth,
    SecurityHeaders,
    sanitize_error_message,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_service() -> DispatchService:
    """Dispatch core wired to Postgres and the configured notification channel."""
    return get_dispatch_service()


async def rate_limit_check(request: Request) -> None:
    """Rate limit dependency for actor endpoints"""
    limiter_dep = getattr(request.app.state, "rate_limiter", None)
    if limiter_dep is None:
        return
    await limiter_dep(request)


def _parse(model, payload: dict):
    try:
        return model(**payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _crisis_out(crisis: Crisis) -> dict:
    return {
        "id": crisis.id,
        "disaster_type": crisis.disaster_type,
        "severity": crisis.severity,
        "status": crisis.status.value,
        "assigned_volunteer_id": crisis.assigned_volunteer_id,
    }


def _profile_out(profile: VolunteerProfile) -> dict:
    data = asdict(profile)
    data["updated_at"] = profile.updated_at.isoformat() if profile.updated_at else None
    return data


# ============================================================================
# MIDDLEWARE FOR SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting application: env={settings.app_env}")

    # Production: hard fail on missing settings. Elsewhere: warnings only.
    validate_or_warn(settings)

    if settings.is_production and settings.log_level.upper() == "DEBUG":
        logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
        raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    await init_pool()
    logger.info("Database pool initialized")

    # Validate schema version (does NOT run migrations)
    # Migrations should be run separately: python -m app.infra.migrate
    try:
        schema_result = await validate_schema_version()
        logger.info(
            f"Schema validated: {schema_result['current_version']}",
            extra=schema_result
        )
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m app.infra.migrate",
            exc_info=True
        )
        await close_pool()
        raise

    get_dispatch_service()
    logger.info(
        f"Dispatch service ready: channel={settings.notification_channel}, "
        f"fanout_concurrency={settings.dispatch_fanout_concurrency}"
    )

    # Bucket by verified actor, fall back to client IP
    rate_limiter = InMemoryRateLimiter(
        max_requests=settings.rate_limit_per_minute,
        window_seconds=60
    )
    fastapi_app.state.rate_limiter = RateLimitDependency(rate_limiter, key_func=actor_id_from_request)

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    from app.infra.http_client import close_all_sessions
    await close_all_sessions()

    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Crisis Dispatch",
    description="Volunteer notification and assignment lifecycle for reported crises",
    version="1.0.0",
    lifespan=lifespan,
    # Security: Completely disable docs in production (None, not conditional URL)
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# CORS - Restrictive in production
if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    # More permissive in dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    error_message = sanitize_error_message(exc, settings.is_production)

    return JSONResponse(
        status_code=500,
        content={"error": error_message},
    )


# ============================================================================
# PUBLIC ENDPOINTS (No authentication required)
# ============================================================================

@app.get("/health")
def health():
    """
    Basic health check - PUBLIC endpoint.
    Used by load balancers, monitoring, etc.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """
    Readiness check - PUBLIC endpoint.
    Kubernetes readiness probe.
    """
    health_checker = get_async_health_checker()
    result = await health_checker.run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy"}  # Minimal info
        )

    return {"status": "healthy"}


# ============================================================================
# DISPATCH ENDPOINTS (Actor token required)
#
# Thin transport layer. All business rules live in app.core.dispatch.
# Routes: parse request -> call service -> map DispatchError -> return JSON.
# ============================================================================

@app.post("/api/crises/{crisis_id}/request-help", dependencies=[Depends(rate_limit_check)])
async def request_help(
    crisis_id: str,
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    """Civilian asks for help: notify every available volunteer."""
    try:
        result = await svc.dispatcher.request_help(crisis_id, actor_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    return HelpRequestOut(
        message=result.message,
        crisis_id=result.crisis_id,
        notified_count=result.notified_count,
        eligible_count=result.eligible_count,
        response_ids=result.response_ids,
    ).model_dump()


@app.post("/api/crises/{crisis_id}/assign", dependencies=[Depends(rate_limit_check)])
async def admin_assign(
    crisis_id: str,
    payload: dict,
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    """Admin override: assign a volunteer directly."""
    req = _parse(AdminAssignIn, payload)
    try:
        result = await svc.assignments.admin_assign(crisis_id, req.volunteer_id, actor_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    return {
        "message": "Volunteer assigned successfully.",
        "crisis": _crisis_out(result.crisis),
        "response": result.response.to_dict(),
        "previous_volunteer_id": result.previous_volunteer_id,
    }


@app.get("/api/volunteers/profile", dependencies=[Depends(rate_limit_check)])
async def get_volunteer_profile(
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    try:
        profile = await svc.profiles.get_profile(actor_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"profile": _profile_out(profile)}


@app.post("/api/volunteers/profile", dependencies=[Depends(rate_limit_check)])
async def update_volunteer_profile(
    payload: dict,
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    """Create or update the caller's volunteer profile."""
    req = _parse(ProfileUpdateIn, payload)
    try:
        profile = await svc.profiles.update_profile(
            actor_id,
            skills=req.skills,
            availability=req.availability,
        )
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"message": "Profile updated successfully.", "profile": _profile_out(profile)}


@app.get("/api/volunteers/assignments", dependencies=[Depends(rate_limit_check)])
async def list_volunteer_assignments(
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    try:
        responses = await svc.profiles.list_assignments(actor_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"assignments": [r.to_dict() for r in responses]}


@app.post("/api/volunteers/assignments/{response_id}/accept", dependencies=[Depends(rate_limit_check)])
async def accept_assignment(
    response_id: str,
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    try:
        response = await svc.assignments.accept(response_id, actor_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"message": "Assignment accepted.", "response": response.to_dict()}


@app.post("/api/volunteers/assignments/{response_id}/progress", dependencies=[Depends(rate_limit_check)])
async def update_assignment_progress(
    response_id: str,
    payload: dict,
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    """Volunteer reports en_route / arrived."""
    req = _parse(ProgressIn, payload)
    try:
        response = await svc.assignments.update_progress(response_id, actor_id, req.status)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"message": f"Status updated to {response.status.value}.", "response": response.to_dict()}


@app.post("/api/volunteers/assignments/{response_id}/complete", dependencies=[Depends(rate_limit_check)])
async def complete_assignment(
    response_id: str,
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    try:
        response = await svc.assignments.complete(response_id, actor_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"message": "Assignment marked as completed.", "response": response.to_dict()}


@app.post("/api/volunteers/assignments/{response_id}/fail", dependencies=[Depends(rate_limit_check)])
async def fail_assignment(
    response_id: str,
    payload: dict,
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    """Volunteer rejects the assignment or abandons it mid-task."""
    req = _parse(FailAssignmentIn, payload)
    try:
        response = await svc.assignments.fail(response_id, actor_id, req.reason)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"message": "Assignment marked as failed/rejected.", "response": response.to_dict()}


@app.post("/api/ratings/submit", dependencies=[Depends(rate_limit_check)])
async def submit_rating(
    payload: dict,
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    req = _parse(RatingIn, payload)
    try:
        rating = await svc.ratings.submit_rating(
            req.response_id,
            actor_id,
            req.rating,
            comment=req.comment,
            photo_proof_url=req.photo_proof_url,
            location=req.location,
        )
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"message": "Rating submitted successfully.", "rating": rating.to_dict()}


@app.get("/api/ratings/volunteer/{volunteer_id}", dependencies=[Depends(rate_limit_check)])
async def list_volunteer_ratings(
    volunteer_id: str,
    actor_id: str = Depends(require_actor),
    svc: DispatchService = Depends(get_service),
):
    try:
        ratings = await svc.ratings.list_volunteer_ratings(volunteer_id, actor_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"ratings": [r.to_dict() for r in ratings]}


# ============================================================================
# MONITORING ENDPOINTS (Internal network or METRICS_TOKEN)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_metrics_auth)])
async def detailed_health():
    """
    Detailed health check - INTERNAL/METRICS only.
    Returns sensitive information about system state.
    """
    health_checker = get_async_health_checker()
    return await health_checker.run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    """Metrics endpoint - INTERNAL/METRICS only."""
    collector = get_metrics_collector()
    return collector.get_metrics()


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    """
    Catch-all route for undefined endpoints.
    Returns generic 404 without revealing information.
    """
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # Disable in prod (use middleware logging)
        server_header=False,
        date_header=False,
    )
