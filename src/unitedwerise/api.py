from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, cast

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .config import load_settings
from .db import create_post, get_user, init_db, run_migrations, touch_user
from .districts import Address
from .errors import PermissionDenied, UnitedWeRiseError
from .health import HealthCheckResponse, check_liveness, check_readiness
from .logger import get_logger
from .prometheus_metrics import PrometheusMiddleware, get_prometheus_metrics
from .quests import QuestCreate, QuestUpdate
from .rate_limiter import RateLimiter, get_rate_limiter
from .security import EventType
from .services import Services, build_services
from .topics import AggregationOptions

log = get_logger(__name__)


# Request bodies use the camelCase field names the web client sends
class ContentRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10000)


class CreatePostRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10000)
    isPolitical: bool = False
    tags: Optional[List[str]] = None


class ReputationReportRequest(BaseModel):
    targetUserId: str
    postId: str
    reason: str


class AppealRequest(BaseModel):
    eventId: str
    reason: str = Field(min_length=10, max_length=1000)


class AwardRequest(BaseModel):
    userId: str
    reason: str
    postId: Optional[str] = None


class FeedRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=100)
    weights: Dict[str, Any] = Field(default_factory=dict)


class CreateReportRequest(BaseModel):
    targetType: str
    targetId: str
    reason: str
    description: Optional[str] = Field(default=None, max_length=1000)


class ResolveReportRequest(BaseModel):
    action: str
    notes: Optional[str] = None


class SuspendRequest(BaseModel):
    reason: str = Field(min_length=1)
    type: str = "TEMPORARY"
    durationDays: Optional[float] = Field(default=None, gt=0)


class WarnRequest(BaseModel):
    reason: str = Field(min_length=1)
    severity: str = "MINOR"
    notes: Optional[str] = None


class RoleRequest(BaseModel):
    role: str


class BlockIpRequest(BaseModel):
    ipAddress: str
    reason: str
    expiresAt: Optional[datetime] = None


class UnblockIpRequest(BaseModel):
    ipAddress: str


class StatusRequest(BaseModel):
    status: str


class QuestProgressRequest(BaseModel):
    actionType: str


class DistrictLookupRequest(BaseModel):
    state: str = Field(min_length=2, max_length=2)
    zipCode: str = Field(min_length=5, max_length=10)
    streetAddress: Optional[str] = None
    city: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    forceRefresh: bool = False


class MissingOfficesRequest(BaseModel):
    districtIds: List[str] = Field(min_length=1)


def init_sentry() -> None:
    """Initialize Sentry error tracking if DSN is configured."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        log.info("Sentry DSN not configured, skipping error tracking")
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=dsn,
            integrations=[
                FastApiIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.2")),
            environment=os.getenv("ENVIRONMENT", "development"),
            release=f"unitedwerise-backend@{__version__}",
        )
        sentry_sdk.set_tag("component", "api")
        log.info("Sentry error tracking initialized")
    except Exception as e:
        log.warning("Failed to initialize Sentry: %s", e)
        log.info("Continuing without error tracking")


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_app(settings_path: Optional[str] = None, services: Optional[Services] = None) -> FastAPI:
    # Initialize Sentry first to catch any errors during setup
    init_sentry()
    app = FastAPI(
        title="UnitedWeRise API",
        version=__version__,
        description="""
        Civic social platform backend.

        ## Authentication

        The upstream auth gateway forwards the caller's id in `X-User-Id`.
        Admin endpoints also require `X-API-Key` when `UWR_ADMIN_API_KEY` is set;
        otherwise the caller must be flagged as an admin.
        """,
        openapi_tags=[
            {"name": "posts", "description": "Post creation with content checks"},
            {"name": "reputation", "description": "Reputation scores, reports and appeals"},
            {"name": "trending", "description": "Stance-aware trending topics"},
            {"name": "feed", "description": "Probability-sampled home feed"},
            {"name": "moderation", "description": "User reports and image moderation"},
            {"name": "admin", "description": "Admin dashboard, users, security and feedback"},
            {"name": "civic", "description": "Districts, news and quests"},
            {"name": "monitoring", "description": "Health checks and metrics"},
        ],
    )

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
            response = await call_next(request)
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
            return response

    state: Dict[str, Any] = {}
    state["admin_api_key"] = os.getenv("UWR_ADMIN_API_KEY")

    if services is None:
        settings = load_settings(settings_path)
        init_db(settings.app.database_path)
        run_migrations(settings.app.database_path)
        services = build_services(settings)
    state["services"] = services

    cors_origins = [o.strip() for o in (os.getenv("CORS_ORIGINS") or "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(PrometheusMiddleware)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        """Per-client rate limiting with X-RateLimit-* headers."""
        rate_settings = services.settings.app.rate_limit
        if not rate_settings.enabled:
            return await call_next(request)

        limiter = get_rate_limiter(rate_settings)
        expected = state["admin_api_key"]
        is_admin_key = bool(expected) and request.headers.get("x-api-key") == expected
        identifier, tier = RateLimiter.get_client_identifier(
            _client_ip(request), request.headers.get("x-user-id"), is_admin_key
        )
        result = limiter.check_rate_limit(identifier, tier)

        if not result.allowed:
            await run_in_threadpool(
                services.security.log_event,
                EventType.RAPID_REQUESTS,
                user_id=request.headers.get("x-user-id"),
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
                details={"rateLimitHit": True, "path": request.url.path},
            )
            return JSONResponse(
                status_code=429,
                content={"detail": f"Rate limit exceeded. Retry after {result.retry_after} seconds."},
                headers={
                    "Retry-After": str(result.retry_after),
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(result.reset_at),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset_at)
        return response

    @app.middleware("http")
    async def blocked_ip_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/health"):
            return await call_next(request)
        ip = _client_ip(request)
        if await run_in_threadpool(services.security.is_ip_blocked, ip):
            log.warning("Rejected request from blocked IP %s to %s", ip, request.url.path)
            return JSONResponse(
                status_code=403,
                content={"error": "Access denied", "message": "Your IP address has been blocked"},
            )
        return await call_next(request)

    def get_services() -> Services:
        return cast(Services, state["services"])

    def current_user(
        x_user_id: Optional[str] = Header(default=None),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Authentication required")
        user = get_user(svc.db_path, x_user_id)
        if not user:
            raise HTTPException(status_code=401, detail="Unknown user")
        touch_user(svc.db_path, x_user_id)
        return user

    def require_admin(
        x_api_key: Optional[str] = Header(default=None),
        x_user_id: Optional[str] = Header(default=None),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        """Resolve the acting admin; the API key, when configured, is mandatory."""
        expected = state["admin_api_key"]
        user = get_user(svc.db_path, x_user_id) if x_user_id else None
        if expected:
            if x_api_key != expected:
                raise HTTPException(status_code=401, detail="Invalid API key")
            return user or {"id": "admin", "username": "admin", "is_admin": 1, "is_moderator": 1}
        if not user:
            raise HTTPException(status_code=401, detail="Authentication required")
        if not user.get("is_admin"):
            raise HTTPException(status_code=403, detail="Admin access required")
        return user

    def require_moderator(
        x_api_key: Optional[str] = Header(default=None),
        x_user_id: Optional[str] = Header(default=None),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        expected = state["admin_api_key"]
        if expected and x_api_key == expected:
            return require_admin(x_api_key, x_user_id, svc)
        user = get_user(svc.db_path, x_user_id) if x_user_id else None
        if not user:
            raise HTTPException(status_code=401, detail="Authentication required")
        if not (user.get("is_moderator") or user.get("is_admin")):
            raise HTTPException(status_code=403, detail="Moderator access required")
        return user

    def audit(svc: Services, request: Request, admin: Dict[str, Any], action: str, **details: Any) -> None:
        svc.security.log_event(
            EventType.ADMIN_ACTION,
            user_id=admin.get("id"),
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            details={"action": action, "adminAction": True, **details},
        )

    # -- monitoring ----------------------------------------------------------

    @app.get(
        "/health",
        tags=["monitoring"],
        summary="Health check",
        response_model=HealthCheckResponse,
    )
    async def health_check(svc: Services = Depends(get_services)) -> HealthCheckResponse:
        return await check_readiness(svc.db_path, svc.llm)

    @app.get("/health/live", tags=["monitoring"], summary="Liveness probe", response_model=HealthCheckResponse)
    async def liveness() -> HealthCheckResponse:
        return await check_liveness()

    @app.get("/health/ready", tags=["monitoring"], summary="Readiness probe", response_model=HealthCheckResponse)
    async def readiness(svc: Services = Depends(get_services)) -> HealthCheckResponse:
        return await check_readiness(svc.db_path, svc.llm)

    @app.get("/metrics/prometheus", tags=["monitoring"], summary="Prometheus metrics")
    def metrics_prometheus() -> Response:
        return get_prometheus_metrics()

    # -- posts ---------------------------------------------------------------

    @app.post("/posts", tags=["posts"], summary="Create a post", status_code=201)
    def create_post_endpoint(
        body: CreatePostRequest,
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        status = svc.moderation.get_user_suspension_status(user["id"])
        if not status["canPost"]:
            raise PermissionDenied("Your account is suspended from posting", {"suspension": status.get("suspension")})

        reputation = svc.reputation.get_user_reputation(user["id"])
        post = create_post(
            svc.db_path,
            user["id"],
            body.content,
            embedding=svc.embeddings.embed(body.content),
            is_political=body.isPolitical,
            tags=body.tags,
            author_reputation=reputation["current"],
        )
        penalties = svc.reputation.analyze_and_apply_penalties(body.content, user["id"], post["id"])
        flags = svc.moderation.analyze_content(body.content, "POST", post["id"])
        feedback = svc.feedback.process_post(post["id"], user["id"], body.content)
        completed = svc.quests.update_quest_progress(user["id"], "POST_CREATED")
        post.pop("embedding", None)
        return {
            "post": post,
            "reputation": penalties,
            "flags": [f["flag_type"] for f in flags],
            "feedbackDetected": feedback is not None,
            "completedQuests": completed,
        }

    # -- reputation ----------------------------------------------------------

    @app.get("/reputation/me", tags=["reputation"], summary="Caller's reputation")
    def my_reputation(
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return {"userId": user["id"], **svc.reputation.get_user_reputation(user["id"])}

    @app.get("/reputation/user/{user_id}", tags=["reputation"], summary="A user's public reputation")
    def user_reputation(user_id: str, svc: Services = Depends(get_services)) -> Dict[str, Any]:
        rep = svc.reputation.get_user_reputation(user_id)
        # the exact score is private; only the tier is public
        return {"userId": user_id, "tier": rep["tier"], "visibilityMultiplier": rep["visibilityMultiplier"]}

    @app.get("/reputation/history", tags=["reputation"], summary="Caller's reputation events")
    def reputation_history(
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        events = svc.reputation.get_history(user["id"], limit=limit, offset=offset)
        return {"events": events, "pagination": {"limit": limit, "offset": offset, "count": len(events)}}

    @app.post("/reputation/analyze", tags=["reputation"], summary="Preview content warnings before posting")
    def analyze_content(
        body: ContentRequest,
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.reputation.generate_content_warning(body.content, user["id"])

    @app.post("/reputation/report", tags=["reputation"], summary="Report a post for a reputation penalty")
    def reputation_report(
        body: ReputationReportRequest,
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        post = svc.reputation.check_report_allowed(user["id"], body.targetUserId, body.postId)
        result = svc.reputation.process_report(user["id"], body.targetUserId, body.postId, body.reason, post["content"])
        if result["accepted"]:
            return {"message": "Report validated and processed", **result}
        return {"message": "Report received but not validated", **result}

    @app.post("/reputation/appeal", tags=["reputation"], summary="Appeal a reputation penalty")
    def reputation_appeal(
        body: AppealRequest,
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.reputation.process_appeal(user["id"], body.eventId, body.reason)

    @app.post("/reputation/award", tags=["reputation"], summary="Award reputation (admin)")
    def reputation_award(
        body: AwardRequest,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        new_score = svc.reputation.award_reputation(body.userId, body.reason, body.postId)
        return {"userId": body.userId, "newScore": new_score, "awardedBy": admin.get("id")}

    @app.get("/reputation/stats", tags=["reputation"], summary="Reputation statistics (admin)")
    def reputation_stats(
        timeframe: str = Query("week", pattern="^(day|week|month)$"),
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.reputation.get_reputation_stats(timeframe)

    @app.get("/reputation/low-reputation", tags=["reputation"], summary="Users below a score (admin)")
    def low_reputation(
        threshold: float = Query(30, ge=0, le=100),
        limit: int = Query(20, ge=1, le=100),
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        users = svc.reputation.list_low_reputation(threshold, limit)
        return {"users": users, "threshold": threshold, "count": len(users)}

    # -- trending ------------------------------------------------------------

    @app.get("/trending/topics", tags=["trending"], summary="Stance-aware trending topics")
    def trending_topics(
        limit: int = Query(10, ge=1, le=50),
        timeframe: int = Query(168, ge=1, le=720, description="Lookback window in hours"),
        scope: str = Query("national", pattern="^(national|state|local)$"),
        state: Optional[str] = Query(None, max_length=2),
        city: Optional[str] = None,
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        topics = svc.topics.aggregate_topics(
            AggregationOptions(
                timeframe_hours=timeframe,
                max_topics=limit,
                geographic_scope=scope,
                user_state=state,
                user_city=city,
            )
        )
        return {"topics": [t.summary() for t in topics], "count": len(topics), "scope": scope}

    @app.get("/trending/topics/{topic_id}/posts", tags=["trending"], summary="Posts in a topic")
    def topic_posts(
        topic_id: str,
        stance: str = Query("all"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        state: Optional[str] = Query(None, max_length=2),
        city: Optional[str] = None,
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.topics.get_topic_posts(topic_id, stance, page, limit, user_state=state, user_city=city)

    @app.get("/trending/map-topics", tags=["trending"], summary="Rotating topics for the map view")
    def map_topics(
        count: int = Query(3, ge=1, le=10),
        state: Optional[str] = Query(None, max_length=2),
        city: Optional[str] = None,
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        topics = svc.topics.get_map_topics(state, city, count)
        return {"topics": [t.summary() for t in topics]}

    @app.post("/trending/refresh", tags=["trending"], summary="Clear the topic cache (admin)")
    def refresh_topics(
        request: Request,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        svc.topics.refresh()
        audit(svc, request, admin, "topics_refresh")
        return {"message": "Topic cache cleared"}

    # -- feed ----------------------------------------------------------------

    @app.get("/feed", tags=["feed"], summary="Probability-sampled feed")
    def feed(
        limit: int = Query(50, ge=1, le=100),
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.feed.generate_feed(user["id"], limit=limit)

    @app.post("/feed/custom", tags=["feed"], summary="Feed with custom weights")
    def feed_custom(
        body: FeedRequest,
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.feed.generate_feed(user["id"], limit=body.limit, custom_weights=body.weights)

    # -- moderation ----------------------------------------------------------

    @app.post("/moderation/reports", tags=["moderation"], summary="Report content or a user", status_code=201)
    def create_report(
        body: CreateReportRequest,
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        result = svc.moderation.create_report(user["id"], body.targetType, body.targetId, body.reason, body.description)
        return {"message": "Report submitted successfully", **result}

    @app.get("/moderation/reports/my", tags=["moderation"], summary="Caller's own reports")
    def my_reports(
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        reports = svc.moderation.list_reports(status=None, reporter_id=user["id"], limit=limit, offset=offset)
        return {"reports": reports, "pagination": {"limit": limit, "offset": offset, "count": len(reports)}}

    @app.get("/moderation/reports", tags=["moderation"], summary="Report queue (moderator)")
    def list_reports(
        status: Optional[str] = Query("PENDING"),
        priority: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        _: Dict[str, Any] = Depends(require_moderator),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        reports = svc.moderation.list_reports(status=status, priority=priority, limit=limit, offset=offset)
        return {"reports": reports, "pagination": {"limit": limit, "offset": offset, "count": len(reports)}}

    @app.post("/moderation/reports/{report_id}/resolve", tags=["moderation"], summary="Resolve a report (moderator)")
    def resolve_report(
        report_id: str,
        body: ResolveReportRequest,
        request: Request,
        moderator: Dict[str, Any] = Depends(require_moderator),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        result = svc.moderation.resolve_report(report_id, moderator["id"], body.action, body.notes)
        audit(svc, request, moderator, "report_resolved", reportId=report_id, resolution=body.action)
        return result

    @app.post("/moderation/images", tags=["moderation"], summary="Screen an uploaded image")
    async def moderate_image(
        request: Request,
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        image = await request.body()
        if not image:
            raise HTTPException(status_code=400, detail="Image body required")
        result = await run_in_threadpool(svc.images.analyze_image, image, user["id"])
        return result.to_dict()

    # -- admin ---------------------------------------------------------------

    @app.get("/admin/dashboard", tags=["admin"], summary="Admin dashboard")
    def admin_dashboard(
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.admin.dashboard()

    @app.get("/admin/users", tags=["admin"], summary="Search users")
    def admin_users(
        search: Optional[str] = None,
        status: Optional[str] = Query(None, pattern="^(active|suspended)$"),
        role: Optional[str] = Query(None, pattern="^(admin|moderator)$"),
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.admin.list_users(search, status, role, limit, offset)

    @app.post("/admin/users/{user_id}/suspend", tags=["admin"], summary="Suspend a user")
    def admin_suspend(
        user_id: str,
        body: SuspendRequest,
        request: Request,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        result = svc.moderation.suspend_user(user_id, admin["id"], body.reason, body.type, days=body.durationDays)
        audit(svc, request, admin, "user_suspended", targetUserId=user_id, type=body.type)
        return result

    @app.post("/admin/users/{user_id}/unsuspend", tags=["admin"], summary="Lift a user's suspensions")
    def admin_unsuspend(
        user_id: str,
        request: Request,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        lifted = svc.moderation.unsuspend_user(user_id, admin["id"])
        audit(svc, request, admin, "user_unsuspended", targetUserId=user_id)
        return {"userId": user_id, "liftedSuspensions": lifted}

    @app.post("/admin/users/{user_id}/warn", tags=["admin"], summary="Warn a user")
    def admin_warn(
        user_id: str,
        body: WarnRequest,
        request: Request,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        result = svc.moderation.issue_warning(user_id, admin["id"], body.reason, body.severity, body.notes)
        audit(svc, request, admin, "user_warned", targetUserId=user_id, severity=body.severity)
        return result

    @app.post("/admin/users/{user_id}/role", tags=["admin"], summary="Change a user's role")
    def admin_role(
        user_id: str,
        body: RoleRequest,
        request: Request,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        result = svc.admin.set_role(user_id, body.role, admin["id"])
        audit(svc, request, admin, "role_changed", targetUserId=user_id, role=body.role)
        return result

    @app.get("/admin/content/flagged", tags=["admin"], summary="Automated content flags")
    def admin_flagged(
        resolved: bool = False,
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        _: Dict[str, Any] = Depends(require_moderator),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        flags = svc.moderation.list_flags(resolved=resolved, limit=limit, offset=offset)
        return {"flags": flags, "pagination": {"limit": limit, "offset": offset, "count": len(flags)}}

    @app.post("/admin/content/flags/{flag_id}/resolve", tags=["admin"], summary="Resolve a content flag")
    def admin_resolve_flag(
        flag_id: str,
        moderator: Dict[str, Any] = Depends(require_moderator),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.moderation.resolve_flag(flag_id, moderator["id"])

    @app.get("/admin/security/events", tags=["admin"], summary="Security events")
    def admin_security_events(
        limit: int = Query(100, ge=1, le=500),
        offset: int = Query(0, ge=0),
        eventType: Optional[str] = None,
        minRiskScore: int = Query(0, ge=0, le=100),
        startDate: Optional[str] = None,
        endDate: Optional[str] = None,
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        events = svc.security.get_security_events(limit, offset, eventType, minRiskScore, startDate, endDate)
        return {"events": events, "pagination": {"limit": limit, "offset": offset, "count": len(events)}}

    @app.get("/admin/security/stats", tags=["admin"], summary="Security statistics")
    def admin_security_stats(
        timeframe: str = Query("24h", pattern="^(24h|7d|30d)$"),
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.security.get_security_stats(timeframe)

    @app.get("/admin/security/blocked-ips", tags=["admin"], summary="Blocked IP addresses")
    def admin_blocked_ips(
        includeExpired: bool = False,
        limit: int = Query(100, ge=1, le=500),
        offset: int = Query(0, ge=0),
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        ips = svc.security.get_blocked_ips(include_expired=includeExpired, limit=limit, offset=offset)
        return {"blockedIps": ips, "count": len(ips)}

    @app.post("/admin/security/blocked-ips", tags=["admin"], summary="Block an IP address", status_code=201)
    def admin_block_ip(
        body: BlockIpRequest,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.security.block_ip(body.ipAddress, body.reason, admin["id"], body.expiresAt)

    @app.post("/admin/security/blocked-ips/unblock", tags=["admin"], summary="Unblock an IP address")
    def admin_unblock_ip(
        body: UnblockIpRequest,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        svc.security.unblock_ip(body.ipAddress, admin["id"])
        return {"message": f"IP {body.ipAddress} unblocked"}

    @app.delete("/admin/security/blocked-ips", tags=["admin"], summary="Unblock every IP address")
    def admin_clear_blocked_ips(
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        count = svc.security.clear_all_blocked_ips(admin["id"])
        return {"message": f"Unblocked {count} IP addresses", "count": count}

    @app.get("/admin/feedback", tags=["admin"], summary="Detected user feedback")
    def admin_feedback(
        status: Optional[str] = None,
        type: Optional[str] = None,
        priority: Optional[str] = None,
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        items = svc.feedback.list_feedback(status, type, priority, limit, offset)
        return {"feedback": items, "pagination": {"limit": limit, "offset": offset, "count": len(items)}}

    @app.get("/admin/feedback/stats", tags=["admin"], summary="Feedback statistics")
    def admin_feedback_stats(
        timeframe: str = Query("week", pattern="^(day|week|month)$"),
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.feedback.get_stats(timeframe)

    @app.put("/admin/feedback/{feedback_id}/status", tags=["admin"], summary="Update feedback status")
    def admin_feedback_status(
        feedback_id: str,
        body: StatusRequest,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.feedback.update_status(feedback_id, body.status, admin["id"])

    @app.get("/admin/quests", tags=["admin"], summary="All quests")
    def admin_quests(
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return {"quests": svc.quests.list_quests()}

    @app.post("/admin/quests", tags=["admin"], summary="Create a quest", status_code=201)
    def admin_create_quest(
        body: QuestCreate,
        admin: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.quests.create_quest(body, created_by=admin["id"])

    @app.put("/admin/quests/{quest_id}", tags=["admin"], summary="Update a quest")
    def admin_update_quest(
        quest_id: str,
        body: QuestUpdate,
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.quests.update_quest(quest_id, body)

    @app.post("/admin/quests/weekly", tags=["admin"], summary="Create this week's champion quest", status_code=201)
    def admin_weekly_quest(
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.quests.create_weekly_quest()

    @app.get("/admin/quests/analytics", tags=["admin"], summary="Quest completion analytics")
    def admin_quest_analytics(
        _: Dict[str, Any] = Depends(require_admin),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.quests.quest_analytics()

    # -- civic data ----------------------------------------------------------

    @app.post("/districts/lookup", tags=["civic"], summary="Identify districts for an address")
    def districts_lookup(body: DistrictLookupRequest, svc: Services = Depends(get_services)) -> Dict[str, Any]:
        address = Address(
            state=body.state.upper(),
            zip_code=body.zipCode,
            street_address=body.streetAddress,
            city=body.city,
            lat=body.lat,
            lng=body.lng,
        )
        return svc.districts.identify_districts(address, force_refresh=body.forceRefresh)

    @app.post("/districts/missing-offices", tags=["civic"], summary="Offices with no known holder")
    def districts_missing_offices(
        body: MissingOfficesRequest = Body(...),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        missing = svc.districts.find_missing_offices(body.districtIds)
        return {"missingOffices": missing, "count": len(missing)}

    @app.get("/quests/daily", tags=["civic"], summary="Today's quests for the caller")
    def quests_daily(
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return {"quests": svc.quests.generate_daily_quests(user["id"])}

    @app.get("/quests/progress", tags=["civic"], summary="Caller's quest progress and streak")
    def quests_progress(
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.quests.get_user_quest_progress(user["id"])

    @app.post("/quests/progress/update", tags=["civic"], summary="Record a quest-relevant action")
    def quests_progress_update(
        body: QuestProgressRequest,
        user: Dict[str, Any] = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        completed = svc.quests.update_quest_progress(user["id"], body.actionType)
        return {"completedQuests": completed, "count": len(completed)}

    @app.get("/news/official/{official_name}", tags=["civic"], summary="News coverage of an official")
    def news_official(
        official_name: str,
        officialId: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
        daysBack: int = Query(30, ge=1, le=365),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return svc.news.search_official_news(official_name, officialId, limit=limit, days_back=daysBack)

    @app.get("/news/trending", tags=["civic"], summary="Trending political news")
    def news_trending(
        limit: int = Query(50, ge=1, le=100),
        svc: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        articles = svc.news.trending_political_news(limit)
        return {"articles": articles, "count": len(articles)}

    # -- errors --------------------------------------------------------------

    @app.exception_handler(UnitedWeRiseError)
    async def domain_exception_handler(request: Request, exc: UnitedWeRiseError):  # type: ignore[no-untyped-def]
        if exc.status_code >= 500:
            log.error("Service error on %s: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "details": exc.details},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):  # type: ignore[no-untyped-def]
        """Catch-all exception handler that reports to Sentry."""
        log.error("Unhandled exception: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Our team has been notified.",
                "path": str(request.url.path),
                "method": request.method,
            },
        )

    @app.on_event("shutdown")
    def shutdown_event() -> None:
        log.info("Application shutdown initiated")
        services.notifier.close()

    return app


def main() -> None:
    """Entry point for the uwr-api console script."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="UnitedWeRise API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--config", help="Path to settings.yaml")

    args = parser.parse_args()

    app = create_app(settings_path=args.config)
    uvicorn.run(app, host=args.host, port=args.port)
