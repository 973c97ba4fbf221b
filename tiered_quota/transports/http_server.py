"""FastAPI-based HTTP server for the tiered quota service."""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field
from starlette.routing import Match

from ..config import ServiceConfig, get_config
from ..monitoring import LoggingContext, get_metrics, setup_structured_logging
from ..monitoring.metrics import QuotaMetrics
from ..rate_limiting import (
    ActionKind,
    FailureMode,
    InMemoryCounterStore,
    QuotaDeniedError,
    QuotaEvaluator,
    StoreUnavailableError,
    Tier,
    TwoPhaseRequiredError,
    UnknownActionError,
    build_evaluator,
)
from ..security import AccountDirectory, InMemoryAccountDirectory
from ..utils.request_context import subject_for_address
from .guard import (
    ACCOUNT_HEADER,
    QuotaGuard,
    client_address,
    denial_response,
    store_unavailable_response,
)

logger = logging.getLogger(__name__)

# Path prefixes metered by the per-address API limiter
METERED_PREFIXES = ("/ai/", "/resumes", "/auth/")

# Echoed on every response and bound as the log correlation id
REQUEST_ID_HEADER = "X-Request-ID"


def route_label(request: Request) -> str:
    """Route template for metric labels, so path parameters don't multiply series."""
    route = request.scope.get("route")
    if route is None:
        # Requests answered by middleware never reach the router
        for candidate in request.app.router.routes:
            match, _ = candidate.matches(request.scope)
            if match == Match.FULL:
                route = candidate
                break
    return getattr(route, "path", None) or "unmatched"


class QuotaCheckRequest(BaseModel):
    """Quota check request."""
    subject: str = Field(..., description="Account or network-origin identity")
    action: str = Field(..., description="Metered action name")
    tier: Optional[str] = Field(None, description="Subscription tier of the subject")


class LoginRequest(BaseModel):
    """Login attempt."""
    account_id: str = Field(..., description="Account identifier")
    password: str = Field(..., description="Account password")


class HealthStatus(BaseModel):
    """Health check status."""
    status: str = Field(..., description="Overall status")
    timestamp: str = Field(..., description="Status timestamp")
    version: str = Field(..., description="Service version")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    store_backend: str = Field(..., description="Counter store backend")


class QuotaHttpServer:
    """HTTP front end exposing quota checks and quota-guarded routes."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 evaluator: Optional[QuotaEvaluator] = None,
                 accounts: Optional[AccountDirectory] = None,
                 metrics: Optional[QuotaMetrics] = None):
        self.config = config or get_config()
        self.metrics = metrics or get_metrics()
        self.evaluator = evaluator or build_evaluator(self.config, metrics=self.metrics)
        self.accounts = accounts or InMemoryAccountDirectory()
        self.host = self.config.http.host
        self.port = self.config.http.port
        self.start_time = time.time()
        self.app = self._create_app()

    def _guard(self, action: ActionKind, key_by_address: bool = False) -> QuotaGuard:
        return QuotaGuard(action, self.evaluator, self.accounts,
                          http_config=self.config.http, key_by_address=key_by_address)

    def _create_app(self) -> FastAPI:
        """Create FastAPI application with all routes and middleware."""
        evaluator = self.evaluator
        store = evaluator.store

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            """FastAPI lifespan events."""
            logger.info("Starting tiered quota HTTP server...")
            if isinstance(store, InMemoryCounterStore):
                await store.start_compaction(self.config.store.compaction_interval)
            self.metrics.set_service_info(self.config.app_version, self.config.environment,
                                          store.backend_name)
            logger.info(f"HTTP server ready on {self.host}:{self.port}")

            yield

            logger.info("Shutting down HTTP server...")
            await store.close()
            logger.info("HTTP server shutdown complete")

        app = FastAPI(
            title="Tiered Quota Service",
            description="Subscription-tier quotas and rate limits for metered actions",
            version=self.config.app_version,
            lifespan=lifespan
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.http.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.exception_handler(QuotaDeniedError)
        async def quota_denied_handler(request: Request, exc: QuotaDeniedError):
            return denial_response(exc.decision)

        @app.exception_handler(StoreUnavailableError)
        async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
            logger.error(f"Counter store unavailable on {request.url.path}: {exc}")
            return store_unavailable_response()

        @app.exception_handler(UnknownActionError)
        async def unknown_action_handler(request: Request, exc: UnknownActionError):
            return JSONResponse(
                status_code=400,
                content={"error": str(exc), "code": "UNKNOWN_ACTION", "action": exc.action},
            )

        @app.exception_handler(TwoPhaseRequiredError)
        async def two_phase_required_handler(request: Request, exc: TwoPhaseRequiredError):
            return JSONResponse(
                status_code=400,
                content={"error": str(exc), "code": "TWO_PHASE_REQUIRED", "action": exc.action},
            )

        @app.middleware("http")
        async def api_rate_limit(request: Request, call_next):
            """Per-address limit on API traffic, plus request metrics and log correlation."""
            start = time.perf_counter()
            path = request.url.path
            request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

            with LoggingContext(correlation_id=request_id,
                                user_id=request.headers.get(ACCOUNT_HEADER, "")):
                if path.startswith(METERED_PREFIXES) and ActionKind.API_REQUEST in evaluator.policies.policies:
                    subject = subject_for_address(
                        client_address(request, self.config.http.trust_forwarded_for)
                    )
                    try:
                        decision = await evaluator.check(subject, ActionKind.API_REQUEST, Tier.FREE)
                    except StoreUnavailableError:
                        policy = evaluator.policies.policy_for(ActionKind.API_REQUEST)
                        if policy.failure_mode == FailureMode.CLOSED:
                            response = store_unavailable_response()
                            return self._finish(request, response, request_id, start)
                        logger.warning(f"Quota store unavailable, not limiting {subject}")
                        decision = None

                    if decision is not None and not decision.allowed:
                        return self._finish(request, denial_response(decision), request_id, start)

                response = await call_next(request)
                return self._finish(request, response, request_id, start)

        @app.get("/health", response_model=HealthStatus)
        async def health_check():
            """Simple health check endpoint."""
            return HealthStatus(
                status="healthy",
                timestamp=time.strftime("%Y-%m-%d %H:%M:%S UTC", time.gmtime()),
                version=self.config.app_version,
                uptime_seconds=time.time() - self.start_time,
                store_backend=store.backend_name,
            )

        @app.post("/quota/check")
        async def check_quota(body: QuotaCheckRequest):
            """Check and consume one unit of quota for a subject."""
            decision = await evaluator.check(body.subject, body.action, body.tier)
            if not decision.allowed:
                return denial_response(decision)
            return decision.to_dict()

        @app.get("/quota/status/{subject}")
        async def quota_status(subject: str, tier: Optional[str] = None) -> Dict[str, Any]:
            """Read-only usage of every action for a subject."""
            return {
                "subject": subject,
                "tier": (Tier.parse(tier) or Tier.FREE).value,
                "actions": await evaluator.status(subject, tier),
            }

        @app.post("/ai/chat")
        async def ai_chat(decision=Depends(self._guard(ActionKind.AI_CHAT))):
            """Metered AI chat turn; the completion itself happens downstream."""
            return self._accepted(ActionKind.AI_CHAT, decision)

        @app.post("/ai/suggestions")
        async def ai_suggestions(decision=Depends(self._guard(ActionKind.AI_SUGGESTION))):
            """Metered AI suggestion request."""
            return self._accepted(ActionKind.AI_SUGGESTION, decision)

        @app.post("/resumes")
        async def create_resume(decision=Depends(self._guard(ActionKind.RESUME_CREATE))):
            """Metered resume creation."""
            return self._accepted(ActionKind.RESUME_CREATE, decision)

        @app.post("/auth/login")
        async def login(body: LoginRequest, request: Request):
            """Password login; only failed attempts count against the address."""
            subject = subject_for_address(client_address(request, self.config.http.trust_forwarded_for))

            async with evaluator.attempt(subject, ActionKind.AUTH_ATTEMPT, Tier.FREE) as attempt:
                if not attempt.allowed:
                    raise QuotaDeniedError(attempt.decision)

                if not await self.accounts.verify_password(body.account_id, body.password):
                    attempt.mark_failed()
                    return JSONResponse(
                        status_code=401,
                        content={"error": "Invalid credentials", "code": "INVALID_CREDENTIALS"},
                    )

            account = await self.accounts.find_account_by_id(body.account_id)
            return {"status": "authenticated", "account": account.to_dict() if account else None}

        if self.config.monitoring.enable_metrics:
            @app.get(self.config.monitoring.metrics_endpoint)
            async def metrics_endpoint():
                """Prometheus scrape endpoint."""
                return PlainTextResponse(self.metrics.get_metrics(), media_type=CONTENT_TYPE_LATEST)

        return app

    def _finish(self, request: Request, response, request_id: str, start: float):
        response.headers[REQUEST_ID_HEADER] = request_id
        self.metrics.record_http_request(route_label(request), response.status_code,
                                         time.perf_counter() - start)
        return response

    @staticmethod
    def _accepted(action: ActionKind, decision) -> Dict[str, Any]:
        return {
            "status": "accepted",
            "action": action.value,
            "quota": decision.to_dict() if decision is not None else None,
        }

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level=self.config.logging.level.lower(),
            access_log=True
        )

        server = uvicorn.Server(config)
        await server.serve()

    def run(self) -> None:
        """Run the HTTP server (blocking)."""
        uvicorn.run(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.config.logging.level.lower(),
            access_log=True
        )


def create_app(config: Optional[ServiceConfig] = None,
               evaluator: Optional[QuotaEvaluator] = None,
               accounts: Optional[AccountDirectory] = None,
               metrics: Optional[QuotaMetrics] = None) -> FastAPI:
    """Build the FastAPI application."""
    return QuotaHttpServer(config, evaluator, accounts, metrics).app


def main() -> None:
    """Console entry point."""
    config = get_config()
    setup_structured_logging(config.logging)
    QuotaHttpServer(config).run()


if __name__ == "__main__":
    main()
