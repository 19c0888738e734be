"""taskowner application entry point: FastAPI + Slack Bolt.

Architecture:
- FastAPI for health checks, the tracker webhook and Slack HTTP events
- Slack Bolt (HTTP mode) with per-tenant bot tokens via ``authorize``
- APScheduler for follow-ups, completion checks and escalation timers
- Async SQLAlchemy for persistence
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from slack_bolt.adapter.fastapi.async_handler import AsyncSlackRequestHandler
from slack_bolt.async_app import AsyncApp
from slack_bolt.authorization import AuthorizeResult
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskowner import __version__
from taskowner.config import settings
from taskowner.core.conversation import ConversationContextManager
from taskowner.core.follow_ups import FollowUpScheduler
from taskowner.core.identity import IdentityMatcher
from taskowner.core.orchestrator import TaskOwnershipOrchestrator
from taskowner.core.responder import IntentResponseLoop
from taskowner.crons.scheduler import OrchestrationScheduler
from taskowner.db.session import close_db, get_engine, get_session_factory
from taskowner.errors import WebhookSignatureError
from taskowner.integrations.interfaces import Classifier
from taskowner.secrets import resolve_secret
from taskowner.slack.handlers import register_handlers
from taskowner.tenants import TenantRegistry
from taskowner.webhooks import HANDSHAKE_HEADER, SIGNATURE_HEADER, TrackerWebhookHandler

logger = structlog.get_logger()


def configure_logging() -> None:
    level = logging.getLevelName(settings.log_level.upper())
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
            if settings.env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level if isinstance(level, int) else logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# WIRING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Services:
    registry: TenantRegistry
    contexts: ConversationContextManager
    identity: IdentityMatcher
    follow_ups: FollowUpScheduler
    orchestrator: TaskOwnershipOrchestrator
    responder: IntentResponseLoop
    webhooks: TrackerWebhookHandler
    scheduler: OrchestrationScheduler


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    registry: TenantRegistry,
    classifier: Classifier,
) -> Services:
    contexts = ConversationContextManager(session_factory)
    identity = IdentityMatcher(registry)
    follow_ups = FollowUpScheduler(session_factory, registry, contexts)
    orchestrator = TaskOwnershipOrchestrator(session_factory, registry, identity, contexts, follow_ups)
    scheduler = OrchestrationScheduler(registry, orchestrator, follow_ups, contexts)
    orchestrator.attach_timers(scheduler)
    return Services(
        registry=registry,
        contexts=contexts,
        identity=identity,
        follow_ups=follow_ups,
        orchestrator=orchestrator,
        responder=IntentResponseLoop(
            session_factory, registry, contexts, orchestrator, follow_ups, classifier
        ),
        webhooks=TrackerWebhookHandler(session_factory, registry, orchestrator),
        scheduler=scheduler,
    )


def create_bolt(services: Services) -> AsyncApp:
    registry = services.registry

    async def authorize(enterprise_id: str | None, team_id: str | None) -> AuthorizeResult | None:
        runtime = registry.by_chat_workspace(team_id) if team_id else None
        if runtime is None:
            logger.warning("slack_authorize_unknown_team", team_id=team_id)
            return None
        return AuthorizeResult(
            enterprise_id=enterprise_id,
            team_id=team_id,
            bot_token=resolve_secret(runtime.tenant.chat_token_secret_name),
        )

    bolt = AsyncApp(
        signing_secret=settings.slack_signing_secret,
        authorize=authorize,
        process_before_response=True,
    )
    register_handlers(bolt, registry, services.responder)
    return bolt


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    from taskowner.integrations.llm import LLMClassifier

    configure_logging()
    logger.info("app_starting", env=settings.env)

    session_factory = get_session_factory()
    registry = TenantRegistry(session_factory)
    await registry.load_all()

    classifier = LLMClassifier()
    services = build_services(session_factory, registry, classifier)
    bolt = create_bolt(services)
    app.state.services = services
    app.state.slack_handler = AsyncSlackRequestHandler(bolt)

    await services.scheduler.start()

    yield

    logger.info("app_shutting_down")
    await services.scheduler.stop()
    await classifier.close()
    await close_db()


def create_app() -> FastAPI:
    api = FastAPI(
        title="taskowner",
        version=__version__,
        description="Finds owners for tracker work items over Slack",
        lifespan=lifespan,
    )

    @api.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "taskowner"}

    @api.get("/health/db")
    async def health_db() -> dict[str, str]:
        """Database health check."""
        try:
            async with get_engine().connect() as conn:
                result = await conn.execute(text("SELECT 1"))
                result.scalar()
            return {"status": "ok", "database": "connected"}
        except Exception as e:
            logger.error("db_health_check_failed", error=str(e))
            return {"status": "error", "database": "disconnected"}

    @api.post("/webhooks/tracker")
    async def tracker_webhook(request: Request) -> Response:
        handshake = request.headers.get(HANDSHAKE_HEADER)
        if handshake:
            logger.info("tracker_webhook_handshake")
            return Response(status_code=200, headers={"X-Hook-Secret": handshake})

        services: Services = request.app.state.services
        body = await request.body()
        try:
            services.webhooks.verify(body, request.headers.get(SIGNATURE_HEADER))
        except WebhookSignatureError as e:
            logger.warning("tracker_webhook_rejected", error=str(e))
            return JSONResponse(status_code=401, content={"error": "invalid signature"})

        payload = await request.json()
        handled = await services.webhooks.dispatch(payload.get("events") or [])
        return JSONResponse({"success": True, "handled": handled})

    @api.post("/slack/events")
    async def slack_events(request: Request) -> Response:
        """Slack events endpoint (HTTP mode)."""
        return await request.app.state.slack_handler.handle(request)

    return api


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main() -> None:
    import uvicorn

    configure_logging()
    uvicorn.run(
        "taskowner.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
