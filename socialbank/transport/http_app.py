# socialbank/transport/http_app.py
"""
HTTP application.

Security layers:
1. Public: WhatsApp webhook (signature validated) and USSD gateway callbacks
2. Protected: Admin endpoints (require admin token)
3. Monitoring: /health/detailed and /metrics (require metrics token)
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from socialbank.config import Settings, settings
from socialbank.core.engine.auth_gate import AuthenticationGate
from socialbank.core.engine.dispatcher import DialogueDispatcher
from socialbank.core.engine.domain import utcnow
from socialbank.core.engine.menus import build_default_menus
from socialbank.core.engine.ports import (
    AsyncDeduplicator,
    AsyncLoginRepository,
    AsyncSessionStore,
    AsyncUserDirectory,
    CoreBankingClient,
)
from socialbank.core.engine.state_handlers import HandlerDeps, HandlerRegistry, generate_otp
from socialbank.core.engine.use_cases import ConversationEngine
from socialbank.core.handlers.registry import parse_enabled_flows, register_handlers
from socialbank.infra.banking_client import build_banking_client
from socialbank.infra.health_checks_async import get_async_health_checker
from socialbank.infra.logging_config import get_logger, setup_logging
from socialbank.infra.metrics import get_metrics_collector
from socialbank.transport.adapters import get_adapter
from socialbank.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from socialbank.transport.schemas import CleanupResult, SessionView
from socialbank.transport.security import (
    check_configured_tokens,
    require_admin_auth,
    require_metrics_auth,
)
from socialbank.transport.ussd_endpoint import (
    ussd_session_end_handler,
    ussd_session_handler,
    ussd_session_view,
)
from socialbank.transport.whatsapp_webhook import (
    whatsapp_webhook_handler,
    whatsapp_webhook_verify,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)

CHANNELS = ("whatsapp", "ussd")


# ============================================================================
# COMPOSITION
# ============================================================================

def build_engines(
    *,
    sessions: AsyncSessionStore,
    dedup: AsyncDeduplicator,
    logins: AsyncLoginRepository,
    users: AsyncUserDirectory,
    banking: CoreBankingClient,
    config: Settings = settings,
    enabled_flows: list[str] | None = None,
    clock: Callable[[], datetime] = utcnow,
    otp_generator: Callable[[int], str] = generate_otp,
) -> dict[str, ConversationEngine]:
    """Wire one ConversationEngine per channel over shared stores."""
    menus = build_default_menus(main_menu_token=config.main_menu_token, exit_token=config.exit_token)
    menus.validate()

    handlers = HandlerRegistry()
    registered = register_handlers(handlers, enabled_flows)
    logger.info("Registered flows: %s", registered)

    missing = handlers.missing_states(menus)
    if missing:
        logger.warning(f"States without a menu or handler (disabled flows?): {missing}")

    gate = AuthenticationGate(
        logins=logins,
        users=users,
        validity_seconds=config.login_validity_seconds,
        clock=clock,
    )

    engines: dict[str, ConversationEngine] = {}
    for channel in CHANNELS:
        profile = config.channel_profile(channel)
        adapter = get_adapter(channel, profile, sessions)
        deps = HandlerDeps(
            profile=profile,
            menus=menus,
            users=users,
            banking=banking,
            settings=config,
            clock=clock,
            otp_generator=otp_generator,
        )
        dispatcher = DialogueDispatcher(
            adapter=adapter,
            gate=gate,
            menus=menus,
            handlers=handlers,
            deps=deps,
            clock=clock,
        )
        engines[channel] = ConversationEngine(
            adapter=adapter,
            dispatcher=dispatcher,
            dedup=dedup,
            sessions=sessions,
        )
        logger.info(
            f"Channel ready: {channel}, timeout={profile.session_timeout_seconds}s, "
            f"auth={profile.auth_method}"
        )
    return engines


async def _postgres_stores():
    from socialbank.infra.db_async import init_pool
    from socialbank.infra.pg_dedup_repo_async import AsyncPostgresDeduplicator
    from socialbank.infra.pg_login_repo_async import AsyncPostgresLoginRepository
    from socialbank.infra.pg_session_store_async import AsyncPostgresSessionStore
    from socialbank.infra.pg_user_repo_async import AsyncPostgresUserDirectory
    from socialbank.infra.schema_validator import validate_schema_version

    await init_pool()
    logger.info("Database pool initialized")

    # Validate schema version (does NOT run migrations)
    try:
        schema_result = await validate_schema_version()
        logger.info(f"Schema validated: {schema_result['current_version']}")
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m socialbank.infra.migrate",
            exc_info=True
        )
        raise

    return (
        AsyncPostgresSessionStore(),
        AsyncPostgresDeduplicator(),
        AsyncPostgresLoginRepository(),
        AsyncPostgresUserDirectory(pin_hash_iterations=settings.pin_hash_iterations),
    )


def _memory_stores():
    from socialbank.infra.memory_stores import (
        InMemoryDeduplicator,
        InMemoryLoginRepository,
        InMemorySessionStore,
        InMemoryUserDirectory,
    )

    logger.warning("Using in-memory storage: state is lost on restart")
    return (
        InMemorySessionStore(),
        InMemoryDeduplicator(),
        InMemoryLoginRepository(),
        InMemoryUserDirectory(pin_hash_iterations=settings.pin_hash_iterations),
    )


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(
        f"Starting application: env={settings.app_env}, storage={settings.storage_backend}, "
        f"banking={settings.banking_backend}"
    )

    if settings.is_production:
        if not settings.admin_token or len(settings.admin_token) < 32:
            logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
            raise RuntimeError("Weak ADMIN_TOKEN")

        if not settings.require_webhook_validation:
            logger.critical("REQUIRE_WEBHOOK_VALIDATION must be true in production")
            raise RuntimeError("Webhook validation disabled in production")

    check_configured_tokens()

    if settings.storage_backend == "postgres":
        sessions, dedup, logins, users = await _postgres_stores()
    else:
        sessions, dedup, logins, users = _memory_stores()

    if not settings.meta_enabled:
        logger.warning(
            "Meta Cloud API credentials are not configured; WhatsApp replies cannot be delivered. "
            "Set META_ACCESS_TOKEN, META_PHONE_NUMBER_ID, META_WEBHOOK_VERIFY_TOKEN."
        )

    fastapi_app.state.dedup = dedup
    fastapi_app.state.engines = build_engines(
        sessions=sessions,
        dedup=dedup,
        logins=logins,
        users=users,
        banking=build_banking_client(settings),
        enabled_flows=parse_enabled_flows(),
    )

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    from socialbank.infra.http_client import close_all_sessions
    await close_all_sessions()

    if settings.storage_backend == "postgres":
        from socialbank.infra.db_async import close_pool
        await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="SocialBank",
    description="WhatsApp and USSD conversational banking",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# Webhook and gateway traffic is server-to-server, CORS only matters for browsers
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: the database must be reachable and migrated."""
    if settings.storage_backend == "memory":
        return {"status": "healthy"}

    result = await get_async_health_checker().run_checks(include_non_critical=False)
    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@app.get("/webhooks/whatsapp")
async def webhook_whatsapp_verify(request: Request):
    return await whatsapp_webhook_verify(request)


@app.post("/webhooks/whatsapp")
async def webhook_whatsapp(request: Request, background_tasks: BackgroundTasks):
    return await whatsapp_webhook_handler(request, background_tasks)


@app.post("/ussd/session")
async def ussd_session(request: Request):
    return await ussd_session_handler(request)


@app.post("/ussd/session/end")
async def ussd_session_end(request: Request):
    return await ussd_session_end_handler(request)


@app.get("/ussd/session/{session_id}", response_model=SessionView)
async def ussd_session_get(
    request: Request,
    session_id: str,
    phone_number: str = Query(alias="phoneNumber", min_length=1),
):
    return await ussd_session_view(request, session_id, phone_number)


# ============================================================================
# MONITORING ENDPOINTS (METRICS_TOKEN)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_metrics_auth)])
async def detailed_health():
    if settings.storage_backend == "memory":
        return {"status": "healthy", "checks": {}, "storage": "memory"}
    return await get_async_health_checker().run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    return get_metrics_collector().get_metrics()


# ============================================================================
# ADMIN ENDPOINTS (ADMIN_TOKEN)
# ============================================================================

@app.post("/admin/cleanup", response_model=CleanupResult, dependencies=[Depends(require_admin_auth)])
async def admin_cleanup(request: Request):
    """
    Expire idle sessions on every channel and prune old dedup records.

    WhatsApp owners of expired sessions get the session-expired notice.
    """
    engines: dict[str, ConversationEngine] = request.app.state.engines
    expired = {name: await engine.cleanup_expired() for name, engine in engines.items()}

    retention = settings.processed_message_retention_days
    deleted = await request.app.state.dedup.cleanup_old(retention)
    logger.info(f"Manual cleanup: expired={expired}, processed_messages_deleted={deleted}")

    return CleanupResult(sessions_expired=expired, processed_messages_deleted=deleted)


@app.post("/admin/metrics/reset", dependencies=[Depends(require_admin_auth)])
def admin_reset_metrics():
    logger.warning("Metrics reset triggered")
    get_metrics_collector().reset()
    return {"ok": True, "message": "Metrics reset"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "socialbank.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
