import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.orm import configure_mappers

from schooladmin.api import api_keys, auth, permissions, soc
from schooladmin.audit.audit_logger import AuditLogWriter
from schooladmin.audit.middleware import AuditMiddleware
from schooladmin.core.config import Settings, get_settings
from schooladmin.core.database import StorageHandleProvider
from schooladmin.core.errors import UnhandledErrorMiddleware, register_exception_handlers
from schooladmin.core.rate_limit import InMemoryRateLimiter
from schooladmin.permissions.resolver import PermissionResolver
from schooladmin.security.credentials import CredentialVerifier
from schooladmin.security.gatekeeper import Gatekeeper
from schooladmin.security.ip_blocking import IPBlockRegistry
from schooladmin.security.trust import TrustRegistry

logger = logging.getLogger(__name__)


def verify_orm_mappings() -> None:
    """
    Verify all SQLAlchemy ORM mappings are valid at startup.

    Relationship errors surface here instead of as 500s on the first request.
    """
    from schooladmin.models import (  # noqa: F401
        APIKey, AuditLog, BlockedIP, Department, Permission,
        Role, RolePermission, Soldier, TrustedUser, UserPermission,
    )

    configure_mappers()
    logger.info("ORM mapper configuration verified successfully")


def load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        logger.critical(f"Invalid configuration: {e}")
        raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup verifies the ORM mappings. Shutdown waits for pending audit
    writes and last-used updates before disposing the engine.
    """
    try:
        verify_orm_mappings()
    except Exception as e:
        logger.critical(f"ORM mapper configuration failed: {e}")
        raise RuntimeError(f"Application cannot start: ORM mapping error - {e}") from e

    yield

    await app.state.audit_writer.drain()
    await app.state.verifier.drain()
    await app.state.storage.dispose()
    logger.info("Application shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[StorageHandleProvider] = None,
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    storage = storage or StorageHandleProvider(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    resolver = PermissionResolver(storage)
    trust = TrustRegistry(storage)
    audit_writer = AuditLogWriter(storage)
    verifier = CredentialVerifier(storage, settings)
    ip_blocks = IPBlockRegistry(storage, trust, resolver)
    rate_limiter = InMemoryRateLimiter()

    app.state.settings = settings
    app.state.storage = storage
    app.state.resolver = resolver
    app.state.trust = trust
    app.state.audit_writer = audit_writer
    app.state.verifier = verifier
    app.state.ip_blocks = ip_blocks
    app.state.rate_limiter = rate_limiter
    app.state.gatekeeper = Gatekeeper(
        settings=settings,
        verifier=verifier,
        resolver=resolver,
        trust=trust,
        ip_blocks=ip_blocks,
        rate_limiter=rate_limiter,
        audit_writer=audit_writer,
    )

    # Added innermost first: unhandled errors become JSON responses that still pass
    # through audit (correlation header, audit entry) and CORS
    app.add_middleware(UnhandledErrorMiddleware, debug_exposed=settings.debug_exposed)
    app.add_middleware(AuditMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID", "Retry-After"],
    )

    register_exception_handlers(app, debug_exposed=settings.debug_exposed)

    api_router = APIRouter(prefix="/api")
    api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
    api_router.include_router(api_keys.router, prefix="/api-keys", tags=["api-keys"])
    api_router.include_router(permissions.router, prefix="/permissions", tags=["permissions"])
    api_router.include_router(soc.router, prefix="/soc", tags=["soc"])
    app.include_router(api_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/ready")
    async def readiness_check(request: Request):
        """Ready when the database answers a trivial query."""
        try:
            async with request.app.state.storage.session() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning(f"Readiness check failed: {e.__class__.__name__}")
            return JSONResponse(
                status_code=503,
                content={"status": "unavailable", "components": {"database": "unreachable"}},
            )
        return {"status": "ready", "components": {"database": "ok"}}

    @app.get("/")
    async def root():
        return {
            "message": f"{settings.APP_NAME} API",
            "version": "1.0.0",
            "docs": "/docs",
        }

    return app


app = create_app()
