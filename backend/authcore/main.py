import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authcore import models  # noqa: F401  (register tables on Base.metadata)
from authcore.api.deps import AuthRuntime
from authcore.api.routes import auth as auth_routes
from authcore.api.routes import health as health_routes
from authcore.api.routes import metrics as metrics_routes
from authcore.api.routes import orgs as orgs_routes
from authcore.core.config import Settings, get_settings
from authcore.core.errors import register_exception_handlers
from authcore.core.kv import KeyValueStore, build_kv_store
from authcore.core.security import CSRFMiddleware
from authcore.core.tracing import init_tracing
from authcore.db.base import Base
from authcore.db.session import build_engine, build_session_factory

logger = logging.getLogger("authcore.http")


def create_app(settings: Optional[Settings] = None, kv: Optional[KeyValueStore] = None) -> FastAPI:
    """
    Build the API. Run with `uvicorn --factory authcore.main:create_app`.

    Tests pass their own Settings and an in-memory key-value store.
    """
    settings = settings or get_settings()
    app = FastAPI(title="authcore API", debug=settings.debug and not settings.is_production)

    engine = build_engine(settings.database_url)
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.auth = AuthRuntime.build(settings, kv or build_kv_store(settings.redis_url))

    # Observability: request ids + JSON request logs
    init_tracing(app)

    # CSRF (double submit) for every state-changing route outside the exempt auth endpoints
    app.add_middleware(CSRFMiddleware, settings=settings)

    origins = settings.cors_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_exception_handlers(app)

    # Routers
    app.include_router(health_routes.router)
    app.include_router(metrics_routes.router)
    app.include_router(auth_routes.router)
    app.include_router(orgs_routes.router)

    # Auto-create tables only outside production; production schema is managed externally.
    if not settings.is_production:
        Base.metadata.create_all(bind=engine)

    logger.info("app_created environment=%s kv=%s", settings.environment, type(app.state.auth.kv).__name__)
    return app
