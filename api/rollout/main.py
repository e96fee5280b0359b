import logging
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from rollout.config import Settings
from rollout.database import init_db, make_engine, make_session_factory
from rollout.errors import FeatureDecodeError
from rollout.metrics import record_change, setup_metrics
from rollout.routers.features import router as features_router
from rollout.routers.health import router as health_router
from rollout.services.audit import AuditLog
from rollout.services.rollout import Rollout
from rollout.store import UpdatePublisher, open_storage

logger = logging.getLogger(__name__)


def build_rollout(settings: Settings, groups: Optional[Dict[str, Callable]] = None):
    storage = open_storage(settings.redis_url)
    engine = None
    audit = None
    if settings.audit_enabled:
        engine = make_engine(settings.database_url)
        audit = AuditLog(make_session_factory(engine))

    rollout = Rollout(storage, audit=audit, id_user_by=settings.id_user_by)
    rollout.add_observer(record_change)
    if settings.publish_updates:
        publisher = UpdatePublisher(storage)
        rollout.add_observer(publisher)
        rollout.on_delete(publisher.record_delete)
    for name, predicate in (groups or {}).items():
        rollout.define_group(name, predicate)
    return rollout, engine


def create_app(settings: Optional[Settings] = None, groups: Optional[Dict[str, Callable]] = None) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(level=settings.log_level)
    rollout, engine = build_rollout(settings, groups)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None:
            init_db(engine)
        logger.info("rollout service started (groups: %s)", ", ".join(rollout.groups))
        yield
        rollout.storage.close()
        if engine is not None:
            engine.dispose()

    app = FastAPI(title="Rollout Service", version="0.1.0", lifespan=lifespan)
    app.state.rollout = rollout

    # CORS (adjust as needed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FeatureDecodeError)
    async def decode_error_handler(request: Request, exc: FeatureDecodeError):
        logger.error("%s", exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # Routers
    app.include_router(health_router, prefix="")
    app.include_router(features_router, prefix="")

    # Metrics endpoint
    setup_metrics(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("rollout.main:app", host="0.0.0.0", port=8000)
