from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api import router
from .auth_api import router as auth_router
from .config import settings
from .core.cache import get_cache
from .core.logging_config import setup_logging
from .core.middleware import RequestContextMiddleware
from .db import Base, SessionLocal, engine
from .errors import install_error_handlers

APP_VERSION = "1.4.0"


def create_app() -> FastAPI:
    app = FastAPI(
        title="Slotwise",
        description="Multi-tenant appointment booking API",
        version=APP_VERSION,
    )
    app.add_middleware(RequestContextMiddleware)
    install_error_handlers(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "version": APP_VERSION}

    @app.get("/health/ready")
    def ready():
        checks = {"db": "ok", "cache": get_cache().backend}
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
        except Exception:
            checks["db"] = "error"
            return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
        return {"status": "ready", "checks": checks}

    app.include_router(router)
    app.include_router(auth_router)
    return app


setup_logging()
if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
    Base.metadata.create_all(bind=engine)

app = create_app()
