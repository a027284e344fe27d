import os
import logging
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .db import Database
from .migrations import apply_migrations
from .services.errors import TrackerError
from .routers.orders import router as orders_router
from .routers.coils import router as coils_router
from .routers.runs import router as runs_router
from .routers.stock import router as stock_router
from .routers.sales import router as sales_router
from .routers.reports import router as reports_router
from .routers.companies import router as companies_router
from .routers.health import router as health_router

logger = logging.getLogger(__name__)


def configure_logging():
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[tracker_core] %(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_cors_origins():
    """Get CORS origins from environment or use defaults for development"""
    origins_env = os.getenv("CORS_ORIGINS", "")
    if origins_env:
        return [o.strip() for o in origins_env.split(",") if o.strip()]
    # Default development origins
    return [
        "http://127.0.0.1:5173",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://localhost:3000",
    ]


def create_app(database_url: Optional[str] = None) -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Coil Tracker",
        description="Steel coil production, stock, sales and order fulfilment",
        version="1.0.0",
    )
    app.state.database = Database(database_url)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(orders_router)
    app.include_router(coils_router)
    app.include_router(runs_router)
    app.include_router(stock_router)
    app.include_router(sales_router)
    app.include_router(reports_router)
    app.include_router(companies_router)

    @app.exception_handler(TrackerError)
    async def tracker_error_handler(request: Request, exc: TrackerError):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning("Integrity error: %s", exc.orig)
        return JSONResponse(status_code=400, content={"detail": "Duplicate or conflicting record"})

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception("Database error")
        return JSONResponse(status_code=500, content={"detail": "Database error"})

    @app.on_event("startup")
    def on_startup():
        logger.info("Opening database and applying migrations...")
        database = app.state.database.open()
        applied = apply_migrations(database.engine)
        if applied:
            logger.info("Applied migrations: %s", applied)
        logger.info("Database ready.")

    @app.on_event("shutdown")
    def on_shutdown():
        app.state.database.close()

    return app


app = create_app()
