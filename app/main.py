"""
FastAPI application entry point.

``create_app`` builds the database, the import queue and the import processor
once and keeps them on ``app.state``; routers receive them through the
dependencies in ``app.api.dependencies``.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import imports, jobs
from .core.config import Settings, settings as default_settings
from .core.logging_config import configure_logging
from .db.session import Database
from .domain.imports.orchestrator import ImportProcessor
from .domain.imports.queue import JobQueue, build_job_queue

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    queue: Optional[JobQueue] = None,
) -> FastAPI:
    """Build the API with its collaborators; any of them can be supplied (tests do)."""
    settings = settings or default_settings
    configure_logging(settings.log_level, settings.import_log_level)

    database = database or Database(settings.database_url)
    queue = queue or build_job_queue(
        settings.import_queue_backend,
        max_workers=settings.import_queue_max_workers,
        keep_completed=settings.import_queue_keep_completed,
        keep_failed=settings.import_queue_keep_failed,
    )
    processor = ImportProcessor(database, settings, queue)
    queue.process(processor.process_import_job)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle - startup and shutdown events."""
        if os.getenv("SKIP_DB_INIT") == "1":
            logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        else:
            if not database.check_connection():
                raise RuntimeError("The application cannot start without a reachable database")
            database.create_all()
            logger.info("Database tables ready")

        os.makedirs(settings.upload_dir, exist_ok=True)
        yield

        queue.close(wait=True)
        database.dispose()

    app = FastAPI(
        title="Dealership Import API",
        version="1.0.0",
        description="Bulk import of bookings, enquiries and quotations for dealerships",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.database = database
    app.state.import_queue = queue
    app.state.import_processor = processor

    allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    allowed_origins = [origin.strip() for origin in allowed_origins]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(imports.router)
    app.include_router(jobs.router)

    @app.get("/")
    async def root():
        """Root endpoint returning API information."""
        return {
            "message": "Dealership Import API",
            "version": "1.0.0"
        }

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "service": "dealership-import-api"
        }

    return app


app = create_app()
