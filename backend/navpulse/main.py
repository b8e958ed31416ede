"""
FastAPI application entry point.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from navpulse.core.config import settings
from navpulse.core.logging_config import setup_logging, get_main_logger
from navpulse.core.exceptions import register_exception_handlers

# Initialize logging before anything else
setup_logging()
logger = get_main_logger()
from navpulse.api.v1.market import router as market_router
from navpulse.api.v1.funds import router as funds_router
from navpulse.api.v1.jobs import router as jobs_router
from navpulse.api.v1.ws import router as ws_router
from navpulse.db.database import build_engine, build_session_factory
from navpulse.services.pipeline import build_pipeline, build_redis


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install a prebuilt pipeline before startup
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is None:
        engine = build_engine(settings.database_url, settings.database_echo)
        pipeline = build_pipeline(
            settings,
            build_session_factory(engine),
            build_redis(settings),
            engine=engine,
        )
        app.state.pipeline = pipeline

    if not pipeline.started:
        await pipeline.startup()
    logger.info("navpulse API started")

    yield

    await pipeline.shutdown()
    logger.info("navpulse API stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="navpulse API",
        description="Indian market indices, mutual fund NAVs, returns and charts",
        version="1.0.0",
        lifespan=lifespan
    )

    # Register global exception handlers
    register_exception_handlers(app)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(market_router, prefix=settings.api_v1_prefix)
    app.include_router(funds_router, prefix=settings.api_v1_prefix)
    app.include_router(jobs_router, prefix=settings.api_v1_prefix)
    app.include_router(ws_router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"message": "navpulse API", "version": "1.0.0"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        pipeline = getattr(app.state, "pipeline", None)
        return {
            "status": "healthy",
            "cachePrimary": pipeline.cache.primary_available if pipeline else None,
        }

    return app


app = create_app()
