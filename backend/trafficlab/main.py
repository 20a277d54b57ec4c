"""Main FastAPI application."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from trafficlab.config import get_settings
from trafficlab.middleware.logging import LoggingMiddleware, get_logger
from trafficlab.api import allocation, analysis, experiments, health
from trafficlab.database import engine, Base
import trafficlab.models  # noqa: F401  registers tables on Base.metadata

settings = get_settings()
logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup
    Base.metadata.create_all(bind=engine)
    logger.info("database_tables_ready", database_url=settings.database_url.split("@")[-1])

    yield  # App runs here

    # Shutdown
    logger.info("shutdown", service=settings.app_name)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Traffic allocation engine for A/B experiments",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# CORS middleware - Allow frontend origins
allowed_origins = [
    "http://localhost:5173",  # Local development
    "http://localhost:3000",  # Alternative local port
    settings.frontend_url,     # Production frontend
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Trace-ID"]
)

# Logging middleware
app.add_middleware(LoggingMiddleware)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(allocation.router, tags=["allocation"])
app.include_router(analysis.router, tags=["analysis"])
app.include_router(experiments.router, tags=["experiments"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": "0.1.0",
        "docs": "/docs" if settings.debug else "disabled",
        "endpoints": {
            "health": "/health",
            "assign": "POST /allocation/assign",
            "optimize": "POST /allocation/optimize",
            "conflicts": "POST /conflicts/detect",
            "experiments": "POST /experiments"
        }
    }


# uvicorn trafficlab.main:app --reload
