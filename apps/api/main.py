"""
Reel Script Studio - FastAPI Backend
Script versioning, reanalysis jobs and recommendation reconciliation.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_reanalysis_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, reanalysis, recommendations, versions
from services.reanalysis_queue import recover_stalled_reanalysis_jobs


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Reel Script Studio API...")
    validate_reanalysis_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_reanalysis_jobs()
        if recovered:
            print(f"♻️ Recovered {recovered} stalled reanalysis jobs after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled reanalysis recovery skipped: {exc}")
    print(f"🧠 Reanalysis mode: {settings.REANALYSIS_EXECUTION_MODE} (budget {settings.REANALYSIS_TIMEOUT_SECONDS:g}s)")
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Reel Script Studio API",
    description="Versioned short-form video scripts with AI reanalysis and scene recommendations",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(versions.router, prefix="/projects", tags=["Versions"])
app.include_router(recommendations.router, prefix="/projects", tags=["Recommendations"])
app.include_router(reanalysis.router, prefix="/projects", tags=["Reanalysis"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Reel Script Studio API",
        "version": "0.1.0",
        "status": "running"
    }
