"""
medallion.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn medallion.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from medallion.api.deps import close_reward_gateway, get_engine  # noqa: E402
from medallion.api.routes.achievements import router as achievements_router  # noqa: E402
from medallion.exceptions import AchievementNotFoundError, CatalogValidationError  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from CORS_ALLOW_ORIGINS (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle: warm the DB engine, close the reward gateway."""
    engine = get_engine()
    logger.info("Medallion API started — engine ready (%s)", engine.url.database)
    yield
    close_reward_gateway()
    logger.info("Medallion API shutting down")


app = FastAPI(
    title="Medallion Admin API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(achievements_router, prefix="/api")


@app.exception_handler(CatalogValidationError)
async def catalog_validation_error(request: Request, exc: CatalogValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(AchievementNotFoundError)
async def achievement_not_found(request: Request, exc: AchievementNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.get("/api/health")
def health():
    return {"status": "ok"}
