# apps/backend/main.py

from __future__ import annotations

import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# -----------------------------------------------------------------------------
# Paths + Python path
# -----------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent  # .../apps/backend
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

# -----------------------------------------------------------------------------
# Load .env (MUST be before importing anything that needs env)
# -----------------------------------------------------------------------------
ENV_PATH = BASE_DIR / ".env"
load_dotenv(ENV_PATH)

from app.core.config import settings  # noqa: E402
from app.core.errors import AnalyticsError, StorageError  # noqa: E402
from app.db import Base, engine  # noqa: E402

# tables register on Base.metadata at import
import app.models.analysis  # noqa: E402,F401
import app.models.event  # noqa: E402,F401
import app.models_telemetry  # noqa: E402,F401

from app.api.routes import router as api_router  # noqa: E402
from app.routes.events import router as events_router  # noqa: E402

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("pagepulse")

# -----------------------------------------------------------------------------
# Create app
# -----------------------------------------------------------------------------
app = FastAPI(title=settings.app_name, version="0.3.0")

# -----------------------------------------------------------------------------
# CORS
# -----------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------------------------------------------------------
# Errors -> {"error", "message"}
# -----------------------------------------------------------------------------
@app.exception_handler(AnalyticsError)
async def _analytics_error(request: Request, exc: AnalyticsError):
    if isinstance(exc, StorageError):
        logger.error("storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.error, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "message": "Malformed request",
            "details": jsonable_encoder(exc.errors()),
        },
    )


# -----------------------------------------------------------------------------
# DB init
# -----------------------------------------------------------------------------
@app.on_event("startup")
def _startup_create_tables():
    Base.metadata.create_all(bind=engine)


# -----------------------------------------------------------------------------
# Routers
# -----------------------------------------------------------------------------
app.include_router(events_router, prefix="/api", tags=["ingestion"])
app.include_router(api_router, prefix="/api")


# -----------------------------------------------------------------------------
# Basic health check
# -----------------------------------------------------------------------------
@app.get("/health")
def health():
    return {"status": "ok"}
