"""
FastAPI application entrypoint.

Run locally:  uvicorn enrollment_pipeline.main:app --reload
Run workers:  enrollment-worker run
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from enrollment_pipeline.api.routes import router
from enrollment_pipeline.config import settings
from enrollment_pipeline.exceptions import (
    NotFound,
    PipelineError,
    PreconditionNotMet,
    SignatureError,
    ValidationError,
)
from enrollment_pipeline.models.database import Base, engine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Enrollment Integration Pipeline API",
    description=(
        "Operator and collaborator surface for the enrollment pipeline: "
        "status, stage triggers, audit trail, webhook delivery ledger "
        "and signed EMR callbacks."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")

# Most specific first: InvalidTransition etc. are ValidationErrors.
ERROR_STATUS_CODES = (
    (NotFound, 404),
    (PreconditionNotMet, 409),
    (SignatureError, 401),
    (ValidationError, 422),
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    logger.error("Unmapped pipeline error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal pipeline error"})


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
