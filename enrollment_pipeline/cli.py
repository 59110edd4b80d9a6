"""Worker and maintenance CLI: run / drain / init-db / rotate-keys."""

from __future__ import annotations

import logging
from typing import Optional

import typer
from sqlalchemy import select

from enrollment_pipeline.config import settings
from enrollment_pipeline.models.database import Base, SessionLocal, engine
from enrollment_pipeline.models.enrollment import HealthRecord
from enrollment_pipeline.pipeline.context import build_context
from enrollment_pipeline.pipeline.worker import Worker
from enrollment_pipeline.services.encryption import FieldCodec

app = typer.Typer(name="enrollment-worker", help="Enrollment integration pipeline worker")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s | %(name)s | %(message)s")


@app.command()
def run(
    worker_id: Optional[str] = typer.Option(None, "--worker-id", help="Identity recorded on claimed jobs"),
    poll_interval: float = typer.Option(
        settings.WORKER_POLL_INTERVAL_SECONDS, help="Seconds to wait when the queue is idle"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Process jobs until interrupted."""
    _configure_logging(verbose)
    with SessionLocal() as db:
        worker = Worker(db, build_context(), worker_id=worker_id)
        typer.echo(f"Worker {worker.worker_id} started")
        try:
            worker.run_forever(poll_interval, stale_after=settings.PROCESSING_LOCK_TTL_SECONDS)
        except KeyboardInterrupt:
            typer.echo("Worker stopped")


@app.command()
def drain(
    max_jobs: int = typer.Option(1000, help="Stop after this many jobs"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Run every job that is due now, then exit."""
    _configure_logging(verbose)
    with SessionLocal() as db:
        processed = Worker(db, build_context()).drain(max_jobs=max_jobs)
    typer.echo(f"Processed {processed} job(s)")


@app.command("init-db")
def init_db() -> None:
    """Create all tables."""
    _configure_logging(False)
    Base.metadata.create_all(bind=engine)
    typer.echo("Tables created")


@app.command("rotate-keys")
def rotate_keys(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """Re-encrypt sensitive health data under the active PHI key."""
    _configure_logging(verbose)
    codec = FieldCodec()
    rotated = 0
    with SessionLocal() as db:
        for record in db.scalars(select(HealthRecord)):
            rotated += record.rotate_keys(codec)
        db.commit()
    typer.echo(f"Re-encrypted {rotated} field(s) under key '{codec.active_key_id}'")


if __name__ == "__main__":
    app()
