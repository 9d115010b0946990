from __future__ import annotations

import json
import logging
import time
from typing import Optional

import typer
import uvicorn

from newtube import __version__
from newtube.config import get_settings

app = typer.Typer(add_completion=False, help="NEWTUBE embedding orchestrator CLI")


@app.callback()
def _root() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _bootstrap_db() -> None:
    from newtube.database import init_db

    if get_settings().ENVIRONMENT == "dev":
        init_db(create_tables=True)


@app.command()
def start(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Auto-reload on changes (dev)"),
) -> None:
    settings = get_settings()
    uvicorn.run(
        "newtube.api.app:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
    )


@app.command()
def version() -> None:
    typer.echo(__version__)


@app.command()
def worker(
    pool_size: Optional[int] = typer.Option(None, help="Number of worker threads"),
    poll_interval: Optional[float] = typer.Option(None, help="Poll interval seconds"),
    worker_prefix: Optional[str] = typer.Option(None, help="Worker id prefix (default: hostname)"),
    once: bool = typer.Option(False, help="Process one job then exit"),
) -> None:
    """
    Run the embedding job worker pool.

    Workers poll the database for PENDING and due RETRYING jobs.
    """
    from newtube.database import SessionLocal
    from newtube.embeddings.services.job_worker import WorkerPool

    _bootstrap_db()
    pool = WorkerPool(
        SessionLocal,
        size=1 if once else pool_size,
        poll_interval=poll_interval,
        worker_prefix=worker_prefix,
    )

    if once:
        try:
            processed = pool.workers[0].run_once()
        finally:
            pool.inference_client.close()
        if processed:
            typer.echo("Processed one job.")
        else:
            typer.echo("No eligible jobs.")
        return

    pool.start()
    typer.echo(f"Worker pool started ({pool.size} workers). Press Ctrl+C to stop.", err=True)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pool.close()
        typer.echo("Worker pool stopped.", err=True)


@app.command()
def enqueue(
    job_type: str = typer.Argument(..., help="Job type, e.g. VIDEO_EMBEDDING"),
    config: str = typer.Option("{}", "--config", help="Job config as JSON"),
    priority: int = typer.Option(10, help="Lower is scheduled first"),
    batch_size: Optional[int] = typer.Option(None, help="Items per batch"),
    max_retries: Optional[int] = typer.Option(None, help="Retry limit"),
    dedupe: bool = typer.Option(False, help="Return an active job with the same key instead"),
) -> None:
    """Submit an embedding job."""
    from newtube.database import get_db_session
    from newtube.embeddings.services.job_service import JobService
    from newtube.exceptions import NewtubeException

    try:
        parsed = json.loads(config)
    except json.JSONDecodeError as exc:
        typer.echo(f"Invalid --config JSON: {exc}", err=True)
        raise typer.Exit(1)

    _bootstrap_db()
    with get_db_session() as session:
        try:
            job = JobService(session).enqueue(
                job_type,
                parsed,
                priority=priority,
                batch_size=batch_size,
                max_retries=max_retries,
                dedupe=dedupe,
                created_by="cli",
            )
        except NewtubeException as exc:
            typer.echo(f"Error: {exc.message}", err=True)
            raise typer.Exit(1)
        typer.echo(f"{job.id} {job.status}")


@app.command("mark-stale")
def mark_stale(
    target: str = typer.Option("video", help="video|user|comment|search"),
    hours: Optional[float] = typer.Option(None, help="Age threshold in hours"),
) -> None:
    """Flag COMPLETED embeddings older than the threshold as STALE."""
    from newtube.database import SessionLocal
    from newtube.embeddings.models.targets import TargetKind
    from newtube.embeddings.services.store import SqlEmbeddingStore

    _bootstrap_db()
    threshold = hours if hours is not None else get_settings().EMBEDDING_STALE_AFTER_HOURS
    count = SqlEmbeddingStore(SessionLocal).mark_stale_older_than(TargetKind(target), threshold)
    typer.echo(f"Marked {count} {target} embeddings as STALE.")


@app.command("cleanup-jobs")
def cleanup_jobs(
    hours: Optional[float] = typer.Option(None, help="Retention in hours"),
) -> None:
    """Delete finished jobs older than the retention window."""
    from newtube.database import get_db_session
    from newtube.embeddings.services.job_service import JobService

    _bootstrap_db()
    with get_db_session() as session:
        deleted = JobService(session).cleanup_old_jobs(hours)
    typer.echo(f"Deleted {deleted} jobs.")


@app.command("schedule-incremental")
def schedule_incremental(
    target: str = typer.Option("video", help="video|user|comment|search"),
) -> None:
    """Enqueue an INCREMENTAL_UPDATE job unless the queue is backed up."""
    from newtube.database import get_db_session
    from newtube.embeddings.services.job_service import JobService

    _bootstrap_db()
    with get_db_session() as session:
        job = JobService(session).schedule_incremental_update(target, created_by="cli")
        if job is None:
            typer.echo("Skipped: too many pending jobs.")
            return
        typer.echo(f"{job.id} {job.status}")


@app.command("queue-stats")
def queue_stats() -> None:
    """Print job counts per status."""
    from newtube.database import get_db_session
    from newtube.embeddings.services.job_service import JobService

    _bootstrap_db()
    with get_db_session() as session:
        stats = JobService(session).get_queue_stats()
    typer.echo(json.dumps(stats, indent=2, sort_keys=True))


@app.command("embedding-stats")
def embedding_stats(
    target: Optional[str] = typer.Option(None, help="video|user|comment|search"),
) -> None:
    """Print embedding counts per status and model."""
    from newtube.database import SessionLocal
    from newtube.embeddings.models.targets import TargetKind
    from newtube.embeddings.services.store import SqlEmbeddingStore

    _bootstrap_db()
    stats = SqlEmbeddingStore(SessionLocal).embedding_stats(TargetKind(target) if target else None)
    typer.echo(json.dumps(stats, indent=2, sort_keys=True))


@app.command("db")
def db_command(
    action: str = typer.Argument(
        ..., help="upgrade|downgrade|revision|current|history"
    ),
    message: Optional[str] = typer.Option(
        None, "--message", "-m", help="Migration message (for revision)"
    ),
    autogenerate: bool = typer.Option(
        True, "--autogenerate/--no-autogenerate", help="Autogenerate migration"
    ),
    revision: Optional[str] = typer.Option(
        None, "--revision", "-r", help="Target revision (for upgrade/downgrade)"
    ),
) -> None:
    """
    Database migrations via Alembic.

    Actions:
      upgrade   - Apply migrations (default: head)
      downgrade - Revert migrations
      revision  - Create new migration
      current   - Show current revision
      history   - Show migration history
    """
    import os
    import subprocess
    import sys

    alembic_ini = os.path.join(os.getcwd(), "alembic.ini")
    if not os.path.exists(alembic_ini):
        typer.echo("Error: alembic.ini not found", err=True)
        raise typer.Exit(1)

    cmd = [sys.executable, "-m", "alembic", "-c", alembic_ini]

    if action == "upgrade":
        cmd.extend(["upgrade", revision or "head"])
    elif action == "downgrade":
        cmd.extend(["downgrade", revision or "-1"])
    elif action == "revision":
        cmd.append("revision")
        if autogenerate:
            cmd.append("--autogenerate")
        cmd.extend(["-m", message or "auto migration"])
    elif action in ("current", "history"):
        cmd.append(action)
    else:
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Running: {' '.join(cmd)}", err=True)
    result = subprocess.run(cmd, cwd=os.getcwd())
    raise typer.Exit(result.returncode)


def main() -> None:
    app()
