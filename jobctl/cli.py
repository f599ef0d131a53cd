"""CLI interface for jobctl."""

import asyncio
import json
import multiprocessing
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import click
from pydantic import ValidationError

from .engine import JobEngine
from .errors import JobEngineError
from .logger import set_log_level
from .models import Config, JobStatus
from .registry import HandlerRegistry, load_registry
from .settings import get_settings
from .worker import Worker

# CLI key -> Config field
CONFIG_KEYS = {
    "max-retries": "max_retries",
    "base-delay-ms": "base_delay_ms",
    "multiplier": "backoff_multiplier",
    "max-delay-ms": "max_delay_ms",
    "jitter": "jitter",
    "timeout-ms": "timeout_ms",
    "priority": "priority",
    "dead-letter-age-hours": "dead_letter_age_hours",
}


def get_engine(registry_path: Optional[str] = None) -> JobEngine:
    """Build an engine from the environment settings."""
    settings = get_settings()
    path = registry_path or settings.registry
    try:
        registry = load_registry(path) if path else HandlerRegistry()
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        _fail(f"Could not load handler registry: {e}")
    return JobEngine.from_settings(settings, registry)


def _fail(message: str):
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _print_jobs(jobs):
    click.echo(f"\n{'ID':<38} {'Name':<20} {'Status':<12} {'Pri':<4} {'Retries':<8} {'Scheduled':<20}")
    click.echo("-" * 105)
    for job in jobs:
        retries = f"{job.retry_count}/{job.max_retries}"
        click.echo(
            f"{job.id:<38} {job.name[:20]:<20} {job.status.value:<12} {job.priority:<4} "
            f"{retries:<8} {_format_time(job.scheduled_at):<20}"
        )
    click.echo()


@click.group()
@click.option("--registry", default=None, help="Handler registry import path, e.g. 'myapp.jobs:registry'")
@click.pass_context
def cli(ctx, registry: Optional[str]):
    """jobctl - Background Job Engine"""
    set_log_level(get_settings().log_level)
    ctx.ensure_object(dict)
    ctx.obj["registry"] = registry


@cli.command()
@click.argument("name")
@click.argument("payload_json", required=False)
@click.option("--priority", type=int, default=None, help="Priority 0-10, higher runs first")
@click.option("--tenant", default=None, help="Tenant id")
@click.option("--delay", type=float, default=None, help="Seconds to wait before the job is due")
@click.option("--run-at", default=None, help="ISO-8601 time the job is due")
@click.option("--max-retries", type=int, default=None)
@click.option("--base-delay-ms", type=int, default=None)
@click.option("--multiplier", type=float, default=None)
@click.option("--max-delay-ms", type=int, default=None)
@click.option("--no-jitter", is_flag=True, default=False, help="Disable retry jitter")
@click.option("--timeout-ms", type=int, default=None)
@click.option("--every", type=float, default=None, help="Re-run every MINUTES after each completion")
@click.pass_context
def enqueue(
    ctx,
    name: str,
    payload_json: Optional[str],
    priority: Optional[int],
    tenant: Optional[str],
    delay: Optional[float],
    run_at: Optional[str],
    max_retries: Optional[int],
    base_delay_ms: Optional[int],
    multiplier: Optional[float],
    max_delay_ms: Optional[int],
    no_jitter: bool,
    timeout_ms: Optional[int],
    every: Optional[float],
):
    """Enqueue a new job.

    Example:
        jobctl enqueue send_email '{"to":"a@example.com"}' --priority 8
        jobctl enqueue cleanup --every 15
    """
    try:
        payload = json.loads(payload_json) if payload_json else None
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")

    if delay is not None and run_at is not None:
        _fail("Use either --delay or --run-at, not both")

    scheduled_at = None
    if delay is not None:
        scheduled_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
    elif run_at is not None:
        try:
            scheduled_at = datetime.fromisoformat(run_at)
        except ValueError as e:
            _fail(f"Invalid --run-at: {e}")

    retry_policy: Dict[str, Any] = {}
    if max_retries is not None:
        retry_policy["max_retries"] = max_retries
    if base_delay_ms is not None:
        retry_policy["base_delay_ms"] = base_delay_ms
    if multiplier is not None:
        retry_policy["backoff_multiplier"] = multiplier
    if max_delay_ms is not None:
        retry_policy["max_delay_ms"] = max_delay_ms
    if no_jitter:
        retry_policy["jitter"] = False

    options = dict(
        tenant_id=tenant,
        priority=priority,
        scheduled_at=scheduled_at,
        retry_policy=retry_policy or None,
        timeout_ms=timeout_ms,
    )

    try:
        engine = get_engine(ctx.obj["registry"])
        if every is not None:
            job_id = engine.schedule_recurring(name, payload, every, **options)
        else:
            job_id = engine.schedule(name, payload, **options)
    except JobEngineError as e:
        _fail(f"Error: {e}")

    click.echo(f"✓ Job {job_id} enqueued successfully")


@cli.command()
@click.option("--batch-size", type=int, default=None, help="Jobs claimed per batch")
@click.option("--max-runtime-ms", type=int, default=None, help="Stop claiming new batches after this long")
@click.option("--worker-id", default=None)
@click.pass_context
def process(ctx, batch_size: Optional[int], max_runtime_ms: Optional[int], worker_id: Optional[str]):
    """Process due jobs once and exit.

    Example:
        jobctl --registry myapp.jobs:registry process --batch-size 20
    """
    settings = get_settings()
    try:
        engine = get_engine(ctx.obj["registry"])
        result = asyncio.run(
            engine.process_jobs(
                batch_size=batch_size or settings.batch_size,
                worker_id=worker_id or settings.worker_id,
                max_runtime_ms=max_runtime_ms or settings.max_runtime_ms,
            )
        )
    except (JobEngineError, ValueError) as e:
        _fail(f"Error: {e}")

    click.echo(
        f"✓ Processed {result.processed} job(s): "
        f"{result.errors} error(s), {result.dead_letter} dead-lettered"
    )
    if result.halted:
        _fail("Processing halted: the job store could not be read")


@cli.group()
def worker():
    """Manage worker processes"""
    pass


def _worker_process(worker_number: int, registry_path: Optional[str]):
    """Run a single worker process."""
    settings = get_settings()
    set_log_level(settings.log_level)
    engine = get_engine(registry_path)
    w = Worker(engine, settings, worker_id=f"{settings.worker_id}-{worker_number}")
    w.install_signal_handlers()
    asyncio.run(w.run())


@worker.command()
@click.option("--count", default=1, help="Number of workers to start")
@click.pass_context
def start(ctx, count: int):
    """Start one or more workers.

    Example:
        jobctl --registry myapp.jobs:registry worker start --count 3
    """
    if count < 1:
        _fail("Count must be at least 1")

    click.echo(f"Starting {count} worker(s)...")

    registry_path = ctx.obj["registry"]
    processes = []
    try:
        for i in range(count):
            p = multiprocessing.Process(target=_worker_process, args=(i + 1, registry_path))
            p.start()
            processes.append(p)

        for p in processes:
            p.join()

    except KeyboardInterrupt:
        click.echo("\nShutting down workers...")
        for p in processes:
            if p.is_alive():
                p.terminate()
        for p in processes:
            p.join(timeout=5)
            if p.is_alive():
                p.kill()
        click.echo("Workers stopped")


@cli.command()
@click.pass_context
def status(ctx):
    """Show job statistics for the last 24 hours.

    Example:
        jobctl status
    """
    try:
        engine = get_engine(ctx.obj["registry"])
        stats = engine.get_job_stats()
        config = engine.get_config()
    except JobEngineError as e:
        _fail(f"Error: {e}")

    click.echo("\n" + "=" * 50)
    click.echo("jobctl Status (last 24h)")
    click.echo("=" * 50)
    click.echo(f"  Pending:      {stats.pending}")
    click.echo(f"  Running:      {stats.running}")
    click.echo(f"  Completed:    {stats.completed}")
    click.echo(f"  Failed:       {stats.failed}")
    click.echo(f"  Dead letter:  {stats.dead_letter}")
    click.echo(f"  Avg duration: {stats.avg_duration_ms:.1f} ms")
    click.echo("\nConfiguration:")
    click.echo(f"  Max Retries:  {config.max_retries}")
    click.echo(f"  Base Delay:   {config.base_delay_ms} ms")
    click.echo(f"  Multiplier:   {config.backoff_multiplier}")
    click.echo("=" * 50 + "\n")


@cli.command("list")
@click.option("--status", "status_", type=click.Choice([s.value for s in JobStatus]), help="Filter by status")
@click.option("--tenant", default=None, help="Filter by tenant")
@click.option("--limit", default=10, help="Maximum jobs to display")
@click.pass_context
def list_jobs(ctx, status_: Optional[str], tenant: Optional[str], limit: int):
    """List jobs, oldest first.

    Example:
        jobctl list --status pending
        jobctl list --status completed --limit 20
    """
    try:
        engine = get_engine(ctx.obj["registry"])
        jobs = engine.list_jobs(
            status=JobStatus(status_) if status_ else None, limit=limit, tenant_id=tenant
        )
    except JobEngineError as e:
        _fail(f"Error: {e}")

    if not jobs:
        click.echo("No jobs found")
        return
    _print_jobs(jobs)


@cli.group()
def dlq():
    """Manage the dead-letter queue"""
    pass


@dlq.command("list")
@click.option("--limit", default=20, help="Maximum jobs to display (1-100)")
@click.option("--offset", default=0, help="Jobs to skip")
@click.option("--tenant", default=None, help="Filter by tenant")
@click.pass_context
def dlq_list(ctx, limit: int, offset: int, tenant: Optional[str]):
    """List dead-letter jobs, most recently failed first.

    Example:
        jobctl dlq list --limit 50
    """
    try:
        engine = get_engine(ctx.obj["registry"])
        page = engine.list_dead_letter_jobs(limit=limit, offset=offset, tenant_id=tenant)
    except (JobEngineError, ValueError) as e:
        _fail(f"Error: {e}")

    if not page.jobs:
        click.echo("Dead letter queue is empty")
        return

    click.echo(f"\n{'ID':<38} {'Name':<20} {'Retries':<8} {'Error':<40}")
    click.echo("-" * 108)
    for job in page.jobs:
        error = (job.error_message or "")[:40]
        click.echo(f"{job.id:<38} {job.name[:20]:<20} {job.retry_count:<8} {error:<40}")
    shown = page.offset + len(page.jobs)
    click.echo(f"\nShowing {page.offset + 1}-{shown} of {page.total}")
    if page.has_more:
        click.echo(f"More: jobctl dlq list --offset {shown} --limit {page.limit}")
    click.echo()


@dlq.command("process")
@click.option("--action", type=click.Choice(["retry", "delete"]), default="delete", show_default=True)
@click.option("--batch-size", default=50, help="Maximum jobs handled (1-100)")
@click.option("--tenant", default=None, help="Only this tenant's jobs")
@click.option("--older-than-hours", type=float, default=None, help="Override the configured age threshold")
@click.pass_context
def dlq_process(ctx, action: str, batch_size: int, tenant: Optional[str], older_than_hours: Optional[float]):
    """Requeue or delete dead-letter jobs older than the age threshold.

    Example:
        jobctl dlq process --action retry --batch-size 10
    """
    older_than = timedelta(hours=older_than_hours) if older_than_hours is not None else None
    try:
        engine = get_engine(ctx.obj["registry"])
        result = engine.process_dead_letter_queue(
            manual_retry=action == "retry",
            batch_size=batch_size,
            tenant_id=tenant,
            older_than=older_than,
        )
    except (JobEngineError, ValueError) as e:
        _fail(f"Error: {e}")

    click.echo(f"✓ Requeued {result.requeued} job(s), deleted {result.deleted} job(s)")


@dlq.command("retry")
@click.argument("job_id")
@click.pass_context
def dlq_retry(ctx, job_id: str):
    """Retry a job from the dead-letter queue.

    Example:
        jobctl dlq retry 5f0c...
    """
    try:
        engine = get_engine(ctx.obj["registry"])
        engine.retry_dead_letter_job(job_id)
    except (JobEngineError, ValueError) as e:
        _fail(str(e))

    click.echo(f"✓ Job {job_id} moved back to queue for retry")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx):
    """Show current configuration.

    Example:
        jobctl config show
    """
    try:
        cfg = get_engine(ctx.obj["registry"]).get_config()
    except JobEngineError as e:
        _fail(f"Error: {e}")

    click.echo("\nCurrent Configuration:")
    for key, field in CONFIG_KEYS.items():
        click.echo(f"  {key + ':':<24}{getattr(cfg, field)}")
    click.echo()


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key: str, value: str):
    """Set a configuration value.

    Example:
        jobctl config set max-retries 5
        jobctl config set jitter false
    """
    field = CONFIG_KEYS.get(key)
    if field is None:
        _fail(f"Unknown config key: {key}")

    try:
        engine = get_engine(ctx.obj["registry"])
        cfg = engine.get_config()
        updated = Config.model_validate({**cfg.model_dump(), field: value})
        engine.set_config(updated)
    except ValidationError as e:
        _fail(f"Invalid value: {e.errors()[0]['msg']}")
    except JobEngineError as e:
        _fail(f"Error: {e}")

    click.echo(f"✓ Configuration updated: {key} = {value}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id: str):
    """Show one job as JSON.

    Example:
        jobctl show 5f0c...
    """
    try:
        job = get_engine(ctx.obj["registry"]).get_job(job_id)
    except JobEngineError as e:
        _fail(str(e))
    click.echo(json.dumps(job.model_dump(mode="json"), indent=2))


if __name__ == "__main__":
    cli()
