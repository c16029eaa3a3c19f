import json
import signal
import threading
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from ..core.clock import ensure_utc
from ..core.config import EngineConfig, load_config, save_config, set_value
from ..core.errors import InvalidCronExpression, JobEngineError, JobNotFound
from ..core.log import setup_logging
from ..models.job import JobState
from ..scheduling.engine import JobEngine
from ..storage.database import Storage

console = Console()

STATE_CHOICES = [state.value for state in JobState]
STATE_STYLES = {
    JobState.ENQUEUED.value: "cyan",
    JobState.SCHEDULED.value: "blue",
    JobState.PROCESSING.value: "yellow",
    JobState.SUCCEEDED.value: "green",
    JobState.FAILED.value: "red",
}


class CliState:
    """Builds the engine on first use so config commands never touch the DB."""

    def __init__(self, config_file=None, database_url=None):
        self.config_file = config_file
        self.database_url = database_url
        self._engine = None

    def config(self) -> EngineConfig:
        return load_config(self.config_file)

    def build_engine(self, config: EngineConfig) -> JobEngine:
        if not self.database_url:
            return JobEngine(config)
        # --db beats JOBENGINE_DATABASE_URL
        return JobEngine(config, store=Storage(database_url=self.database_url))

    @property
    def engine(self) -> JobEngine:
        if self._engine is None:
            self._engine = self.build_engine(self.config())
        return self._engine


def _fail(message: str):
    console.print(f"[red]{message}[/red]")
    raise SystemExit(1)


def _parse_payload(payload: str) -> dict:
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise click.BadParameter(f"payload is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise click.BadParameter("payload must be a JSON object")
    return data


def _fmt(value) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, float):
        return f"{value:.3f}"
    return str(value)


def _short(text, width: int = 50) -> str:
    if not text:
        return ""
    return text[:width] + "..." if len(text) > width else text


@click.group()
@click.option("--config", "config_file", type=click.Path(dir_okay=False), default=None,
              help="Path to the JSON config file")
@click.option("--db", "database_url", default=None, help="SQLAlchemy database URL of the job store")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_file, database_url, verbose):
    """jobengine - background job scheduling and execution engine"""
    setup_logging(verbose)
    ctx.obj = CliState(config_file, database_url)


@cli.command()
@click.argument("job_type")
@click.option("--payload", default=None, help="JSON object passed to the handler")
@click.pass_obj
def enqueue(state, job_type, payload):
    """Add a job to run as soon as a worker is free"""
    try:
        job = state.engine.enqueue(job_type, _parse_payload(payload))
    except JobEngineError as e:
        _fail(f"Error enqueueing job: {e}")
    console.print(f"[green]Job {job.id} enqueued[/green]")


@cli.command()
@click.argument("job_type")
@click.option("--payload", default=None, help="JSON object passed to the handler")
@click.option("--at", "run_at", default=None, help="ISO datetime to run at (naive values are UTC)")
@click.option("--delay", type=float, default=None, help="Seconds from now to run after")
@click.pass_obj
def schedule(state, job_type, payload, run_at, delay):
    """Add a job that runs at a later time"""
    if (run_at is None) == (delay is None):
        raise click.UsageError("Use exactly one of --at or --delay")
    try:
        at = ensure_utc(datetime.fromisoformat(run_at)) if run_at else None
    except ValueError as e:
        raise click.BadParameter(f"Invalid --at value: {e}")
    try:
        job = state.engine.schedule(job_type, _parse_payload(payload), at=at, delay=delay)
    except JobEngineError as e:
        _fail(f"Error scheduling job: {e}")
    console.print(f"[green]Job {job.id} scheduled for {job.scheduled_for.isoformat()}[/green]")


@cli.command()
@click.pass_obj
def status(state):
    """Show job counts by state"""
    try:
        stats = state.engine.admin.get_statistics()
    except JobEngineError as e:
        _fail(f"Error getting status: {e}")

    table = Table(title="Job Statistics")
    table.add_column("State", style="cyan")
    table.add_column("Count", style="magenta")
    for name, count in stats.counts.items():
        table.add_row(name, str(count))
    table.add_row("Recurring", str(stats.recurring))
    console.print(table)
    console.print(f"Oldest job: [blue]{_fmt(stats.oldest_job_at) or '-'}[/blue]")
    console.print(f"Last completion: [blue]{_fmt(stats.last_completed_at) or '-'}[/blue]")


@cli.command("list")
@click.option("--state", "state_filter", type=click.Choice(STATE_CHOICES, case_sensitive=False),
              help="Filter jobs by state")
@click.option("--limit", type=click.IntRange(min=0), default=50, show_default=True)
@click.pass_obj
def list_jobs(state, state_filter, limit):
    """List jobs, newest first"""
    try:
        jobs = state.engine.admin.list_jobs(state=state_filter, limit=limit)
    except JobEngineError as e:
        _fail(f"Error listing jobs: {e}")

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs {f'in {state_filter} state' if state_filter else ''}")
    table.add_column("ID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("State")
    table.add_column("Retries", style="yellow")
    table.add_column("Created At", style="blue")
    table.add_column("Duration (s)")
    table.add_column("Error", style="red")

    for job in jobs:
        table.add_row(
            job.id,
            job.job_type,
            f"[{STATE_STYLES[job.state]}]{job.state}[/]",
            str(job.retry_count),
            _fmt(job.created_at),
            _fmt(job.duration_seconds),
            _short(job.error),
        )
    console.print(table)


@cli.command()
@click.argument("job_id")
@click.pass_obj
def show(state, job_id):
    """Show one job"""
    try:
        job = state.engine.admin.get_job(job_id)
    except JobNotFound:
        _fail(f"Job {job_id} not found")
    except JobEngineError as e:
        _fail(f"Error reading job: {e}")

    table = Table(title=f"Job {job.id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in job.model_dump().items():
        table.add_row(key, _fmt(value))
    console.print(table)


@cli.command()
@click.argument("job_id")
@click.pass_obj
def requeue(state, job_id):
    """Move a Failed job back to Enqueued"""
    try:
        ok = state.engine.admin.requeue(job_id)
    except JobEngineError as e:
        _fail(f"Error requeueing job: {e}")
    if not ok:
        _fail(f"Job {job_id} is missing or not in Failed state")
    console.print(f"[green]Job {job_id} moved back to the queue[/green]")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def delete(state, job_id):
    """Delete a job in any state"""
    try:
        ok = state.engine.admin.delete_job(job_id)
    except JobEngineError as e:
        _fail(f"Error deleting job: {e}")
    if not ok:
        _fail(f"Job {job_id} not found")
    console.print(f"[green]Job {job_id} deleted[/green]")


@cli.group()
def recurring():
    """Manage recurring (cron) jobs"""
    pass


@recurring.command("add")
@click.argument("recurring_id")
@click.argument("cron_expression")
@click.argument("job_type")
@click.option("--payload", default=None, help="JSON object passed to the handler")
@click.pass_obj
def recurring_add(state, recurring_id, cron_expression, job_type, payload):
    """Add or update a recurring job"""
    try:
        definition = state.engine.add_recurring(recurring_id, cron_expression, job_type, _parse_payload(payload))
    except InvalidCronExpression as e:
        _fail(str(e))
    except JobEngineError as e:
        _fail(f"Error adding recurring job: {e}")
    console.print(
        f"[green]Recurring job {definition.id} saved, next run {definition.next_execution.isoformat()}[/green]"
    )


@recurring.command("list")
@click.pass_obj
def recurring_list(state):
    """List recurring jobs"""
    try:
        definitions = state.engine.admin.list_recurring()
    except JobEngineError as e:
        _fail(f"Error listing recurring jobs: {e}")

    if not definitions:
        console.print("[yellow]No recurring jobs[/yellow]")
        return

    table = Table(title="Recurring Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Cron", style="magenta")
    table.add_column("Type")
    table.add_column("Last Run", style="blue")
    table.add_column("Next Run", style="green")
    for d in definitions:
        table.add_row(d.id, d.cron_expression, d.job_type, _fmt(d.last_execution), _fmt(d.next_execution))
    console.print(table)


@recurring.command("trigger")
@click.argument("recurring_id")
@click.pass_obj
def recurring_trigger(state, recurring_id):
    """Run a recurring job now without changing its schedule"""
    try:
        job_id = state.engine.admin.trigger_recurring(recurring_id)
    except JobEngineError as e:
        _fail(f"Error triggering recurring job: {e}")
    if job_id:
        console.print(f"[green]Recurring job {recurring_id} triggered as {job_id}[/green]")
    else:
        console.print(f"[yellow]Recurring job {recurring_id} not found, nothing triggered[/yellow]")


@recurring.command("remove")
@click.argument("recurring_id")
@click.pass_obj
def recurring_remove(state, recurring_id):
    """Remove a recurring job (already created jobs are kept)"""
    try:
        state.engine.admin.remove_recurring(recurring_id)
    except JobEngineError as e:
        _fail(f"Error removing recurring job: {e}")
    console.print(f"[green]Recurring job {recurring_id} removed[/green]")


@cli.group()
def worker():
    """Run the dispatcher and worker pool"""
    pass


@worker.command("start")
@click.option("--concurrency", type=int, default=None, help="Number of worker slots")
@click.option("--handler", "handlers", multiple=True, metavar="TYPE=MODULE:FUNCTION",
              help="Register a handler; may be repeated")
@click.pass_obj
def worker_start(state, concurrency, handlers):
    """Process jobs until interrupted"""
    config = state.config()
    if concurrency is not None:
        if concurrency < 1:
            raise click.BadParameter("--concurrency must be at least 1")
        config = config.model_copy(update={"concurrency": concurrency})

    engine = state.build_engine(config)
    for spec in handlers:
        job_type, sep, path = spec.partition("=")
        if not sep:
            raise click.BadParameter(f"Expected TYPE=MODULE:FUNCTION, got {spec!r}")
        try:
            engine.registry.register_path(job_type.strip(), path.strip())
        except (ImportError, ValueError, TypeError) as e:
            _fail(f"Cannot register handler {spec!r}: {e}")

    stop = threading.Event()

    def handle_shutdown(signum, frame):
        console.print("\nShutting down workers gracefully...")
        stop.set()

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    engine.start()
    console.print(
        f"[green]Started {config.concurrency} worker(s); handlers: {', '.join(engine.registry.names())}[/green]"
    )
    try:
        while not stop.wait(0.5):
            pass
    finally:
        engine.stop()
        console.print("[green]Workers stopped[/green]")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command("show")
@click.pass_obj
def config_show(state):
    """Print the effective configuration"""
    try:
        cfg = load_config(state.config_file)
    except (OSError, ValueError) as e:
        _fail(f"Error reading configuration: {e}")
    console.print_json(json.dumps(cfg.to_file_dict()))


@config.command("get")
@click.argument("key")
@click.pass_obj
def config_get(state, key):
    """Get a configuration value"""
    try:
        data = load_config(state.config_file).to_file_dict()
    except (OSError, ValueError) as e:
        _fail(f"Error reading configuration: {e}")
    if key not in data:
        _fail(f"Configuration key '{key}' not found")
    console.print(f"{key}: {data[key]}")


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(state, key, value):
    """Set a configuration value"""
    try:
        updated = set_value(load_config(state.config_file), key, value)
    except KeyError as e:
        _fail(str(e.args[0]))
    except (OSError, ValueError) as e:
        _fail(f"Error setting configuration: {e}")
    path = save_config(updated, state.config_file)
    console.print(f"[green]Set {key} to {updated.to_file_dict()[key.replace('_', '-')]}[/green] ({path})")


if __name__ == '__main__':
    cli()
