"""CLI interface for backupctl."""

import json
import logging
import multiprocessing
import sys
from typing import Optional

import click

from .config import Settings, get_settings, load_orchestration
from .errors import BackupCtlError
from .models import DesiredState, JobStatus
from .orchestrator import Orchestration, desired_state_from_config
from .storage import LocalSubstrate
from .substrate import Substrate
from .worker import Worker


def get_substrate(settings: Settings) -> Substrate:
    """Substrate selected by settings."""
    if settings.substrate == "aws":
        from .aws import AwsSubstrate
        return AwsSubstrate(settings)
    return LocalSubstrate(settings.data_dir, account=settings.account)


def get_local_substrate(settings: Settings) -> LocalSubstrate:
    if settings.substrate != "local":
        click.echo("✗ This command needs the local substrate (BACKUPCTL_SUBSTRATE=local)", err=True)
        sys.exit(1)
    return LocalSubstrate(settings.data_dir, account=settings.account)


def load_state(config_path: str, settings: Settings) -> DesiredState:
    try:
        return desired_state_from_config(load_orchestration(config_path), settings)
    except BackupCtlError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """backupctl - scheduled folder backups to object storage"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
def plan(config_path: str):
    """Show the resources a config describes, without applying them.

    Example:
        backupctl plan backups.json
    """
    state = load_state(config_path, get_settings())
    click.echo(json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True))


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
def apply(config_path: str):
    """Provision the pool, queue, jobs, buckets, triggers and listeners.

    Example:
        backupctl apply backups.json
    """
    settings = get_settings()
    state = load_state(config_path, settings)
    try:
        Orchestration(state, get_substrate(settings)).apply()
    except BackupCtlError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    armed = sum(1 for trigger in state.triggers if trigger.schedule)
    click.echo(f"✓ Applied {len(state.descriptors)} job(s), {armed} trigger(s), {len(state.bindings)} bucket(s)")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("source_id")
@click.option("--label", default=None, help="Run label (defaults to the job name)")
def enqueue(config_path: str, source_id: str, label: Optional[str]):
    """Submit one run of a backup by hand.

    Example:
        backupctl enqueue backups.json photos
    """
    settings = get_settings()
    state = load_state(config_path, settings)
    descriptor = next((d for d in state.descriptors if d.source_id == source_id), None)
    if descriptor is None:
        click.echo(f"✗ No backup definition for source {source_id}", err=True)
        sys.exit(1)
    try:
        handle = Orchestration(state, get_substrate(settings)).queue_manager.enqueue(descriptor, run_label=label)
    except BackupCtlError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Job {handle.job_name} enqueued as {handle.job_id}")


@cli.group()
def scheduler():
    """Fire cron triggers on the local substrate"""
    pass


@scheduler.command("run")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--poll-interval", default=30.0, help="Seconds between schedule checks")
def scheduler_run(config_path: str, poll_interval: float):
    """Fire armed triggers until interrupted.

    Example:
        backupctl scheduler run backups.json
    """
    settings = get_settings()
    state = load_state(config_path, settings)
    orchestration = Orchestration(state, get_local_substrate(settings))
    click.echo(f"Scheduling {sum(1 for t in state.triggers if t.schedule)} trigger(s)...")
    try:
        orchestration.scheduler.run(state.triggers, poll_interval=poll_interval)
    except KeyboardInterrupt:
        click.echo("\nScheduler stopped")


@cli.group()
def worker():
    """Manage worker processes"""
    pass


def _worker_process(worker_id: int):
    """Run a single worker process."""
    settings = get_settings()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    w = Worker.for_substrate(
        LocalSubstrate(settings.data_dir, account=settings.account), worker_id, timeout=settings.job_timeout,
    )
    w.install_signal_handlers()
    w.run()


@worker.command()
@click.option("--count", default=1, help="Number of workers to start")
def start(count: int):
    """Start one or more workers.

    Example:
        backupctl worker start --count 3
    """
    if count < 1:
        click.echo("✗ Count must be at least 1", err=True)
        sys.exit(1)
    get_local_substrate(get_settings())

    click.echo(f"Starting {count} worker(s)...")

    processes = []
    try:
        for i in range(count):
            p = multiprocessing.Process(target=_worker_process, args=(i + 1,))
            p.start()
            processes.append(p)

        # Wait for all processes
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
def status():
    """Show queue status and applied resources.

    Example:
        backupctl status
    """
    settings = get_settings()
    substrate = get_local_substrate(settings)
    stats = substrate.get_stats()
    resources = substrate.resources()

    click.echo("\n" + "=" * 50)
    click.echo("backupctl Status")
    click.echo("=" * 50)
    click.echo(f"Total Runs:     {stats['total']}")
    for status_name in ("runnable", "starting", "running", "succeeded", "failed"):
        click.echo(f"  {status_name.capitalize() + ':':<13} {stats[status_name]}")
    click.echo("\nResources:")
    click.echo(f"  Job definitions: {len(resources['job_definitions'])}")
    click.echo(f"  Armed triggers:  {len(resources['schedule_rules'])}")
    click.echo(f"  Buckets bound:   {len(resources['grants'])}")
    click.echo(f"  Listeners:       {len(resources['listeners'])}")
    click.echo("=" * 50 + "\n")


@cli.command("list")
@click.option("--status", "status_filter", type=click.Choice([s.value for s in JobStatus]), help="Filter by status")
@click.option("--limit", default=10, help="Maximum runs to display")
def list_runs(status_filter: Optional[str], limit: int):
    """List queue entries.

    Example:
        backupctl list --status FAILED
    """
    substrate = get_local_substrate(get_settings())
    entries = substrate.get_entries(JobStatus(status_filter) if status_filter else None)[:limit]

    if not entries:
        click.echo("No runs found")
        return

    click.echo(f"\n{'ID':<34} {'Job':<30} {'Status':<10} {'Created':<20}")
    click.echo("-" * 96)
    for entry in entries:
        created = entry.created_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{entry.id:<34} {entry.job_name[:30]:<30} {entry.status.value:<10} {created:<20}")
    click.echo()


@cli.command()
@click.option("--limit", default=10, help="Maximum notifications to display")
def notifications(limit: int):
    """List published notifications, newest first.

    Example:
        backupctl notifications
    """
    substrate = get_local_substrate(get_settings())
    published = list(reversed(substrate.get_notifications()))[:limit]
    if not published:
        click.echo("No notifications published")
        return
    for item in published:
        click.echo(f"{item['published_at']}  [{item['topic']}] {item['subject']}")


@cli.group()
def config():
    """Inspect configuration"""
    pass


@config.command()
def show():
    """Show effective settings.

    Example:
        backupctl config show
    """
    settings = get_settings()
    click.echo("\nCurrent Settings:")
    for key, value in settings.model_dump().items():
        click.echo(f"  {key.replace('_', '-')}: {value}")
    click.echo()


if __name__ == "__main__":
    cli()
