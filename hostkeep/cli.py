"""
hostkeep command line interface.

Usage:
    hostkeep backup full --unattended
    hostkeep backup incremental
    hostkeep check --destination home
    hostkeep restore --class full --latest
    hostkeep verify --class incremental --mode quick
    hostkeep schedule add full --cron "0 2 * * 0"
    hostkeep schedule show
    hostkeep history --limit 20

Exit status: 0 success, 2 partial, 1 failure, 128+N when interrupted by
signal N.
"""

import json

import click
from flask import current_app
from flask.cli import FlaskGroup

from hostkeep import create_app
from hostkeep.config import BackupSettings
from hostkeep.errors import RunInterrupted, ScheduleUpdateFailed
from hostkeep.models import BackupRun
from hostkeep.backup.executor import (
    BACKUP_CLASSES,
    exit_code_for,
    execute_backup,
    execute_check,
    execute_restore,
    execute_schedule,
    execute_verify,
)
from hostkeep.backup.checksums import VERIFY_MODES
from hostkeep.backup.restore import RESTORE_CLASSES, VERIFY_CLASSES
from hostkeep.scheduler import DEFAULT_SCHEDULES, ScheduleManager


def _settings() -> BackupSettings:
    return BackupSettings.from_config(current_app.config)


def _report(run: BackupRun):
    status = run.status.upper()
    color = {'success': 'green', 'partial': 'yellow'}.get(run.status, 'red')
    label = ' '.join(part for part in (run.operation, run.backup_class) if part)
    message = f"{label}: {status}"
    click.secho(message, fg=color)
    if run.generation:
        click.echo(f"  generation: {run.generation}")
    if run.size_bytes is not None:
        click.echo(f"  size: {run.size_bytes / 1024 / 1024:.2f} MB")
    for member in run.failed_member_list:
        click.echo(f"  failed: {member}")
    if run.error_message:
        click.echo(f"  error: {run.error_message}", err=True)


def _run(ctx, func, *args, **kwargs):
    """Execute an operation and exit with its status."""
    try:
        run = func(_settings(), *args, **kwargs)
    except RunInterrupted as e:
        click.secho(f"Interrupted by signal {e.signum}, partial output removed", fg='red', err=True)
        ctx.exit(128 + e.signum)
    _report(run)
    ctx.exit(exit_code_for(run))


@click.group(cls=FlaskGroup, create_app=create_app)
def main():
    """hostkeep - host backup orchestration."""


@main.command()
@click.argument('backup_class', type=click.Choice(BACKUP_CLASSES))
@click.option('--unattended', is_flag=True, help='Never prompt (scheduled runs)')
@click.pass_context
def backup(ctx, backup_class, unattended):
    """Create a new backup generation."""
    _run(ctx, execute_backup, backup_class, unattended=unattended)


@main.command()
@click.option('--destination', type=click.Choice(['server', 'home']), default='server',
              help='Destination to check')
@click.pass_context
def check(ctx, destination):
    """Check destination readiness and host sanity."""
    _run(ctx, execute_check, destination)


def _choose_generation(generations):
    click.echo("Available backups (newest first):")
    for index, generation in enumerate(generations, 1):
        click.echo(f"  {index}) {generation.name}")
    choice = click.prompt('Select backup', type=click.IntRange(1, len(generations)), default=1)
    return generations[choice - 1]


def _confirm_restore(generation):
    click.secho(f"WARNING: restoring {generation} will overwrite existing files.", fg='yellow')
    return click.confirm('Are you sure you want to proceed?', default=False)


@main.command()
@click.option('--class', 'backup_class', type=click.Choice(RESTORE_CLASSES), default='full',
              help='Backup class to restore from')
@click.option('--generation', help='Generation name (e.g. 20240107_0200)')
@click.option('--latest', is_flag=True, help='Restore the most recent generation')
@click.option('--unattended', is_flag=True, help='Skip confirmation and never prompt')
@click.pass_context
def restore(ctx, backup_class, generation, latest, unattended):
    """Restore a backup generation."""
    chooser = None if (generation or latest or unattended) else _choose_generation
    _run(
        ctx, execute_restore, backup_class,
        generation=generation,
        chooser=chooser,
        confirm=_confirm_restore,
        unattended=unattended,
    )


@main.command()
@click.option('--class', 'backup_class', type=click.Choice(VERIFY_CLASSES), default='full',
              help='Backup class to verify')
@click.option('--generation', help='Generation name (default: most recent)')
@click.option('--mode', type=click.Choice(VERIFY_MODES), default='full', help='Verification depth')
@click.pass_context
def verify(ctx, backup_class, generation, mode):
    """Verify a generation against its checksum manifest."""
    _run(ctx, execute_verify, backup_class, generation=generation, mode=mode)


@main.group()
def schedule():
    """Manage scheduled backups in the user's crontab."""


@schedule.command('add')
@click.argument('backup_class', type=click.Choice(list(DEFAULT_SCHEDULES)))
@click.option('--cron', help='Cron expression (default depends on the class)')
@click.pass_context
def schedule_add(ctx, backup_class, cron):
    """Schedule a backup class."""
    _run(ctx, execute_schedule, backup_class, 'add', cron=cron)


@schedule.command('remove')
@click.argument('backup_class', type=click.Choice(list(DEFAULT_SCHEDULES)))
@click.pass_context
def schedule_remove(ctx, backup_class):
    """Remove a backup class from the schedule."""
    _run(ctx, execute_schedule, backup_class, 'remove')


@schedule.command('show')
@click.pass_context
def schedule_show(ctx):
    """Show scheduled backups and their next run."""
    manager = ScheduleManager(_settings())
    try:
        entries = manager.entries()
        next_runs = manager.next_runs()
    except ScheduleUpdateFailed as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    if not entries:
        click.echo("No backups scheduled")
        return

    for entry in entries:
        click.echo(f"{entry.backup_class:<12} {entry.cron:<15} next: {next_runs.get(entry.backup_class)}")


@main.command()
@click.option('--limit', default=20, type=click.IntRange(1, 200), help='Number of runs to show')
@click.option('--json', 'json_output', is_flag=True, help='Output results as JSON')
def history(limit, json_output):
    """Show recent runs."""
    records = BackupRun.query.order_by(BackupRun.started_at.desc(), BackupRun.id.desc()).limit(limit).all()

    if json_output:
        click.echo(json.dumps([record.to_dict() for record in records], indent=2))
        return

    if not records:
        click.echo("No runs recorded")
        return

    for record in records:
        click.echo(
            f"{record.id:>5}  {record.started_at:%Y-%m-%d %H:%M:%S}  {record.operation:<8} "
            f"{(record.backup_class or '-'):<12} {record.status:<11} {record.generation or ''}"
        )


if __name__ == '__main__':
    main()
