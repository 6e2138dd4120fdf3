"""
Command line interface: ``flask --app pgkeeper backup <command>``.

Commands:
- run: run a backup (type picked from the weekday unless --type is given)
- cleanup: apply the retention policy to every storage
- health-check: report storage and freshness issues
- list: list backups on a storage
- restore: restore the database from a backup

Every command exits with code 1 when the operation failed.
"""

import json

import click
from flask.cli import AppGroup

from pgkeeper.backup.artifacts import DIFFERENTIAL, FULL
from pgkeeper.backup.executor import create_executor


backup_cli = AppGroup('backup', help='Database backup commands.')


def _format_size(size: int) -> str:
    return f"{size / 1024 / 1024:.2f} MB"


@backup_cli.command('run')
@click.option('--type', 'backup_type', type=click.Choice([FULL, DIFFERENTIAL]),
              help='Force the backup type instead of picking it from the weekday.')
def run_command(backup_type):
    """Run a database backup."""
    executor = create_executor()

    if backup_type == FULL:
        result = executor.run_full()
    elif backup_type == DIFFERENTIAL:
        result = executor.run_differential()
    else:
        result = executor.run()

    if not result.success:
        click.echo(f"Backup failed: {result.error}", err=True)
        raise SystemExit(1)

    if not result.filename:
        click.echo("No tables modified since the last full backup, nothing to do")
        return

    click.echo(f"Backup completed: {result.filename}")
    click.echo(f"  Type: {result.type}")
    click.echo(f"  Size: {_format_size(result.size)}")
    click.echo(f"  Duration: {result.duration:.2f}s")
    for name, uploaded in result.storages.items():
        click.echo(f"  {name}: {'ok' if uploaded else 'failed'}")


@backup_cli.command('cleanup')
def cleanup_command():
    """Delete backups outside the retention policy."""
    summary = create_executor().cleanup()

    click.echo(f"Cleanup completed. Deleted: {summary.deleted}, Kept: {summary.kept}, Errors: {summary.errors}")

    if summary.errors:
        raise SystemExit(1)


@backup_cli.command('health-check')
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON.')
def health_check_command(as_json):
    """Check backup health."""
    report = create_executor().health_check()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.echo(f"Status: {'healthy' if report.healthy else 'unhealthy'}")
        for name, available in report.storages.items():
            click.echo(f"  {name}: {'available' if available else 'unavailable'}")
        if report.last_backup:
            click.echo(f"Last backup: {report.last_backup.filename} ({report.last_backup.created_at.isoformat()})")
        for issue in report.issues:
            click.echo(f"  - {issue}")

    if not report.healthy:
        raise SystemExit(1)


@backup_cli.command('list')
@click.option('--limit', type=int, default=20, show_default=True, help='Maximum number of backups to show.')
@click.option('--storage', 'storage_name', help='Storage to list (default: primary storage).')
def list_command(limit, storage_name):
    """List available backups, newest first."""
    executor = create_executor()

    try:
        backups = executor.list_backups(storage_name, limit)
    except ValueError as e:
        click.echo(str(e), err=True)
        raise SystemExit(1)

    if not backups:
        click.echo("No backups found")
        return

    for artifact in backups:
        click.echo(
            f"{artifact.filename}  {artifact.type:<12}  {_format_size(artifact.size):>12}  "
            f"{artifact.created_at.isoformat()}"
        )


@backup_cli.command('restore')
@click.argument('filename')
@click.option('--force', is_flag=True, help='Do not ask for confirmation.')
def restore_command(filename, force):
    """Restore the database from FILENAME on the primary storage."""
    if not force:
        click.confirm(
            f"This will overwrite the current database with {filename}. Continue?",
            abort=True
        )

    result = create_executor().restore(filename)

    if not result.success:
        click.echo(f"Restore failed: {result.error}", err=True)
        raise SystemExit(1)

    click.echo(f"Restore completed: {filename}")
