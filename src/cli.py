#!/usr/bin/env python3
"""Command Line Interface for Strongbox"""

import sys
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, cast

import click
from rich.console import Console
from rich.table import Table

# Add parent directory to path
sys.path.append(str(Path(__file__).parent))

from core.backup_engine import BackupEngine, OperationResult
from core.config_manager import ConfigManager
from core.encryptor import Encryptor
from core.errors import BackupError
from utils.scheduler import BackupScheduler, ScheduleType

console = Console()

# Lazy-initialized components (created on first access to avoid startup cost)
_components: dict[str, Any] = {}


def _get_config() -> ConfigManager:
    if "config" not in _components:
        _components["config"] = ConfigManager(_components.get("config_dir"))
    return cast("ConfigManager", _components["config"])


def _get_backup_engine() -> BackupEngine:
    if "backup_engine" not in _components:
        destination = _components.get("destination") or _get_config().get_destination()
        _components["backup_engine"] = BackupEngine(destination, config=_get_config())
    return cast("BackupEngine", _components["backup_engine"])


def _resolve_backup(backup: str) -> Path:
    """Accept either a path or a backup directory name under the destination"""
    path = Path(backup)
    if path.is_dir():
        return path
    return _get_backup_engine().destination / backup


def _print_result(result: OperationResult) -> None:
    for warning in result.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")

    if result.success:
        console.print(f"[green]✓[/green] {result.message}")
    else:
        console.print(f"[red]✗[/red] {result.message}")
        sys.exit(1)


def _key_options(func):
    func = click.option("--key-file", type=click.Path(dir_okay=False), help="File holding a raw 32-byte key")(func)
    func = click.option("--password", help="Password to derive the key from")(func)
    func = click.option("--key", help="Encryption key (64 hex characters or text)")(func)
    return func


@click.group()
@click.option("--config-dir", type=click.Path(file_okay=False), help="Directory holding settings.yaml")
@click.option("--destination", type=click.Path(file_okay=False), help="Backup destination root")
def cli(config_dir, destination):
    """Strongbox - CLI Interface"""
    _components.clear()
    _components["config_dir"] = config_dir
    _components["destination"] = destination


@cli.command()
@click.argument("source", type=click.Path(exists=True, file_okay=False))
@click.option("--incremental", "-i", is_flag=True, help="Perform incremental backup (only changed files)")
@click.option("--no-compression", is_flag=True, help="Store files without compression")
@click.option("--level", type=click.IntRange(0, 9), help="Compression level (0-9)")
@click.option("--encrypt", is_flag=True, help="Encrypt backed up files")
@_key_options
def backup(source, incremental, no_compression, level, encrypt, key, password, key_file):
    """Backup a directory"""
    options = _get_config().backup_options(source, incremental=incremental)
    if no_compression:
        options.enable_compression = False
    if level is not None:
        options.compression_level = level
    if encrypt or key or password or key_file:
        options.enable_encryption = True
    if key or password or key_file:
        options.encryption_key = key
        options.password = password
        options.key_file = key_file

    mode = "incremental" if incremental else "full"
    console.print(f"[bold cyan]Backing up '{source}' ({mode} mode)...[/bold cyan]")
    result = _get_backup_engine().create_backup(options)

    generated = result.details.get("generated_key")
    if generated:
        console.print(f"[yellow]⚠ Generated encryption key (store it safely): {generated}[/yellow]")
    _print_result(result)


@cli.command()
@click.argument("backup_name")
@click.argument("target", type=click.Path(file_okay=False))
@click.option("--chain", is_flag=True, help="Replay the full backup and every incremental up to this one")
@_key_options
def restore(backup_name, target, chain, key, password, key_file):
    """Restore a backup into TARGET"""
    engine = _get_backup_engine()
    backup_path = _resolve_backup(backup_name)
    console.print(f"[bold cyan]Restoring {backup_path.name} to {target}...[/bold cyan]")

    if chain:
        result = engine.restore_backup_chain(backup_path, target, key=key, password=password, key_file=key_file)
    else:
        result = engine.restore_backup(backup_path, target, key=key, password=password, key_file=key_file)
    _print_result(result)


@cli.command("restore-file")
@click.argument("backup_name")
@click.argument("file_path")
@click.argument("target", type=click.Path(file_okay=False))
@_key_options
def restore_file(backup_name, file_path, target, key, password, key_file):
    """Restore a single file from a backup"""
    result = _get_backup_engine().restore_file(
        _resolve_backup(backup_name), file_path, target, key=key, password=password, key_file=key_file
    )
    _print_result(result)


@cli.command()
@click.argument("backup_name")
@_key_options
def verify(backup_name, key, password, key_file):
    """Verify the integrity of a backup"""
    backup_path = _resolve_backup(backup_name)
    console.print(f"[bold cyan]Verifying {backup_path.name}...[/bold cyan]")
    result = _get_backup_engine().verify_backup(backup_path, key=key, password=password, key_file=key_file)

    failures = result.details.get("failures", [])
    if failures:
        table = Table(title="Verification failures", show_header=True, header_style="bold magenta")
        table.add_column("File", style="cyan")
        table.add_column("Reason", style="red")
        for failure in failures:
            table.add_row(failure["path"], failure["reason"])
        console.print(table)
    _print_result(result)


@cli.command("list")
def list_backups():
    """List backups in the destination"""
    engine = _get_backup_engine()
    backups = engine.list_backups()
    if not backups:
        console.print("[dim]No backups yet. Use 'backup SOURCE' to create one.[/dim]")
        return

    table = Table(title=f"Backups in {engine.destination}", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="white")
    table.add_column("Files", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Encrypted", justify="center")
    table.add_column("Created", style="green")

    for backup_path in backups:
        try:
            record = engine.get_backup_record(backup_path)
        except BackupError as e:
            table.add_row(backup_path.name, "[red]unreadable[/red]", "-", "-", "-", str(e)[:40])
            continue
        size_mb = engine.get_backup_size(backup_path) / (1024 * 1024)
        table.add_row(
            backup_path.name,
            record.backup_type,
            str(len(record.files)),
            f"{size_mb:.1f} MB",
            "yes" if record.encrypted else "no",
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)


@cli.command()
@click.argument("backup_name")
def chain(backup_name):
    """Show the chain of backups a restore would replay"""
    engine = _get_backup_engine()
    try:
        record = engine.get_backup_record(_resolve_backup(backup_name))
        chain_ids = engine.store.resolve_chain(record.backup_id)
    except BackupError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)

    for position, backup_id in enumerate(chain_ids, start=1):
        link = engine.store.get(backup_id)
        if link is None:
            continue
        console.print(
            f"  {position}. [cyan]{link.backup_dir}[/cyan] {link.backup_type} "
            f"({len(link.files)} files, {len(link.deleted_files)} deleted)"
        )


@cli.command()
@click.option("--days", type=int, help="Retention period in days (defaults to retention.days)")
@click.option("--orphans", is_flag=True, help="Only remove incrementals whose parent is gone and leftovers of failed runs")
@click.option("--keep-files", is_flag=True, help="Drop catalog entries but keep backup directories")
def cleanup(days, orphans, keep_files):
    """Remove backups older than the retention period"""
    engine = _get_backup_engine()
    if orphans:
        result = engine.cleanup_orphans(delete_payload=not keep_files)
    else:
        result = engine.cleanup_old_backups(days, delete_payload=not keep_files)

    for name in result.details.get("deleted_dirs", []):
        console.print(f"[dim]Removed {name}[/dim]")
    _print_result(result)


@cli.command()
@click.argument("key_file", type=click.Path(dir_okay=False))
def genkey(key_file):
    """Generate a random 32-byte key file"""
    if Path(key_file).exists():
        console.print(f"[red]✗[/red] {key_file} already exists")
        sys.exit(1)

    encryptor = Encryptor()
    encryptor.generate_random_key()
    try:
        encryptor.save_key_to_file(key_file)
    except BackupError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Key written to {key_file} (readable by owner only)")


@cli.command()
@click.argument("source", type=click.Path(exists=True, file_okay=False))
@click.option(
    "--frequency",
    type=click.Choice([t.value for t in ScheduleType if t != ScheduleType.ONCE]),
    default="daily",
    show_default=True,
    help="How often to back up",
)
@click.option("--interval", type=int, help="Interval in seconds for --frequency custom")
@click.option("--full", "-f", is_flag=True, help="Always take full backups")
def schedule(source, frequency, interval, full):
    """Run scheduled backups of SOURCE until interrupted"""
    config = _get_config()
    engine = _get_backup_engine()

    def run(name: str) -> OperationResult:
        return engine.create_backup(config.backup_options(name, incremental=not full))

    def report_error(name: str, message: str) -> None:
        console.print(f"[red]✗[/red] {name}: {message}")

    scheduler = BackupScheduler.from_config(run, config, on_error=report_error)
    custom = timedelta(seconds=interval) if interval else None
    success, message = scheduler.schedule_backup(source, ScheduleType(frequency), custom)
    if not success:
        console.print(f"[red]✗[/red] {message}")
        sys.exit(1)

    next_run = scheduler.get_next_scheduled_time()
    console.print(f"[bold cyan]{message}; next run {next_run:%Y-%m-%d %H:%M:%S}. Press Ctrl+C to stop.[/bold cyan]")
    scheduler.start()
    try:
        while scheduler.is_running():
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping scheduler...[/yellow]")
    finally:
        scheduler.stop()


if __name__ == "__main__":
    cli()
