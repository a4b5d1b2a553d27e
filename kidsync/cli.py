"""
Developer CLI for kidsync.

Inspects and repairs the on-device database and checks remote
connectivity. Not a player-facing surface.
"""

import asyncio
import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kidsync.config import KidSyncConfig
from kidsync.errors import StorageError
from kidsync.identity import Subject
from kidsync.local.database import LocalStore
from kidsync.remote.documents import HttpDocumentStore


console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_config() -> KidSyncConfig:
    """Load configuration from environment, exiting on malformed values."""
    try:
        return KidSyncConfig.from_env()
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def open_store(db: Optional[str]) -> LocalStore:
    path = db or str(get_config().db_path)
    try:
        return LocalStore(path)
    except StorageError as e:
        console.print(f"[red]Cannot open database:[/red] {e}")
        sys.exit(1)


def _report_panel(report: dict) -> Panel:
    def mark(ok: bool) -> str:
        return "[green]ok[/green]" if ok else "[red]missing[/red]"

    orphans = report["orphan_profiles"]
    lines = [
        f"Default identity: {mark(report['default_identity'])}",
        f"Default configuration: {mark(report['default_configuration'])}",
        f"Default parental control: {mark(report['default_parental_control'])}",
        f"Orphaned profiles: {'[green]0[/green]' if not orphans else f'[red]{orphans}[/red]'}",
        "",
    ]
    lines += [f"{table}: {count}" for table, count in report["counts"].items()]
    status = "[green]healthy[/green]" if report["ok"] else "[red]needs repair[/red]"
    return Panel("\n".join(lines), title=f"Local store ({status})")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(verbose: bool):
    """kidsync - local store and sync diagnostics."""
    setup_logging(verbose)


@main.command()
@click.option("--db", help="Database path (defaults to KIDSYNC_DATA_DIR/kidsync.db)")
def verify(db: Optional[str]):
    """Check the invariants of the local database."""
    store = open_store(db)
    report = store.verify()
    console.print(_report_panel(report))
    store.close()
    sys.exit(0 if report["ok"] else 1)


@main.command()
@click.option("--db", help="Database path (defaults to KIDSYNC_DATA_DIR/kidsync.db)")
def repair(db: Optional[str]):
    """Recreate default rows and remove orphaned profiles."""
    store = open_store(db)
    report = store.repair()
    console.print(_report_panel(report))
    store.close()


@main.command()
@click.argument("identity", default="1")
@click.option("--db", help="Database path (defaults to KIDSYNC_DATA_DIR/kidsync.db)")
def show(identity: str, db: Optional[str]):
    """Show an identity's settings, profiles and statistics (default: DefaultAccount)."""
    store = open_store(db)
    record = store.get_identity(identity)
    if record is None:
        console.print(f"[red]Identity {identity} not found[/red]")
        store.close()
        sys.exit(1)

    subjects = [("account", Subject(identity_id=identity))]
    subjects += [(f"profile {p.id} ({p.name})", p.subject) for p in store.list_profiles(identity)]

    table = Table(title=f"Identity {identity} {record.email}".strip(), show_header=True)
    table.add_column("Subject", style="cyan")
    table.add_column("Colors", justify="right")
    table.add_column("Sound", style="green")
    table.add_column("Volumes (gen/mus/fx/nar)")
    table.add_column("Parental", style="magenta")
    table.add_column("Levels", justify="right")

    for label, subject in subjects:
        cfg = store.get_configuration(subject)
        pc = store.get_parental_control(subject)
        levels = store.list_statistics(identity, subject.profile_id)
        completed = sum(1 for s in levels if s.completed)
        table.add_row(
            label,
            str(cfg.color_intensity) if cfg else "-",
            ("on" if cfg.sound_enabled else "off") if cfg else "-",
            (
                f"{cfg.general_volume}/{cfg.music_volume}/"
                f"{cfg.effects_volume}/{cfg.narrator_volume}"
            ) if cfg else "-",
            ("locked" if pc.is_configured else "off") if pc else "-",
            f"{completed}/{len(levels)}",
        )

    console.print(table)
    console.print(f"Guardian: {record.is_guardian}   Logins: {store.count_logins(identity)}")
    store.close()


@main.command()
def ping():
    """Check connectivity to the configured remote store."""
    config = get_config()
    if not config.remote_enabled:
        console.print("[yellow]No remote store configured[/yellow] (KIDSYNC_REMOTE_URL / KIDSYNC_REMOTE_KEY)")
        sys.exit(1)

    remote = HttpDocumentStore(
        config.remote_url,
        config.remote_key,
        data_source=config.remote_data_source,
        database=config.remote_database,
        timeout=config.request_timeout,
    )
    ok = asyncio.run(remote.ping(timeout=config.probe_timeout))
    if ok:
        console.print(f"[green]Remote store reachable[/green] at {config.remote_url}")
    else:
        console.print(f"[red]Remote store unreachable[/red] at {config.remote_url}")
        sys.exit(1)


if __name__ == "__main__":
    main()
