import argparse
import datetime
import logging
import os
import shutil
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon
from .config import CONFIG_FILE, Config, parse_time
from .constants import APP_NAME, LOG_FILE
from .errors import (
    EventStoreError,
    FatalSyncError,
    GitCommandError,
    GitTimeoutError,
    PassInProgressError,
    RepoSentryError,
)
from .events import EventStore
from .git_wrapper import run_git
from .models import EventType, Severity, SyncEvent, SyncReport
from .orchestrator import ParallelSyncOrchestrator, adaptive_concurrency

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)

SEVERITY_STYLES = {
    Severity.INFO: "green",
    Severity.WARNING: "yellow",
    Severity.ERROR: "bold red",
}


def _format_time(value: datetime.datetime) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _events_table(events: list[SyncEvent], title: str | None = None) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Time", style="dim")
    table.add_column("Repository", style="cyan")
    table.add_column("Event")
    table.add_column("Detail", overflow="fold")
    table.add_column("Ack", justify="center")

    for event in events:
        style = SEVERITY_STYLES[event.severity]
        table.add_row(
            str(event.id),
            _format_time(event.timestamp),
            event.repository,
            f"[{style}]{event.event_type.value}[/{style}]",
            event.detail,
            "✔" if event.acknowledged else "",
        )
    return table


def print_report(report: SyncReport) -> None:
    """Renders a pass report as a per-repository table plus a summary panel."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Decision")
    table.add_column("Outcome")
    table.add_column("Detail", overflow="fold")

    for outcome in sorted(report.outcomes, key=lambda o: o.descriptor.full_name):
        style = SEVERITY_STYLES[outcome.severity]
        table.add_row(
            outcome.descriptor.full_name,
            outcome.decision.describe(),
            f"[{style}]{outcome.event_type.value}[/{style}]",
            outcome.detail,
        )
    if report.outcomes:
        console.print(table)

    summary = Text()
    summary.append(f"{report.successful} successful", style="green")
    summary.append(", ")
    summary.append(f"{report.skipped} skipped", style="yellow")
    summary.append(", ")
    summary.append(f"{report.failed} failed", style="bold red" if report.failed else "dim")
    summary.append(
        f"\n{report.total} repositories in {report.elapsed:.2f}s, "
        f"concurrency {report.concurrency}",
        style="dim",
    )
    if report.cancelled:
        summary.append(f"\n{report.cancelled} not started (cancelled)", style="yellow")
    title = "Dry Run" if report.dry_run else "Sync Report"
    console.print(Panel(summary, title=title, expand=False))


def run_sync(config: Config, dry_run: bool = False) -> int:
    """Runs one pass in the foreground.

    Returns:
        int: The exit code (1 if any repository failed, 2 on a fatal error).
    """
    repositories = daemon.build_discovery(config).discover_repositories()
    if not repositories:
        console.print(
            f"[yellow]No repositories found. Add [[repositories]] to {CONFIG_FILE} "
            f"or clone into {config.sync.base_dir}.[/yellow]"
        )
        return 0

    if dry_run:
        orchestrator = ParallelSyncOrchestrator.from_config(config)
        report = orchestrator.dry_run(repositories)
        print_report(report)
        return 0

    try:
        with EventStore(config.events.db_path) as store:
            orchestrator = ParallelSyncOrchestrator.from_config(config, store)
            with console.status(
                f"Syncing {len(repositories)} repositories...", spinner="dots"
            ):
                report = orchestrator.run_pass(repositories)
    except (FatalSyncError, EventStoreError, PassInProgressError) as e:
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        return 2

    print_report(report)
    return 1 if report.failed else 0


def show_daemon_status(config: Config) -> None:
    """Displays whether the daemon runs and what the last pass did."""
    content = Text()
    content.append("Daemon: ", style="bold")
    if daemon.is_daemon_running():
        content.append(f"Running (PID {daemon.read_pid()})\n", style="bold green")
    else:
        content.append("Stopped\n", style="bold red")
    content.append("Interval: ", style="bold")
    content.append(f"{config.daemon.interval}s\n")
    content.append("Log: ", style="bold")
    content.append(str(LOG_FILE), style="dim")

    if config.events.db_path.exists():
        with EventStore(config.events.db_path) as store:
            last = store.last_pass()
        if last is not None:
            content.append("\nLast pass: ", style="bold")
            content.append(f"#{last['id']} {last['status']} at {last['started_at']}")
            if last["summary"]:
                content.append(f"\n{last['summary']}", style="dim")

    console.print(Panel(content, title="Daemon Status", expand=False))


def show_config(config: Config) -> None:
    """Displays the effective configuration."""
    table = Table(title=f"Configuration ({CONFIG_FILE})", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Value", style="yellow")

    for section in ("sync", "branches", "advanced", "daemon", "limits", "events"):
        values = vars(getattr(config, section))
        first = True
        for key, value in values.items():
            table.add_row(section if first else "", key, repr(value))
            first = False
    console.print(table)

    repos = config.repositories
    if repos:
        console.print(
            f"[dim]{len(repos)} repositories in manifest, effective concurrency "
            f"{adaptive_concurrency(repos, config.sync.max_parallel, config.limits)}.[/dim]"
        )


def run_doctor(config: Config) -> int:
    """
    Runs preflight checks: git availability, the base directory, and the
    event store. Returns 1 if a required check fails, otherwise 0.
    """
    console.print("[bold]RepoSentry Doctor[/bold]\n")
    failures = 0

    with console.status("[bold blue]Checking git...", spinner="dots"):
        if shutil.which("git") is None:
            console.print("   [red]✘ git not found on PATH.[/red]")
            console.print("     [dim]Action required: Install git and retry.[/dim]")
            failures += 1
        else:
            try:
                version = run_git(["--version"], timeout=config.sync.timeout)
                console.print(f"   [green]✔ {version}[/green]")
            except (GitCommandError, GitTimeoutError) as e:
                console.print(f"   [red]✘ git is not usable: {e}[/red]")
                failures += 1

    with console.status("[bold blue]Checking base directory...", spinner="dots"):
        base = config.sync.base_dir
        if not base.exists():
            console.print(f"   [red]✘ Base directory {base} does not exist.[/red]")
            console.print(f"     [dim]Action required: mkdir -p {base}[/dim]")
            failures += 1
        elif not base.is_dir():
            console.print(f"   [red]✘ {base} is not a directory.[/red]")
            failures += 1
        elif not os.access(base, os.W_OK | os.X_OK):
            console.print(f"   [red]✘ Base directory {base} is not writable.[/red]")
            failures += 1
        else:
            console.print(f"   [green]✔ Base directory {base} is writable.[/green]")

    with console.status("[bold blue]Checking event store...", spinner="dots"):
        try:
            with EventStore(config.events.db_path) as store:
                interrupted = store.count_passes("interrupted")
            console.print(
                f"   [green]✔ Event store opens ({config.events.db_path}).[/green]"
            )
            if interrupted:
                console.print(
                    f"   [yellow]⚠ {interrupted} pass(es) were interrupted.[/yellow]\n"
                    f"     [dim]Check {LOG_FILE} for crashes or forced shutdowns.[/dim]"
                )
        except EventStoreError as e:
            console.print(f"   [red]✘ {e}[/red]")
            failures += 1

    if failures:
        console.print(f"\n[bold red]{failures} required check(s) failed.[/bold red]")
        return 1
    console.print("\n[bold green]All required checks passed.[/bold green]")
    return 0


def handle_events(args: argparse.Namespace, config: Config) -> int:
    with EventStore(config.events.db_path) as store:
        if args.events_command == "list":
            since = None
            if args.since:
                since = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(
                    seconds=parse_time(args.since)
                )
            events = store.list(
                repository=args.repo,
                event_type=EventType(args.type) if args.type else None,
                since=since,
                acknowledged=False if args.unacked else None,
                limit=args.limit,
            )
            if not events:
                console.print("[dim]No events.[/dim]")
            else:
                console.print(_events_table(events))
        elif args.events_command == "status":
            status = store.status()
            if status.latest:
                console.print(_events_table(status.latest, title="Latest event per repository"))
            counts = Text()
            for severity in Severity:
                style = SEVERITY_STYLES[severity]
                counts.append(
                    f"{severity.value}: {status.unacknowledged.get(severity, 0)}  ",
                    style=style,
                )
            console.print(Panel(counts, title="Unacknowledged", expand=False))
            return 1 if status.needs_attention else 0
        elif args.events_command == "ack":
            if args.all:
                count = store.acknowledge_all(args.repo)
                console.print(f"[green]✔ Acknowledged {count} event(s).[/green]")
            elif args.id is None:
                err_console.print("[red]Give an event ID or --all.[/red]")
                return 2
            elif store.acknowledge(args.id):
                console.print(f"[green]✔ Acknowledged event {args.id}.[/green]")
            else:
                console.print(
                    f"[yellow]Event {args.id} not found or already acknowledged.[/yellow]"
                )
                return 1
        elif args.events_command == "stats":
            stats = store.stats()
            table = Table(title="Event Statistics", show_header=True)
            table.add_column("Event", style="cyan")
            table.add_column("Count", justify="right")
            for event_type, count in sorted(
                stats.by_type.items(), key=lambda item: -item[1]
            ):
                table.add_row(event_type.value, str(count))
            console.print(table)
            console.print(
                f"[dim]{stats.total} events, {stats.unacknowledged} unacknowledged, "
                f"{stats.passes} passes, {stats.success_ratio:.0%} successful.[/dim]"
            )
        elif args.events_command == "cleanup":
            days = args.days if args.days is not None else config.events.retention_days
            deleted = store.cleanup(
                datetime.timedelta(days=days),
                include_unacknowledged=args.include_unacked,
            )
            console.print(f"[green]✔ Removed {deleted} event(s).[/green]")
    return 0


class RepoSentryHelpFormatter(argparse.HelpFormatter):
    """Groups the subcommands under headers in the help output."""

    def _format_action(self, action: argparse.Action) -> str:
        if isinstance(action, argparse._SubParsersAction):
            parts = []
            groups = {
                "Synchronization": ["sync", "daemon", "daemon-status"],
                "Event Log": ["events"],
                "General": ["config", "doctor"],
            }

            subactions = list(self._iter_indented_subactions(action))
            for group_name, commands in groups.items():
                group_actions = [a for a in subactions if a.dest in commands]
                if not group_actions:
                    continue

                parts.append(f"\n  {group_name}:\n")
                self._indent()
                for subaction in group_actions:
                    parts.append(self._format_action(subaction))
                self._dedent()

            return self._join_parts(parts)

        return super()._format_action(action)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Keep many git checkouts in sync without ever losing local work.",
        formatter_class=RepoSentryHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command")

    sync_parser = subparsers.add_parser("sync", help="Run one sync pass now")
    sync_parser.add_argument(
        "--dry-run", action="store_true", help="Show decisions without acting"
    )

    daemon_parser = subparsers.add_parser("daemon", help="Run the sync loop")
    daemon_parser.add_argument(
        "--once", action="store_true", help="Run a single pass and exit"
    )
    subparsers.add_parser("daemon-status", help="Show daemon and last pass status")

    events_parser = subparsers.add_parser("events", help="Query the event log")
    events_sub = events_parser.add_subparsers(dest="events_command", required=True)

    list_parser = events_sub.add_parser("list", help="List recent events")
    list_parser.add_argument("--repo", help="Only this repository (owner/name)")
    list_parser.add_argument(
        "--type", choices=[t.value for t in EventType], help="Only this event type"
    )
    list_parser.add_argument("--since", help="Only events newer than e.g. '2h', '1d'")
    list_parser.add_argument(
        "--limit", type=int, default=50, help="Maximum events shown (default: 50)"
    )
    list_parser.add_argument(
        "--unacked", action="store_true", help="Only unacknowledged events"
    )

    events_sub.add_parser("status", help="Latest event per repository")

    ack_parser = events_sub.add_parser("ack", help="Acknowledge events")
    ack_parser.add_argument("id", type=int, nargs="?", help="Event ID")
    ack_parser.add_argument("--all", action="store_true", help="Acknowledge everything")
    ack_parser.add_argument("--repo", help="With --all, only this repository")

    events_sub.add_parser("stats", help="Event counts by type")

    cleanup_parser = events_sub.add_parser("cleanup", help="Delete old events")
    cleanup_parser.add_argument(
        "--days", type=int, help="Age in days (default: events.retention_days)"
    )
    cleanup_parser.add_argument(
        "--include-unacked",
        action="store_true",
        help="Also delete events nobody acknowledged",
    )

    subparsers.add_parser("config", help="Show the effective configuration")
    subparsers.add_parser("doctor", help="Check git, the base directory and the event log")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the RepoSentry CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "daemon":
        return daemon.main(interactive=False, once=args.once, verbose=args.verbose)

    config = Config.load()
    daemon.setup_logging(interactive=True, verbose=args.verbose, config=config)

    try:
        if args.command == "sync":
            return run_sync(config, dry_run=args.dry_run)
        elif args.command == "daemon-status":
            show_daemon_status(config)
            return 0
        elif args.command == "events":
            return handle_events(args, config)
        elif args.command == "config":
            show_config(config)
            return 0
        elif args.command == "doctor":
            return run_doctor(config)
    except RepoSentryError as e:
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        return 2
    except ValueError as e:
        err_console.print(f"[red]{e}[/red]")
        return 2
    return 0


def cli_entry() -> None:
    """Console script entry point for `reposentry`."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entry()
