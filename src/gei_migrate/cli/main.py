"""Main CLI entry point for GEI Migration Tool."""

import asyncio
import signal
import sys
from collections import Counter, deque
from pathlib import Path
from typing import Deque, Optional

import click
from loguru import logger
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from ..api.client import GitHubClient
from ..config.config import Config
from ..migration.engine import MigrationEngine
from ..migration.events import WorkerEvent
from ..migration.exceptions import MigrationError
from ..models.repository import RepoStatus, utcnow
from ..state.exceptions import StateLockedError
from ..state.store import StateStore
from ..utils.logging import setup_logging, setup_logging_from_config

console = Console()

ACTIVITY_LINES = 10

STATUS_STYLES = {
    RepoStatus.UNCLASSIFIED: 'dim',
    RepoStatus.NEEDS_SYNC: 'yellow',
    RepoStatus.IN_SYNC: 'green',
    RepoStatus.QUEUED: 'cyan',
    RepoStatus.MIGRATING: 'blue',
    RepoStatus.FAILED: 'red',
    RepoStatus.LOST: 'magenta',
}


@click.group()
@click.version_option(version='0.1.0', prog_name='gei-migrate')
@click.option(
    '--config',
    '-c',
    type=click.Path(exists=True),
    help='Path to configuration file',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Enable verbose logging',
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """GEI Migration Tool - Keep GitHub organizations in sync with GitHub Enterprise Importer."""
    ctx.ensure_object(dict)

    if config:
        ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    setup_logging('DEBUG' if verbose else 'INFO')


@cli.command()
@click.option(
    '--output',
    '-o',
    default='config.yaml',
    help='Output configuration file path',
)
def init(output: str) -> None:
    """Initialize a new configuration file."""
    console.print(
        Panel.fit(
            '[bold green]GEI Migration Tool[/bold green]\n'
            'Initializing configuration...',
            border_style='green',
        )
    )

    try:
        Config.create_template(output)

        console.print(f'[green]✓[/green] Configuration template created at: {output}')
        console.print(
            f'[yellow]Please edit {output} with your organization details[/yellow]'
        )

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to create configuration: {e}')
        sys.exit(1)


@cli.command()
@click.option(
    '--migrate/--no-migrate',
    default=False,
    help='Start the migration worker that queues importer migrations',
)
@click.option(
    '--no-discover',
    is_flag=True,
    help='Skip listing the source organization on startup',
)
@click.option(
    '--refresh',
    default=2.0,
    show_default=True,
    help='Seconds between dashboard refreshes',
)
@click.pass_context
def run(ctx: click.Context, migrate: bool, no_discover: bool, refresh: float) -> None:
    """Run the background workers until interrupted."""
    console.print(
        Panel.fit(
            '[bold blue]GEI Migration Tool[/bold blue]\n'
            'Starting workers... press Ctrl+C to stop',
            border_style='blue',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        asyncio.run(_run_engine(config, migrate, not no_discover, refresh))
        console.print('[green]✓[/green] Workers stopped and state saved')

    except Exception as e:
        console.print(f'[red]✗[/red] Run failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.option(
    '--filter',
    '-f',
    'status_filter',
    type=click.Choice([s.value for s in RepoStatus]),
    help='Only show repositories with this status',
)
@click.pass_context
def status(ctx: click.Context, status_filter: Optional[str]) -> None:
    """Show the persisted migration state."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        store = StateStore(config.state.path, read_only=True)
        store.load()

        document = store.document()
        if document.source_org:
            console.print(
                f'[bold]{document.source_org}@{document.source_host} -> '
                f'{document.target_org}@{document.target_host}[/bold]'
            )
        console.print(_summary_table(store))
        console.print(_repository_table(store, status_filter))

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to load status: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('name')
@click.pass_context
def retry(ctx: click.Context, name: str) -> None:
    """Retry the failed migration of repository NAME."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        queued = asyncio.run(_retry(config, name))
        if queued:
            console.print(f'[green]✓[/green] Migration of {name} queued again')
        else:
            console.print(
                f'[yellow]{name} reset to needs_sync; it will be queued by the '
                f'migration worker[/yellow]'
            )

    except StateLockedError as e:
        console.print(f'[red]✗[/red] {e}')
        console.print(
            '[yellow]Stop the running "gei-migrate run" before retrying[/yellow]'
        )
        sys.exit(1)
    except MigrationError as e:
        console.print(f'[red]✗[/red] {e}')
        sys.exit(1)
    except Exception as e:
        console.print(f'[red]✗[/red] Retry failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('name')
@click.option('--refresh', is_flag=True, help='Download again even if cached')
@click.pass_context
def logs(ctx: click.Context, name: str, refresh: bool) -> None:
    """Show the importer log of repository NAME."""
    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        content = asyncio.run(_logs(config, name, refresh))
        console.print(content, markup=False, highlight=False)

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to get logs: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate configuration, connectivity and the gh gei installation."""
    console.print(
        Panel.fit(
            '[bold cyan]GEI Migration Tool[/bold cyan]\nValidating setup...',
            border_style='cyan',
        )
    )

    try:
        config = _load_config(ctx)
        console.print('[green]✓[/green] Configuration loaded')

        failed = False
        for side, host in (('source', config.source), ('target', config.target)):
            with GitHubClient(host) as client:
                if client.test_connection():
                    console.print(
                        f'[green]✓[/green] Connected to {side} organization '
                        f'{host.org} on {host.host_label}'
                    )
                else:
                    console.print(
                        f'[red]✗[/red] Cannot access {side} organization '
                        f'{host.org} on {host.host_label}'
                    )
                    failed = True

        problems = asyncio.run(_check_prerequisites(config))
        for problem in problems:
            console.print(f'[red]✗[/red] {problem}')
        if not problems:
            console.print('[green]✓[/green] gh CLI and gei extension available')

        if failed or problems:
            sys.exit(1)
        console.print('[green]✓[/green] Validation passed')

    except Exception as e:
        console.print(f'[red]✗[/red] Validation failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


def _load_config(ctx: click.Context) -> Config:
    """Load configuration from file or environment."""
    config_path = ctx.obj.get('config_path')

    if config_path:
        if not Path(config_path).exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')
        return Config.from_file(config_path)

    default_paths = ['config.yaml', 'config.yml', '.gei-migrate.yaml']
    for path in default_paths:
        if Path(path).exists():
            return Config.from_file(path)

    try:
        return Config.from_env()
    except Exception:
        raise FileNotFoundError(
            'No configuration found. Use --config to specify a file, set the '
            'GH_SOURCE_*/GH_TARGET_* environment variables or run '
            '"gei-migrate init" to create one.'
        )


def _setup_logging_with_config(ctx: click.Context, config: Config) -> None:
    setup_logging_from_config(config.logging, verbose=ctx.obj.get('verbose', False))


async def _run_engine(
    config: Config, migrate: bool, discover: bool, refresh: float
) -> None:
    """Run the engine with a live dashboard until SIGINT/SIGTERM.

    SIGUSR1 starts or stops the migration worker.
    """
    engine = MigrationEngine(config)
    problems = await engine.check_prerequisites()
    if problems:
        await engine.client.close()
        raise RuntimeError('; '.join(problems))

    stop = asyncio.Event()
    toggle = asyncio.Event()
    handlers = [(signal.SIGINT, stop.set), (signal.SIGTERM, stop.set)]
    if hasattr(signal, 'SIGUSR1'):
        handlers.append((signal.SIGUSR1, toggle.set))
    loop = asyncio.get_running_loop()
    for sig, handler in handlers:
        try:
            loop.add_signal_handler(sig, handler)
        except (NotImplementedError, RuntimeError):
            pass

    events = engine.notifier.events()
    activity: Deque[WorkerEvent] = deque(maxlen=ACTIVITY_LINES)
    try:
        await engine.start(discover=discover, migrate=migrate)
        with Live(
            _dashboard(engine, activity), console=console, refresh_per_second=4
        ) as live:
            while not stop.is_set():
                try:
                    await asyncio.wait_for(stop.wait(), timeout=refresh)
                except asyncio.TimeoutError:
                    pass
                if toggle.is_set():
                    toggle.clear()
                    running = await engine.toggle_worker('migration')
                    logger.info(
                        f'Migration worker {"started" if running else "stopped"}'
                    )
                _drain_events(events, activity)
                live.update(_dashboard(engine, activity))
    finally:
        engine.notifier.close_channel(events)
        await engine.stop()


async def _retry(config: Config, name: str) -> bool:
    engine = MigrationEngine(config)
    try:
        engine.initialize()
        return await engine.retry_repository(name)
    finally:
        await engine.stop()


async def _logs(config: Config, name: str, refresh: bool) -> str:
    store = StateStore(config.state.path, save_delay=config.state.save_delay_seconds)
    try:
        store.acquire_lock()
    except StateLockedError:
        logger.debug('State is owned by a running engine; reading it read-only')
        store = StateStore(config.state.path, read_only=True)

    engine = MigrationEngine(config, store=store)
    try:
        engine.initialize()
        return await engine.get_logs(name, refresh=refresh)
    finally:
        await engine.stop()


async def _check_prerequisites(config: Config):
    engine = MigrationEngine(config)
    try:
        return await engine.check_prerequisites()
    finally:
        await engine.client.close()


def _drain_events(
    channel: 'asyncio.Queue[WorkerEvent]', activity: Deque[WorkerEvent]
) -> None:
    while not channel.empty():
        activity.append(channel.get_nowait())


def _dashboard(engine: MigrationEngine, activity: Deque[WorkerEvent]) -> Group:
    workers = Table(title='Workers')
    workers.add_column('Worker', style='cyan')
    workers.add_column('Running')
    workers.add_column('Current repository', style='green')
    workers.add_column('Last error', style='red')
    for name, info in engine.worker_status().items():
        workers.add_row(
            name,
            '✓' if info['running'] else '✗',
            info['current_repo'] or '',
            info['last_error'] or '',
        )

    recent = Table(title='Recent activity')
    recent.add_column('Time')
    recent.add_column('Worker', style='cyan')
    recent.add_column('Repository', style='green')
    recent.add_column('Event')
    for event in reversed(activity):
        recent.add_row(
            event.at.strftime('%H:%M:%S'),
            event.worker,
            event.repo_name,
            event.kind.value,
        )
    return Group(_summary_table(engine.store), workers, recent)


def _summary_table(store: StateStore) -> Table:
    counts = Counter(record.status for record in store.list_all())

    table = Table(title='Migration Summary')
    table.add_column('Status', style='cyan')
    table.add_column('Repositories', justify='right')
    for repo_status in RepoStatus:
        table.add_row(
            f'[{STATUS_STYLES[repo_status]}]{repo_status.value}[/]',
            str(counts.get(repo_status, 0)),
        )
    table.add_row('[bold]total[/bold]', f'[bold]{len(store)}[/bold]')
    return table


def _repository_table(store: StateStore, status_filter: Optional[str] = None) -> Table:
    table = Table(title='Repositories')
    table.add_column('Repository', style='cyan')
    table.add_column('Status')
    table.add_column('Phase')
    table.add_column('Migration ID')
    table.add_column('Elapsed', justify='right')
    table.add_column('Last checked')
    table.add_column('Error', style='red')

    if status_filter:
        records = store.list_by_status(RepoStatus(status_filter))
    else:
        records = store.list_all()

    now = utcnow()
    for record in sorted(records, key=lambda r: r.name):
        elapsed = record.elapsed(now)
        table.add_row(
            record.name,
            f'[{STATUS_STYLES[record.status]}]{record.status.value}[/]',
            record.phase or '',
            record.migration_id or '',
            _format_duration(elapsed) if record.started_at else '',
            record.last_checked.strftime('%Y-%m-%d %H:%M:%S')
            if record.last_checked
            else '',
            record.error_message or '',
        )
    return table


def _format_duration(seconds: int) -> str:
    minutes, secs = divmod(max(seconds, 0), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f'{hours}h {minutes}m {secs}s'
    if minutes:
        return f'{minutes}m {secs}s'
    return f'{secs}s'


def main() -> None:
    """Main entry point for the CLI application."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print('\n[red]Interrupted by user[/red]')
        sys.exit(1)
    except Exception as e:
        console.print(f'[red]Error: {e}[/red]')
        sys.exit(1)


if __name__ == '__main__':
    main()
