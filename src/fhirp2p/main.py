"""Command-line entry point for fhirp2p."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.table import Table

from .config import CONFIG_SEARCH_PATHS, EXAMPLE_CONFIG, Settings, build_settings
from .errors import SwarmError
from .magnet import create_magnet_uri, parse_magnet_uri
from .records import ContentType, SqliteRecordStore, TorrentRecord
from .torrent import ClientProvider, SessionOptions, SwarmManager

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def setup_logging(level: str = "INFO") -> None:
    """Set up logging with rich handler."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


def build_config(args: argparse.Namespace) -> Settings:
    """Build settings from TOML file, env vars, and CLI args."""
    config_path = Path(args.config) if getattr(args, "config", None) else None
    return build_settings(
        config_path,
        log_level=getattr(args, "log_level", None),
        storage_path=getattr(args, "storage_path", None),
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
    )


def _format_size(num: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(num) < 1024:
            return f"{num:.1f} {unit}"
        num /= 1024
    return f"{num:.1f} TB"


def records_table(records: list[TorrentRecord], title: str = "Torrents") -> Table:
    """Create a rich table showing torrent records."""
    table = Table(title=title)

    table.add_column("Info hash", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Type", style="magenta")
    table.add_column("State", style="green")
    table.add_column("Progress", style="yellow", justify="right")
    table.add_column("Peers", justify="right")
    table.add_column("Down/Up", style="blue")
    table.add_column("Size", justify="right")

    for record in records:
        status = record.status
        table.add_row(
            record.info_hash[:12],
            record.name or "-",
            record.content_type.value,
            status.state.value,
            f"{status.progress * 100:.1f}%",
            str(status.peers),
            f"{_format_size(status.download_rate)}/s / {_format_size(status.upload_rate)}/s",
            _format_size(record.total_size),
        )

    return table


async def _open_manager(settings: Settings) -> SwarmManager:
    store = SqliteRecordStore(settings.resolved_database_path())
    await store.connect()
    manager = SwarmManager(ClientProvider(settings), store)
    try:
        await manager.start(restore=False)
    except SwarmError:
        await store.close()
        raise
    return manager


async def _close_manager(manager: SwarmManager) -> None:
    await manager.shutdown()
    await manager.store.close()


async def _watch(manager: SwarmManager, session_id: str, until_complete: bool) -> TorrentRecord | None:
    """Show a live table for one session until it completes or is interrupted."""
    console = Console()
    record = await manager.store.find_one({"info_hash": session_id})

    with Live(records_table([record] if record else []), refresh_per_second=1, console=console) as live:
        while session_id in manager.registry:
            record = await manager.store.find_one({"info_hash": session_id})
            live.update(records_table([record] if record else []))
            if until_complete and record and record.status.state.value == "seeding":
                break
            await asyncio.sleep(1)

    return record


async def run_add(args: argparse.Namespace) -> int:
    """Join a swarm and optionally wait for the download to finish."""
    settings = build_config(args)
    setup_logging(settings.log_level)
    console = Console()

    try:
        manager = await _open_manager(settings)
    except SwarmError as e:
        console.print(f"[red]Engine unavailable: {e}[/red]")
        return 1

    try:
        options = SessionOptions(name=args.name, description=args.description)
        handle = await manager.add_session(args.locator, options)
        console.print(f"[green]Added {handle.id}[/green]")

        if args.wait:
            record = await _watch(manager, handle.id, until_complete=True)
            if record is None or record.status.state.value != "seeding":
                console.print("[yellow]Session ended before completion[/yellow]")
                return 1
            console.print(f"[green]Download complete: {record.name}[/green]")
        return 0

    except SwarmError as e:
        console.print(f"[red]Failed: {e}[/red]")
        return 1

    finally:
        await _close_manager(manager)


async def run_seed(args: argparse.Namespace) -> int:
    """Seed local files as a new swarm."""
    settings = build_config(args)
    setup_logging(settings.log_level)
    console = Console()

    try:
        manager = await _open_manager(settings)
    except SwarmError as e:
        console.print(f"[red]Engine unavailable: {e}[/red]")
        return 1

    try:
        options = SessionOptions(
            name=args.name,
            description=args.description,
            content_type=ContentType(args.content_type) if args.content_type else None,
        )
        handle = await manager.create_session([Path(p) for p in args.paths], options)
        record = await manager.store.find_one({"info_hash": handle.id})

        console.print(f"[green]Seeding {handle.id}[/green]")
        if record:
            console.print(f"  Type: [magenta]{record.content_type.value}[/magenta]")
            console.print(f"  Magnet: [cyan]{record.magnet_uri}[/cyan]")

        if args.forever:
            console.print("Press Ctrl+C to stop seeding.")
            await _watch(manager, handle.id, until_complete=False)
        return 0

    except SwarmError as e:
        console.print(f"[red]Failed: {e}[/red]")
        return 1

    finally:
        await _close_manager(manager)


async def run_list(args: argparse.Namespace) -> int:
    """List persisted torrent records."""
    settings = build_config(args)
    setup_logging(settings.log_level)

    store = SqliteRecordStore(settings.resolved_database_path())
    try:
        records = await store.find()
    finally:
        await store.close()

    console = Console()
    if not records:
        console.print("[dim]No torrents recorded.[/dim]")
    else:
        console.print(records_table(records))
    return 0


def run_magnet(args: argparse.Namespace) -> int:
    """Create or parse magnet URIs."""
    console = Console()

    try:
        if args.action == "create":
            console.print(create_magnet_uri(args.value, name=args.name, trackers=args.tracker or ()))
        else:
            link = parse_magnet_uri(args.value)
            console.print(f"[bold]Info hash:[/bold] {link.info_hash}")
            console.print(f"[bold]Name:[/bold] {link.name or '-'}")
            for tracker in link.trackers:
                console.print(f"[bold]Tracker:[/bold] {tracker}")
    except SwarmError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    return 0


def run_setup(args: argparse.Namespace) -> int:
    """Create config file."""
    console = Console()

    if args.output:
        output_path = Path(args.output)
    elif args.user:
        output_path = CONFIG_SEARCH_PATHS[-1]
    else:
        output_path = Path.cwd() / "config.toml"

    console.print("\n[bold]fhirp2p Setup[/bold]\n")

    if output_path.exists() and not args.force:
        console.print(f"[yellow]Config file already exists: {output_path}[/yellow]")
        console.print("Use --force to overwrite.")
        return 1

    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w") as f:
        f.write(EXAMPLE_CONFIG)

    console.print(f"[green]Created config file: {output_path}[/green]\n")
    console.print("Edit this file to configure trackers, storage and the web server.")
    console.print("The transfer engine requires libtorrent: [cyan]pip install 'fhirp2p[engine]'[/cyan]")

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="fhirp2p - share FHIR datasets over BitTorrent swarms",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--config", "-c", help="Config file path")
        sub.add_argument("--log-level", choices=LOG_LEVELS, default=None)

    # Web command
    web_parser = subparsers.add_parser("web", help="Start the API server")
    web_parser.add_argument("--host", "-H", help="Host to bind to")
    web_parser.add_argument("--port", "-p", type=int, help="Port to bind to")
    web_parser.add_argument("--storage-path", "-s", help="Directory for torrent content")
    add_common(web_parser)

    # Add command
    add_parser = subparsers.add_parser("add", help="Join a swarm by magnet URI, info hash or .torrent file")
    add_parser.add_argument("locator", help="Magnet URI, info hash, or .torrent path")
    add_parser.add_argument("--name", "-n", help="Display name")
    add_parser.add_argument("--description", "-d", help="Record description")
    add_parser.add_argument("--wait", "-w", action="store_true", help="Show progress until complete")
    add_parser.add_argument("--storage-path", "-s", help="Directory for torrent content")
    add_common(add_parser)

    # Seed command
    seed_parser = subparsers.add_parser("seed", help="Seed local FHIR files as a new swarm")
    seed_parser.add_argument("paths", nargs="+", help="Files to seed (must share a directory)")
    seed_parser.add_argument("--name", "-n", help="Torrent name")
    seed_parser.add_argument("--description", "-d", help="Record description")
    seed_parser.add_argument("--content-type", "-t", choices=[c.value for c in ContentType],
        help="Expected FHIR format; files are validated against it")
    seed_parser.add_argument("--forever", "-f", action="store_true", help="Keep seeding until interrupted")
    seed_parser.add_argument("--storage-path", "-s", help="Directory for torrent content")
    add_common(seed_parser)

    # List command
    list_parser = subparsers.add_parser("list", help="List recorded torrents")
    add_common(list_parser)

    # Magnet command
    magnet_parser = subparsers.add_parser("magnet", help="Create or parse magnet URIs")
    magnet_parser.add_argument("action", choices=["create", "parse"])
    magnet_parser.add_argument("value", help="Info hash (create) or magnet URI (parse)")
    magnet_parser.add_argument("--name", "-n", help="Display name (create)")
    magnet_parser.add_argument("--tracker", "-t", action="append", help="Tracker URL (create, repeatable)")

    # Setup command
    setup_parser = subparsers.add_parser("setup", help="Create a config file")
    setup_parser.add_argument("--output", "-o", help="Output path for config file")
    setup_parser.add_argument("--user", "-u", action="store_true", help="Create in ~/.config/fhirp2p/")
    setup_parser.add_argument("--force", "-f", action="store_true", help="Overwrite existing config file")

    return parser


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "web":
        from .web import run_server

        settings = build_config(args)
        setup_logging(settings.log_level)
        console = Console()
        console.print("\n[bold]Starting fhirp2p API[/bold]")
        console.print(f"Listening on [cyan]http://{settings.host}:{settings.port}/api/v1[/cyan]\n")
        run_server(settings)
    elif args.command == "add":
        sys.exit(asyncio.run(run_add(args)))
    elif args.command == "seed":
        sys.exit(asyncio.run(run_seed(args)))
    elif args.command == "list":
        sys.exit(asyncio.run(run_list(args)))
    elif args.command == "magnet":
        sys.exit(run_magnet(args))
    elif args.command == "setup":
        sys.exit(run_setup(args))
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
