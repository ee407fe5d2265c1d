"""Thin CLI wrapper for isoflash.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import asyncio
import contextlib
import json
import logging
import signal
from collections.abc import Callable, Coroutine
from typing import Annotated, Any, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from sqlalchemy.exc import SQLAlchemyError

from isoflash import __version__
from isoflash.config import Settings, configure_logging, get_settings, print_settings_json
from isoflash.errors import DiscoveryError, FlashError
from isoflash.types import Device

app = typer.Typer(
    name="isoflash",
    help="Homelab ISO Flasher - write custom installer images to USB drives",
    no_args_is_help=True,
)
console = Console()

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exit code for an interrupted flash (128 + SIGINT)
EXIT_INTERRUPTED = 130


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"homelab-isoflash version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging"),
    ] = False,
) -> None:
    """Homelab ISO Flasher - write custom installer images to USB drives."""
    configure_logging(
        level="DEBUG" if verbose else "WARNING",
        handler=RichHandler(console=console, show_path=False),
    )


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Staging directory:   {settings.staging_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Safety:[/bold]")
        console.print(f"  System mounts:       {', '.join(settings.system_mounts)}")
        console.print(f"  Use sudo:            {settings.use_sudo}")
        console.print()
        console.print("[bold]Write:[/bold]")
        console.print(f"  Block size:          {settings.block_size}")
        console.print(f"  Heartbeat interval:  {settings.heartbeat_interval}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Flash timeout:       {settings.flash_timeout}")
        console.print(f"  Build wait timeout:  {settings.build_wait_timeout}")
        console.print()
        console.print("[bold]Build service:[/bold]")
        console.print(f"  URL:                 {settings.build_service_url}")
        console.print(f"  Poll interval:       {settings.build_poll_interval}")
        console.print()
        console.print("[bold]Web:[/bold]")
        console.print(
            f"  Flash rate limit:    {settings.flash_rate_limit} per "
            f"{settings.flash_rate_window}s"
        )


@app.command()
def devices(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List removable devices that can be flashed."""
    from isoflash.flash.platform import select_platform
    from isoflash.flash.service import list_devices

    platform = select_platform(get_settings())
    try:
        found = list_devices(platform)
    except DiscoveryError as e:
        console.print(f"[red]Device discovery failed: {e.message}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(json.dumps([d.to_dict() for d in found], indent=2))
        return

    if not found:
        console.print("[yellow]No removable devices found[/yellow]")
        return

    console.print(f"[bold]Found {len(found)} removable device(s):[/bold]")
    console.print()
    for d in found:
        _print_device(d)


@app.command()
def history(
    device_path: Annotated[
        str | None,
        typer.Option("--device", "-d", help="Filter by device path"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List past flash operations."""
    from isoflash.db import create_all_tables, get_engine, get_session_factory
    from isoflash.flash.service import get_flash_records
    from isoflash.types import FlashStatus

    status_filter: FlashStatus | None = None
    if status:
        try:
            status_filter = FlashStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    engine = get_engine(get_settings().db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        records = get_flash_records(
            session, device_path=device_path, status=status_filter, limit=limit
        )

        if not records:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No flash records found[/yellow]")
            return

        if json_output:
            console.print(json.dumps([r.to_dict() for r in records], indent=2))
            return

        console.print(f"[bold]Found {len(records)} flash record(s):[/bold]")
        console.print()
        for r in records:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "running": "blue",
                "pending": "yellow",
            }.get(r.status, "white")
            console.print(f"  [{status_color}]Flash #{r.id}[/{status_color}] ({r.job_id})")
            console.print(f"    Device: {r.device_path}")
            if r.device_model:
                console.print(f"    Model: {r.device_model}")
            console.print(f"    Artifact: {r.artifact_location}")
            console.print(f"    Status: {r.status} (stage: {r.stage_reached or 'N/A'})")
            console.print(
                f"    Requested: {r.requested_at.isoformat() if r.requested_at else 'N/A'}"
            )
            if r.error_message:
                console.print(f"    Error: {r.error_message}")
            if r.advisories:
                for advisory in r.advisories.splitlines():
                    console.print(f"    [yellow]Warning: {advisory}[/yellow]")
            console.print()


@app.command()
def flash(
    url: Annotated[
        str | None,
        typer.Option("--url", "-u", help="ISO download URL (http(s):// or gs://)"),
    ] = None,
    build_id: Annotated[
        str | None,
        typer.Option("--build-id", "-b", help="Flash the ISO of a build-service build"),
    ] = None,
    device: Annotated[
        str | None,
        typer.Option("--device", "-d", help="Device path (e.g., /dev/sdb)"),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompts"),
    ] = False,
) -> None:
    """Download an ISO and write it to a USB drive.

    Prompts for the URL and the device when they are not given, and asks
    for confirmation before anything is written unless --yes is passed.
    Temporary files are removed however the operation ends.
    """
    from isoflash.flash.pipeline import FlashJob, FlashPipeline, FlashRequest
    from isoflash.flash.platform import select_platform
    from isoflash.flash.reporters import ConsoleReporter
    from isoflash.flash.service import run_flash

    if url and build_id:
        console.print("[red]Use either --url or --build-id, not both[/red]")
        raise typer.Exit(code=1)

    settings = get_settings()
    if build_id:
        url = _resolve_build(settings, build_id)
    if not url:
        url = typer.prompt("ISO download URL").strip()

    platform = select_platform(settings)
    if device is None:
        device = _choose_device(platform.enumerator.list_devices)

    reporter = ConsoleReporter(console)

    async def confirm_write(job: FlashJob) -> bool:
        if yes:
            return True
        with reporter.paused():
            console.print()
            console.print(
                f"[bold red]WARNING:[/bold red] This will ERASE ALL DATA on "
                f"{job.target_device.path} ({job.target_device.display_name})"
            )
            return await asyncio.to_thread(
                typer.confirm, "Are you sure you want to continue?", default=False
            )

    pipeline = FlashPipeline(platform, settings)
    request = FlashRequest(device_path=device, artifact_location=url)

    try:
        outcome = _run_interruptible(
            run_flash(
                pipeline,
                request,
                reporter,
                session_factory=_history_sessions(settings),
                before_write=confirm_write,
            )
        )
    except FlashError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=1) from None
    except (asyncio.CancelledError, KeyboardInterrupt):
        console.print("[yellow]Flash interrupted; temporary files were removed[/yellow]")
        raise typer.Exit(code=EXIT_INTERRUPTED) from None

    if outcome.success:
        console.print(
            "[green]You can now remove the USB drive and boot from it.[/green]"
        )
        return
    if outcome.error_code == "ABORTED":
        console.print("[yellow]Aborted[/yellow]")
        return
    raise typer.Exit(code=1)


@app.command()
def serve(
    host: Annotated[
        str,
        typer.Option("--host", help="Address to bind"),
    ] = "127.0.0.1",
    port: Annotated[
        int,
        typer.Option("--port", "-p", help="Port to listen on"),
    ] = 8000,
) -> None:
    """Run the web API (device listing and streamed flashing)."""
    import uvicorn

    uvicorn.run("web.app:app", host=host, port=port, reload=False)


def _print_device(d: Device) -> None:
    console.print(f"  [green]{d.path}[/green]")
    console.print(f"    Name: {d.display_name}")
    if d.serial:
        console.print(f"    Serial: {d.serial}")
    if d.current_mount_point:
        console.print(f"    Mounted at: {d.current_mount_point}")
    console.print()


def _choose_device(list_fn: Callable[[], list[Device]]) -> str:
    """List removable devices and prompt the operator to pick one."""
    try:
        found = list_fn()
    except DiscoveryError as e:
        console.print(f"[red]Device discovery failed: {e.message}[/red]")
        raise typer.Exit(code=1) from None

    if not found:
        console.print("[red]No removable devices found. Insert a USB drive and retry.[/red]")
        raise typer.Exit(code=1)

    console.print("[bold]Removable devices:[/bold]")
    for index, d in enumerate(found, start=1):
        console.print(f"  {index}. {d.display_name} ({d.path})")

    while True:
        choice = typer.prompt("Select a device", type=int)
        if 1 <= choice <= len(found):
            return found[choice - 1].path
        console.print(f"[red]Enter a number between 1 and {len(found)}[/red]")


def _resolve_build(settings: Settings, build_id: str) -> str:
    """Wait for a build to finish and return its signed download URL."""
    from isoflash.builds.client import BuildServiceClient, BuildStatus

    def _show(status: BuildStatus) -> None:
        stage = f" - {status.stage}" if status.stage else ""
        console.print(f"  Build {status.build_id}: {status.status} ({status.progress}%){stage}")

    try:
        with BuildServiceClient(settings.build_service_url) as client:
            client.wait_until_complete(
                build_id,
                poll_interval=settings.build_poll_interval,
                timeout=settings.build_wait_timeout,
                on_status=_show,
            )
            info = client.get_download_url(build_id)
    except FlashError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]✓ Build {build_id} ready: {info.iso_filename}[/green]")
    return info.download_url


def _history_sessions(settings: Settings) -> Any:
    """Open the history database, or return None if it is unavailable."""
    from isoflash.db import create_all_tables, get_engine, get_session_factory

    try:
        engine = get_engine(settings.db_url)
        create_all_tables(engine)
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Flash history disabled: %s", e)
        return None
    return get_session_factory(engine)


def _run_interruptible(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, cancelling it on SIGTERM as on Ctrl-C."""

    async def _main() -> T:
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        assert task is not None
        try:
            loop.add_signal_handler(signal.SIGTERM, task.cancel)
        except (NotImplementedError, AttributeError):
            logger.debug("SIGTERM handling unavailable on this platform")
        try:
            return await coro
        finally:
            with contextlib.suppress(NotImplementedError, AttributeError):
                loop.remove_signal_handler(signal.SIGTERM)

    return asyncio.run(_main())


if __name__ == "__main__":
    app()
