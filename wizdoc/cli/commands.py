"""CLI commands for WizDoc.

This module provides the terminal front end using Typer: it records a
teaching moment, drives it through the pipeline and prints the resulting
card.
"""

import asyncio
import signal
import sys
import threading
import time
from typing import Optional

import typer
from loguru import logger
from rich.panel import Panel
from rich.table import Table

from wizdoc.cli.utils import (
    console,
    format_duration,
    make_capture_progress,
    make_card_panel,
    make_device_table,
    message_for_stage,
    random_tip,
    suppress_stderr,
)
from wizdoc.core import (
    ApiConfig,
    AppConfig,
    AppState,
    Card,
    PipelineController,
    PipelineState,
    RemoteAPIClient,
    S3Uploader,
    list_input_devices,
)
from wizdoc.core.errors import Cancelled, CaptureError, StageFailed, TransportError, WizDocError

app = typer.Typer(help="Capture teaching moments and turn them into WizDoc cards")

app_config = AppConfig()


def _configure_logging(verbose: bool) -> None:
    """Configure loguru log level based on verbose flag."""
    logger.remove()
    if verbose:
        logger.add(sys.stderr, level="DEBUG")
    else:
        logger.add(sys.stderr, level="WARNING")


@app.command()
def list_devices(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug output from audio libraries"
    ),
):
    """List all available input audio devices."""
    _configure_logging(verbose)
    try:
        if verbose:
            devices = list_input_devices()
        else:
            with suppress_stderr():
                devices = list_input_devices()
    except CaptureError as e:
        console.print(f"[error]✗ {e}[/error]")
        sys.exit(1)

    console.print(Panel(make_device_table(devices), title="[bold]Available Input Devices[/bold]"))


@app.command()
def record(
    duration: Optional[int] = typer.Option(
        None, help="Recording duration in seconds. Leave empty to stop with Enter."
    ),
    user_id: Optional[str] = typer.Option(
        None, help="Owner of the resulting card. Defaults to a preview user."
    ),
    prompt: Optional[str] = typer.Option(None, help="Prompt name sent to the AI service"),
    model: Optional[str] = typer.Option(None, help="Model name sent to the AI service"),
    upload: bool = typer.Option(
        True,
        "--upload/--no-upload",
        help="Stage audio in S3 when configured; --no-upload always sends audio inline.",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug output from audio libraries"
    ),
):
    """Record a teaching moment and turn it into a card."""
    _configure_logging(verbose)

    state = AppState(user_id=user_id)
    try:
        controller = PipelineController.from_config(
            app_config, state, upload=upload, prompt=prompt, model=model
        )
    except ValueError as e:
        console.print(f"[error]✗ Invalid configuration: {e}[/error]")
        sys.exit(1)

    api_config = ApiConfig.from_dict(app_config.get_api_config())
    info_grid = Table.grid(padding=(0, 1))
    info_grid.add_column(style="dim", justify="right")
    info_grid.add_column()
    info_grid.add_row("Service:", api_config.base_url)
    info_grid.add_row("Prompt:", prompt or api_config.prompt)
    info_grid.add_row("Model:", model or api_config.model)
    info_grid.add_row("Owner:", user_id or "[dim]preview user[/dim]")
    info_grid.add_row("Stop:", f"after {duration}s" if duration else "press Enter")
    console.print(Panel(info_grid, title="[bold]🎙 Teaching Moment[/bold]", border_style="green"))

    try:
        if verbose:
            card = asyncio.run(_record_session(controller, duration))
        else:
            with suppress_stderr():
                card = asyncio.run(_record_session(controller, duration))
    except Cancelled:
        console.print("[warning]⏹ Run cancelled; nothing was published[/warning]")
        sys.exit(0)
    except KeyboardInterrupt:
        console.print("[warning]⏹ Run interrupted by user[/warning]")
        sys.exit(0)
    except CaptureError as e:
        console.print(f"[error]✗ Cannot record: {e}[/error]")
        sys.exit(1)
    except StageFailed as e:
        console.print(f"[error]✗ {message_for_stage(e.stage)} failed: {e.cause}[/error]")
        sys.exit(1)
    except WizDocError as e:
        console.print(f"[error]✗ {e}[/error]")
        sys.exit(1)

    console.print(make_card_panel(card))
    console.print(f"[success]✓ Card published ({len(state.archive)} in this session)[/success]")


async def _record_session(controller: PipelineController, duration: Optional[int]) -> Card:
    """Record until *duration* elapses or Enter is pressed, then process."""
    loop = asyncio.get_running_loop()

    def _on_interrupt() -> None:
        console.print("\n[warning]⏹ Received interrupt signal, cancelling run...[/warning]")
        controller.cancel_run()

    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    except (NotImplementedError, RuntimeError):
        # Not supported on this platform/thread; Ctrl+C raises KeyboardInterrupt instead
        pass

    try:
        await _capture(controller, duration)
        with console.status(message_for_stage(PipelineState.TRANSCRIBING)) as status:
            tip = random_tip()

            def _show_stage(run_id: str, stage: PipelineState) -> None:
                status.update(f"{message_for_stage(stage)}\n[dim italic]{tip}[/dim italic]")

            unsubscribe = controller.on_stage(_show_stage)
            try:
                return await controller.end_capture_and_process()
            finally:
                unsubscribe()
    finally:
        if controller.state is not PipelineState.IDLE:
            # The session ended mid-run; release the microphone
            controller.cancel_run()
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await controller.api.aclose()


async def _capture(controller: PipelineController, duration: Optional[int]) -> None:
    capture = controller.capture
    stop_requested = threading.Event()
    if not duration:
        threading.Thread(
            target=lambda: (sys.stdin.readline(), stop_requested.set()),
            name="wait-for-enter",
            daemon=True,
        ).start()

    with make_capture_progress() as progress:
        task = progress.add_task("rec", total=120, elapsed="00:00", db_text="-- dB")
        unsubscribe = capture.on_tick(lambda seconds: progress.update(task, elapsed=format_duration(seconds)))
        try:
            controller.begin_capture()
            started = time.monotonic()
            while not stop_requested.is_set():
                if controller.state is not PipelineState.RECORDING:
                    raise Cancelled(PipelineState.RECORDING)
                if duration and time.monotonic() - started >= duration:
                    break
                db_level = capture.current_db_level
                progress.update(task, completed=db_level, db_text=f"{db_level:.1f} dB")
                await asyncio.sleep(0.1)
        finally:
            unsubscribe()


@app.command()
def status(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug output"
    ),
):
    """Show the AI service and optional S3 storage status.

    Performs a lightweight ``GET`` on the configured health endpoint and, if
    an S3 configuration is present in ``.wizdoc.yml``, a health check on the
    configured bucket.
    """
    _configure_logging(verbose)

    console.rule("[bold]📋 WizDoc Status[/bold]")
    console.print()

    try:
        api_config = ApiConfig.from_dict(app_config.get_api_config())
    except ValueError as e:
        console.print(f"[error]✗ Invalid api configuration: {e}[/error]")
        sys.exit(1)

    try:
        asyncio.run(_check_service(api_config))
        console.print(f"[info]AI service available: {api_config.base_url}[/info]")
    except TransportError as e:
        console.print(f"[warning]AI service not reachable ({api_config.base_url}): {e}[/warning]")

    s3_conf = app_config.get_s3_config()
    if not s3_conf:
        console.print("[dim]S3 storage not configured[/dim]")
    else:
        try:
            uploader = S3Uploader.from_dict(s3_conf)
            available = uploader.check_bucket()
            if available:
                console.print(f"[info]S3 storage available: bucket {uploader.bucket}[/info]")
            else:
                console.print(f"[warning]S3 storage not reachable (bucket: {uploader.bucket})[/warning]")
        except ValueError as e:
            console.print(f"[error]Failed to initialize S3 client: {e}[/error]")


async def _check_service(api_config: ApiConfig) -> None:
    async with RemoteAPIClient.from_config(api_config) as api:
        await api.get(api_config.endpoint("health"))
