"""
STM32 DFU Flasher CLI

Command-line interface for flashing, erasing and reading STM32 devices in
DfuSe bootloader mode.
"""

import sys
import logging
from pathlib import Path
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from stm32_dfu_flasher import __version__
from stm32_dfu_flasher.config import (
    DEFAULT_PRODUCT_ID,
    DEFAULT_TARGET,
    DEFAULT_TIMINGS,
    DEFAULT_VENDOR_ID,
    DfuTimings,
)
from stm32_dfu_flasher.flasher import EventKind, FlashEvent
from stm32_dfu_flasher.targets import get_all_targets, get_target

from stm32_dfu_flasher.core.parsing import (
    parse_address as _parse_address_core,
    parse_size as _parse_size_core,
    parse_device_id as _parse_device_id_core,
)
from stm32_dfu_flasher.core.safety import (
    CONFIRMATION_TOKEN,
    SafetyContext,
    WritePermissionError,
    create_cli_safety_context,
)
from stm32_dfu_flasher.core.results import OperationResult
from stm32_dfu_flasher.core.actions import (
    open_session,
    list_devices as core_list_devices,
    read_status as core_read_status,
    clear_device_status as core_clear_status,
    erase_device as core_erase_device,
    flash_firmware as core_flash_firmware,
    dump_flash as core_dump_flash,
)
from stm32_dfu_flasher.core.messages import (
    MessageLevel,
    WarningItem,
    result_to_warnings,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("stm32_dfu_flasher")

console = Console()

app = typer.Typer(help="STM32 DFU Flasher - DfuSe bootloader programming over USB")

# Replaced in tests with a factory that returns a simulated device
session_factory = open_session

DEFAULT_DEVICE = f"{DEFAULT_VENDOR_ID:04X}:{DEFAULT_PRODUCT_ID:04X}"


def print_header(text: str) -> None:
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with its remediation hint."""
    if warning.level == MessageLevel.ERROR:
        style, icon = "red", "❌"
    elif warning.level == MessageLevel.WARN:
        style, icon = "yellow", "⚠️"
    else:
        style, icon = "blue", "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style, markup=False)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def print_warnings_from_result(result: OperationResult, verbose: bool = False) -> None:
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)


def finish(result: OperationResult, verbose: bool = False) -> None:
    """Print warnings/errors of a result and exit 1 on failure."""
    print_warnings_from_result(result, verbose=verbose)
    if not result.ok:
        if verbose and result.logs:
            console.print("[dim]Captured log:[/dim]")
            for line in result.logs:
                console.print(f"  {line}", style="dim", markup=False)
        sys.exit(1)


def parse_address(value: Optional[str]) -> Optional[int]:
    """
    CLI wrapper around core.parsing.parse_address that converts
    ValueError to typer.BadParameter.
    """
    try:
        return _parse_address_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_size(value: Optional[str]) -> Optional[int]:
    try:
        return _parse_size_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_device(value: str) -> Tuple[int, int]:
    try:
        return _parse_device_id_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def build_timings(idle_timeout: Optional[int]) -> DfuTimings:
    try:
        return DEFAULT_TIMINGS.with_idle_wait(idle_timeout)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def build_safety_context(write: bool, confirm: Optional[str], device: str) -> SafetyContext:
    """
    SafetyContext with Rich/typer prompts attached for TTY use.

    Three modes:
    1. Non-interactive (script): --confirm WRITE provided, no prompts
    2. Interactive (TTY): prompts for typed confirmation
    3. Non-interactive without token: refused with remediation
    """
    ctx = create_cli_safety_context(write, device=device, confirmation_token=confirm)

    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Operation:     {details.get('operation', '')}\n"
            f"Device:        {details.get('device', 'unknown')}\n"
            f"Target:        {details.get('target', '')}\n"
            f"Region:        {details.get('region', '') or 'all'}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n"
            f"\n[bold]The device will be mass erased first.[/bold]",
            title="Device Write Operation",
            expand=False,
        ))
        for warning in details.get("warnings", []):
            print_warning(warning)

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt(prompt_text)

    ctx.show_details = show_details
    ctx.prompt_confirmation = prompt_confirmation
    return ctx


def report_permission_error(error: WritePermissionError) -> None:
    print_error(error.reason)
    if "Non-interactive" in error.reason:
        console.print()
        console.print("[bold]For scripted/non-interactive use, provide:[/bold]")
        console.print(f"  --write --confirm {CONFIRMATION_TOKEN}")
        console.print()
        console.print("[bold]Example:[/bold]")
        console.print(f"  stm32-dfu-flasher flash firmware.bin --write --confirm {CONFIRMATION_TOKEN}")


class ProgressSink:
    """Bridge FlashProgrammer events to a Rich progress bar."""

    def __init__(self, progress: Progress, task_id, verbose: bool = False):
        self.progress = progress
        self.task_id = task_id
        self.verbose = verbose

    def __call__(self, event: FlashEvent) -> None:
        if event.kind is EventKind.ERASE_STARTED:
            self.progress.update(self.task_id, description="Erasing...")
        elif event.kind is EventKind.ERASE_COMPLETE:
            self.progress.update(self.task_id, description="Writing...")
        elif event.kind in (EventKind.BLOCK_VERIFIED, EventKind.BLOCK_READ):
            if event.total:
                self.progress.update(self.task_id, total=event.total)
            self.progress.update(self.task_id, completed=event.bytes_done)
            if self.verbose:
                self.progress.console.print(f"  {event.message}", style="dim")
        elif event.kind is EventKind.ERROR:
            self.progress.console.print(f"  {event.message}", style="red", markup=False)


def _progress() -> Progress:
    return Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    )


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show transfer-level debug logs"),
) -> None:
    """STM32 DFU Flasher."""
    if verbose:
        logger.setLevel(logging.DEBUG)


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"stm32-dfu-flasher {__version__}")


@app.command("list-devices")
def list_devices_cmd(
    device: str = typer.Option(DEFAULT_DEVICE, "--device", "-d", help="VID:PID to look for"),
) -> None:
    """List attached devices in DFU mode."""
    vendor_id, product_id = parse_device(device)
    print_header(f"DFU Devices ({vendor_id:04X}:{product_id:04X})")

    result = core_list_devices(vendor_id, product_id)
    devices = result.metadata.get("devices", [])
    if devices:
        table = Table()
        table.add_column("ID", style="cyan")
        table.add_column("Bus/Addr", style="dim")
        table.add_column("Product", style="green")
        table.add_column("Serial", style="yellow")
        table.add_column("Bootloader", style="blue")
        for info in devices:
            table.add_row(
                info.id_string,
                f"{info.bus}/{info.address}",
                info.product or "-",
                info.serial_number or "-",
                info.version_string,
            )
        console.print(table)
    finish(result)


@app.command("list-targets")
def list_targets_cmd() -> None:
    """List known flash targets."""
    table = Table(title="Flash Targets")
    table.add_column("Name", style="cyan")
    table.add_column("Base", style="green")
    table.add_column("Size", style="yellow")
    table.add_column("Writable", style="blue")
    table.add_column("Description", style="dim")

    for name, target in get_all_targets().items():
        table.add_row(
            name,
            f"0x{target.base_address:08X}",
            f"{target.size:,}",
            "yes" if target.writable else "no",
            target.description,
        )
    console.print(table)


@app.command("show-target")
def show_target(
    name: str = typer.Argument(..., help="Target name (see list-targets)"),
) -> None:
    """Show sector layout of a flash target."""
    target = get_target(name)
    if target is None:
        print_error(f"Unknown target '{name}'")
        sys.exit(1)

    print_header(f"Target: {target.name}")
    console.print(f"Base:     0x{target.base_address:08X}")
    console.print(f"Size:     {target.size:,} bytes")
    console.print(f"Writable: {'yes' if target.writable else 'no'}")

    if target.layout is not None:
        table = Table(title=target.layout.name)
        table.add_column("#", style="dim")
        table.add_column("Address", style="cyan")
        table.add_column("Size", style="green")
        table.add_column("Access", style="yellow")
        for i, sector in enumerate(target.layout.sectors):
            access = "".join([
                "r" if sector.readable else "-",
                "e" if sector.erasable else "-",
                "w" if sector.writable else "-",
            ])
            table.add_row(str(i), f"0x{sector.address:08X}", f"{sector.size // 1024}K", access)
        console.print(table)


@app.command()
def status(
    device: str = typer.Option(DEFAULT_DEVICE, "--device", "-d", help="VID:PID of the DFU device"),
    idle_timeout: Optional[int] = typer.Option(None, "--idle-timeout", help="Wait-for-idle budget (ms)"),
) -> None:
    """Show device status, descriptors and memory layout."""
    vendor_id, product_id = parse_device(device)
    timings = build_timings(idle_timeout)

    result = core_read_status(vendor_id, product_id, timings, session_factory=session_factory)
    if result.ok:
        dev_status = result.metadata["status"]
        table = Table(title=f"Device {result.device}")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")
        for key, value in result.metadata.get("info", {}).items():
            table.add_row(key.replace("_", " ").title(), str(value) or "-")
        table.add_row("State", dev_status.state_name)
        table.add_row("Status", dev_status.status_name)
        table.add_row("Poll Timeout", f"{dev_status.poll_timeout_ms} ms")
        console.print(table)

        for layout in result.metadata.get("layouts", []):
            console.print(
                f"  {layout.name}: 0x{layout.start_address:08X} "
                f"({layout.total_size:,} bytes, {len(layout.sectors)} sectors)"
            )
    finish(result)


@app.command("clear-status")
def clear_status(
    device: str = typer.Option(DEFAULT_DEVICE, "--device", "-d", help="VID:PID of the DFU device"),
    abort: bool = typer.Option(False, "--abort", help="Send ABORT before CLRSTATUS"),
) -> None:
    """Clear a dfuERROR condition."""
    vendor_id, product_id = parse_device(device)

    result = core_clear_status(
        vendor_id, product_id, DEFAULT_TIMINGS, session_factory=session_factory, abort=abort
    )
    if result.ok:
        print_success(f"Status cleared: {result.metadata['status'].describe()}")
    finish(result)


@app.command()
def erase(
    device: str = typer.Option(DEFAULT_DEVICE, "--device", "-d", help="VID:PID of the DFU device"),
    write: bool = typer.Option(False, "--write", help="Actually erase the device"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help=f"Non-interactive confirmation token ({CONFIRMATION_TOKEN})"),
    idle_timeout: Optional[int] = typer.Option(None, "--idle-timeout", help="Wait-for-idle budget (ms)"),
) -> None:
    """Mass erase the whole flash."""
    vendor_id, product_id = parse_device(device)
    timings = build_timings(idle_timeout)
    print_header("Mass Erase")

    ctx = build_safety_context(write, confirm, f"{vendor_id:04X}:{product_id:04X}")
    try:
        result = core_erase_device(
            ctx, vendor_id, product_id, timings, session_factory=session_factory
        )
    except WritePermissionError as e:
        report_permission_error(e)
        sys.exit(1)

    if result.ok:
        print_success("Mass erase complete")
    finish(result)


@app.command()
def flash(
    image: Path = typer.Argument(..., help="Flat binary firmware image (.bin)"),
    target: str = typer.Option(DEFAULT_TARGET, "--target", "-t", help="Flash target (see list-targets)"),
    address: Optional[str] = typer.Option(None, "--address", "-a", help="Start address (default: target base)"),
    device: str = typer.Option(DEFAULT_DEVICE, "--device", "-d", help="VID:PID of the DFU device"),
    write: bool = typer.Option(False, "--write", help="Actually erase and write the device"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help=f"Non-interactive confirmation token ({CONFIRMATION_TOKEN})"),
    leave: bool = typer.Option(False, "--leave", help="Start the application after flashing"),
    idle_timeout: Optional[int] = typer.Option(None, "--idle-timeout", help="Wait-for-idle budget (ms)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show per-block progress"),
) -> None:
    """Mass erase, write and verify a firmware image."""
    vendor_id, product_id = parse_device(device)
    start = parse_address(address)
    timings = build_timings(idle_timeout)

    if not image.is_file():
        print_error(f"Image not found: {image}")
        sys.exit(1)

    print_header(f"Flash {image.name}")
    ctx = build_safety_context(write, confirm, f"{vendor_id:04X}:{product_id:04X}")

    try:
        with _progress() as progress:
            task = progress.add_task("Preparing...", total=image.stat().st_size or None)
            result = core_flash_firmware(
                str(image),
                ctx,
                target_name=target,
                address=start,
                vendor_id=vendor_id,
                product_id=product_id,
                timings=timings,
                session_factory=session_factory,
                event_sink=ProgressSink(progress, task, verbose=verbose),
                leave=leave,
            )
    except WritePermissionError as e:
        report_permission_error(e)
        sys.exit(1)

    if result.ok:
        report = result.metadata["report"]
        print_success(
            f"Wrote and verified {report.bytes_written:,} bytes in {report.blocks} blocks "
            f"({result.region})"
        )
        console.print(f"  SHA-256: {report.sha256}")
    finish(result, verbose=verbose)


@app.command()
def dump(
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write the read-out to this file"),
    target: str = typer.Option(DEFAULT_TARGET, "--target", "-t", help="Flash target (see list-targets)"),
    address: Optional[str] = typer.Option(None, "--address", "-a", help="Start address (default: target base)"),
    size: Optional[str] = typer.Option(None, "--size", "-s", help="Bytes to read, e.g. 16K (default: whole target)"),
    device: str = typer.Option(DEFAULT_DEVICE, "--device", "-d", help="VID:PID of the DFU device"),
    hex_output: bool = typer.Option(False, "--hex", help="Print a hex dump"),
    idle_timeout: Optional[int] = typer.Option(None, "--idle-timeout", help="Wait-for-idle budget (ms)"),
) -> None:
    """Read flash (or another target region) from the device."""
    vendor_id, product_id = parse_device(device)
    start = parse_address(address)
    length = parse_size(size)
    timings = build_timings(idle_timeout)

    if out is None and not hex_output:
        print_error("Nothing to do: pass --out FILE and/or --hex")
        sys.exit(1)

    with _progress() as progress:
        task = progress.add_task("Reading...", total=length)
        result = core_dump_flash(
            str(out) if out else None,
            target_name=target,
            address=start,
            size=length,
            vendor_id=vendor_id,
            product_id=product_id,
            timings=timings,
            session_factory=session_factory,
            event_sink=ProgressSink(progress, task),
            hex_dump=hex_output,
        )

    if result.ok:
        if hex_output:
            console.print(result.metadata["hex_dump"], highlight=False, markup=False)
        print_success(f"Read {result.bytes_len:,} bytes ({result.region})")
        if out:
            console.print(f"  Saved to {out}")
        console.print(f"  SHA-256: {result.hashes['sha256']}")
    finish(result)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
