"""Thin CLI wrapper for kbootctl.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules. Build parameters are
global options so every command sees the same configuration:

    kbootctl --arch aarch64 --mode release run
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from kbootctl import __version__
from kbootctl.config import get_settings, print_settings_json
from kbootctl.errors import KbootError
from kbootctl.orchestrator import Orchestrator
from kbootctl.types import (
    Arch,
    Board,
    BuildMode,
    KernelLogLevel,
    LaunchVariant,
    LogLevel,
    TimerVariant,
)

app = typer.Typer(
    name="kbootctl",
    help="Kernel build and launch orchestrator - build boot chains and run them in QEMU",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


@dataclass
class CliState:
    """Options shared by all commands."""

    params: dict[str, Any] = field(default_factory=dict)
    prefix: str | None = None


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kbootctl version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@contextmanager
def handle_errors() -> Iterator[None]:
    """Report the first failure and exit non-zero."""
    try:
        yield
    except KbootError as e:
        err_console.print(f"[red]Error ({e.code}): {e.message}[/red]")
        raise typer.Exit(code=1) from None


def _state(ctx: typer.Context) -> CliState:
    return ctx.ensure_object(CliState)


def _orchestrator(state: CliState) -> Orchestrator:
    return Orchestrator(settings=get_settings(), prefix=state.prefix)


@app.callback()
def main(
    ctx: typer.Context,
    arch: Annotated[
        Arch, typer.Option("--arch", "-a", help="Target architecture")
    ] = Arch.RISCV64,
    board: Annotated[
        Board, typer.Option("--board", "-b", help="Board profile (aarch64 implies raspi3)")
    ] = Board.NONE,
    mode: Annotated[
        BuildMode, typer.Option("--mode", "-m", help="Build mode")
    ] = BuildMode.DEBUG,
    log: Annotated[
        KernelLogLevel, typer.Option("--log", help="Kernel log level")
    ] = KernelLogLevel.DEBUG,
    graphic: Annotated[
        bool, typer.Option("--graphic/--no-graphic", help="Emulator graphical output")
    ] = False,
    smp: Annotated[int, typer.Option("--smp", help="SMP core number")] = 4,
    pci_passthru: Annotated[
        str | None,
        typer.Option("--pci-passthru", help="PCI device to pass through (x86_64 only)"),
    ] = None,
    init: Annotated[
        str | None,
        typer.Option("--init", help="Run this program instead of the user shell"),
    ] = None,
    timer: Annotated[
        TimerVariant, typer.Option("--timer", help="raspi3 timer variant")
    ] = TimerVariant.GENERIC,
    sfsimg: Annotated[
        Path | None, typer.Option("--sfsimg", help="Filesystem image of user programs")
    ] = None,
    trace: Annotated[
        str | None,
        typer.Option("--trace", "-d", help="QEMU debug trace (e.g. int, in_asm)"),
    ] = None,
    prefix: Annotated[
        str | None, typer.Option("--prefix", help="Toolchain prefix override")
    ] = None,
    log_level: Annotated[
        LogLevel | None,
        typer.Option(
            "--log-level", case_sensitive=False, help="Logging level of this tool"
        ),
    ] = None,
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
) -> None:
    """Kernel build and launch orchestrator."""
    setup_logging(log_level.value if log_level else get_settings().log_level)
    state = _state(ctx)
    state.prefix = prefix
    state.params = {
        "arch": arch,
        "board": board,
        "mode": mode,
        "log": log,
        "graphic": graphic,
        "smp": smp,
        "pci_passthru": pci_passthru,
        "init": init,
        "timer": timer,
        "sfsimg": sfsimg,
        "trace": trace,
    }


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective host configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    build_log = str(settings.build_log) if settings.build_log else "(terminal)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Projects:[/bold]")
    console.print(f"  Kernel directory:      {settings.kernel_dir}")
    console.print(f"  Bootloader directory:  {settings.bootloader_dir}")
    console.print(f"  Proxy kernel directory: {settings.proxy_kernel_dir}")
    console.print(f"  User directory:        {settings.user_dir}")
    console.print(f"  Tools directory:       {settings.tools_dir}")
    console.print(f"  Tests directory:       {settings.tests_dir}")
    console.print()
    console.print("[bold]Artifacts:[/bold]")
    console.print(f"  Kernel name:           {settings.kernel_name}")
    console.print(f"  Bootloader name:       {settings.bootloader_name}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Guest memory:          {settings.memory}")
    console.print(f"  Log level:             {settings.log_level}")
    console.print(f"  Build log:             {build_log}")


@app.command()
def plan(
    ctx: typer.Context,
    variant: Annotated[
        LaunchVariant, typer.Option("--variant", help="Launch variant to show")
    ] = LaunchVariant.DEFAULT,
    net: Annotated[bool, typer.Option("--net", help="Include networking")] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the resolved stages and emulator command without running them."""
    state = _state(ctx)
    with handle_errors():
        orchestrator = _orchestrator(state)
        resolution = orchestrator.resolve({**state.params, "net": net})
        spec = orchestrator.launch_spec(resolution, variant=variant)

    boot_plan = resolution.plan
    if json_output:
        output = {
            "config": resolution.config.model_dump(mode="json"),
            "features": sorted(resolution.features.tokens),
            "supervisor_flags": list(resolution.features.supervisor_flags),
            "toolchain": resolution.toolchain.as_dict(),
            "stages": [
                {
                    "name": stage.name,
                    "kind": stage.kind.value,
                    "steps": [step.describe() for step in stage.steps],
                }
                for stage in boot_plan.stages
            ],
            "artifact": {
                "kind": boot_plan.artifact.kind.value,
                "path": boot_plan.artifact.path,
                "stage": boot_plan.artifact.stage,
            },
            "launch": spec.argv,
        }
        console.print_json(json.dumps(output))
        return

    config_ = resolution.config
    console.print(
        f"[bold]{config_.arch.value}[/bold] board={config_.board.value} "
        f"mode={config_.mode.value}"
    )
    console.print(f"  Features:  {resolution.features.as_arg() or '(none)'}")
    console.print(f"  Toolchain: {resolution.toolchain.prefix or '(host)'}")
    console.print()
    for i, stage in enumerate(boot_plan.stages, 1):
        console.print(f"[green]{i}. {stage.name}[/green]")
        for step in stage.steps:
            console.print(f"     {step.describe()}", markup=False)
    console.print()
    console.print(f"[bold]Artifact:[/bold] {boot_plan.artifact.path}")
    console.print("[bold]Launch:[/bold]")
    console.print(f"  {spec.render()}", markup=False)


@app.command()
def build(ctx: typer.Context) -> None:
    """Build the bootable artifact."""
    state = _state(ctx)
    with handle_errors():
        result = _orchestrator(state).build(state.params)
    console.print(f"[green]✓ Built {result.artifact.path}[/green]")


@app.command()
def run(
    ctx: typer.Context,
    net: Annotated[
        bool, typer.Option("--net", help="Attach a tap network device (uses sudo)")
    ] = False,
    gui: Annotated[
        bool, typer.Option("--gui", help="Attach virtio GPU and mouse devices")
    ] = False,
    test: Annotated[
        bool, typer.Option("--test", help="Run --init and capture serial output")
    ] = False,
    no_build: Annotated[
        bool, typer.Option("--no-build", help="Run the last build as is")
    ] = False,
) -> None:
    """Build (unless --no-build) and boot the kernel in QEMU."""
    state = _state(ctx)
    if sum([net, gui, test]) > 1:
        err_console.print("[red]Choose at most one of --net, --gui, --test[/red]")
        raise typer.Exit(code=2)

    variant = LaunchVariant.DEFAULT
    if net:
        variant = LaunchVariant.NET
    elif gui:
        variant = LaunchVariant.GUI
    elif test:
        variant = LaunchVariant.TEST

    with handle_errors():
        code = _orchestrator(state).run(
            {**state.params, "net": net}, variant=variant, build=not no_build
        )
    if code != 0:
        raise typer.Exit(code=code)


@app.command()
def debug(
    ctx: typer.Context,
    no_build: Annotated[
        bool, typer.Option("--no-build", help="Debug the last build as is")
    ] = False,
) -> None:
    """Boot halted with a gdb stub and attach gdb."""
    state = _state(ctx)
    with handle_errors():
        code = _orchestrator(state).debug(state.params, build=not no_build)
    if code != 0:
        raise typer.Exit(code=code)


def _inspect(ctx: typer.Context, what: str) -> None:
    state = _state(ctx)
    with handle_errors():
        code = _orchestrator(state).inspect(state.params, what)
    if code != 0:
        raise typer.Exit(code=code)


@app.command()
def asm(ctx: typer.Context) -> None:
    """Disassemble the last kernel build."""
    _inspect(ctx, "asm")


@app.command()
def header(ctx: typer.Context) -> None:
    """Show section headers of the last kernel build."""
    _inspect(ctx, "header")


@app.command()
def sym(ctx: typer.Context) -> None:
    """Show the symbol table of the last kernel build."""
    _inspect(ctx, "sym")


@app.command()
def clean(ctx: typer.Context) -> None:
    """Remove build outputs of the kernel, bootloader and user programs."""
    with handle_errors():
        _orchestrator(_state(ctx)).clean()
    console.print("[green]✓ Cleaned[/green]")


@app.command()
def sfsimg(ctx: typer.Context) -> None:
    """Build the user-program filesystem image."""
    with handle_errors():
        _orchestrator(_state(ctx)).sfsimg()
    console.print("[green]✓ Filesystem image built[/green]")


@app.command()
def doc(ctx: typer.Context) -> None:
    """Generate kernel documentation."""
    with handle_errors():
        _orchestrator(_state(ctx)).doc()


@app.command()
def install(
    ctx: typer.Context,
    mount: Annotated[
        Path | None,
        typer.Option("--mount", help="Boot partition mount point (raspi3)"),
    ] = None,
) -> None:
    """Build and install onto the board's boot medium (raspi3, u540)."""
    state = _state(ctx)
    with handle_errors():
        _orchestrator(state).install(state.params, mount=mount)
    console.print("[green]✓ Installed[/green]")


@app.command()
def addr2line(ctx: typer.Context) -> None:
    """Resolve a pasted backtrace to source lines."""
    state = _state(ctx)
    with handle_errors():
        code = _orchestrator(state).addr2line(state.params)
    if code != 0:
        raise typer.Exit(code=code)


if __name__ == "__main__":
    app()
