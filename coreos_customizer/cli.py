"""Thin CLI wrapper for coreos_customizer.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape

from coreos_customizer import __version__
from coreos_customizer.config import get_settings, print_settings_json
from coreos_customizer.errors import CustomizeError
from coreos_customizer.log import configure_logging
from coreos_customizer.paths import resolve_path
from coreos_customizer.pipeline import build_custom_image
from coreos_customizer.types import BuildRequest, LogLevel

app = typer.Typer(
    name="customize-coreos",
    help="CoreOS image customizer - add resource files to a stock initram",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"coreos-customizer version {__version__}")
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
) -> None:
    """CoreOS image customizer - add resource files to a stock initram."""


@app.command()
def build(
    vmlinuz: Annotated[
        str,
        typer.Option("--vmlinuz", help="URL to vmlinuz image."),
    ] = "",
    initram: Annotated[
        str,
        typer.Option("--initram", help="URL to initram image."),
    ] = "",
    resources: Annotated[
        str,
        typer.Option("--resources", help="Directory with files to add to custom image."),
    ] = "",
    custom: Annotated[
        str,
        typer.Option("--custom", help="Name of customized image."),
    ] = "",
    log_level: Annotated[
        LogLevel | None,
        typer.Option(
            "--log-level",
            help="Override the configured logging level",
            case_sensitive=False,
        ),
    ] = None,
) -> None:
    """Build a customized initram image."""
    settings = get_settings()
    logger = configure_logging(log_level.value if log_level else settings.log_level)

    try:
        request = BuildRequest(
            vmlinuz_url=vmlinuz,
            initram_url=initram,
            resources_dir=resolve_path(resources),
            output_path=resolve_path(custom),
        )
        build_custom_image(request, settings=settings, logger=logger)
    except (CustomizeError, OSError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    console.print("Success")


def _auto(value: bool | None) -> str:
    return "(when not root)" if value is None else str(value)


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
        return

    tmp_dir_display = str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
    compressor_display = settings.squashfs_compressor or "(detect from image)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Image layout:[/bold]")
    console.print(f"  SquashFS image:      {settings.squashfs_image}")
    console.print(f"  Mount subpath:       {settings.mount_subpath}")
    console.print(f"  Temp directory:      {tmp_dir_display}")
    console.print()
    console.print("[bold]Tools:[/bold]")
    console.print(f"  unsquashfs:          {settings.unsquashfs_bin}")
    console.print(f"  mksquashfs:          {settings.mksquashfs_bin}")
    console.print(f"  Compressor:          {compressor_display}")
    console.print(f"  mkfs time:           {settings.squashfs_mkfs_time}")
    console.print(f"  gzip level:          {settings.gzip_level}")
    console.print(f"  All-root image:      {_auto(settings.squashfs_all_root)}")
    console.print(f"  Root-owned initram:  {_auto(settings.initram_root_owned)}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Tool timeout:        {settings.tool_timeout}")


if __name__ == "__main__":
    app()
