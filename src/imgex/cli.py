"""Command line interface for imgex.

Example:
    $ imgex config alpine:latest
    $ imgex filesystem alpine:latest -o rootfs.tar --compress
    $ imgex filesystem alpine:latest | tar -tv
"""

import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import NoReturn, Optional

import click

from . import __version__
from .core.config import ExportConfig
from .core.types import Platform
from .exceptions import ImageExportError
from .export import (
    export_filesystem_to_writer,
    export_filesystem_with_options,
    get_image_config,
    get_image_summary,
)
from .operations.jobs import ExportOptions


def _config(ctx: click.Context) -> ExportConfig:
    config: ExportConfig = ctx.obj["config"]
    return config


def _read_auth(auth: Optional[str]) -> Optional[str]:
    """Auth payload given inline or as ``@file``."""
    if auth and auth.startswith("@"):
        try:
            return Path(auth[1:]).read_text(encoding="utf-8")
        except OSError as e:
            raise click.BadParameter(f"cannot read {auth[1:]}: {e}", param_hint="--auth") from e
    return auth


def _fail(error: ImageExportError) -> NoReturn:
    click.echo(f"Error: {error.describe()}", err=True)
    sys.exit(1)


@click.group(
    name="imgex",
    help="Export container image filesystems from OCI/Docker registries.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=__version__, prog_name="imgex", message="%(prog)s %(version)s")
@click.option("--platform", "platform_str", help="Target platform, e.g. linux/arm64.")
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v, -vv).")
@click.pass_context
def cli(ctx: click.Context, platform_str: Optional[str], verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = ExportConfig.from_env()
    except ImageExportError as e:
        _fail(e)
    if platform_str:
        try:
            platform = Platform.parse(platform_str)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--platform") from e
        config = replace(config, platform=platform)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command("config")
@click.argument("reference")
@click.option("--auth", help="Auth JSON payload, or @FILE to read it from a file.")
@click.option("--raw", is_flag=True, help="Print the config JSON exactly as stored.")
@click.option("--summary", is_flag=True, help="Print a short human readable summary.")
@click.pass_context
def config_command(
    ctx: click.Context, reference: str, auth: Optional[str], raw: bool, summary: bool
) -> None:
    """Print the configuration of an image."""
    config = _config(ctx)
    try:
        if summary:
            image = asyncio.run(get_image_summary(reference, _read_auth(auth), config=config))
            click.echo(f"Platform:    {image.os}/{image.architecture}")
            click.echo(f"Created:     {image.created.isoformat() if image.created else '-'}")
            click.echo(f"User:        {image.user or '-'}")
            click.echo(f"Entrypoint:  {' '.join(image.entrypoint) or '-'}")
            click.echo(f"Cmd:         {' '.join(image.cmd) or '-'}")
            click.echo(f"WorkingDir:  {image.working_dir or '-'}")
            click.echo(f"Ports:       {', '.join(image.exposed_ports) or '-'}")
            click.echo(f"Layers:      {len(image.diff_ids)}")
            for item in image.env:
                click.echo(f"Env:         {item}")
            return

        text = asyncio.run(get_image_config(reference, _read_auth(auth), config=config))
    except ImageExportError as e:
        _fail(e)

    if raw:
        click.echo(text)
    else:
        click.echo(json.dumps(json.loads(text), indent=2, sort_keys=True))


@cli.command("filesystem")
@click.argument("reference")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, allow_dash=True, path_type=Path),
    help="Archive to write. Streams to stdout when omitted or -.",
)
@click.option("--auth", help="Auth JSON payload, or @FILE to read it from a file.")
@click.option("-z", "--compress", is_flag=True, help="gzip the archive (adds .gz).")
@click.option("-q", "--quiet", is_flag=True, help="Do not print progress.")
@click.pass_context
def filesystem_command(
    ctx: click.Context,
    reference: str,
    output: Optional[Path],
    auth: Optional[str],
    compress: bool,
    quiet: bool,
) -> None:
    """Export the flattened filesystem of an image."""

    def on_progress(current: int, total: int, description: str) -> None:
        click.echo(f"[{current}/{total}] {description}", err=True)

    options = ExportOptions(compress=compress, progress=None if quiet else on_progress)
    payload = _read_auth(auth)
    try:
        if output is None or str(output) == "-":
            stdout = click.get_binary_stream("stdout")
            asyncio.run(
                export_filesystem_to_writer(
                    reference, stdout, payload, options, config=_config(ctx)
                )
            )
            stdout.flush()
            return

        path = asyncio.run(
            export_filesystem_with_options(reference, output, payload, options, config=_config(ctx))
        )
    except ImageExportError as e:
        _fail(e)
    click.echo(str(path))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
