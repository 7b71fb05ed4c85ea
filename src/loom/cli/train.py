"""Train subcommand."""

from __future__ import annotations

from dataclasses import replace

import click

from loom.cli.main import print_banner
from loom.config import load_config
from loom.utils.io import setup_python_logging


@click.command()
@click.argument("config", type=click.Path(exists=True))
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. train.steps=1000 (repeatable).",
)
@click.option(
    "--run-dir",
    type=click.Path(),
    default=None,
    help="Override logging.run_dir.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Validate config, build block/data, compute one gradient, then exit.",
)
@click.option("--quiet", "-q", is_flag=True, help="Skip the banner.")
def train(
    config: str,
    overrides: tuple[str, ...],
    run_dir: str | None,
    dry_run: bool,
    quiet: bool,
) -> None:
    """Train a recurrent block on a synthetic sequence task.

    CONFIG is the path to a YAML config file.
    """
    try:
        cfg = load_config(config, overrides=list(overrides))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="CONFIG/--override") from e

    if run_dir is not None:
        cfg = replace(cfg, logging=replace(cfg.logging, run_dir=run_dir))

    if not quiet:
        print_banner()

    # Logging first so subsequent errors are readable
    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)

    from loom.train import run

    run_dir_path = run(cfg, config_path=config, dry_run=dry_run)
    click.echo(f"[loom] run_dir: {run_dir_path}")
