"""CLI commands for inspecting and creating tenantctl configuration."""

import json
import sys
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from tenantctl.core.settings import generate_example_config, get_settings

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 2

DEFAULT_CONFIG_NAME = "tenantctl.config.yaml"


@click.group(name="config")
def config_command() -> None:
    """Show or create controller configuration.

    Examples:

      tenantctl config show
      tenantctl config show --json
      tenantctl config init --output ./tenantctl.config.yaml
    """


@config_command.command(name="show")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of YAML")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    """Print the effective settings (file, environment and defaults merged)."""
    config_file = getattr(ctx.obj, "config_file", None)
    try:
        settings = get_settings(config_file=config_file)
    except ValidationError as e:
        click.echo(f"Error: invalid configuration: {e}", err=True)
        sys.exit(EXIT_ERROR)

    data = settings.to_dict()
    if as_json:
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


@config_command.command(name="init")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path(DEFAULT_CONFIG_NAME),
    show_default=True,
    help="Where to write the example configuration",
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(output: Path, force: bool) -> None:
    """Write a commented example configuration file."""
    if output.exists() and not force:
        click.echo(f"Error: {output} already exists (use --force)", err=True)
        sys.exit(EXIT_ERROR)

    generate_example_config(output)
    click.echo(f"Wrote {output}")
    sys.exit(EXIT_SUCCESS)
