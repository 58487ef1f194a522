"""tenantctl command-line interface."""

from tenantctl.cli.main import cli, main

__all__ = ["cli", "main"]
