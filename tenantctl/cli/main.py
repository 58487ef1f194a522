"""Main CLI entry point for tenantctl."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from tenantctl import __version__
from tenantctl.api.tenant import Phase, Tenant, TenantStatus
from tenantctl.chaos import (
    FaultConfig,
    FaultInjectingStore,
    get_profile,
    list_profiles,
)
from tenantctl.cli.commands.config import config_command
from tenantctl.controller import TenantController, build_children
from tenantctl.core.exceptions import (
    ConfigurationError,
    ManifestError,
    StoreError,
    TenantValidationError,
)
from tenantctl.core.logging import configure_logging
from tenantctl.core.metrics import configure_metrics, serve_metrics
from tenantctl.core.settings import ControllerSettings, get_settings
from tenantctl.store import ClusterStore, InMemoryClusterStore, load_tenant_manifests
from tenantctl.store.manifests import ManifestParser, dump_manifests

# Exit codes
EXIT_SUCCESS = 0  # Everything converged / valid
EXIT_FAILURE = 1  # Tenants failed or did not converge
EXIT_ERROR = 2  # Error (invalid config, missing file, etc.)

console = Console()
err_console = Console(stderr=True)


class CliContext:
    """Context object holding settings for subcommands."""

    def __init__(self) -> None:
        self.config_file: Path | None = None
        self.verbose: bool = False
        self._settings: ControllerSettings | None = None

    @property
    def settings(self) -> ControllerSettings:
        if self._settings is None:
            try:
                self._settings = get_settings(config_file=self.config_file)
            except ValidationError as e:
                raise click.ClickException(f"Invalid configuration: {e}") from e
        return self._settings


pass_context = click.make_pass_decorator(CliContext, ensure=True)


@click.group(invoke_without_command=True)
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to tenantctl.config.yaml configuration file",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.version_option(version=__version__, prog_name="tenantctl")
@click.pass_context
def cli(ctx: click.Context, config_file: Path | None, verbose: bool) -> None:
    """tenantctl - Tenant reconciliation controller.

    Keeps every Tenant's namespace, quota, network policy and role binding
    in place and reports progress on the Tenant status.

    Examples:

      # Reconcile tenants from YAML files in memory and exit when idle
      tenantctl run tenants/*.yaml --once

      # Run against the cluster from the current kubeconfig
      tenantctl run --backend kubernetes

      # Check manifests without touching anything
      tenantctl validate tenants/candidate.yaml

      # Show the resources a tenant would get
      tenantctl render tenants/candidate.yaml
    """
    ctx.ensure_object(CliContext)
    cli_ctx = ctx.obj
    cli_ctx.config_file = config_file
    cli_ctx.verbose = verbose

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command(name="version")
def version_cmd() -> None:
    """Show tenantctl version information."""
    click.echo(f"tenantctl v{__version__}")
    click.echo(f"Python: {sys.version.split()[0]}")
    click.echo(f"Platform: {sys.platform}")


# ----- run -----


def _load_fault_config(
    fault_profile: str | None, faults_file: Path | None
) -> FaultConfig | None:
    if faults_file is not None:
        try:
            data = yaml.safe_load(faults_file.read_text(encoding="utf-8")) or {}
            return FaultConfig.model_validate(data)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            raise click.ClickException(
                f"Invalid fault config {faults_file}: {e}"
            ) from e
    if fault_profile is not None:
        return get_profile(fault_profile)
    return None


def _build_store(
    settings: ControllerSettings, tenant_files: tuple[Path, ...]
) -> ClusterStore:
    if settings.backend == "kubernetes":
        if tenant_files:
            raise click.UsageError(
                "Tenant files are only read by the memory backend; "
                "apply them to the cluster instead"
            )
        from tenantctl.store.kubernetes import KubernetesClusterStore

        return KubernetesClusterStore(
            settings.kubernetes, request_timeout=settings.call_timeout_seconds
        )
    return InMemoryClusterStore(load_tenant_manifests(*tenant_files))


def _create_status_table(statuses: dict[str, TenantStatus]) -> Table:
    table = Table(title="Tenants", show_header=True, header_style="bold cyan")
    table.add_column("Tenant", style="green", no_wrap=True)
    table.add_column("Phase")
    table.add_column("Namespace", justify="center")
    table.add_column("Quota", justify="center")
    table.add_column("NetPol", justify="center")
    table.add_column("RBAC", justify="center")
    table.add_column("Gen", justify="right")
    table.add_column("Last error", style="dim")
    for name in sorted(statuses):
        status = statuses[name]
        table.add_row(
            name,
            _format_phase(status.phase),
            _tick(status.namespace_created),
            _tick(status.quota_applied),
            _tick(status.network_policy_applied),
            _tick(status.rbac_applied),
            str(status.observed_generation),
            status.last_error or "",
        )
    return table


def _format_phase(phase: Phase) -> str:
    colors = {
        Phase.READY: "green",
        Phase.RECONCILING: "yellow",
        Phase.FAILED: "bold red",
        Phase.PENDING: "dim",
    }
    return f"[{colors[phase]}]{phase.value}[/{colors[phase]}]"


def _tick(value: bool) -> str:
    return "[green]✓[/green]" if value else "[red]✗[/red]"


async def _run_controller(
    store: ClusterStore,
    settings: ControllerSettings,
    once: bool,
    timeout: float,
) -> dict[str, TenantStatus] | None:
    controller = TenantController(
        store,
        workers=settings.workers,
        resync_interval=0 if once else settings.resync_interval_seconds,
        backoff_initial=settings.backoff_initial_seconds,
        backoff_max=settings.backoff_max_seconds,
        call_timeout=settings.call_timeout_seconds,
    )
    async with store:
        await controller.start()
        try:
            if once:
                if not await controller.wait_until_idle(timeout=timeout):
                    err_console.print(
                        f"[yellow]Not idle after {timeout}s, stopping[/yellow]"
                    )
            else:
                stop = asyncio.Event()
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, stop.set)
                await stop.wait()
        finally:
            await controller.stop()
        return controller.statuses()


@cli.command(name="run")
@click.argument(
    "tenant_files", nargs=-1, type=click.Path(exists=True, path_type=Path)
)
@click.option(
    "--backend",
    type=click.Choice(["memory", "kubernetes"]),
    default=None,
    help="Desired-state store (default from config)",
)
@click.option(
    "--workers",
    "-w",
    type=int,
    default=None,
    help="Number of parallel reconcile workers",
)
@click.option(
    "--metrics-bind-address",
    type=str,
    default=None,
    help="Address the metrics endpoint binds to; 0 disables it",
)
@click.option(
    "--once",
    is_flag=True,
    help="Reconcile until nothing is left to do, then exit",
)
@click.option(
    "--timeout",
    type=float,
    default=60.0,
    show_default=True,
    help="Give up waiting for --once after this many seconds",
)
@click.option(
    "--fault-profile",
    type=click.Choice(list_profiles()),
    default=None,
    help="Inject store faults from a predefined profile",
)
@click.option(
    "--faults",
    "faults_file",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="YAML fault injection config",
)
@click.option(
    "--seed",
    type=int,
    default=None,
    help="Random seed for fault injection",
)
@pass_context
def run_cmd(
    cli_ctx: CliContext,
    tenant_files: tuple[Path, ...],
    backend: str | None,
    workers: int | None,
    metrics_bind_address: str | None,
    once: bool,
    timeout: float,
    fault_profile: str | None,
    faults_file: Path | None,
    seed: int | None,
) -> None:
    """Run the controller.

    With the memory backend the TENANT_FILES seed the store; with the
    kubernetes backend tenants come from the cluster.

    Exit codes with --once: 0 when every tenant is Ready, 1 otherwise.
    """
    settings = cli_ctx.settings
    updates: dict[str, Any] = {}
    if backend is not None:
        updates["backend"] = backend
    if workers is not None:
        if workers < 1:
            raise click.BadParameter("must be at least 1", param_hint="--workers")
        updates["workers"] = workers
    if metrics_bind_address is not None:
        if metrics_bind_address == "0":
            metrics = settings.metrics.model_copy(update={"enabled": False})
        else:
            try:
                metrics = settings.metrics.model_validate(
                    {"enabled": True, "bind_address": metrics_bind_address}
                )
            except ValidationError as e:
                raise click.BadParameter(
                    str(e), param_hint="--metrics-bind-address"
                ) from e
        updates["metrics"] = metrics
    settings = settings.model_copy(update=updates)

    configure_logging(
        level="DEBUG" if cli_ctx.verbose else settings.logging.level,
        json_output=settings.logging.json_output,
        log_file=settings.logging.file,
    )

    try:
        store = _build_store(settings, tenant_files)
    except (ManifestError, ConfigurationError) as e:
        err_console.print(f"[red]Error:[/red] {e}")
        sys.exit(EXIT_ERROR)

    fault_config = _load_fault_config(fault_profile, faults_file)
    if fault_config is not None:
        store = FaultInjectingStore(store, fault_config, seed=seed)

    if configure_metrics(settings=settings.metrics) is not None:
        try:
            serve_metrics(settings.metrics.host, settings.metrics.port)
        except OSError as e:
            err_console.print(f"[red]Error:[/red] cannot serve metrics: {e}")
            sys.exit(EXIT_ERROR)

    try:
        statuses = asyncio.run(_run_controller(store, settings, once, timeout))
    except StoreError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        sys.exit(EXIT_ERROR)

    if statuses:
        console.print(_create_status_table(statuses))
    if isinstance(store, FaultInjectingStore) and store.injected:
        console.print(f"Injected faults: {store.stats()}")

    if once:
        ready = all(s.phase == Phase.READY for s in (statuses or {}).values())
        sys.exit(EXIT_SUCCESS if ready else EXIT_FAILURE)


# ----- validate / render -----


@cli.command(name="validate")
@click.argument(
    "tenant_files", nargs=-1, required=True, type=click.Path(path_type=Path)
)
def validate_cmd(tenant_files: tuple[Path, ...]) -> None:
    """Validate Tenant manifests.

    Exit codes: 0 all valid, 1 a spec is invalid, 2 a file cannot be read.
    """
    parser = ManifestParser()
    table = Table(title="Tenant validation", show_header=True, header_style="bold cyan")
    table.add_column("File", style="dim")
    table.add_column("Tenant", style="green", no_wrap=True)
    table.add_column("Result")

    invalid = 0
    for path in tenant_files:
        try:
            records = parser.parse_file(path)
        except ManifestError as e:
            err_console.print(f"[red]Error:[/red] {e}")
            sys.exit(EXIT_ERROR)
        for record in records:
            try:
                Tenant.from_record(record)
            except TenantValidationError as e:
                invalid += 1
                table.add_row(str(path), record.name, f"[red]{e.message}[/red]")
            else:
                table.add_row(str(path), record.name, "[green]valid[/green]")

    console.print(table)
    sys.exit(EXIT_FAILURE if invalid else EXIT_SUCCESS)


@cli.command(name="render")
@click.argument("tenant_file", type=click.Path(path_type=Path))
@click.option(
    "--tenant",
    "tenant_name",
    default=None,
    help="Only render this tenant from the file",
)
def render_cmd(tenant_file: Path, tenant_name: str | None) -> None:
    """Print the child resources of each tenant as YAML."""
    try:
        records = ManifestParser().parse_file(tenant_file)
    except ManifestError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        sys.exit(EXIT_ERROR)

    if tenant_name is not None:
        records = [r for r in records if r.name == tenant_name]
        if not records:
            err_console.print(f"[red]Error:[/red] no tenant {tenant_name!r} in file")
            sys.exit(EXIT_ERROR)

    manifests: list[dict[str, Any]] = []
    for record in records:
        try:
            tenant = Tenant.from_record(record)
        except TenantValidationError as e:
            err_console.print(f"[red]Invalid tenant:[/red] {e}")
            sys.exit(EXIT_FAILURE)
        manifests.extend(manifest.body for manifest in build_children(tenant))

    click.echo(dump_manifests(manifests), nl=False)


# Register commands
cli.add_command(config_command)


def main() -> None:
    """Main entry point for the CLI."""
    cli(auto_envvar_prefix="TENANTCTL")


if __name__ == "__main__":
    main()
