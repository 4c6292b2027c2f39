"""CLI entry point for vdiwave.

Commands:
    vdiwave recompose        # Recompose linked-clone pools in staggered waves
    vdiwave refresh          # Refresh linked-clone pools in staggered waves
    vdiwave pools            # Show pools and whether a run would touch them
    vdiwave config show      # Show configuration
    vdiwave config set K V   # Update one configuration value
"""

import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from vdiwave import __version__
from vdiwave.broker_client import TOKEN_ENV_VAR, BrokerClient, BrokerClientError, BrokerSession
from vdiwave.config_manager import ConfigError, ConfigManager, VdiwaveConfig
from vdiwave.eligibility import PoolSelector, classify_pool
from vdiwave.inventory import InventoryError, LinkedClonePool, group_clones_by_pool
from vdiwave.maintenance_scheduler import (
    MaintenanceScheduler,
    MaintenanceSchedulerError,
    PlanResult,
)
from vdiwave.schedule_executor import ScheduleExecutionError, SlotResult
from vdiwave.wave_partitioner import MaintenanceOperation

logger = logging.getLogger(__name__)

console = Console()


def _load_config(config: str | None) -> VdiwaveConfig:
    try:
        return ConfigManager.load_config(config)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _build_client(broker_url: str | None, config: str | None, cfg: VdiwaveConfig) -> BrokerClient:
    try:
        url = ConfigManager.get_broker_url(broker_url, config)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if not url:
        click.echo(
            "Error: No broker URL specified. Use --broker-url or 'vdiwave config set broker_url URL'.",
            err=True,
        )
        sys.exit(1)

    session = BrokerSession.from_env(url, verify_ssl=cfg.verify_ssl, timeout=cfg.request_timeout)
    if not session.token:
        logger.warning(f"{TOKEN_ENV_VAR} is not set; connecting without a token")
    try:
        return BrokerClient(session)
    except BrokerClientError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _render_schedule(result: PlanResult) -> None:
    """Render the planned schedule as a table."""
    assert result.schedule is not None
    title = f"{result.operation.value.capitalize()} schedule"
    if result.simulated:
        title += " (simulated)"

    table = Table(title=title)
    table.add_column("Delay", justify="right", style="cyan")
    table.add_column("Wave", justify="right")
    table.add_column("Clones", justify="right")
    table.add_column("Pools")
    table.add_column("Names", overflow="fold")

    for batch in result.schedule:
        table.add_row(
            f"+{batch.delay_minutes}m",
            str(batch.wave_index),
            str(len(batch.clones)),
            ", ".join(batch.group_by_pool()),
            ", ".join(batch.clone_names),
        )
    console.print(table)


def _render_slot(slot: SlotResult) -> None:
    if slot.simulated:
        return
    style = "red" if slot.failed else "green"
    console.print(f"[{style}]{slot.format_summary()}[/{style}]")
    for pool_id, message in slot.errors:
        console.print(f"  [red]{pool_id}:[/red] {message}")


def _render_totals(result: PlanResult) -> None:
    totals = result.totals
    console.print(
        f"\n[bold]Total:[/bold] Attempted: {totals.attempted}, "
        f"Successful: {totals.successful}, Unchanged: {totals.unchanged}"
    )
    if result.failed_slots:
        console.print(f"[yellow]{len(result.failed_slots)} slot(s) had failures[/yellow]")


def _run_operation(
    operation: MaintenanceOperation,
    pools: tuple[str, ...],
    exclude: tuple[str, ...],
    force_logoff: bool | None,
    stop_on_error: bool | None,
    simulate: bool,
    broker_url: str | None,
    config: str | None,
) -> None:
    cfg = _load_config(config)
    client = _build_client(broker_url, config, cfg)
    scheduler = MaintenanceScheduler(
        inventory=client,
        replica_lookup=client,
        issuer=client,
        replica_check_workers=cfg.replica_check_workers,
    )

    run = (
        scheduler.schedule_recompose
        if operation is MaintenanceOperation.RECOMPOSE
        else scheduler.schedule_refresh
    )
    try:
        result = run(
            pools=list(pools) if pools else "all",
            exclude=list(exclude) + [p for p in cfg.default_exclude if p not in exclude],
            force_logoff=cfg.force_logoff if force_logoff is None else force_logoff,
            stop_on_error=cfg.stop_on_error if stop_on_error is None else stop_on_error,
            simulate=simulate,
            progress_callback=_render_slot,
        )
    except ScheduleExecutionError as e:
        if e.plan is not None and e.plan.has_schedule:
            _render_schedule(e.plan)
            _render_totals(e.plan)
        click.echo(f"Error: {e}", err=True)
        click.echo(f"Dispatch stopped after {len(e.results)} slot(s).", err=True)
        sys.exit(1)
    except MaintenanceSchedulerError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not result.has_schedule:
        click.echo(result.message or "Nothing to schedule.")
        return

    _render_schedule(result)
    if not simulate:
        _render_totals(result)


def _operation_options(func):
    """Options shared by recompose and refresh."""
    options = [
        click.option(
            "--pool",
            "pools",
            multiple=True,
            help="Pool id to include (repeatable, default: all pools)",
        ),
        click.option(
            "--except",
            "exclude",
            multiple=True,
            help="Pool id to leave untouched (repeatable)",
        ),
        click.option(
            "--force-logoff/--no-force-logoff",
            default=None,
            help="Log users off before the operation (default: from config)",
        ),
        click.option(
            "--stop-on-error/--no-stop-on-error",
            default=None,
            help="Stop dispatching after the first failed command (default: from config)",
        ),
        click.option("--simulate", is_flag=True, help="Show the schedule without dispatching"),
        click.option("--broker-url", help="Broker API base URL", type=str),
        click.option("--config", help="Config file path", type=click.Path()),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group(context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__)
def main(verbose: bool) -> None:
    """vdiwave - wave-scheduled maintenance for linked-clone desktop pools.

    Spreads recompose and refresh operations over time so the provisioning
    backend is never asked to rebuild a whole pool at once.

    \b
    Examples:
        vdiwave recompose --simulate
        vdiwave recompose --pool sales --pool support --force-logoff
        vdiwave refresh --except kiosk
        vdiwave pools

    \b
    CONFIGURATION:
        Config file: ~/.vdiwave/config.toml
        Broker token: VDIWAVE_BROKER_TOKEN environment variable
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")


@main.command()
@_operation_options
def recompose(
    pools: tuple[str, ...],
    exclude: tuple[str, ...],
    force_logoff: bool | None,
    stop_on_error: bool | None,
    simulate: bool,
    broker_url: str | None,
    config: str | None,
) -> None:
    """Recompose pools onto their parent snapshot in staggered waves.

    \b
    Examples:
        vdiwave recompose --simulate
        vdiwave recompose --pool sales --stop-on-error
    """
    _run_operation(
        MaintenanceOperation.RECOMPOSE,
        pools,
        exclude,
        force_logoff,
        stop_on_error,
        simulate,
        broker_url,
        config,
    )


@main.command()
@_operation_options
def refresh(
    pools: tuple[str, ...],
    exclude: tuple[str, ...],
    force_logoff: bool | None,
    stop_on_error: bool | None,
    simulate: bool,
    broker_url: str | None,
    config: str | None,
) -> None:
    """Refresh pools to their provisioned state in staggered waves.

    \b
    Examples:
        vdiwave refresh --simulate
        vdiwave refresh --except kiosk --force-logoff
    """
    _run_operation(
        MaintenanceOperation.REFRESH,
        pools,
        exclude,
        force_logoff,
        stop_on_error,
        simulate,
        broker_url,
        config,
    )


@main.command(name="pools")
@click.option("--except", "exclude", multiple=True, help="Pool id to treat as excluded")
@click.option("--broker-url", help="Broker API base URL", type=str)
@click.option("--config", help="Config file path", type=click.Path())
def pools_command(exclude: tuple[str, ...], broker_url: str | None, config: str | None) -> None:
    """Show pools and whether a recompose/refresh run would include them."""
    cfg = _load_config(config)
    client = _build_client(broker_url, config, cfg)

    try:
        all_pools = client.list_pools()
        clones_by_pool = group_clones_by_pool(client.list_clones())
    except (BrokerClientError, InventoryError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    excluded = frozenset(exclude) | frozenset(cfg.default_exclude)
    table = Table(title="Pools")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Snapshot", overflow="fold")
    table.add_column("Clones", justify="right")
    table.add_column("Status")

    for pool in sorted(all_pools, key=lambda p: p.id):
        reason = classify_pool(pool, PoolSelector(), excluded, clones_by_pool)
        snapshot = pool.parent_snapshot_path if isinstance(pool, LinkedClonePool) else "-"
        status = "[green]eligible[/green]" if reason is None else f"[yellow]{reason.value}[/yellow]"
        table.add_row(
            pool.id, pool.name, snapshot or "-", str(len(clones_by_pool.get(pool.id, []))), status
        )
    console.print(table)


@main.group(name="config")
def config_group() -> None:
    """Show or change vdiwave configuration."""
    pass


@config_group.command(name="show")
@click.option("--config", help="Config file path", type=click.Path())
def config_show(config: str | None) -> None:
    """Show current configuration."""
    cfg = _load_config(config)
    for key, value in cfg.to_dict().items():
        click.echo(f"{key} = {value}")


@config_group.command(name="set")
@click.argument("key", type=str)
@click.argument("value", type=str)
@click.option("--config", help="Config file path", type=click.Path())
def config_set(key: str, value: str, config: str | None) -> None:
    """Set one configuration value.

    \b
    Examples:
        vdiwave config set broker_url https://broker.example.com/api
        vdiwave config set default_exclude kiosk,lab
        vdiwave config set replica_check_workers 4
    """
    try:
        parsed = VdiwaveConfig.parse_value(key, value)
        ConfigManager.update_config(config, **{key: parsed})
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Set {key} = {parsed}")


if __name__ == "__main__":
    main()
