"""Database collector CLI."""

import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, metrics
from .agent import Agent
from .config import load_config
from .credentials import EngineKind, SecretsManagerSource, StaticCredentialSource
from .engines import EngineRegistry, list_engines
from .errors import CollectorError, ConfigError, UnsupportedEngineError
from .orchestrator import CycleResult

console = Console()


def setup_logging(level: str):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


@click.group()
@click.version_option(version=__version__, prog_name="database-collector")
def main():
    """Database collector - ship database metrics to Amazon Managed Prometheus."""
    pass


@main.command()
@click.option("--config", "-c", "config_path", help="Path to config file")
@click.option("--url", "-u", help="Prometheus remote-write URL")
@click.option("--region", help="AWS region")
@click.option("--schedule", "-s", help="Interval in seconds, '@every 5m', or a cron expression")
@click.option("--concurrency", type=int, help="Maximum databases scraped at once")
@click.option("--log-level", default=None, help="Log level")
@click.option("--once", is_flag=True, help="Run one cycle and exit (implied by RUN_MODE=LAMBDA)")
def run(
    config_path: Optional[str],
    url: Optional[str],
    region: Optional[str],
    schedule: Optional[str],
    concurrency: Optional[int],
    log_level: Optional[str],
    once: bool,
):
    """Run the database metrics collector."""
    config = load_config(config_path)

    # Override with CLI options
    if url:
        config.remote_write.url = url
    if region:
        config.remote_write.region = region
    if schedule:
        config.schedule.cron = schedule
    if concurrency is not None:
        config.concurrency = concurrency
    if log_level:
        config.log_level = log_level

    setup_logging(config.log_level)

    try:
        config.validate()
    except ConfigError as e:
        console.print(f"[red]x Invalid configuration: {e}[/red]")
        sys.exit(1)

    if config.metrics_port:
        metrics.start_metrics_server(config.metrics_port)

    agent = Agent(config)
    agent.setup()

    try:
        if once or config.schedule.run_mode == "LAMBDA":
            cycle = agent.run_once()
            _display_cycle(cycle)
            if cycle.failed:
                sys.exit(1)
        else:
            console.print(Panel(
                f"[bold green]Database Collector v{__version__}[/bold green]\n"
                f"Endpoint: {config.remote_write.url}\n"
                f"Region: {config.remote_write.region}\n"
                f"Engines: {', '.join(list_engines())}\n"
                f"Schedule: {config.schedule.cron}\n"
                f"Concurrency: {config.concurrency}",
                title="Starting",
            ))
            agent.run()
    finally:
        agent.close()


def _display_cycle(cycle: CycleResult):
    """Display the outcome of a cycle in a table."""
    if not cycle.results:
        console.print("[yellow]No databases discovered[/yellow]")
        return

    table = Table(title=f"Scraped {len(cycle)} Databases in {cycle.duration_ms:.0f}ms", show_lines=True)
    table.add_column("Credential", style="cyan")
    table.add_column("Engine", style="green")
    table.add_column("Status")
    table.add_column("Series", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error", style="dim")

    for result in cycle.results:
        status = "[green]+ ok" if result.success else f"[red]x {result.error_kind}"
        table.add_row(
            result.credential_id,
            result.engine,
            status,
            str(result.series_sent),
            f"{result.duration_ms:.0f}ms",
            result.error or "",
        )

    console.print(table)


@main.command()
@click.option("--config", "-c", "config_path", help="Path to config file")
def discover(config_path: Optional[str]):
    """List credentials eligible for collection without connecting to them."""
    config = load_config(config_path)
    discovery = config.discovery

    if discovery.source == "static":
        source = StaticCredentialSource(discovery.databases)
        console.print(f"[bold]Static credentials ({len(discovery.databases)} configured)[/bold]\n")
    else:
        source = SecretsManagerSource(
            region=config.remote_write.region or None,
            tag_key=discovery.tag_key,
            tag_value=discovery.tag_value,
        )
        console.print(
            f"[bold]Secrets tagged {discovery.tag_key}={discovery.tag_value} "
            f"in {config.remote_write.region or 'default region'}[/bold]\n"
        )

    try:
        refs = source.list_credentials()
    except CollectorError as e:
        console.print(f"[red]x {e}[/red]")
        sys.exit(1)

    table = Table(show_header=True)
    table.add_column("Credential", style="cyan")
    table.add_column("Identifier")
    table.add_column("Engine", style="green")
    table.add_column("Status")

    for ref in refs:
        try:
            record = source.fetch_credential(ref.id)
        except CollectorError as e:
            table.add_row(ref.id, "-", "-", f"[red]x {e}[/red]")
            continue

        try:
            kind = EngineKind.parse(record.engine)
        except UnsupportedEngineError:
            table.add_row(ref.id, record.identifier, record.engine, "[yellow]! unsupported engine[/yellow]")
            continue

        status = "[green]+ ready" if EngineRegistry.is_registered(kind) else "[red]x no collector"
        table.add_row(ref.id, record.identifier, kind.value, status)

    console.print(table)
    console.print(f"\n[dim]{len(refs)} credentials found[/dim]")


@main.command()
def engines():
    """List supported database engines."""
    console.print("[bold]Supported Database Engines:[/bold]\n")

    table = Table(show_header=True)
    table.add_column("Engine", style="cyan")
    table.add_column("Collector")
    table.add_column("Driver", style="dim")

    for kind, collector_class in sorted(EngineRegistry.factories().items(), key=lambda item: item[0].value):
        driver = getattr(collector_class, "driver", "") or "-"
        table.add_row(kind.value, collector_class.__name__, driver)

    console.print(table)


@main.command()
@click.option("--output", "-o", type=click.Path(), help="Output file path")
def init(output: Optional[str]):
    """Generate a sample configuration file."""
    sample_config = """# Database Collector Configuration
# Discovers databases from AWS Secrets Manager and ships their metrics
# to Amazon Managed Prometheus.

# Prometheus remote-write endpoint
remote_write:
  url: ${PROMETHEUS_REMOTE_WRITE_URL}  # Or set via environment
  region: us-east-1
  timeout: 30
  # role_arn: arn:aws:iam::123456789012:role/aps-writer  # cross-account writes

# Where database credentials come from
discovery:
  source: secretsmanager  # or "static"
  tag_key: database-collector:enabled
  tag_value: "true"
  refetch_credentials: false
  cache_ttl: 3600  # seconds a fetched secret is reused

  # Static credentials (source: static)
  # databases:
  #   orders-db:
  #     engine: postgres
  #     host: orders.abc123.us-east-1.rds.amazonaws.com
  #     port: 5432
  #     username: monitor
  #     password: secret
  #     dbname: orders

# When cycles run
schedule:
  cron: "@every 5m"  # seconds, "@every <duration>", or a cron expression
  run_mode: CRON     # CRON, or LAMBDA to run one cycle and exit

# Collector settings
concurrency: 10
query_timeout: 10
connect_timeout: 10
# custom_metrics: /etc/database-collector/custom-metrics.yaml
# engine_options:         # driver settings passed to every engine
#   sslmode: require
# metrics_port: 9100
log_level: INFO
"""

    output_path = output or "database-collector.yaml"

    with open(output_path, "w") as f:
        f.write(sample_config)

    console.print(f"[green]+ Created config file: {output_path}[/green]")
    console.print("\nEdit the file to point at your remote-write endpoint, then run:")
    console.print(f"  [cyan]database-collector run -c {output_path}[/cyan]")


if __name__ == "__main__":
    main()
