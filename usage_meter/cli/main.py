"""
CLI interface for Usage Meter.

Scheduled jobs (aggregation, cleanup, monthly reset) and dashboard
queries over the usage and latency telemetry.
"""

import json
import logging
import sqlite3
import sys
from dataclasses import replace
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_meter.config.loader import MeterConfig, resolve_config
from usage_meter.core.aggregator import RollupAggregator
from usage_meter.core.alerts import AlertSeverity, ResponseTimeAlertChecker
from usage_meter.core.analytics import PERIODS, CostAnalytics
from usage_meter.core.budget import BudgetAlertLevel, BudgetMonitor
from usage_meter.core.latency import LatencyAnalytics
from usage_meter.core.pricing import PriceCatalog
from usage_meter.core.recorder import UsageRecorder
from usage_meter.core.thresholds import ThresholdResolver
from usage_meter.demo.seed_demo_data import seed_demo_data
from usage_meter.storage.latency_repository import LatencyRepository, ThresholdRepository
from usage_meter.storage.models import PeriodType, PriceCatalogEntry
from usage_meter.storage.repository import UsageRepository, initialize_schema, upsert_model_price

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _config(ctx: typer.Context) -> MeterConfig:
    return ctx.obj["config"]


def _db_path(ctx: typer.Context) -> str:
    return _config(ctx).database_path


def _print_json(result) -> None:
    if isinstance(result, list):
        data = [item.to_dict() for item in result]
    else:
        data = result.to_dict()
    console.print_json(json.dumps(data))


def _format_currency(amount: float) -> str:
    return f"${amount:,.4f}"


def _format_ms(value: float) -> str:
    return f"{value:,.0f} ms"


def _format_percent_change(percent: float) -> str:
    return f"{'+' if percent >= 0 else ''}{percent:,.1f}%"


def _check_period(period: str) -> None:
    if period not in PERIODS:
        console.print(f"[red]Error:[/] period must be one of {', '.join(PERIODS)}")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML config (defaults to $USAGE_METER_CONFIG)"
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database path (overrides the config file)"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level"
    )
):
    """Usage Meter CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = resolve_config(config_path)
        if db:
            config = replace(config, database_path=db)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("Usage Meter - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Usage Meter database."""
    try:
        initialize_schema(_db_path(ctx))
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("seed-demo")
def seed_demo(ctx: typer.Context):
    """Insert demo prices, tenants, usage and latency records."""
    try:
        counts = seed_demo_data(_db_path(ctx))
    except sqlite3.Error as e:
        console.print(f"[red]Error seeding demo data:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"[green]✓[/] Demo data inserted: {counts['usage_records']} usage records, "
        f"{counts['latency_records']} latency records"
    )


@app.command("aggregate-hourly")
def aggregate_hourly(
    ctx: typer.Context,
    period_start: Optional[datetime] = typer.Option(
        None,
        "--period-start",
        help="Hour to (re)aggregate instead of the previous one"
    )
):
    """Roll up the previous full hour of latency records."""
    aggregator = RollupAggregator(LatencyRepository(_db_path(ctx)))
    try:
        result = aggregator.aggregate_hourly_stats(period_start)
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _report_aggregation(result)


@app.command("aggregate-daily")
def aggregate_daily(
    ctx: typer.Context,
    period_start: Optional[datetime] = typer.Option(
        None,
        "--period-start",
        help="Day to (re)aggregate instead of yesterday"
    )
):
    """Roll up the previous full day of latency records."""
    aggregator = RollupAggregator(LatencyRepository(_db_path(ctx)))
    try:
        result = aggregator.aggregate_daily_stats(period_start)
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _report_aggregation(result)


def _report_aggregation(result) -> None:
    console.print(
        f"{result.period_type.value.capitalize()} aggregation for "
        f"{result.period_start.isoformat()}: processed={result.processed} errors={result.errors}"
    )
    if result.errors:
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def cleanup(
    ctx: typer.Context,
    retention_days: Optional[int] = typer.Option(
        None,
        "--retention-days",
        "-r",
        help="Days of raw latency records to keep (defaults to config)"
    )
):
    """Delete raw latency records older than the retention window."""
    aggregator = RollupAggregator(LatencyRepository(_db_path(ctx)))
    days = retention_days if retention_days is not None else _config(ctx).retention_days
    try:
        result = aggregator.cleanup_old_logs(days)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"Deleted {result.deleted_count} records older than {result.cutoff.isoformat()}")


@app.command("reset-monthly")
def reset_monthly(ctx: typer.Context):
    """Zero every tenant's monthly usage counter."""
    config = _config(ctx)
    recorder = UsageRecorder(
        UsageRepository(config.database_path),
        PriceCatalog.from_database(config.database_path, config.price_cache_ttl_seconds),
    )
    try:
        count = recorder.reset_monthly_usage()
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Monthly usage reset for {count} tenants")


@app.command()
def overview(
    ctx: typer.Context,
    period: str = typer.Option("month", "--period", "-p", help="today, week or month"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter by tenant"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Show token and cost totals by model and feature."""
    _check_period(period)
    result = CostAnalytics(UsageRepository(_db_path(ctx))).get_usage_overview(period, tenant)
    if as_json:
        _print_json(result)
        return

    console.print(f"\n[bold]Usage overview ({period})[/bold]")
    console.print("-" * 40)
    console.print(f"Total tokens: {result.total_tokens:,} "
                  f"(input {result.input_tokens:,} / output {result.output_tokens:,})")
    console.print(f"Total cost: {_format_currency(result.total_cost)}")

    table = Table(title="By model")
    table.add_column("Model")
    table.add_column("Input tokens", justify="right")
    table.add_column("Output tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Share", justify="right")
    for model in result.by_model:
        table.add_row(
            model.display_name,
            f"{model.input_tokens:,}",
            f"{model.output_tokens:,}",
            _format_currency(model.total_cost),
            f"{model.percentage:.1f}%",
        )
    console.print(table)

    table = Table(title="By feature")
    table.add_column("Feature")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Share", justify="right")
    for feature in result.by_feature:
        table.add_row(
            feature.feature_type,
            f"{feature.total_tokens:,}",
            _format_currency(feature.total_cost),
            f"{feature.percentage:.1f}%",
        )
    console.print(table)


@app.command()
def trend(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", "-d", help="Number of trailing days"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter by tenant"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Show daily usage totals."""
    result = CostAnalytics(UsageRepository(_db_path(ctx))).get_usage_trend(days, tenant)
    if as_json:
        _print_json(result)
        return

    if not result:
        console.print("\n[dim]No usage data found.[/]")
        return

    table = Table(title=f"Daily usage (last {days} days)")
    table.add_column("Date")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Models")
    for day in result:
        table.add_row(
            day.date,
            f"{day.total_tokens:,}",
            _format_currency(day.total_cost),
            ", ".join(sorted(day.by_model)),
        )
    console.print(table)


@app.command()
def forecast(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter by tenant"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Project month-end cost."""
    result = CostAnalytics(UsageRepository(_db_path(ctx))).get_forecast(tenant)
    if as_json:
        _print_json(result)
        return

    console.print("\n[bold]Month-end forecast[/bold]")
    console.print("-" * 40)
    console.print(f"Current month usage: {_format_currency(result.current_month_usage)}")
    console.print(f"Daily average: {_format_currency(result.daily_average)}")
    console.print(f"Projected monthly usage: {_format_currency(result.projected_monthly_usage)}")
    console.print(f"Days passed: {result.days_passed}/{result.days_in_month} "
                  f"({result.days_remaining} remaining)")
    console.print(f"Trend: {result.trend.value}")
    console.print(f"Confidence: {result.confidence_level.value}")


@app.command("top-tenants")
def top_tenants(
    ctx: typer.Context,
    period: str = typer.Option("month", "--period", "-p", help="today, week or month"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of tenants"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Rank tenants by cost."""
    _check_period(period)
    result = CostAnalytics(UsageRepository(_db_path(ctx))).get_top_tenants_by_usage(period, limit)
    if as_json:
        _print_json(result)
        return

    table = Table(title=f"Top tenants ({period})")
    table.add_column("Tenant")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for tenant in result:
        table.add_row(tenant.tenant_id, f"{tenant.total_tokens:,}",
                      _format_currency(tenant.total_cost))
    console.print(table)


@app.command()
def anomalies(
    ctx: typer.Context,
    multiplier: Optional[float] = typer.Option(
        None,
        "--multiplier",
        "-m",
        help="Day-over-day cost ratio to flag (defaults to config)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Flag tenants whose cost today jumped versus yesterday."""
    threshold = multiplier if multiplier is not None else _config(ctx).anomaly_threshold_multiplier
    try:
        result = CostAnalytics(UsageRepository(_db_path(ctx))).detect_anomalies(threshold)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if as_json:
        _print_json(result)
        return

    if not result:
        console.print("[green]✓[/] No cost anomalies detected")
        return

    table = Table(title="Cost anomalies")
    table.add_column("Tenant")
    table.add_column("Yesterday", justify="right")
    table.add_column("Today", justify="right")
    table.add_column("Ratio", justify="right")
    for anomaly in result:
        table.add_row(
            anomaly.tenant_id,
            _format_currency(anomaly.yesterday_cost),
            _format_currency(anomaly.today_cost),
            f"{anomaly.increase_ratio:.2f}x",
        )
    console.print(table)


def _budget_monitor(ctx: typer.Context) -> BudgetMonitor:
    config = _config(ctx)
    return BudgetMonitor(UsageRepository(config.database_path), config.budget)


_BUDGET_COLORS = {
    BudgetAlertLevel.NORMAL: "green",
    BudgetAlertLevel.WARNING: "yellow",
    BudgetAlertLevel.CRITICAL: "red",
    BudgetAlertLevel.EXCEEDED: "bold red",
}


@app.command()
def budget(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Show one tenant"),
    alerts_only: bool = typer.Option(
        False,
        "--alerts-only",
        help="Only tenants at warning level or above"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Show monthly spend against each tenant's budget."""
    monitor = _budget_monitor(ctx)
    if tenant:
        try:
            result = [monitor.check_budget_status(tenant)]
        except sqlite3.Error as e:
            console.print(f"[red]Error:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
    elif alerts_only:
        result = monitor.get_tenants_needing_budget_alert()
    else:
        result = monitor.get_all_budget_statuses()

    if as_json:
        _print_json(result[0] if tenant else result)
        return

    if not result:
        console.print("[green]✓[/] No tenants to report")
        return

    table = Table(title="Monthly budgets")
    table.add_column("Tenant")
    table.add_column("Used", justify="right")
    table.add_column("Budget", justify="right")
    table.add_column("Usage", justify="right")
    table.add_column("Level")
    for status in result:
        color = _BUDGET_COLORS[status.alert_level]
        table.add_row(
            status.tenant_id,
            _format_currency(status.current_usage_usd),
            _format_currency(status.monthly_budget_usd)
            + (" *" if status.is_overridden else ""),
            f"{status.usage_percentage:.1f}%",
            f"[{color}]{status.alert_level.value}[/]",
        )
    console.print(table)


@app.command("set-budget")
def set_budget(
    ctx: typer.Context,
    tenant: str = typer.Argument(..., help="Tenant id"),
    monthly: Optional[float] = typer.Option(None, "--monthly", help="Monthly budget in USD"),
    clear: bool = typer.Option(False, "--clear", help="Remove the override")
):
    """Override a tenant's monthly budget."""
    if (monthly is None) == (not clear):
        console.print("[red]Error:[/] pass exactly one of --monthly or --clear")
        sys.exit(EXIT_CODE_FAIL)

    try:
        _budget_monitor(ctx).set_budget_override(tenant, None if clear else monthly)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Budget override {'cleared' if clear else 'saved'} for {tenant}")


@app.command()
def latency(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter by tenant"),
    chatbot: Optional[str] = typer.Option(None, "--chatbot", "-b", help="Filter by chatbot"),
    period: Optional[PeriodType] = typer.Option(
        None,
        "--period",
        "-p",
        help="Show rollup trend (hourly or daily) instead of the realtime view"
    ),
    limit: int = typer.Option(24, "--limit", "-n", help="Number of trend points"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Show response-time statistics."""
    analytics = LatencyAnalytics(LatencyRepository(_db_path(ctx)))

    if period is not None:
        points = analytics.get_response_time_trend(period, limit, tenant, chatbot)
        if as_json:
            _print_json(points)
            return
        table = Table(title=f"Response time trend ({period.value})")
        table.add_column("Period")
        table.add_column("Requests", justify="right")
        table.add_column("Avg", justify="right")
        table.add_column("P95", justify="right")
        table.add_column("P99", justify="right")
        table.add_column("Cache hits", justify="right")
        for point in points:
            table.add_row(
                point.period_start.isoformat(),
                str(point.request_count),
                _format_ms(point.avg_ms),
                _format_ms(point.p95_ms),
                _format_ms(point.p99_ms),
                f"{point.cache_hit_rate:.0%}",
            )
        console.print(table)
        return

    result = analytics.get_performance_overview(tenant, chatbot)
    breakdown = analytics.get_latency_breakdown(tenant, chatbot)
    if as_json:
        console.print_json(json.dumps({
            "overview": result.to_dict(),
            "breakdown": breakdown.to_dict(),
        }))
        return

    current = result.current
    console.print("\n[bold]Response time (last hour)[/bold]")
    console.print("-" * 40)
    console.print(f"Requests: {current.request_count} (cache hits {current.cache_hit_rate:.0%})")
    console.print(f"Avg: {_format_ms(current.avg_ms)} "
                  f"({_format_percent_change(result.comparison.avg_change_percent)} vs yesterday)")
    console.print(f"P50: {_format_ms(current.p50_ms)}")
    console.print(f"P95: {_format_ms(current.p95_ms)} "
                  f"({_format_percent_change(result.comparison.p95_change_percent)} vs yesterday)")
    console.print(f"P99: {_format_ms(current.p99_ms)}")

    table = Table(title="Stage breakdown (cache hits excluded)")
    table.add_column("Stage")
    table.add_column("Avg", justify="right")
    table.add_column("P95", justify="right")
    for name, stage in (("LLM", breakdown.llm), ("Search", breakdown.search),
                        ("Rewrite", breakdown.rewrite)):
        table.add_row(name, _format_ms(stage.avg_ms), _format_ms(stage.p95_ms))
    table.add_row("Other", _format_ms(breakdown.other_avg_ms), "-")
    console.print(table)


@app.command("slow-chatbots")
def slow_chatbots(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter by tenant"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of chatbots"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Rank chatbots by last-hour P95 response time."""
    result = LatencyAnalytics(LatencyRepository(_db_path(ctx))).get_top_slow_chatbots(limit, tenant)
    if as_json:
        _print_json(result)
        return

    table = Table(title="Slowest chatbots (last hour)")
    table.add_column("Tenant")
    table.add_column("Chatbot")
    table.add_column("Requests", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("P95", justify="right")
    for item in result:
        table.add_row(
            item.tenant_name,
            item.chatbot_name,
            str(item.request_count),
            _format_ms(item.avg_ms),
            _format_ms(item.p95_ms),
        )
    console.print(table)


def _resolver(ctx: typer.Context) -> ThresholdResolver:
    config = _config(ctx)
    return ThresholdResolver(ThresholdRepository(config.database_path), config.alerts)


@app.command()
def alerts(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Check P95 breaches and response-time spikes."""
    checker = ResponseTimeAlertChecker(LatencyRepository(_db_path(ctx)), _resolver(ctx))
    result = checker.check_all_response_time_alerts()
    if as_json:
        _print_json(result)
        return

    if not result:
        console.print("[green]✓[/] No response time alerts")
        return

    for alert in result:
        color = "red" if alert.severity == AlertSeverity.CRITICAL else "yellow"
        console.print(f"[{color}]{alert.severity.value.upper()}[/] {alert.message}")


@app.command()
def threshold(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant scope"),
    chatbot: Optional[str] = typer.Option(None, "--chatbot", "-b", help="Chatbot scope"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON")
):
    """Show the alert thresholds that apply to a scope."""
    result = _resolver(ctx).get_threshold(tenant, chatbot)
    if as_json:
        _print_json(result)
        return

    console.print(f"P95 threshold: {_format_ms(result.p95_threshold_ms)}")
    console.print(f"Spike threshold: {result.avg_spike_threshold:.2f}x")
    console.print(f"Alerts enabled: {'yes' if result.alert_enabled else 'no'}")
    console.print(f"Cooldown: {result.alert_cooldown_minutes} min")


@app.command("set-threshold")
def set_threshold(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant scope"),
    chatbot: Optional[str] = typer.Option(None, "--chatbot", "-b", help="Chatbot scope"),
    p95_ms: Optional[float] = typer.Option(None, "--p95-ms", help="P95 threshold in ms"),
    spike: Optional[float] = typer.Option(None, "--spike", help="Average spike ratio"),
    enabled: Optional[bool] = typer.Option(None, "--enabled/--disabled", help="Toggle alerts"),
    cooldown: Optional[int] = typer.Option(None, "--cooldown", help="Cooldown in minutes")
):
    """Create or update the threshold override for a scope."""
    if chatbot and not tenant:
        console.print("[red]Error:[/] --chatbot requires --tenant")
        sys.exit(EXIT_CODE_FAIL)

    values = {
        "p95_threshold_ms": p95_ms,
        "avg_spike_threshold": spike,
        "alert_enabled": enabled,
        "alert_cooldown_minutes": cooldown,
    }
    values = {key: value for key, value in values.items() if value is not None}
    if not values:
        console.print("[red]Error:[/] nothing to update")
        sys.exit(EXIT_CODE_FAIL)

    try:
        _resolver(ctx).save_threshold(values, tenant, chatbot)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Threshold saved")


@app.command("set-price")
def set_price(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Model provider, e.g. openai"),
    model_id: str = typer.Argument(..., help="Provider model id"),
    input_price: float = typer.Option(..., "--input", help="USD per million input tokens"),
    output_price: float = typer.Option(..., "--output", help="USD per million output tokens"),
    display_name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    embedding: bool = typer.Option(False, "--embedding", help="Embedding model"),
    inactive: bool = typer.Option(False, "--inactive", help="Deactivate the model")
):
    """Create or update a model price."""
    config = _config(ctx)
    try:
        entry = PriceCatalogEntry(
            provider=provider,
            model_id=model_id,
            display_name=display_name or model_id,
            input_price_per_million=input_price,
            output_price_per_million=output_price,
            is_embedding=embedding,
            is_active=not inactive,
        )
        upsert_model_price(entry, datetime.now(), config.database_path)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    catalog = PriceCatalog.from_database(config.database_path, config.price_cache_ttl_seconds)
    status = "active" if catalog.get_price(provider, model_id) else "inactive"
    console.print(f"[green]✓[/] Price saved for {entry.key} ({status})")


if __name__ == "__main__":
    app()
