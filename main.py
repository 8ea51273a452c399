#!/usr/bin/env python3
"""KPI Watch - CLI Entry Point."""
import sys
import time
import json
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.table import Table

from __version__ import __version__
from models.enums import CHECK_INTERVALS

console = Console()

INTERVAL_HELP = "Check interval in seconds: " + ", ".join(
    f"{seconds} ({label})" for seconds, label in CHECK_INTERVALS.items()
)

STATUS_STYLES = {
    "ok": "green",
    "warning": "yellow",
    "critical": "bold red",
    "recovery": "cyan",
}


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from utils.logger import setup_logging
    from config import load_config
    from models.database import Database
    from alerts.engine import AlertEngine

    config = load_config(config_path)
    log_cfg = config.get("logging", {})
    setup_logging("DEBUG" if verbose else log_cfg.get("level", "INFO"), log_cfg.get("file"))

    db = Database(config["database"]["path"])
    db.connect()

    engine = AlertEngine.from_config(config, db)
    return {"config": config, "db": db, "engine": engine}


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="kpiwatch")
@click.pass_context
def cli(ctx, config_path, verbose):
    """KPI Watch - metric history, threshold alerts and notifications."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        ctx.obj["_components"] = _init_components(ctx.obj.get("config_path"), ctx.obj.get("verbose"))
        ctx.call_on_close(ctx.obj["_components"]["db"].close)
    return ctx.obj["_components"]


def _styled_status(status):
    s = status.value if hasattr(status, "value") else str(status)
    style = STATUS_STYLES.get(s, "white")
    return f"[{style}]{s.upper()}[/{style}]"


# ──────────────────────────────────────────────────────
# RULES
# ──────────────────────────────────────────────────────
@cli.group()
def rules():
    """Alert rule management."""
    pass


@rules.command("add")
@click.argument("scope")
@click.argument("metric_key")
@click.option("--operator", "-o", required=True,
              type=click.Choice(["gt", "lt", "eq", "gte", "lte", "change_pct", "increase_pct", "decrease_pct"]))
@click.option("--warning", "warning_threshold", type=float, default=None, help="Warning threshold")
@click.option("--critical", "critical_threshold", type=float, default=None, help="Critical threshold")
@click.option("--interval", "check_interval_seconds", default=None,
              type=click.Choice([str(s) for s in CHECK_INTERVALS]),
              help=INTERVAL_HELP)
@click.option("--cooldown", "cooldown_seconds", type=int, default=None,
              help="Cooldown in seconds (stored only; the ledger governs repeats)")
@click.option("--baseline", "baseline_value", type=float, default=None, help="Static baseline for % operators")
@click.option("--name", default="", help="Display name")
@click.option("--description", default="", help="Shown in notifications")
@click.option("--roles", default="", help="Comma-separated recipient roles")
@click.option("--emails", default="", help="Addresses separated by commas, semicolons or newlines")
@click.option("--no-message", is_flag=True, help="Do not send internal messages")
@click.pass_context
def rules_add(ctx, scope, metric_key, operator, warning_threshold, critical_threshold,
              check_interval_seconds, cooldown_seconds, baseline_value, name, description,
              roles, emails, no_message):
    """Create or update the rule for SCOPE / METRIC_KEY."""
    from alerts.rules_manager import RuleValidationError

    c = _get_components(ctx)
    options = {
        "operator": operator,
        "warning_threshold": warning_threshold,
        "critical_threshold": critical_threshold,
        "check_interval_seconds": int(check_interval_seconds) if check_interval_seconds else None,
        "baseline_value": baseline_value,
        "name": name,
        "description": description,
        "notify_roles": roles,
        "notify_emails": emails,
        "notify_email": bool(emails),
        "notify_message": not no_message,
    }
    if cooldown_seconds is not None:
        options["cooldown_seconds"] = cooldown_seconds
    try:
        rule = c["engine"].rules.save_rule(scope, metric_key, **options)
    except RuleValidationError as e:
        console.print(f"[red]✗[/red] {e}")
        ctx.exit(1)
    console.print(f"[green]✓[/green] Rule {rule.id} saved: {rule.display_name} "
                  f"({rule.operator.value}, warn={rule.warning_threshold}, crit={rule.critical_threshold})")


@rules.command("list")
@click.option("--scope", default=None, help="Only rules of this scope")
@click.pass_context
def rules_list(ctx, scope):
    """List configured alert rules."""
    from models.enums import OPERATOR_LABELS
    from utils.formatters import format_threshold, time_ago

    c = _get_components(ctx)
    all_rules = c["engine"].rules.list_rules(scope)
    if not all_rules:
        console.print("[dim]No alert rules configured[/dim]")
        return
    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Scope")
    table.add_column("Name")
    table.add_column("Condition")
    table.add_column("Warn")
    table.add_column("Crit")
    table.add_column("Status")
    table.add_column("Checked")
    table.add_column("Enabled")
    for r in all_rules:
        table.add_row(str(r.id), r.scope, r.display_name, OPERATOR_LABELS[r.operator],
                      format_threshold(r.warning_threshold), format_threshold(r.critical_threshold),
                      _styled_status(r.current_status), time_ago(r.last_checked_at),
                      "[green]✓[/green]" if r.enabled else "[red]✗[/red]")
    console.print(table)


@rules.command("remove")
@click.argument("rule_id", type=int)
@click.pass_context
def rules_remove(ctx, rule_id):
    """Delete a rule with its history and ledger entries."""
    c = _get_components(ctx)
    if c["engine"].delete_rule(rule_id):
        console.print(f"[green]✓[/green] Rule {rule_id} deleted")
    else:
        console.print(f"[red]Rule {rule_id} not found[/red]")
        ctx.exit(1)


@rules.command("remove-scope")
@click.argument("scope")
@click.confirmation_option(prompt="Delete every rule, history entry and sample of this scope?")
@click.pass_context
def rules_remove_scope(ctx, scope):
    """Delete a whole scope: rules, history, ledger entries and samples."""
    c = _get_components(ctx)
    counts = c["engine"].delete_scope(scope)
    for name, count in counts.items():
        console.print(f"[green]✓[/green] {name}: removed {count}")


def _set_enabled(ctx, rule_id, enabled):
    c = _get_components(ctx)
    rule = c["engine"].rules.set_enabled(rule_id, enabled)
    if rule is None:
        console.print(f"[red]Rule {rule_id} not found[/red]")
        ctx.exit(1)
    console.print(f"[green]✓[/green] Rule {rule_id} {'enabled' if enabled else 'disabled'}")


@rules.command("enable")
@click.argument("rule_id", type=int)
@click.pass_context
def rules_enable(ctx, rule_id):
    """Enable a rule."""
    _set_enabled(ctx, rule_id, True)


@rules.command("disable")
@click.argument("rule_id", type=int)
@click.pass_context
def rules_disable(ctx, rule_id):
    """Disable a rule."""
    _set_enabled(ctx, rule_id, False)


@rules.command("import")
@click.argument("path", required=False)
@click.pass_context
def rules_import(ctx, path):
    """Import rules from a YAML file (default: alerts.rules_path)."""
    c = _get_components(ctx)
    path = path or c["config"]["alerts"].get("rules_path", "config/alert_rules.yaml")
    saved = c["engine"].rules.load_yaml(path)
    console.print(f"[green]✓[/green] Imported {len(saved)} rule(s) from {path}")


# ──────────────────────────────────────────────────────
# METRICS
# ──────────────────────────────────────────────────────
@cli.group()
def metrics():
    """Metric history."""
    pass


@metrics.command("record")
@click.argument("scope")
@click.argument("series_key")
@click.argument("value", type=float)
@click.option("--label", default=None, help="Label shown with the value")
@click.option("--rows", "row_count", default=0, type=int, help="Row count of the report run")
@click.option("--force", is_flag=True, help="Ignore the minimum recording interval")
@click.pass_context
def metrics_record(ctx, scope, series_key, value, label, row_count, force):
    """Record a metric sample and evaluate the rules watching it."""
    c = _get_components(ctx)
    result = c["engine"].record_metric(scope, series_key, value, label=label, row_count=row_count,
                                       source="cli", interval=0 if force else None)
    if not result.stored:
        console.print(f"[yellow]Skipped[/yellow] - {scope}/{series_key} was recorded recently "
                      f"(use --force to override)")
        return
    console.print(f"[green]✓[/green] Stored sample {result.sample_id}: {series_key} = {value}")
    for rule_id, outcome in result.outcomes.items():
        _print_outcome(rule_id, outcome)


@metrics.command("history")
@click.argument("scope")
@click.argument("series_key")
@click.option("--limit", default=10, type=int, help="Number of samples")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def metrics_history(ctx, scope, series_key, limit, as_json):
    """Show stored samples, oldest first."""
    from utils.formatters import format_value, sparkline

    c = _get_components(ctx)
    samples = c["engine"].series.history(scope, series_key, limit)
    if as_json:
        click.echo(json.dumps([s.to_dict() for s in samples], indent=2))
        return
    if not samples:
        console.print("[dim]No samples recorded[/dim]")
        return
    table = Table(title=f"{scope} / {series_key}", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Value", justify="right")
    table.add_column("Label")
    table.add_column("Source", style="dim")
    for s in samples:
        table.add_row(s.created_at.strftime("%Y-%m-%d %H:%M"), format_value(s.value), s.label or "", s.source)
    console.print(table)
    points = c["config"].get("metrics", {}).get("sparkline_points", 10)
    values = c["engine"].series.sparkline(scope, series_key, points)
    console.print(f"  {sparkline(values)}")


@metrics.command("trend")
@click.argument("scope")
@click.argument("series_key")
@click.argument("value", type=float)
@click.pass_context
def metrics_trend(ctx, scope, series_key, value):
    """Compare VALUE against the latest stored sample."""
    from utils.formatters import format_pct, format_value

    c = _get_components(ctx)
    trend = c["engine"].series.trend(scope, series_key, value)
    if not trend.has_history:
        console.print("[dim]No history to compare against[/dim]")
        return
    arrows = {"up": "▲", "down": "▼", "neutral": "▶"}
    console.print(f"{arrows[trend.direction.value]} {format_pct(trend.percentage, with_color=True)} "
                  f"vs {format_value(trend.previous_value)}")


@metrics.command("stats")
@click.argument("scope")
@click.argument("series_key")
@click.pass_context
def metrics_stats(ctx, scope, series_key):
    """Summary statistics of the retained samples."""
    from utils.formatters import format_value

    c = _get_components(ctx)
    stats = c["engine"].series.statistics(scope, series_key)
    table = Table(show_header=False, box=None)
    table.add_column("", style="dim")
    table.add_column("")
    table.add_row("Samples", str(stats.count))
    table.add_row("Min", format_value(stats.min))
    table.add_row("Max", format_value(stats.max))
    table.add_row("Average", format_value(stats.avg))
    table.add_row("First", stats.first_recorded.isoformat() if stats.first_recorded else "-")
    table.add_row("Last", stats.last_recorded.isoformat() if stats.last_recorded else "-")
    console.print(table)


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert evaluation and history."""
    pass


def _print_outcome(rule_id, outcome):
    if outcome.error:
        console.print(f"  [red]Rule {rule_id}: error - {outcome.error}[/red]")
        return
    line = f"  Rule {rule_id}: {_styled_status(outcome.old_status)} → {_styled_status(outcome.new_status)}"
    if outcome.evaluation is not None:
        line += f" [dim]{outcome.evaluation.details}[/dim]"
    if outcome.notified:
        line += f" [green](notified {outcome.notification_count})[/green]"
    elif outcome.suppressed:
        line += " [dim](already notified)[/dim]"
    console.print(line)
    for err in outcome.notification_errors:
        console.print(f"    [yellow]{err}[/yellow]")


@alerts.command("check")
@click.argument("scope", required=False)
@click.pass_context
def alerts_check(ctx, scope):
    """Evaluate due rules against the latest stored samples."""
    c = _get_components(ctx)
    if scope:
        results = {scope: c["engine"].evaluate_from_latest(scope)}
    else:
        results = c["engine"].evaluate_all()

    evaluated = sum(len(r) for r in results.values())
    if not evaluated:
        console.print("[dim]No rules due for evaluation[/dim]")
        return
    for scope_name, outcomes in results.items():
        if not outcomes:
            continue
        console.print(f"[bold]{scope_name}[/bold]")
        for rule_id, outcome in outcomes.items():
            _print_outcome(rule_id, outcome)


@alerts.command("status")
@click.argument("scope")
@click.pass_context
def alerts_status(ctx, scope):
    """Show counts of ok/warning/critical rules for a scope."""
    from utils.formatters import format_value

    c = _get_components(ctx)
    summary = c["engine"].get_status_summary(scope)
    console.print(f"[bold]{scope}[/bold]: {_styled_status(summary.highest_severity)} "
                  f"({summary.ok} ok, {summary.warning} warning, {summary.critical} critical)")
    for rule in summary.active_rules:
        console.print(f"  {_styled_status(rule.current_status)} {rule.display_name} "
                      f"= {format_value(rule.last_value)}")


@alerts.command("history")
@click.option("--scope", default=None, help="Scope to show")
@click.option("--rule", "rule_id", default=None, type=int, help="Single rule")
@click.option("--limit", default=20, type=int, help="Number of entries")
@click.pass_context
def alerts_history(ctx, scope, rule_id, limit):
    """Show alert status changes and continuing breaches."""
    from utils.formatters import format_value, format_threshold

    c = _get_components(ctx)
    state = c["engine"].state
    if rule_id is not None:
        rule = c["engine"].rules.get_rule(rule_id)
        name = rule.display_name if rule else str(rule_id)
        rows = [(e, name) for e in state.rule_history(rule_id, limit)]
    elif scope:
        rows = state.scope_history(scope, limit)
    else:
        console.print("[red]Pass --scope or --rule[/red]")
        ctx.exit(1)

    if not rows:
        console.print("[dim]No alerts in history[/dim]")
        return
    table = Table(title="Alert History", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Alert")
    table.add_column("Transition")
    table.add_column("Value", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Notified")
    for entry, name in rows:
        table.add_row(entry.created_at.strftime("%Y-%m-%d %H:%M"), name,
                      f"{_styled_status(entry.previous_status)} → {_styled_status(entry.new_status)}",
                      format_value(entry.metric_value), format_threshold(entry.threshold_value),
                      "✓" if entry.notified else "")
    console.print(table)


# ──────────────────────────────────────────────────────
# MAINTENANCE
# ──────────────────────────────────────────────────────
@cli.group()
def maintenance():
    """Retention and cleanup."""
    pass


@maintenance.command("sweep")
@click.pass_context
def maintenance_sweep(ctx):
    """Delete samples, history and ledger rows past their retention."""
    c = _get_components(ctx)
    counts = c["engine"].sweep_all(c["config"])
    for name, count in counts.items():
        console.print(f"[green]✓[/green] {name}: removed {count}")


# ──────────────────────────────────────────────────────
# RUN
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--interval", default=None, type=int, help="Evaluation interval in seconds")
@click.pass_context
def run(ctx, interval):
    """Evaluate alerts periodically until interrupted."""
    from monitor.scheduler import MonitorScheduler

    c = _get_components(ctx)
    sched_cfg = c["config"].get("scheduler", {})
    interval = max(300, interval or sched_cfg.get("evaluate_interval", 900))
    scheduler = MonitorScheduler(c["engine"], c["config"], interval_seconds=interval,
                                 sweep_interval_hours=sched_cfg.get("sweep_interval_hours", 24))
    scheduler.start()
    console.print(f"[bold]KPI Watch running[/bold] (every {interval}s). Press Ctrl+C to stop.")
    try:
        while scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()


if __name__ == "__main__":
    cli()
