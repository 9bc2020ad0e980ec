#!/usr/bin/env python3
"""MSP Alerts - CLI Entry Point."""
import sys
import json
import logging
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.table import Table

from __version__ import __version__

console = Console()
logger = logging.getLogger("mspalerts.cli")

_SEVERITY_STYLES = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "blue"}


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from utils.logger import setup_logging
    from config import load_config
    from models.database import Database
    from alerts import AlertInstanceManager, ConsoleChannel, EventBus, FileChannel, RuleEvaluator, RuleStore
    from escalation import EscalationEngine, PolicyStore, StaticDirectory
    from notifications import AlertRouter, NotificationDispatcher
    from monitor.ingest import MetricIngestor
    from monitor.scheduler import EscalationScheduler
    from models.enums import EventType

    config = load_config(config_path)
    setup_logging("DEBUG" if verbose else config["logging"]["level"], config["logging"].get("file"))

    db = Database(config["database"]["path"])
    db.connect()

    events = EventBus()
    events.subscribe_all(FileChannel(config["alerts"]["audit_log_path"]))
    if sys.stdout.isatty():
        events.subscribe_all(ConsoleChannel(console))

    alert_cfg = config["alerts"]
    rules = RuleStore(db)
    evaluator = RuleEvaluator()
    instances = AlertInstanceManager(
        db, events,
        suppression_minutes=alert_cfg.get("suppression_minutes", 0),
        auto_resolve=alert_cfg.get("auto_resolve", False),
    )
    ingestor = MetricIngestor(db, rules, evaluator, instances)

    policies = PolicyStore(db)
    directory = StaticDirectory(config)
    dispatcher = NotificationDispatcher(config)
    router = AlertRouter.from_config(config, dispatcher, db)
    events.subscribe(EventType.ALERT_CREATED, router)
    escalation = EscalationEngine(db, policies, directory, dispatcher, events)

    retention = config["retention"]
    scheduler = EscalationScheduler(
        escalation, db,
        interval_seconds=config["escalation"]["scan_interval_seconds"],
        retention_days=retention["resolved_days"],
        cleanup_time=retention["cleanup_time"],
    )

    return {
        "config": config, "db": db, "events": events, "rules": rules,
        "evaluator": evaluator, "instances": instances, "ingestor": ingestor,
        "policies": policies, "directory": directory, "router": router, "escalation": escalation,
        "scheduler": scheduler,
    }


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="mspalerts")
@click.pass_context
def cli(ctx, config_path, verbose):
    """MSP Alerts - Device metric alerting and escalation engine."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        ctx.obj["_components"] = _init_components(ctx.obj.get("config_path"), ctx.obj.get("verbose"))
    return ctx.obj["_components"]


def _severity(value):
    style = _SEVERITY_STYLES.get(value, "")
    return f"[{style}]{value}[/{style}]" if style else value


# ──────────────────────────────────────────────────────
# INGEST
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--device", "device_id", required=True, help="Reporting device id")
@click.argument("batch_file", type=click.File("r"))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def ingest(ctx, device_id, batch_file, as_json):
    """Ingest a JSON batch of metric samples for one device."""
    from monitor.ingest import IngestError

    c = _get_components(ctx)
    try:
        payload = json.load(batch_file)
    except ValueError as e:
        raise click.ClickException(f"Invalid JSON: {e}")
    if isinstance(payload, dict) and "metrics" in payload:
        payload = payload["metrics"]
    try:
        result = c["ingestor"].ingest(device_id, payload)
    except IngestError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps({
            "metrics_count": result["metrics_count"],
            "alerts_triggered": result["alerts_triggered"],
            "alerts": [i.to_dict() for i in result["instances"]],
        }, indent=2))
        return
    console.print(f"[green]✓[/green] {result['metrics_count']} samples stored for {device_id}")
    for inst in result["instances"]:
        console.print(f"  [{_severity(inst.severity.value)}] #{inst.id} {inst.message}")
    if not result["instances"]:
        console.print("[dim]No alerts triggered[/dim]")


# ──────────────────────────────────────────────────────
# RULES
# ──────────────────────────────────────────────────────
@cli.group()
def rules():
    """Alert rule management."""
    pass


@rules.command("load")
@click.argument("path", required=False)
@click.pass_context
def rules_load(ctx, path):
    """Load alert rules from YAML (default: configured rules_path)."""
    c = _get_components(ctx)
    loaded = c["rules"].load_yaml(path or c["config"]["alerts"]["rules_path"])
    console.print(f"[green]✓[/green] {len(loaded)} rules loaded")


@rules.command("list")
@click.option("--all", "include_deleted", is_flag=True, help="Include soft-deleted rules")
@click.pass_context
def rules_list(ctx, include_deleted):
    """List configured alert rules."""
    c = _get_components(ctx)
    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Scope")
    table.add_column("Condition")
    table.add_column("Severity")
    table.add_column("Fired")
    table.add_column("Active")
    for r in c["rules"].list_rules(include_deleted=include_deleted):
        cond = r.condition
        active = "[green]✓[/green]" if r.is_evaluable else "[red]✗[/red]"
        table.add_row(r.id, r.name, r.device_id or "global",
                      f"{cond.metric} {cond.operator} {cond.threshold}",
                      _severity(r.severity.value), str(r.trigger_count), active)
    console.print(table)


@rules.command("test")
@click.option("--device", "device_id", required=True, help="Device whose rules to test")
@click.argument("sample_json")
@click.pass_context
def rules_test(ctx, device_id, sample_json):
    """Show which rules would fire for one sample, e.g. '{"cpu_percent": 95}'."""
    from datetime import datetime, timezone
    from models.alerts import MetricSample

    c = _get_components(ctx)
    try:
        values = json.loads(sample_json)
    except ValueError as e:
        raise click.ClickException(f"Invalid JSON: {e}")
    if not isinstance(values, dict):
        raise click.ClickException("Sample must be a JSON object of metric values")
    sample = MetricSample(device_id=device_id, collected_at=datetime.now(timezone.utc), values=values)
    results = c["evaluator"].test_rules(sample, c["rules"].find_effective_rules(device_id))

    table = Table(title=f"Rule Test ({device_id})", show_header=True)
    table.add_column("Rule")
    table.add_column("Scope")
    table.add_column("Condition")
    table.add_column("Current")
    table.add_column("Would Fire")
    for r in results:
        fire_str = "[green]YES[/green]" if r["would_fire"] else "[dim]no[/dim]"
        if r["problem"]:
            fire_str = f"[red]{r['problem']}[/red]"
        val = str(r["current_value"]) if r["current_value"] is not None else "N/A"
        table.add_row(r["name"], r["scope"], f"{r['metric']} {r['operator']} {r['threshold']}", val, fire_str)
    console.print(table)


@rules.command("delete")
@click.argument("rule_id")
@click.pass_context
def rules_delete(ctx, rule_id):
    """Soft-delete a rule."""
    c = _get_components(ctx)
    if c["rules"].soft_delete_rule(rule_id):
        console.print(f"[green]✓[/green] Rule {rule_id} deleted")
    else:
        raise click.ClickException(f"Rule {rule_id} not found or already deleted")


# ──────────────────────────────────────────────────────
# POLICIES
# ──────────────────────────────────────────────────────
@cli.group()
def policies():
    """Escalation policy management."""
    pass


@policies.command("load")
@click.argument("path", required=False)
@click.pass_context
def policies_load(ctx, path):
    """Load escalation policies from YAML (default: configured policies_path)."""
    c = _get_components(ctx)
    loaded = c["policies"].load_yaml(path or c["config"]["escalation"]["policies_path"])
    console.print(f"[green]✓[/green] {len(loaded)} policies loaded")


@policies.command("list")
@click.pass_context
def policies_list(ctx):
    """List escalation policies and their steps."""
    c = _get_components(ctx)
    items = c["policies"].list_policies()
    if not items:
        console.print("[dim]No escalation policies configured[/dim]")
        return
    for p in items:
        state = "[green]enabled[/green]" if p.enabled else "[red]disabled[/red]"
        sevs = ", ".join(s.value for s in sorted(p.trigger_severities, key=lambda s: s.rank))
        console.print(f"\n[bold]{p.policy_name}[/bold] ({p.id}) {state}")
        console.print(f"  Severities: {sevs} · after {p.trigger_after_minutes} min unacknowledged")
        for step in p.ordered_steps():
            chans = ", ".join(ch.value for ch in step.channels) or "none"
            console.print(f"  {step.order}. +{step.wait_minutes}m → {', '.join(step.roles) or 'none'} via {chans}")


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert history and lifecycle."""
    pass


def _alerts_table(title, items):
    from utils.formatters import format_timestamp, time_ago

    table = Table(title=title, show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Triggered", style="dim")
    table.add_column("Age")
    table.add_column("Device")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Message")
    for a in items:
        table.add_row(str(a.id), format_timestamp(a.triggered_at), time_ago(a.triggered_at), a.device_id,
                      _severity(a.severity.value), a.status.value, a.message[:70])
    return table


@alerts.command("active")
@click.option("--device", "device_id", default=None, help="Filter by device")
@click.pass_context
def alerts_active(ctx, device_id):
    """Show active (unacknowledged, unresolved) alerts."""
    c = _get_components(ctx)
    items = c["instances"].list_active(device_id=device_id)
    if not items:
        console.print("[green]All clear - no active alerts[/green]")
        return
    console.print(_alerts_table("Active Alerts", items))


@alerts.command("history")
@click.option("--status", type=click.Choice(["active", "acknowledged", "resolved"]), default=None)
@click.option("--device", "device_id", default=None, help="Filter by device")
@click.option("--limit", default=50, type=int, help="Rows to show")
@click.pass_context
def alerts_history(ctx, status, device_id, limit):
    """Show past alerts."""
    c = _get_components(ctx)
    items = c["instances"].history(status=status, device_id=device_id, limit=limit)
    if not items:
        console.print("[dim]No alerts in history[/dim]")
        return
    console.print(_alerts_table("Alert History", items))


@alerts.command("ack")
@click.argument("alert_id", type=int)
@click.option("--by", "actor", default=None, help="Who acknowledged")
@click.pass_context
def alerts_ack(ctx, alert_id, actor):
    """Acknowledge an alert (stops its escalation)."""
    from models.alerts import InvalidTransitionError

    c = _get_components(ctx)
    try:
        c["instances"].acknowledge(alert_id, by=actor)
    except (KeyError, InvalidTransitionError) as e:
        raise click.ClickException(str(e).strip("'"))
    console.print(f"[green]✓[/green] Alert {alert_id} acknowledged")


@alerts.command("resolve")
@click.argument("alert_id", type=int)
@click.option("--by", "actor", default=None, help="Who resolved")
@click.option("--notes", default=None, help="Resolution notes")
@click.pass_context
def alerts_resolve(ctx, alert_id, actor, notes):
    """Resolve an alert."""
    from models.alerts import InvalidTransitionError

    c = _get_components(ctx)
    try:
        c["instances"].resolve(alert_id, by=actor, notes=notes)
    except (KeyError, InvalidTransitionError) as e:
        raise click.ClickException(str(e).strip("'"))
    console.print(f"[green]✓[/green] Alert {alert_id} resolved")


@alerts.command("stats")
@click.option("--days", default=30, type=int, help="Days to look back")
@click.pass_context
def alerts_stats(ctx, days):
    """Alert counts and response times."""
    from utils.formatters import format_duration

    c = _get_components(ctx)
    stats = c["db"].get_alert_stats(days)
    table = Table(title=f"Alert Stats (last {days}d)", show_header=False, box=None)
    table.add_column("", style="dim")
    table.add_column("")
    for key in ("total_alerts", "critical_count", "high_count", "medium_count", "low_count",
                "acknowledged_count", "resolved_count"):
        table.add_row(key.replace("_", " ").title(), str(stats[key]))
    table.add_row("Avg Time To Acknowledge", format_duration(stats["avg_acknowledge_seconds"]))
    table.add_row("Avg Time To Resolve", format_duration(stats["avg_resolution_seconds"]))
    console.print(table)


@alerts.command("cleanup")
@click.pass_context
def alerts_cleanup(ctx):
    """Delete resolved alerts older than the retention period."""
    c = _get_components(ctx)
    deleted = c["scheduler"].cleanup_job()
    if deleted is None:
        raise click.ClickException("Cleanup failed, see log")
    console.print(f"[green]✓[/green] {deleted} resolved alerts deleted")


# ──────────────────────────────────────────────────────
# ESCALATION
# ──────────────────────────────────────────────────────
@cli.group()
def escalation():
    """Escalation scanning."""
    pass


@escalation.command("scan")
@click.pass_context
def escalation_scan(ctx):
    """Run one escalation scan now."""
    c = _get_components(ctx)
    result = c["escalation"].scan()
    console.print(f"Checked {result['checked']} · executed {result['escalated']} steps · "
                  f"cancelled {result['cancelled']}")


@escalation.command("run")
@click.pass_context
def escalation_run(ctx):
    """Run the escalation scheduler in the foreground."""
    c = _get_components(ctx)
    console.print(f"[bold]Escalation scheduler[/bold] scanning every "
                  f"{c['scheduler'].interval}s. Press Ctrl+C to stop.")
    c["scheduler"].run_forever()


@escalation.command("stats")
@click.pass_context
def escalation_stats(ctx):
    """Escalation notification statistics."""
    c = _get_components(ctx)
    stats = c["escalation"].get_escalation_stats()
    table = Table(title="Escalation Stats", show_header=False, box=None)
    table.add_column("", style="dim")
    table.add_column("")
    for key, value in stats.items():
        table.add_row(key.replace("_", " ").title(), str(value))
    console.print(table)


def cli_main():
    cli(obj={})


if __name__ == "__main__":
    cli_main()
