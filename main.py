#!/usr/bin/env python3
"""Telemetry Monitor - CLI Entry Point."""
import sys
import json
import time
import logging
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.table import Table

from __version__ import __version__

console = Console()
logger = logging.getLogger("telemon.cli")

SEVERITY_CHOICES = ["low", "medium", "high", "critical"]


def _init_components(config_path=None, verbose=False, background=False):
    """Build the telemetry context. One-shot commands run engine work inline."""
    from utils.logger import setup_logging
    from config import load_config
    from monitor.context import TelemetryContext
    from utils.dispatch import InlineDispatcher, ThreadDispatcher

    config = load_config(config_path)
    log_cfg = config.get("logging", {})
    setup_logging("DEBUG" if verbose else log_cfg.get("level", "INFO"), log_cfg.get("file") or None)

    dispatcher = ThreadDispatcher() if background else InlineDispatcher()
    return TelemetryContext.from_config(config, dispatcher=dispatcher)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="telemon")
@click.pass_context
def cli(ctx, config_path, verbose):
    """Telemetry Monitor - error/metric capture, rate limiting & alerting."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx, background=False):
    root = ctx.find_root()
    if "_components" not in root.obj:
        telemetry = _init_components(root.obj.get("config_path"), root.obj.get("verbose"), background)
        root.obj["_components"] = telemetry
        root.call_on_close(telemetry.shutdown)
    return root.obj["_components"]


def _parse_metadata(pairs):
    """``key=value`` options into a dict; values that parse as JSON keep their type."""
    metadata = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--meta")
        key, value = pair.split("=", 1)
        try:
            metadata[key] = json.loads(value)
        except ValueError:
            metadata[key] = value
    return metadata


# ──────────────────────────────────────────────────────
# PIPELINE
# ──────────────────────────────────────────────────────
@cli.command()
@click.pass_context
def run(ctx):
    """Run the pipeline in the foreground (scheduler, flushes, auto-resolution)."""
    telemetry = _get_components(ctx, background=True)
    telemetry.start()
    interval = telemetry.scheduler.flush_interval
    console.print(f"[bold]Telemetry pipeline running[/bold] (flush every {interval}s). Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Shutting down, draining buffered telemetry...[/dim]")


@cli.command()
@click.option("--hours", default=24, help="Look-back window")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, hours, as_json):
    """Health score, error and alert summary, queue state."""
    from utils.formatters import format_compact

    telemetry = _get_components(ctx)
    s = telemetry.status(hours)
    if as_json:
        click.echo(json.dumps(s, indent=2, default=str))
        return

    score = s["health_score"]
    color = "green" if score >= 80 else "yellow" if score >= 50 else "red"
    console.print(f"[bold]System health:[/bold] [{color}]{score}/100[/{color}]  (last {hours}h)")

    table = Table(title="Errors by severity", show_header=True)
    table.add_column("Severity")
    table.add_column("Count", justify="right")
    for sev in SEVERITY_CHOICES:
        table.add_row(sev.upper(), format_compact(s["errors"].get(sev, 0)))
    console.print(table)

    if s["top_contexts"]:
        console.print("[bold]Top error contexts:[/bold]")
        for context, count in s["top_contexts"]:
            console.print(f"  {count:>5}  {context}")

    q = s["queue"]
    console.print(
        f"\n[bold]Queue:[/bold] pending {q['pending']} | fallback {q['fallback']} | "
        f"retry {q['retry_count']} | sink {s['sink']}"
    )
    console.print(f"[bold]Active alerts:[/bold] {s['active_alerts']}")
    if s["security"]:
        console.print(f"[bold]Security events:[/bold] {s['security']['total_events']} "
                      f"({s['security']['blacklisted']} blacklisted)")


@cli.command()
@click.argument("message")
@click.option("--context", "context_name", default="cli", help="Where the error happened")
@click.option("--severity", default="medium", type=click.Choice(SEVERITY_CHOICES))
@click.option("--meta", multiple=True, help="Extra metadata as key=value (repeatable)")
@click.pass_context
def report(ctx, message, context_name, severity, meta):
    """Report an error event."""
    telemetry = _get_components(ctx)
    error_id = telemetry.monitoring.report_error(message, context_name, severity, _parse_metadata(meta))
    console.print(f"[green]Reported[/green] {error_id}")


@cli.command()
@click.argument("name")
@click.argument("value", type=float)
@click.option("--meta", multiple=True, help="Extra metadata as key=value (repeatable)")
@click.pass_context
def metric(ctx, name, value, meta):
    """Record a metric sample."""
    telemetry = _get_components(ctx)
    telemetry.monitoring.record_metric(name, value, _parse_metadata(meta))
    console.print(f"[green]Recorded[/green] {name}={value:g}")


@cli.command()
@click.pass_context
def flush(ctx):
    """Deliver queued and fallback-stored telemetry to the sink now."""
    telemetry = _get_components(ctx)
    before = telemetry.fallback.counts()
    ok = telemetry.queue.flush(force=True)
    if ok:
        console.print(f"[green]Flushed[/green] (recovered from fallback: {before})")
    else:
        console.print(f"[red]Flush failed:[/red] {telemetry.queue.last_error}")
        ctx.exit(1)


@cli.command()
@click.pass_context
def pending(ctx):
    """Show telemetry waiting in memory and in the fallback store."""
    telemetry = _get_components(ctx)
    table = Table(title="Pending telemetry", show_header=True)
    table.add_column("Kind")
    table.add_column("In memory", justify="right")
    table.add_column("Fallback store", justify="right")
    mem = telemetry.queue.pending_counts()
    stored = telemetry.fallback.counts()
    for kind in mem:
        table.add_row(kind, str(mem[kind]), str(stored.get(kind, 0)))
    console.print(table)


# ──────────────────────────────────────────────────────
# RATE LIMIT
# ──────────────────────────────────────────────────────
@cli.group()
def ratelimit():
    """Rate limiter tools."""
    pass


@ratelimit.command("check")
@click.argument("identifier")
@click.option("--count", default=1, help="Number of requests to simulate")
@click.pass_context
def ratelimit_check(ctx, identifier, count):
    """Run IDENTIFIER through the limiter COUNT times and show the outcome."""
    from utils.rate_limiter import rate_limit_headers

    telemetry = _get_components(ctx)
    limiter = telemetry.rate_limiter
    allowed = denied = 0
    result = None
    for _ in range(count):
        result = limiter.check_rate_limit(identifier)
        if result.allowed:
            allowed += 1
        else:
            denied += 1

    console.print(f"[green]{allowed} allowed[/green], [red]{denied} denied[/red]")
    if limiter.is_blacklisted(identifier):
        console.print(f"[bold red]{identifier} is blacklisted[/bold red]")
    for key, value in rate_limit_headers(limiter, result).items():
        console.print(f"  {key}: {value}")


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert management."""
    pass


def _alerts_table(title, rows):
    from utils.formatters import format_severity, format_status, time_ago

    table = Table(title=title, show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Triggered")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Title")
    for a in rows:
        table.add_row(a.id, time_ago(a.triggered_at), format_severity(a.severity),
                      format_status(a.status), a.title)
    return table


@alerts.command("list")
@click.pass_context
def alerts_list(ctx):
    """Show active (unresolved) alerts."""
    telemetry = _get_components(ctx)
    active = telemetry.manager.get_active_alerts()
    if not active:
        console.print("[green]All clear - no active alerts[/green]")
        return
    console.print(_alerts_table("Active Alerts", active))


@alerts.command("history")
@click.option("--limit", default=50, help="Number of alerts to show")
@click.pass_context
def alerts_history(ctx, limit):
    """Show past alerts."""
    telemetry = _get_components(ctx)
    recent = telemetry.manager.get_alert_history(limit)
    if not recent:
        console.print("[dim]No alerts in history[/dim]")
        return
    console.print(_alerts_table(f"Alert History (last {limit})", recent))


@alerts.command("rules")
@click.pass_context
def alerts_rules(ctx):
    """List all configured alert rules."""
    from alerts.conditions import describe_condition
    from utils.formatters import format_duration_ms

    telemetry = _get_components(ctx)
    engine = telemetry.engine
    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Condition")
    table.add_column("Severity")
    table.add_column("Channels")
    table.add_column("Cooldown")
    table.add_column("Cooling down")
    table.add_column("Enabled")
    for r in telemetry.manager.get_alert_rules():
        remaining = engine.cooldown_remaining(r.id) if engine is not None else 0
        table.add_row(
            r.id, r.name, describe_condition(r.condition), r.severity.value,
            ", ".join(c.type.value for c in r.channels if c.enabled),
            f"{r.cooldown_minutes:g}m",
            format_duration_ms(remaining * 1000) if remaining else "-",
            "[green]✓[/green]" if r.enabled else "[red]✗[/red]",
        )
    console.print(table)


@alerts.command("ack")
@click.argument("alert_id")
@click.option("--by", "who", default="cli", help="Who is acknowledging")
@click.pass_context
def alerts_ack(ctx, alert_id, who):
    """Acknowledge an alert."""
    from models.alerts import InvalidTransitionError

    telemetry = _get_components(ctx)
    try:
        alert = telemetry.manager.acknowledge_alert(alert_id, who)
    except InvalidTransitionError as e:
        console.print(f"[red]{e}[/red]")
        ctx.exit(1)
    if alert is None:
        console.print(f"[red]No alert {alert_id}[/red]")
        ctx.exit(1)
    console.print(f"[green]Acknowledged[/green] {alert.title}")


@alerts.command("resolve")
@click.argument("alert_id")
@click.option("--by", "who", default="cli", help="Who is resolving")
@click.pass_context
def alerts_resolve(ctx, alert_id, who):
    """Resolve an alert and send recovery notifications."""
    from models.alerts import InvalidTransitionError

    telemetry = _get_components(ctx)
    try:
        alert = telemetry.manager.resolve_alert(alert_id, who)
    except InvalidTransitionError as e:
        console.print(f"[red]{e}[/red]")
        ctx.exit(1)
    if alert is None:
        console.print(f"[red]No alert {alert_id}[/red]")
        ctx.exit(1)
    console.print(f"[green]Resolved[/green] {alert.title}")


@alerts.command("sweep")
@click.pass_context
def alerts_sweep(ctx):
    """Auto-resolve alerts whose condition no longer holds."""
    telemetry = _get_components(ctx)
    if telemetry.engine is None:
        console.print("[yellow]Alerting is disabled in config[/yellow]")
        return
    resolved = telemetry.engine.check_auto_resolution()
    if resolved:
        for a in resolved:
            console.print(f"[green]Resolved[/green] {a.id} {a.title}")
    else:
        console.print("[dim]Nothing to resolve[/dim]")


@alerts.command("test")
@click.pass_context
def alerts_test(ctx):
    """Evaluate all rules (ignoring cooldowns) against stored history."""
    telemetry = _get_components(ctx)
    if telemetry.engine is None:
        console.print("[yellow]Alerting is disabled in config[/yellow]")
        return
    results = telemetry.engine.test_rules()

    table = Table(title="Alert Rules Test", show_header=True)
    table.add_column("Rule")
    table.add_column("Condition")
    table.add_column("Current")
    table.add_column("Would Fire")
    table.add_column("Cooling down")
    table.add_column("Enabled")

    for r in results:
        fire_str = "[green]YES[/green]" if r["would_fire"] else "[dim]no[/dim]"
        val = f"{r['current_value']:.2f}" if r["current_value"] is not None else "N/A"
        table.add_row(r["name"], r["condition"], val, fire_str,
                      "yes" if r["in_cooldown"] else "no",
                      "✓" if r["enabled"] else "✗")
    console.print(table)


@alerts.command("notifications")
@click.option("--unread", is_flag=True, help="Only unread notifications")
@click.pass_context
def alerts_notifications(ctx, unread):
    """Show in-app notifications written by the in_app channel."""
    from utils.formatters import format_severity

    telemetry = _get_components(ctx)
    rows = telemetry.db.get_notifications(unread_only=unread)
    if not rows:
        console.print("[dim]No notifications[/dim]")
        return
    table = Table(title="Notifications", show_header=True)
    table.add_column("Created", style="dim")
    table.add_column("Severity")
    table.add_column("Title")
    table.add_column("Read")
    for n in rows:
        table.add_row(n["created_at"][:19], format_severity(n["severity"]), n["title"],
                      "✓" if n["read"] else "")
    console.print(table)


# ──────────────────────────────────────────────────────
# EMAIL
# ──────────────────────────────────────────────────────
@cli.group()
def email():
    """Alert email settings."""
    pass


@email.command("test")
@click.pass_context
def email_test(ctx):
    """Test SMTP connectivity with the configured credentials."""
    from notifications.email_sender import EmailSender

    telemetry = _get_components(ctx)
    sender = EmailSender(telemetry.config)
    if not sender.is_configured():
        console.print("[red]Email not configured.[/red] Set the email section in your config.")
        return
    result = sender.test_connection()
    if result["status"] == "ok":
        console.print(f"[green]{result['message']}[/green]")
    else:
        console.print(f"[red]{result['message']}[/red]")


if __name__ == "__main__":
    cli()
