"""Formatting utilities for display."""
from datetime import datetime, timezone

SEVERITY_STYLES = {
    "critical": "bold white on red",
    "high": "bold red",
    "warning": "bold yellow",
    "medium": "yellow",
    "info": "bold blue",
    "low": "dim",
}

STATUS_STYLES = {
    "active": "red",
    "acknowledged": "yellow",
    "resolved": "green",
}


def format_severity(value, with_color=True):
    """Upper-case severity, optionally wrapped in rich markup."""
    if value is None:
        return "N/A"
    text = getattr(value, "value", value)
    if not with_color:
        return text.upper()
    style = SEVERITY_STYLES.get(text, "")
    return f"[{style}]{text.upper()}[/]" if style else text.upper()


def format_status(value):
    text = getattr(value, "value", value)
    style = STATUS_STYLES.get(text)
    return f"[{style}]{text}[/{style}]" if style else text


def format_duration_ms(ms):
    """Format milliseconds: 850 → '850ms', 12500 → '12.5s', 150000 → '2m 30s'."""
    if ms is None:
        return "N/A"
    ms = float(ms)
    if ms < 1000:
        return f"{ms:.0f}ms"
    seconds = ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


def format_compact(n):
    """Format number compactly: 1200000 → '1.2M'."""
    if n is None:
        return "N/A"
    n = float(n)
    if abs(n) >= 1_000_000_000:
        return f"{n / 1_000_000_000:.1f}B"
    elif abs(n) >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    elif abs(n) >= 1_000:
        return f"{n / 1_000:.1f}K"
    return str(int(n))


def format_timestamp(ts):
    """Format a datetime (or epoch seconds) to a human-readable string."""
    if ts is None:
        return "N/A"
    if isinstance(ts, str):
        return ts
    if isinstance(ts, (int, float)):
        ts = datetime.fromtimestamp(ts, timezone.utc)
    return ts.strftime("%Y-%m-%d %H:%M:%S UTC")


def time_ago(dt, now=None):
    """Return human-readable time since dt. E.g., '3h ago', '2d ago'."""
    if dt is None:
        return "N/A"
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt)
    now = now or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = now - dt
    seconds = max(0, int(delta.total_seconds()))

    if seconds < 60:
        return f"{seconds}s ago"
    elif seconds < 3600:
        return f"{seconds // 60}m ago"
    elif seconds < 86400:
        return f"{seconds // 3600}h ago"
    else:
        return f"{seconds // 86400}d ago"
