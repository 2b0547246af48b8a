"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers for the one-shot CLI commands
5. Structlog configuration (configure)

Console output uses Rich markup for colors and is only used by CLI commands;
while the TUI runs, the terminal is left alone and structlog writes JSON to
the log file.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

from mihomot.models import LatencyGrade, LatencyResult, Success, classify_latency

if TYPE_CHECKING:
    from mihomot.config import Config

# Rich console for colorful human-readable output
_console = Console(highlight=False)

# Module-level config reference for latency_color (set by configure())
_config: "Config | None" = None


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    SAVE = "💾"
    SELECTED = "[bright_green]▶[/]"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────

_GRADE_COLORS = {
    LatencyGrade.GOOD: "green",
    LatencyGrade.WARN: "yellow",
    LatencyGrade.BAD: "bright_red",
}


def latency_color(ms: int) -> str:
    """Return Rich color name for a measured latency.

    Uses the configured thresholds once configure() has run, the stock
    200/500ms thresholds before that.
    """
    if _config is None:
        grade = classify_latency(ms)
    else:
        grade = classify_latency(ms, _config.latency.good_below_ms, _config.latency.warn_below_ms)
    return _GRADE_COLORS[grade]


def _latency_markup(label: str, result: LatencyResult) -> str:
    if isinstance(result, Success):
        return f"[{latency_color(result.ms)}]{label}[/]"
    return f"[red]{label}[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def version_info(name: str, version: str) -> None:
    """Log version info."""
    info(f"[bold cyan]{name}[/] v{version}")


def daemon_connected(base_url: str, mode: str, port: int, tun: bool) -> None:
    """Log a successful config fetch."""
    tun_label = "[green]on[/]" if tun else "[dim]off[/]"
    info(
        f"[cyan]{base_url}[/] mode [bold]{mode}[/], port [cyan]{port}[/], TUN {tun_label}",
        Icon.CONNECTED,
    )


def daemon_unreachable(message: str) -> None:
    """Log a failed control call."""
    error(message, Icon.DISCONNECTED)


def group_line(name: str, kind: str, selected: str | None, member_count: int) -> None:
    """Log one proxy group."""
    now = f"[bright_green]{selected}[/]" if selected else "[dim]-[/]"
    info(f"[cyan]{name}[/] [dim]({kind}, {member_count} members)[/] → {now}")


def reachability_result(url: str, label: str, result: LatencyResult) -> None:
    """Log the outcome of the reachability test."""
    icon = Icon.OK if isinstance(result, Success) else Icon.FAIL
    info(f"[cyan]{url}[/] {_latency_markup(label, result)}", icon)


def member_result(name: str, label: str, result: LatencyResult, selected: bool) -> None:
    """Log one member of a group sweep."""
    icon = Icon.SELECTED if selected else " "
    info(f"{name:<32} {_latency_markup(label, result)}", icon)


def sweep_summary(group: str, ok: int, total: int) -> None:
    """Log group sweep totals."""
    color = "green" if ok == total else "yellow" if ok else "red"
    info(f"[cyan]{group}[/]: [{color}]{ok}/{total}[/] reachable")


def sweep_waiting(group: str, members: int) -> None:
    """Log group sweep started."""
    info(f"Testing [cyan]{members}[/] members of [cyan]{group}[/]...", Icon.WAIT)


def config_created(path: str) -> None:
    """Log config file created."""
    info(f"Created config at [cyan]{path}[/]", Icon.SAVE)


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, source: str = "tui", level: int = logging.INFO) -> None:
    """Configure structlog to write JSON lines to the rotating log file.

    Nothing goes to the console: the TUI owns the terminal, and CLI commands
    print through the Rich helpers above.

    Args:
        config: Application config with paths
        source: Value of the `source` field on every record ("tui" or "cli")
        level: Minimum stdlib level written to the file
    """
    global _config
    _config = config

    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(level)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                _add_source(source),
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

