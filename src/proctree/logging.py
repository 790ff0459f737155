"""Console messages with Rich formatting, and structlog configuration.

Human-facing CLI output goes through the Rich console helpers below. Event
logs from the collector, poller and actions go through structlog, which
writes JSON Lines to a rotating file and, outside the TUI, a readable
console stream.
"""

from __future__ import annotations

import logging
import logging.handlers
import time
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from proctree.config import Config

_console = Console(highlight=False, stderr=True)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    SIGNAL = "⚡"
    DEBUG = "🐞"
    SAVE = "💾"


_TAGS = {
    "info": "[bright_blue]info[/]",
    "warn": "[yellow]warn[/]",
    "error": "[bold red]err [/]",
}


# ─────────────────────────────────────────────────────────────────────────────
# Console Output
# ─────────────────────────────────────────────────────────────────────────────


def say(level: str, msg: str, icon: str = "") -> None:
    """Print one timestamped line to stderr.

    ``msg`` may contain Rich markup; ``icon`` is one of the Icon values.
    """
    parts = [f"[dim]{time.strftime('%H:%M:%S')}[/]", _TAGS.get(level, level)]
    if icon:
        parts.append(icon)
    parts.append(msg)
    _console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    say("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    say("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    say("error", msg, icon)


def snapshot_failed(root_pid: int, error_msg: str) -> None:
    error(f"Snapshot of [cyan]{root_pid}[/] failed: {error_msg}", Icon.FAIL)


def signal_result(pid: int, force: bool, delivered: bool) -> None:
    """Report a terminate request; failed deliveries are a warning only."""
    if not delivered:
        warn(f"Could not signal [cyan]{pid}[/]")
        return
    info(f"{'Killed' if force else 'Terminated'} [cyan]{pid}[/]", Icon.SIGNAL)


def attach_resolved(pid: int, mode: str) -> None:
    info(f"Attach to [cyan]{pid}[/] by [bold]{mode}[/]", Icon.DEBUG)


def config_created(path: str) -> None:
    info(f"Wrote default config to [cyan]{path}[/]", Icon.SAVE)


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Processor that tags every event with where it was logged from."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict.setdefault("source", source)
        return event_dict

    return processor


def _file_handler(config: Config, level: int, source: str) -> logging.Handler:
    """Rotating JSON Lines file; stdlib records get the same fields as ours."""
    handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", key="ts"),
                structlog.processors.add_log_level,
                _add_source(source),
                structlog.processors.format_exc_info,
            ],
        )
    )
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
            foreign_pre_chain=[
                structlog.processors.TimeStamper(fmt="%H:%M:%S"),
                structlog.processors.add_log_level,
            ],
        )
    )
    return handler


def configure(
    config: Config,
    source: str = "cli",
    console: bool = True,
    verbose: bool = False,
) -> None:
    """Route structlog through the stdlib root logger.

    Args:
        config: Application config with paths and rotation limits
        source: Value of the ``source`` field on every event
        console: Also render events to stderr (off while the TUI owns the terminal)
        verbose: Include debug events
    """
    level = logging.DEBUG if verbose else logging.INFO
    config.state_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(_file_handler(config, level, source))
    if console:
        root.addHandler(_console_handler(level))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            structlog.processors.add_log_level,
            _add_source(source),
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
