"""
CLI: ``rampart classify | redact | presets | config`` — inspection commands.
"""

from __future__ import annotations

import builtins
import sys

import typer

from rampart.cli.utils import console, fail, output_data


class CliFault(Exception):
    """Fault built from command-line arguments."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _build_fault(message: str, error_type: str | None, status: int | None) -> BaseException:
    if error_type:
        cls = getattr(builtins, error_type, None)
        if not (isinstance(cls, type) and issubclass(cls, BaseException)):
            fail(f"'{error_type}' is not a builtin exception type", code="INVALID_INPUT")
        fault = cls(message)
        if status is not None:
            fault.status_code = status  # type: ignore[attr-defined]
        return fault
    return CliFault(message, status)


def classify_cmd(
    message: str = typer.Argument(..., help="Fault message to classify"),
    error_type: str | None = typer.Option(None, "--type", "-t", help="Builtin exception type, e.g. TimeoutError"),
    status: int | None = typer.Option(None, "--status", "-s", help="HTTP status code carried by the fault"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show how a fault would be classified."""
    from rampart.core.classify import classify

    classification = classify(_build_fault(message, error_type, status))
    output_data(classification, as_json=json_out, title="Classification")


def redact_cmd(
    text: str = typer.Argument("-", help="Text to redact, or '-' to read stdin"),
) -> None:
    """Mask credentials, IP addresses and absolute paths in text."""
    from rampart.core.redaction import redact

    source = sys.stdin.read() if text == "-" else text
    typer.echo(redact(source))


def presets_cmd(
    retry: bool = typer.Option(False, "--retry", "-r", help="Show retry policies instead"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List circuit breaker presets or retry policies."""
    if retry:
        from rampart.execution.retry import DEFAULT_POLICIES

        rows = [
            {
                "name": name,
                "max_attempts": p.max_attempts,
                "base_delay": p.base_delay,
                "max_delay": p.max_delay,
                "multiplier": p.backoff_multiplier,
                "strategy": p.strategy.value,
            }
            for name, p in DEFAULT_POLICIES.items()
        ]
        output_data(rows, as_json=json_out, title="Retry Policies")
        return

    from rampart.execution.circuit_breaker import PRESETS

    rows = [
        {
            "name": name,
            "failure_threshold": c.failure_threshold,
            "recovery_timeout": c.recovery_timeout,
            "monitoring_window": c.monitoring_window,
            "half_open_max_calls": c.half_open_max_calls,
            "fallback": c.fallback.value,
            "retryable_only": c.counts_as_failure is not None,
        }
        for name, c in PRESETS.items()
    ]
    output_data(rows, as_json=json_out, title="Circuit Breaker Presets")


def config_cmd(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, env"),
) -> None:
    """Show current configuration."""
    from rampart.core.settings import get_settings

    settings = get_settings()

    if format == "json":
        console.print_json(settings.model_dump_json())
        return

    if format == "env":
        for key, value in sorted(settings.model_dump().items()):
            typer.echo(f"RAMPART_{key.upper()}={'' if value is None else value}")
        return

    if format != "table":
        fail(f"Unknown format '{format}'", code="INVALID_INPUT")

    data = settings.model_dump(mode="json")
    data["resolved_store_path"] = str(settings.resolved_store_path)
    output_data(data, title="Settings")
