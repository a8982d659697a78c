"""
Root Typer application for the rampart CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="rampart",
    help="rampart — resilience controls: classification, breakers, retries and deferred work.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("rampart")
        except PackageNotFoundError:
            from rampart import __version__ as v
        typer.echo(f"rampart {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """rampart CLI — inspect classification, redaction, presets and deferred queues."""
    from rampart.core.logging import configure_logging
    from rampart.core.settings import get_settings

    settings = get_settings()
    configure_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_format=settings.json_logs,
    )


# ── Sub-command registration ─────────────────────────────────────────────

from rampart.cli.inspect import classify_cmd, config_cmd, presets_cmd, redact_cmd  # noqa: E402
from rampart.cli.queue import app as queue_app  # noqa: E402

app.command("classify")(classify_cmd)
app.command("redact")(redact_cmd)
app.command("presets")(presets_cmd)
app.command("config")(config_cmd)
app.add_typer(queue_app, name="queue", help="Deferred action queue management.")


if __name__ == "__main__":
    app()
