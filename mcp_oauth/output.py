"""Output formatters for human-readable and JSON CLI output."""

import json
import sys
from typing import Any, NoReturn

import click


def format_json(data: Any) -> str:
    """Format a successful result as JSON."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_error_json(
    error: BaseException,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as JSON with helpful information."""
    return json.dumps(
        {
            "success": False,
            "error": {
                "type": error_type or type(error).__name__,
                "message": str(error),
                "help": help_text or "",
            },
        },
        indent=2,
    )


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def error(
        self,
        error: BaseException,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> NoReturn:
        """Output error response and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def status(self, message: str) -> None:
        """Progress message on stderr; silent in JSON mode."""
        if not self.json_mode:
            click.secho(message, fg="cyan", err=True)

    def fields(self, title: str, data: dict[str, Any]) -> None:
        """Output a titled list of key/value pairs (JSON mode outputs the dict)."""
        if self.json_mode:
            click.echo(format_json(data))
            return

        click.secho(f"\n{title}\n", bold=True)
        width = max((len(key) for key in data), default=0)
        for key, value in data.items():
            if value is None:
                continue
            label = key.replace("_", " ")
            click.echo(f"  {label.ljust(width)}  {value}")
        click.echo()
