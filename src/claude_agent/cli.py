"""Root CLI group and the ``ask`` command."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import click

from claude_agent import __version__
from claude_agent.config.models import AgentOptions
from claude_agent.config.parser import DEFAULT_CONFIG_NAME, load_options, validate_options
from claude_agent.errors import CLINotFoundError, ConfigError
from claude_agent.query import Query
from claude_agent.types.messages import AssistantMessage, ResultMessage

_PERMISSION_MODES = ["default", "acceptEdits", "bypassPermissions", "plan"]


@click.group()
@click.version_option(version=__version__, prog_name="claude-agent")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging on stderr.")
def cli(verbose: bool) -> None:
    """Drive the Claude agent CLI from Python."""
    debug = verbose or bool(os.environ.get("CLAUDE_AGENT_DEBUG"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.argument("prompt")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=False),
    default=None,
    help=f"Path to an options file (default: ./{DEFAULT_CONFIG_NAME} if present).",
)
@click.option("-m", "--model", default=None, help="Model alias or identifier.")
@click.option("--max-turns", type=click.IntRange(min=1), default=None)
@click.option("--permission-mode", type=click.Choice(_PERMISSION_MODES), default=None)
@click.option(
    "--allowed-tool",
    "allowed_tools",
    multiple=True,
    help="Tool the agent may use without asking (repeatable).",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds to wait for each message.",
)
@click.option("--json", "as_json", is_flag=True, help="Print every message as JSON.")
def ask(
    prompt: str,
    config_file: str | None,
    model: str | None,
    max_turns: int | None,
    permission_mode: str | None,
    allowed_tools: tuple[str, ...],
    timeout: float | None,
    as_json: bool,
) -> None:
    """Run a single prompt and print the reply."""
    overrides: dict[str, Any] = {
        "model": model,
        "max_turns": max_turns,
        "permission_mode": permission_mode,
        "allowed_tools": list(allowed_tools) or None,
        "query_timeout": timeout,
    }
    try:
        options = _load(config_file, overrides)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    try:
        stream = Query(prompt, options)
    except CLINotFoundError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    with stream:
        for message in stream:
            if as_json:
                click.echo(json.dumps(message.model_dump(mode="json", exclude_none=True)))
            elif isinstance(message, AssistantMessage) and message.text:
                click.echo(message.text)
            elif isinstance(message, ResultMessage) and message.is_error:
                click.echo(f"Error: {message.result or message.subtype}", err=True)

    if stream.error:
        click.echo(f"Error: {stream.error}", err=True)
        raise SystemExit(1)


def _load(config_file: str | None, overrides: dict[str, Any]) -> AgentOptions:
    """Options from an explicit file, ./claude-agent.yaml, or flags alone."""
    if config_file is not None or Path(DEFAULT_CONFIG_NAME).exists():
        return load_options(Path(config_file) if config_file else None, **overrides)
    return validate_options({k: v for k, v in overrides.items() if v is not None})


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
