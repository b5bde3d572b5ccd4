"""Locate the Claude CLI and build its argument vector."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any

from claude_agent.config.models import AgentOptions, SystemPromptPreset
from claude_agent.errors import CLINotFoundError
from claude_agent.mcp.tools import SdkMcpServer

logger = logging.getLogger(__name__)

CLI_NAME = "claude"

#: Install locations checked when ``claude`` is not on PATH.
_SYSTEM_LOCATIONS = ("/usr/local/bin/claude", "/opt/homebrew/bin/claude")

#: HOME-relative install locations.
_HOME_LOCATIONS = (
    (".local", "bin", "claude"),
    (".npm-global", "bin", "claude"),
    (".claude", "local", "claude"),
)

# CSI (ESC [ ... final), OSC (ESC ] ... BEL or ST), DCS (ESC P ... ST),
# then any other two-byte escape.
_ESCAPE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?"
    r"|\x1bP[^\x1b]*(?:\x1b\\)?"
    r"|\x1b[@-Z\\-_]"
    r"|\x9b[0-?]*[ -/]*[@-~]"
)

# C0 and C1 control characters except tab, newline and carriage return.
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")


def sanitize_text(text: str) -> str:
    """Strip terminal escape sequences and replace control bytes with spaces."""
    return _CONTROL_RE.sub(" ", _ESCAPE_RE.sub("", text))


def _home_candidates() -> list[str]:
    home = os.environ.get("HOME", "")
    if not home.startswith("/"):
        return []
    home = os.path.normpath(home)
    if ".." in Path(home).parts:
        return []
    return [os.path.join(home, *parts) for parts in _HOME_LOCATIONS]


def find_cli(cli_path: str | None = None) -> str:
    """Return the path to the ``claude`` executable.

    Raises:
        CLINotFoundError: If no executable is found.
    """
    if cli_path:
        if os.path.isfile(cli_path) and os.access(cli_path, os.X_OK):
            return cli_path
        msg = f"Configured Claude CLI path is not executable: {cli_path}"
        raise CLINotFoundError(msg)

    found = shutil.which(CLI_NAME)
    if found:
        return found

    for candidate in (*_SYSTEM_LOCATIONS, *_home_candidates()):
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate

    msg = (
        "Could not find 'claude' CLI in PATH or common locations.\n"
        "Install: npm install -g @anthropic-ai/claude-code"
    )
    raise CLINotFoundError(msg)


def _dumps(value: Any) -> str:
    """Compact single-line JSON for an argv value."""
    return json.dumps(value, separators=(",", ":"))


def build_command(
    prompt: str | None,
    options: AgentOptions,
    sdk_configs: dict[str, dict[str, Any]] | None = None,
) -> list[str]:
    """Build the argv for one CLI invocation.

    Args:
        prompt: A literal prompt selects ``--print`` mode; ``None`` selects
            streaming input over stdin.
        options: Query options.
        sdk_configs: Stdio descriptors replacing the ``sdk`` entries of
            ``options.mcp_servers``, keyed by server name.
    """
    cmd = [find_cli(options.cli_path), "--output-format", "stream-json", "--verbose"]

    if options.model:
        cmd.extend(["--model", options.model])
    if options.max_turns:
        cmd.extend(["--max-turns", str(int(options.max_turns))])
    if options.permission_mode != "default":
        cmd.extend(["--permission-mode", options.permission_mode])
    if options.allowed_tools:
        cmd.extend(["--allowedTools", ",".join(options.allowed_tools)])
    if options.disallowed_tools:
        cmd.extend(["--disallowedTools", ",".join(options.disallowed_tools)])
    if options.resume:
        cmd.extend(["--resume", options.resume])
    if options.fork_session:
        cmd.append("--fork-session")

    system_prompt = options.system_prompt
    if isinstance(system_prompt, SystemPromptPreset):
        cmd.extend(["--system-prompt", sanitize_text(system_prompt.preset)])
        if system_prompt.append:
            cmd.extend(["--append-system-prompt", sanitize_text(system_prompt.append)])
    elif system_prompt:
        cmd.extend(["--system-prompt", sanitize_text(system_prompt)])

    servers = _mcp_servers_config(options, sdk_configs or {})
    if servers:
        cmd.extend(["--mcp-config", _dumps({"mcpServers": servers})])

    if options.agents:
        agents = {
            name: agent.model_dump(exclude_none=True)
            for name, agent in options.agents.items()
        }
        cmd.extend(["--agents", _dumps(agents)])

    if options.setting_sources:
        cmd.extend(["--setting-sources", ",".join(options.setting_sources)])

    if options.output_format:
        cmd.extend(["--json-schema", _dumps(options.output_format["schema"])])

    if prompt is not None:
        cmd.extend(["--print", "--", sanitize_text(prompt)])
    else:
        cmd.extend(["--input-format", "stream-json"])

    return cmd


def _mcp_servers_config(
    options: AgentOptions,
    sdk_configs: dict[str, dict[str, Any]],
) -> dict[str, Any]:
    servers: dict[str, Any] = {}
    for name, server in options.mcp_servers.items():
        if isinstance(server, SdkMcpServer):
            continue
        servers[name] = server.model_dump()
    servers.update(sdk_configs)
    return servers


def build_env(options: AgentOptions) -> dict[str, str]:
    """Environment for the CLI subprocess."""
    env = dict(os.environ)
    env.update(options.env)
    env["CLAUDE_AGENT_SDK"] = "python"
    return env
