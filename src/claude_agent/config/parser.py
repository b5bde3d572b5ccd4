"""Load and validate claude-agent.yaml option files."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from claude_agent.config.models import AgentOptions
from claude_agent.errors import ConfigError

DEFAULT_CONFIG_NAME = "claude-agent.yaml"


def load_options(path: Path | None = None, **overrides: Any) -> AgentOptions:
    """Load and validate an options file.

    Args:
        path: Explicit config file path. If None, looks for
              claude-agent.yaml in the current directory.
        **overrides: Values that replace (or add to) the file contents,
              e.g. flags given on the command line.

    Returns:
        A validated AgentOptions instance.

    Raises:
        ConfigError: On missing file, bad YAML, or validation failure.
    """
    config_path = _resolve_path(path)
    raw = _read_yaml(config_path)
    _resolve_prompt_reference(raw, config_path.parent)
    _load_env(config_path.parent)
    raw.update({k: v for k, v in overrides.items() if v is not None})
    return validate_options(raw)


def validate_options(raw: dict[str, Any]) -> AgentOptions:
    """Validate a raw mapping, converting pydantic errors to ConfigError."""
    try:
        return AgentOptions.model_validate(raw)
    except ValidationError as exc:
        parts: list[str] = []
        for err in exc.errors():
            loc = " → ".join(str(s) for s in err["loc"])
            msg = err["msg"]
            if "field required" in msg.lower():
                msg = "This field is required"
            elif "extra inputs are not permitted" in msg.lower():
                msg = "Unknown option"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Options validation failed:\n{joined}"
        raise ConfigError(msg) from exc


def _resolve_path(path: Path | None) -> Path:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = Path.cwd() / DEFAULT_CONFIG_NAME
    if not default.is_file():
        msg = f"No {DEFAULT_CONFIG_NAME} found in {Path.cwd()}"
        raise ConfigError(msg)
    return default


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)

    return data


def _resolve_prompt_reference(raw: dict[str, Any], base_dir: Path) -> None:
    """Replace a ``./file`` system prompt with the file's contents."""
    prompt = raw.get("system_prompt")
    if not isinstance(prompt, str):
        return
    if not (prompt.startswith("./") or prompt.startswith("/")):
        return
    prompt_path = (base_dir / prompt).resolve()
    if not prompt_path.is_relative_to(base_dir.resolve()):
        msg = f"System prompt file escapes project directory: {prompt}"
        raise ConfigError(msg)
    if not prompt_path.is_file():
        msg = f"System prompt file not found: {prompt}"
        raise ConfigError(msg)
    raw["system_prompt"] = prompt_path.read_text(encoding="utf-8").strip()


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
