"""Exception types raised by the Claude Agent client."""

from __future__ import annotations


class ClaudeAgentError(Exception):
    """Base class for errors raised by this package."""


class CLINotFoundError(ClaudeAgentError):
    """The ``claude`` executable could not be located."""


class ConfigError(ClaudeAgentError):
    """User-facing configuration error."""


class RunnerArgumentError(ClaudeAgentError):
    """Invalid command-line input given to the SDK tool runner."""
