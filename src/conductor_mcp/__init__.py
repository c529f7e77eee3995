"""Conductor MCP: session and run orchestration for the Claude CLI."""

__version__ = "0.1.0"

__all__ = ["__version__"]
