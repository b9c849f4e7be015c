"""Application runtime wiring."""

from claude_pipe.app.bootstrap import build_runtime
from claude_pipe.app.runtime import AppRuntime

__all__ = ["AppRuntime", "build_runtime"]
