"""claude-pipe - chat channels in front of a local coding agent CLI."""

__version__ = "0.1.0"
