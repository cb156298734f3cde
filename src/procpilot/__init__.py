"""procpilot: run external commands with retry, restart and log capture."""

__version__ = "0.1.0"
