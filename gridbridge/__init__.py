"""GridBridge: real-time event bridge for AI coding-agent CLIs."""

__version__ = "0.3.0"
