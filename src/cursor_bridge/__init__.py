"""OpenAI-compatible HTTP bridge in front of the Cursor agent CLI."""

__version__ = "0.1.1"
