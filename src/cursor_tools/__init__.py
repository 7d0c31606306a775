"""Stdio tool server and CLI helpers around the Cursor agent CLI and cursor-bridge."""
