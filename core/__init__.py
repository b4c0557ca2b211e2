"""Agent-facing workspace operations (files, commands, tools)."""
