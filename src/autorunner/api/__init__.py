"""HTTP API actions."""
