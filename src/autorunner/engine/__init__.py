"""Execution engine: variables, registry, dispatch and events."""
