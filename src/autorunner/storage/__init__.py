"""Storage actions."""
