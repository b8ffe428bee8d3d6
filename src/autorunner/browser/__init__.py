"""Playwright-backed browser actions."""
