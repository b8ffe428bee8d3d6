"""
Automation runner.

Executes declarative browser and API automations: ordered steps of
pluggable actions, templated per-run variables, conditional branches,
bounded loops and multi-run scheduling with streamed progress.
"""

__version__ = "0.1.0"
