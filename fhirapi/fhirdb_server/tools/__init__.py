"""
CLI tools for FHIR DB Server administration.

This module provides command-line tools for:
- rules: Validate search rule files and preview generated queries

Invariants:
    - Tools work offline (no running engine required)
"""

from .rules_cli import RulesCLI

__all__ = ["RulesCLI"]
