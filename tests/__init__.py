"""
FHIR DB Server Test Suite.

This package contains:
- unit/: Unit tests (in-memory backends, no external services)
- integration/: Integration tests (SQLite documents, in-memory history)
"""
