"""
History module for FHIR DB Server.

Every committed resource version is recorded as an immutable blob so that
any version can be read back (vread) and the full chain listed newest first.

Invariants:
    - History is written before the live document is committed
    - Entries outlive deletion of the live document
"""

from .log import HistoryLog, entry_key

__all__ = ["HistoryLog", "entry_key"]
