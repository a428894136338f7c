"""
Search module for FHIR DB Server.

This module compiles FHIR search parameters into document backend queries:
- SearchRuleTable: immutable rule mapping loaded once at startup
- SearchQueryBuilder: template substitution from parameters to query text

Invariants:
    - Unknown parameters are ignored, never an error
    - The builder never validates the generated query
"""

from .query_builder import SearchQueryBuilder, bind_values, ordered_params
from .rules import SearchParamRule, SearchRuleError, SearchRuleTable

__all__ = [
    "SearchQueryBuilder",
    "SearchRuleTable",
    "SearchParamRule",
    "SearchRuleError",
    "bind_values",
    "ordered_params",
]
