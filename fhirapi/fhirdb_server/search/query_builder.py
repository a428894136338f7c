"""
Search query builder for FHIR DB Server.

Compiles FHIR search parameters into backend query text by template
substitution over a SearchRuleTable. This is a text compiler, not a parser:
the output is never validated, and a bad template or value yields a query
the backend rejects at execution time (DocumentStoreError).

Algorithm:
    1. Start from the backend's select-all query.
    2. Skip parameters with no base rule.
    3. Append the parameter's join clause once (substring de-duplication).
    4. Split the value on ',' (OR) and each part on '|' (bind tokens
       ~v0~, ~v1~, ... in the default template).
    5. OR the parts of one parameter inside one parenthesised group; AND
       the groups of different parameters after a single WHERE.

Example:
    >>> builder.build("Patient", {"family": "Smith,Jones"})
    "... WHERE (name.family = 'Smith' OR name.family = 'Jones')"
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Union

from .rules import SearchRuleTable

logger = logging.getLogger(__name__)

SearchParams = Union[Mapping[str, Any], Iterable[tuple[str, Any]]]


def ordered_params(params: SearchParams) -> list[tuple[str, str]]:
    """Normalize parameters to ordered (name, value) pairs.

    A sequence of pairs may repeat a name; repeats are merged into one
    comma-separated value at the position of the first occurrence.
    """
    items = params.items() if isinstance(params, Mapping) else params
    merged: dict[str, list[str]] = {}
    for name, value in items:
        if value is None:
            continue
        merged.setdefault(name, []).append(str(value))
    return [(name, ",".join(values)) for name, values in merged.items()]


def bind_values(template: str, value: str) -> str:
    """Substitute '|'-separated tokens into ~v0~, ~v1~, ... by position."""
    for position, token in enumerate(value.split("|")):
        template = template.replace(f"~v{position}~", token)
    return template


class SearchQueryBuilder:
    """Maps search parameters to a backend query string.

    Attributes:
        rules: Immutable rule table
        select_all_query: The backend's select-all query text

    Example:
        >>> builder = SearchQueryBuilder(SearchRuleTable.load_default(), docs.select_all_query)
        >>> builder.build("Patient", [("gender", "female"), ("family", "Smith")])
    """

    def __init__(self, rules: SearchRuleTable, select_all_query: str) -> None:
        self.rules = rules
        self.select_all_query = select_all_query

    def build(self, resource_type: str, params: SearchParams) -> str:
        """Build the query for a resource type and its search parameters."""
        select = self.select_all_query
        groups = []

        for name, value in ordered_params(params):
            rule = self.rules.rule(resource_type, name)
            if rule is None:
                continue

            if rule.join_clause and rule.join_clause not in select:
                select = f"{select} {rule.join_clause}"

            if rule.default_template is None:
                continue

            pieces = [bind_values(rule.default_template, part) for part in value.split(",")]
            groups.append("(" + " OR ".join(pieces) + ")")

        query = select + (" WHERE " + " AND ".join(groups) if groups else "")
        logger.debug(
            "Built search query",
            extra={"resource_type": resource_type, "groups": len(groups), "query": query},
        )
        return query
