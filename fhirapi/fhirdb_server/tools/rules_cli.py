"""
Search rule CLI tool for FHIR DB Server.

This tool inspects search rule files:
- check: Validate a rule file (parse errors, orphaned join/default keys)
- query: Print the query the builder produces for a set of parameters

Usage:
    fhirdb-rules check rules.txt
    fhirdb-rules query Patient family=Smith,Jones gender=female
    fhirdb-rules query --rules rules.txt Observation code=1234-5

Logs go to stderr, formatted per LOG_FORMAT (json or text) and LOG_LEVEL.

Invariants:
    - Problems cause a non-zero exit code
    - query output is exactly the text sent to the backend

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for CI parsing
"""

from __future__ import annotations

import argparse
import logging
import sys

from ..config import ObservabilityConfig, ServerConfig
from ..engine import setup_logging
from ..search.query_builder import SearchQueryBuilder
from ..search.rules import SearchRuleError, SearchRuleTable
from ..storage.sqlite_documents import SqliteDocumentStore

logger = logging.getLogger(__name__)


class RulesCLI:
    """CLI tool for search rule management.

    Example:
        >>> cli = RulesCLI()
        >>> cli.check(SearchRuleTable.load("rules.txt"))
        []
        >>> cli.query(SearchRuleTable.load_default(), "Patient", ["gender=female"])
        "SELECT DISTINCT c.id, c.body FROM c WHERE (json_extract(c.body, '$.gender') = 'female')"
    """

    def check(self, table: SearchRuleTable) -> list[str]:
        """Validate a loaded rule table.

        Returns:
            List of problems (empty when the table is usable)
        """
        issues = [
            f"{key}: no base rule '{key.rsplit('.', 1)[0]}', entry is never used"
            for key in table.orphans()
        ]
        if len(table) == 0:
            issues.append("rule file defines no rules")
        return issues

    def query(
        self,
        table: SearchRuleTable,
        resource_type: str,
        assignments: list[str],
        select_all_query: str = SqliteDocumentStore.SELECT_ALL_QUERY,
    ) -> str:
        """Build the query for `name=value` assignments.

        Raises:
            ValueError: If an assignment has no '='
        """
        params = []
        for assignment in assignments:
            name, sep, value = assignment.partition("=")
            if not sep:
                raise ValueError(f"Expected name=value, got '{assignment}'")
            params.append((name, value))
        return SearchQueryBuilder(table, select_all_query).build(resource_type, params)


def _load_table(path: str | None) -> SearchRuleTable:
    return SearchRuleTable.load(path) if path else SearchRuleTable.load_default()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for rule tool."""
    parser = argparse.ArgumentParser(description="FHIR DB search rule tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # check command
    check_parser = subparsers.add_parser("check", help="Validate a rule file")
    check_parser.add_argument("file", help="Path to the rule file")

    # query command
    query_parser = subparsers.add_parser("query", help="Show the query for search parameters")
    query_parser.add_argument("resource_type", help="Resource type, e.g. Patient")
    query_parser.add_argument("params", nargs="*", help="Search parameters as name=value")
    query_parser.add_argument("--rules", "-r", help="Rule file (default: packaged rules)")

    args = parser.parse_args(argv)
    setup_logging(ServerConfig(observability=ObservabilityConfig.from_env()))
    cli = RulesCLI()

    if args.command == "check":
        try:
            table = SearchRuleTable.load(args.file)
        except SearchRuleError as e:
            print(f"Rule file check FAILED: {e}")
            sys.exit(1)

        issues = cli.check(table)
        if not issues:
            print(f"Rule file is valid ({len(table)} entries)")
            sys.exit(0)
        else:
            print(f"Rule file check FAILED with {len(issues)} problem(s):")
            for issue in issues:
                print(f"  - {issue}")
            sys.exit(1)

    elif args.command == "query":
        try:
            table = _load_table(args.rules)
            print(cli.query(table, args.resource_type, args.params))
        except (SearchRuleError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(2)


if __name__ == "__main__":
    main()
