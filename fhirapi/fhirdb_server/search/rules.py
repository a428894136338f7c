"""
Search parameter rule table for FHIR DB Server.

Rules map FHIR search parameters onto fragments of the document backend's
query language. They are read from a line-oriented ``name=value`` source:

    # comment
    Patient.family=string
    Patient.family.join=JOIN json_each(c.body, '$.name') AS pname
    Patient.family.default=json_extract(pname.value, '$.family') = '~v0~'

Key forms:
    <Type>.<param>            base rule; a parameter without one is ignored
    <Type>.<param>.join       join clause appended once to the select clause
    <Type>.<param>.default    where template; ~v0~, ~v1~ ... are bind slots

Invariants:
    - The table is immutable once constructed
    - Lines starting with '#' and lines without '=' are ignored
    - The value is everything after the first '=' (values may contain '=')
    - Duplicate keys are rejected at load time

How to change safely:
    - Add rules to the rule file; the builder needs no code change
    - Check new files with `fhirdb-rules check <file>` before deploying
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

logger = logging.getLogger(__name__)

JOIN_SUFFIX = ".join"
DEFAULT_SUFFIX = ".default"
DEFAULT_RULES_RESOURCE = "default_rules.txt"


class SearchRuleError(Exception):
    """Rule source could not be read or parsed."""
    pass


@dataclass(frozen=True)
class SearchParamRule:
    """All rule entries for one (type, parameter) pair.

    Attributes:
        resource_type: Resource type the parameter applies to
        param_name: Search parameter name
        where_template: Value of the base rule
        join_clause: Optional join appended to the select clause
        default_template: Optional where template with ~vN~ bind slots
    """

    resource_type: str
    param_name: str
    where_template: str
    join_clause: str | None = None
    default_template: str | None = None


class SearchRuleTable:
    """Immutable mapping of rule keys to query fragments.

    Constructed once at startup and handed to SearchQueryBuilder.
    Safe for unsynchronized concurrent reads.

    Example:
        >>> table = SearchRuleTable.from_lines([
        ...     "Patient.family=string",
        ...     "Patient.family.default=name.family = '~v0~'",
        ... ])
        >>> table.rule("Patient", "family").default_template
        "name.family = '~v0~'"
    """

    def __init__(self, entries: Mapping[str, str]) -> None:
        self._entries = MappingProxyType(dict(entries))

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> SearchRuleTable:
        """Parse rule lines.

        Raises:
            SearchRuleError: If a key appears twice
        """
        entries: dict[str, str] = {}
        for line_no, raw in enumerate(lines, start=1):
            line = raw.rstrip("\r\n")
            if line.startswith("#"):
                continue
            split = line.find("=")
            if split < 0:
                continue
            name = line[:split].strip()
            value = line[split + 1 :]
            if name in entries:
                raise SearchRuleError(f"Duplicate search rule '{name}' on line {line_no}")
            entries[name] = value
        return cls(entries)

    @classmethod
    def from_text(cls, text: str) -> SearchRuleTable:
        return cls.from_lines(text.splitlines())

    @classmethod
    def load(cls, path: str | Path) -> SearchRuleTable:
        """Load rules from a file.

        Raises:
            SearchRuleError: If the file cannot be read or parsed
        """
        try:
            with open(path, encoding="utf-8") as f:
                table = cls.from_lines(f)
        except OSError as e:
            raise SearchRuleError(f"Cannot read search rules from {path}: {e}") from e

        logger.info("Loaded search rules", extra={"path": str(path), "entries": len(table)})
        return table

    @classmethod
    def load_default(cls) -> SearchRuleTable:
        """Load the rules packaged for the SQLite document backend."""
        text = (
            resources.files(__package__)
            .joinpath(DEFAULT_RULES_RESOURCE)
            .read_text(encoding="utf-8")
        )
        table = cls.from_text(text)
        logger.info("Loaded packaged search rules", extra={"entries": len(table)})
        return table

    def get(self, key: str) -> str | None:
        return self._entries.get(key)

    def rule(self, resource_type: str, param_name: str) -> SearchParamRule | None:
        """Rule for a parameter, or None if it has no base entry."""
        base_key = f"{resource_type}.{param_name}"
        base = self._entries.get(base_key)
        if base is None:
            return None
        return SearchParamRule(
            resource_type=resource_type,
            param_name=param_name,
            where_template=base,
            join_clause=self._entries.get(base_key + JOIN_SUFFIX),
            default_template=self._entries.get(base_key + DEFAULT_SUFFIX),
        )

    def orphans(self) -> list[str]:
        """Join/default keys that have no base rule and can never apply."""
        orphaned = []
        for key in self._entries:
            for suffix in (JOIN_SUFFIX, DEFAULT_SUFFIX):
                if key.endswith(suffix) and key[: -len(suffix)] not in self._entries:
                    orphaned.append(key)
        return sorted(orphaned)

    def keys(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
