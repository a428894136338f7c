"""
Resource model for FHIR DB Server.

A Resource is a typed, identified JSON document subject to versioning.
The engine never interprets the body beyond the identity and meta fields
it owns (resourceType, id, meta.versionId, meta.lastUpdated).

Serialized form (FHIR JSON):
    {"resourceType": "Patient", "id": "...", ..., "meta": {"versionId": "...",
     "lastUpdated": "2024-01-01T00:00:00.000+00:00"}}

Invariants:
    - Serialization is deterministic for a given Resource (compact separators)
    - versionId and lastUpdated in the serialized form always come from the
      Resource fields, never from stale values inside body["meta"]
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Keys owned by the engine; everything else in a document is opaque body
_IDENTITY_KEYS = ("resourceType", "id")
_MANAGED_META_KEYS = ("versionId", "lastUpdated")


def format_instant(value: datetime) -> str:
    """Format a datetime as a FHIR instant (UTC, millisecond precision)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_instant(value: str) -> datetime:
    """Parse a FHIR instant, accepting a trailing 'Z'."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Resource:
    """A versioned FHIR resource.

    Attributes:
        resource_type: FHIR resource type name (e.g. "Patient")
        id: Logical id, empty until assigned on first write
        version_id: Version token assigned on every successful write
        last_updated: Time of the write that produced this version
        body: Remaining resource content (opaque)
    """

    resource_type: str
    id: str = ""
    version_id: str = ""
    last_updated: datetime | None = None
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Identity key "{type}/{id}"."""
        return f"{self.resource_type}/{self.id}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to a FHIR JSON document."""
        doc: dict[str, Any] = {"resourceType": self.resource_type}
        if self.id:
            doc["id"] = self.id

        for name, value in self.body.items():
            if name in _IDENTITY_KEYS or name == "meta":
                continue
            doc[name] = value

        meta = {
            k: v for k, v in (self.body.get("meta") or {}).items() if k not in _MANAGED_META_KEYS
        }
        if self.version_id:
            meta["versionId"] = self.version_id
        if self.last_updated is not None:
            meta["lastUpdated"] = format_instant(self.last_updated)
        if meta:
            doc["meta"] = meta

        return doc

    def to_json(self) -> str:
        """Serialize to compact FHIR JSON text."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any], resource_type: str | None = None) -> Resource:
        """Create from a FHIR JSON document.

        Args:
            data: Document dictionary
            resource_type: Type to assume when the document has no resourceType

        Returns:
            Resource instance

        Raises:
            ValueError: If no resource type can be determined
        """
        type_name = data.get("resourceType") or resource_type
        if not type_name:
            raise ValueError("Document has no resourceType")

        meta = dict(data.get("meta") or {})
        version_id = str(meta.pop("versionId", "") or "")
        last_updated_raw = meta.pop("lastUpdated", None)

        body = {k: v for k, v in data.items() if k not in _IDENTITY_KEYS and k != "meta"}
        if meta:
            body["meta"] = meta

        return cls(
            resource_type=type_name,
            id=str(data.get("id") or ""),
            version_id=version_id,
            last_updated=parse_instant(last_updated_raw) if last_updated_raw else None,
            body=body,
        )

    @classmethod
    def from_json(cls, text: str | bytes, resource_type: str | None = None) -> Resource:
        """Create from FHIR JSON text."""
        return cls.from_dict(json.loads(text), resource_type=resource_type)

    def __str__(self) -> str:
        return f"Resource({self.key}, version={self.version_id or '-'})"
