"""
Resource module for FHIR DB Server.

This module provides:
- Resource: the versioned document model and its FHIR JSON form
- ResourceTypeRegistry: explicit name -> descriptor lookup used to parse
  stored documents

Invariants:
    - Only resourceType, id, meta.versionId and meta.lastUpdated are
      interpreted; the rest of a resource is opaque
    - The registry is frozen before the engine serves requests
"""

from .model import Resource, format_instant, parse_instant
from .registry import (
    FHIR_R4_RESOURCE_TYPES,
    DuplicateRegistrationError,
    RegistryFrozenError,
    ResourceTypeDef,
    ResourceTypeRegistry,
    create_default_registry,
)

__all__ = [
    # Model
    "Resource",
    "format_instant",
    "parse_instant",
    # Registry
    "ResourceTypeDef",
    "ResourceTypeRegistry",
    "RegistryFrozenError",
    "DuplicateRegistrationError",
    "FHIR_R4_RESOURCE_TYPES",
    "create_default_registry",
]
