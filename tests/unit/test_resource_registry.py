"""
Unit tests for the resource type registry.

Tests cover:
- Type registration and lookup
- Registry freezing
- Duplicate detection
- Parsing documents through descriptors
"""

import pytest

from fhirapi.fhirdb_server.errors import UnknownResourceTypeError
from fhirapi.fhirdb_server.resources.registry import (
    FHIR_R4_RESOURCE_TYPES,
    DuplicateRegistrationError,
    RegistryFrozenError,
    ResourceTypeDef,
    ResourceTypeRegistry,
    create_default_registry,
)


class TestResourceTypeRegistry:
    """Tests for ResourceTypeRegistry."""

    def test_register_and_get(self):
        """Registered types can be looked up by name."""
        registry = ResourceTypeRegistry()
        patient = ResourceTypeDef("Patient")

        registry.register(patient)

        assert registry.get("Patient") is patient
        assert "Patient" in registry
        assert len(registry) == 1

    def test_unknown_type(self):
        """Unknown names raise UnknownResourceTypeError."""
        registry = ResourceTypeRegistry()
        with pytest.raises(UnknownResourceTypeError) as exc_info:
            registry.get("Spaceship")
        assert exc_info.value.type_name == "Spaceship"

    def test_duplicate_registration(self):
        """Registering a name twice fails."""
        registry = ResourceTypeRegistry()
        registry.register(ResourceTypeDef("Patient"))
        with pytest.raises(DuplicateRegistrationError):
            registry.register(ResourceTypeDef("Patient"))

    def test_frozen_registry_rejects_registration(self):
        """No registration after freeze."""
        registry = ResourceTypeRegistry()
        registry.freeze()

        assert registry.frozen
        with pytest.raises(RegistryFrozenError):
            registry.register(ResourceTypeDef("Patient"))

    def test_parse_uses_declared_type(self):
        """Documents are parsed by their resourceType."""
        registry = ResourceTypeRegistry.from_names(["Patient", "Observation"])

        resource = registry.parse({"resourceType": "Observation", "id": "o1", "status": "final"})

        assert resource.resource_type == "Observation"
        assert resource.body == {"status": "final"}

    def test_parse_falls_back_to_given_type(self):
        """Documents without resourceType use the fallback."""
        registry = ResourceTypeRegistry.from_names(["Patient"])
        resource = registry.parse({"id": "p1"}, resource_type="Patient")
        assert resource.key == "Patient/p1"

    def test_parse_unknown_type(self):
        """Unregistered document types are rejected."""
        registry = ResourceTypeRegistry.from_names(["Patient"])
        with pytest.raises(UnknownResourceTypeError):
            registry.parse({"resourceType": "Spaceship"})

    def test_descriptor_rejects_mismatched_document(self):
        """A descriptor refuses a document of another type."""
        with pytest.raises(ValueError):
            ResourceTypeDef("Patient").parse({"resourceType": "Observation"})


class TestDefaultRegistry:
    """Tests for create_default_registry."""

    def test_contains_r4_types(self):
        """All FHIR R4 types are present."""
        registry = create_default_registry()

        for name in ("Patient", "Observation", "Bundle", "Encounter"):
            assert name in registry
        assert len(registry) == len(set(FHIR_R4_RESOURCE_TYPES))

    def test_frozen_by_default(self):
        """The default registry is frozen."""
        assert create_default_registry().frozen

    def test_unfrozen_allows_custom_types(self):
        """freeze=False leaves room for custom types."""
        registry = create_default_registry(freeze=False)
        registry.register(ResourceTypeDef("CustomThing"))
        assert "CustomThing" in registry
