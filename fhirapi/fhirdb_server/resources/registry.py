"""
Resource type registry for FHIR DB Server.

The ResourceTypeRegistry maps resource type names to their descriptors.
Stored documents carry only a type name; the registry is how the engine
turns that name back into something it can parse. Lookups are explicit
and keyed by name; unknown names are an error, never a dynamic load.

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Once frozen, no new types can be registered
    - Type names are unique and case-sensitive ("Patient" != "patient")

How to change safely:
    - Register custom types before calling freeze()
    - Never remove a type that has stored documents

Example:
    >>> registry = ResourceTypeRegistry()
    >>> registry.register(ResourceTypeDef("Patient"))
    >>> registry.freeze()
    >>> registry.get("Patient")
    ResourceTypeDef(name='Patient', ...)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator

from ..errors import UnknownResourceTypeError
from .model import Resource

logger = logging.getLogger(__name__)

# FHIR R4 resource types known to the default registry
FHIR_R4_RESOURCE_TYPES: tuple[str, ...] = (
    "Account", "ActivityDefinition", "AdverseEvent", "AllergyIntolerance",
    "Appointment", "AppointmentResponse", "AuditEvent", "Basic", "Binary",
    "BiologicallyDerivedProduct", "BodyStructure", "Bundle", "CapabilityStatement",
    "CarePlan", "CareTeam", "CatalogEntry", "ChargeItem", "ChargeItemDefinition",
    "Claim", "ClaimResponse", "ClinicalImpression", "CodeSystem", "Communication",
    "CommunicationRequest", "CompartmentDefinition", "Composition", "ConceptMap",
    "Condition", "Consent", "Contract", "Coverage", "CoverageEligibilityRequest",
    "CoverageEligibilityResponse", "DetectedIssue", "Device", "DeviceDefinition",
    "DeviceMetric", "DeviceRequest", "DeviceUseStatement", "DiagnosticReport",
    "DocumentManifest", "DocumentReference", "EffectEvidenceSynthesis", "Encounter",
    "Endpoint", "EnrollmentRequest", "EnrollmentResponse", "EpisodeOfCare",
    "EventDefinition", "Evidence", "EvidenceVariable", "ExampleScenario",
    "ExplanationOfBenefit", "FamilyMemberHistory", "Flag", "Goal", "GraphDefinition",
    "Group", "GuidanceResponse", "HealthcareService", "ImagingStudy", "Immunization",
    "ImmunizationEvaluation", "ImmunizationRecommendation", "ImplementationGuide",
    "InsurancePlan", "Invoice", "Library", "Linkage", "List", "Location", "Measure",
    "MeasureReport", "Media", "Medication", "MedicationAdministration",
    "MedicationDispense", "MedicationKnowledge", "MedicationRequest",
    "MedicationStatement", "MedicinalProduct", "MedicinalProductAuthorization",
    "MedicinalProductContraindication", "MedicinalProductIndication",
    "MedicinalProductIngredient", "MedicinalProductInteraction",
    "MedicinalProductManufactured", "MedicinalProductPackaged",
    "MedicinalProductPharmaceutical", "MedicinalProductUndesirableEffect",
    "MessageDefinition", "MessageHeader", "MolecularSequence", "NamingSystem",
    "NutritionOrder", "Observation", "ObservationDefinition", "OperationDefinition",
    "OperationOutcome", "Organization", "OrganizationAffiliation", "Parameters",
    "Patient", "PaymentNotice", "PaymentReconciliation", "Person", "PlanDefinition",
    "Practitioner", "PractitionerRole", "Procedure", "Provenance", "Questionnaire",
    "QuestionnaireResponse", "RelatedPerson", "RequestGroup", "ResearchDefinition",
    "ResearchElementDefinition", "ResearchStudy", "ResearchSubject", "RiskAssessment",
    "RiskEvidenceSynthesis", "Schedule", "SearchParameter", "ServiceRequest", "Slot",
    "Specimen", "SpecimenDefinition", "StructureDefinition", "StructureMap",
    "Subscription", "Substance", "SubstanceNucleicAcid", "SubstancePolymer",
    "SubstanceProtein", "SubstanceReferenceInformation", "SubstanceSourceMaterial",
    "SubstanceSpecification", "SupplyDelivery", "SupplyRequest", "Task",
    "TerminologyCapabilities", "TestReport", "TestScript", "ValueSet",
    "VerificationResult", "VisionPrescription",
)


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""
    pass


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a type name twice."""
    pass


@dataclass(frozen=True)
class ResourceTypeDef:
    """Descriptor for one resource type.

    Attributes:
        name: Resource type name as it appears in resourceType
        description: Optional human-readable description
    """

    name: str
    description: str = ""

    def parse(self, document: Dict[str, Any]) -> Resource:
        """Parse a stored document of this type.

        Raises:
            ValueError: If the document declares a different resourceType
        """
        declared = document.get("resourceType")
        if declared and declared != self.name:
            raise ValueError(
                f"Document resourceType '{declared}' does not match '{self.name}'"
            )
        return Resource.from_dict(document, resource_type=self.name)


class ResourceTypeRegistry:
    """Registry of resource type descriptors keyed by name.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is irreversible

    Example:
        >>> registry = create_default_registry()
        >>> registry.parse({"resourceType": "Patient", "id": "p1"})
        Resource(Patient/p1, version=-)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._types: Dict[str, ResourceTypeDef] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    def register(self, type_def: ResourceTypeDef) -> None:
        """Register a resource type.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register resource type '{type_def.name}': registry is frozen"
                )
            if type_def.name in self._types:
                raise DuplicateRegistrationError(
                    f"Resource type '{type_def.name}' already registered"
                )
            self._types[type_def.name] = type_def
            logger.debug(f"Registered resource type: {type_def.name}")

    def freeze(self) -> None:
        """Freeze the registry. Subsequent registrations raise."""
        with self._lock:
            self._frozen = True
        logger.info("Resource type registry frozen", extra={"types": len(self._types)})

    def get(self, name: str) -> ResourceTypeDef:
        """Look up a type by name.

        Raises:
            UnknownResourceTypeError: If the name is not registered
        """
        try:
            return self._types[name]
        except KeyError:
            raise UnknownResourceTypeError(name) from None

    def parse(self, document: Dict[str, Any], resource_type: str | None = None) -> Resource:
        """Parse a document using the descriptor named by its resourceType.

        Args:
            document: FHIR JSON document
            resource_type: Type to use when the document has no resourceType

        Raises:
            UnknownResourceTypeError: If the type is not registered
            ValueError: If no type can be determined
        """
        name = document.get("resourceType") or resource_type
        if not name:
            raise ValueError("Document has no resourceType")
        return self.get(name).parse(document)

    def names(self) -> list[str]:
        """Registered type names, sorted."""
        return sorted(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __iter__(self) -> Iterator[ResourceTypeDef]:
        return iter(list(self._types.values()))

    def __len__(self) -> int:
        return len(self._types)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> ResourceTypeRegistry:
        """Create an unfrozen registry with one plain descriptor per name."""
        registry = cls()
        for name in names:
            registry.register(ResourceTypeDef(name))
        return registry


def create_default_registry(freeze: bool = True) -> ResourceTypeRegistry:
    """Create a registry with all FHIR R4 resource types.

    Args:
        freeze: Freeze before returning (pass False to add custom types)
    """
    registry = ResourceTypeRegistry.from_names(FHIR_R4_RESOURCE_TYPES)
    if freeze:
        registry.freeze()
    return registry
