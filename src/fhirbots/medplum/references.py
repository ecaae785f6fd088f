"""Helpers for FHIR references, identifiers and codings."""

from __future__ import annotations

LOINC = "http://loinc.org"
ICD10 = "http://hl7.org/fhir/sid/icd-10"
NPI = "http://hl7.org/fhir/sid/us-npi"
SSN = "http://hl7.org/fhir/sid/us-ssn"


def get_reference_string(resource: dict) -> str:
    """Return ``ResourceType/id`` for a resource."""
    return f"{resource.get('resourceType', '')}/{resource.get('id', '')}"


def parse_reference(reference: dict | str | None) -> tuple[str, str]:
    """Split a reference into (resource_type, id).

    Accepts a Reference dict or a plain ``"Patient/123"`` string.
    Raises ValueError if the reference cannot be resolved.
    """
    if isinstance(reference, dict):
        reference = reference.get("reference")
    if not reference or not isinstance(reference, str):
        raise ValueError("Missing reference")
    parts = reference.split("?")[0].strip("/").split("/")
    if len(parts) < 2 or not parts[-2] or not parts[-1]:
        raise ValueError(f"Invalid reference: {reference}")
    return parts[-2], parts[-1]


def get_display_string(resource: dict) -> str:
    """Human-readable label for a resource (name, code text, or reference)."""
    names = resource.get("name")
    if isinstance(names, list) and names:
        name = names[0]
        if name.get("text"):
            return name["text"]
        given = " ".join(name.get("given", []))
        display = f"{given} {name.get('family', '')}".strip()
        if display:
            return display
    elif isinstance(names, str) and names:
        return names

    code = resource.get("code")
    if isinstance(code, dict):
        if code.get("text"):
            return code["text"]
        for coding in code.get("coding", []):
            if coding.get("display"):
                return coding["display"]

    return get_reference_string(resource)


def create_reference(resource: dict) -> dict:
    """Build a Reference to ``resource`` with a display label."""
    reference = {"reference": get_reference_string(resource)}
    display = get_display_string(resource)
    if display != reference["reference"]:
        reference["display"] = display
    return reference


def get_identifier(resource: dict, system: str) -> str | None:
    """Return the value of the first identifier with the given system."""
    for identifier in resource.get("identifier", []):
        if identifier.get("system") == system:
            return identifier.get("value")
    return None


def get_code_by_system(concept: dict | list | None, system: str) -> str | None:
    """Return the code from the first coding with the given system.

    Accepts a CodeableConcept or a list of them (e.g. ``Coverage.type`` vs
    ``Encounter.participant.type``).
    """
    if not concept:
        return None
    concepts = concept if isinstance(concept, list) else [concept]
    for item in concepts:
        for coding in item.get("coding", []):
            if coding.get("system") == system:
                return coding.get("code")
    return None
