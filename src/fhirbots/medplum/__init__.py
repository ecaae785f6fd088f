"""FHIR resource store clients for fhirbots.

Two interchangeable backends implementing FhirClientProtocol:
- MedplumClient: Medplum FHIR R4 API with OAuth2 client credentials
- FhirJsonStore: local JSON files on disk (offline runs and tests)

Usage:
    from fhirbots.medplum import get_fhir_client

    medplum = get_fhir_client()
    patient = await medplum.read_reference({"reference": "Patient/123"})
"""

from __future__ import annotations

from ..config import BotConfig, get_config
from .client import MedplumClient
from .operations import FhirOperationsMixin, ResourceNotFoundError
from .references import (
    create_reference,
    get_code_by_system,
    get_display_string,
    get_identifier,
    get_reference_string,
    parse_reference,
)
from .store import FhirJsonStore


def get_fhir_client(config: BotConfig | None = None) -> MedplumClient | FhirJsonStore:
    """Build the FHIR client selected by ``FHIR_BACKEND``."""
    config = config or get_config()
    if config.fhir_backend == "local":
        return FhirJsonStore(config.fhir_data_dir)
    return MedplumClient(config=config)


__all__ = [
    # Clients
    "MedplumClient",
    "FhirJsonStore",
    "FhirOperationsMixin",
    "ResourceNotFoundError",
    "get_fhir_client",
    # Reference helpers
    "create_reference",
    "get_code_by_system",
    "get_display_string",
    "get_identifier",
    "get_reference_string",
    "parse_reference",
]
