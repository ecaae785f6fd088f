"""Patient deduplication by identifier.

Triggered by a Patient. When another Patient already carries the same first
identifier and the same name and birth date, the existing record is linked
as replacing the new one and the new record is deactivated. An identifier
collision with different demographics is left for an operator to resolve.
"""

from __future__ import annotations

import logging

from ..medplum.references import get_display_string, get_reference_string
from ..protocols import FhirClientProtocol
from .schemas import BotEvent, BotInputError

logger = logging.getLogger(__name__)


def _demographics(patient: dict) -> tuple[str | None, str | None, str | None]:
    name = (patient.get("name") or [{}])[0]
    return (
        (name.get("given") or [None])[0],
        name.get("family"),
        patient.get("birthDate"),
    )


async def find_existing_patient(medplum: FhirClientProtocol, patient: dict) -> dict | None:
    """Another Patient sharing the first identifier value, if any."""
    identifier = (patient.get("identifier") or [{}])[0].get("value")
    if not identifier:
        return None
    candidates = await medplum.search_resources("Patient", {"identifier": str(identifier)})
    return next((p for p in candidates if p.get("id") != patient.get("id")), None)


async def handler(medplum: FhirClientProtocol, event: BotEvent) -> bool:
    """Link or flag the Patient in ``event.input``.

    Raises:
        BotInputError: When the input is not a Patient.
    """
    patient = event.input or {}
    if patient.get("resourceType") != "Patient":
        raise BotInputError("Unexpected input. Expected Patient.")

    existing = await find_existing_patient(medplum, patient)
    if not existing:
        return True

    if _demographics(patient) == _demographics(existing):
        existing["link"] = [
            {
                "type": "replaces",
                "other": {
                    "reference": get_reference_string(patient),
                    "display": get_display_string(patient),
                },
            }
        ]
        await medplum.update_resource(existing)

        await medplum.update_resource({**patient, "active": False})
        logger.info(
            f"[DEDUP] Linked {get_reference_string(existing)} to duplicate "
            f"{get_reference_string(patient)}"
        )
    else:
        logger.warning("[DEDUP] Potential duplicate identifiers found, alert operator.")
        # keep the new record out of any automatic merge
        await medplum.update_resource({**patient, "active": True})

    return True
