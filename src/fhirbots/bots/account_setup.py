"""Sample account bootstrap for new patients.

Triggered by a Patient on its first version only. Assigns a general
practitioner (creating the shared sample practitioner, its Schedule and its
hourly Slots if needed) and seeds the chart with care plans, a lab report,
medication requests, immunizations, vital signs and a welcome message.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone

from ..medplum.references import LOINC, create_reference, get_display_string, get_reference_string
from ..protocols import FhirClientProtocol
from .schemas import BotEvent

logger = logging.getLogger(__name__)

UCUM = "http://unitsofmeasure.org"
HOSPITAL = {"display": "FOOMEDICAL HOSPITAL AND MEDICAL CENTERS"}
SLOT_DAYS = 30

SAMPLE_PRACTITIONER = {
    "resourceType": "Practitioner",
    "identifier": [{"system": "http://hl7.org/fhir/sid/us-npi", "value": "123456789"}],
    "name": [{"given": ["Alice"], "family": "Smith"}],
    "photo": [
        {"contentType": "image/png", "url": "https://docs.medplum.com/img/cdc-femaledoc.png"}
    ],
}

# (codings, text, value, unit)
VITAL_SIGNS = [
    (
        [("8310-5", "Body temperature"), ("8331-1", "Oral temperature")],
        "Body temperature",
        36.6,
        "Cel",
    ),
    ([("8302-2", "Body Height")], "Body Height", 175, "cm"),
    ([("29463-7", "Body Weight")], "Body Weight", 70, "kg"),
    ([("9279-1", "Respiratory rate")], "Respiratory rate", 15, "/min"),
    ([("8867-4", "Heart rate")], "Heart rate", 80, "/min"),
]


def _loinc(codings: list[tuple[str, str]], text: str) -> dict:
    return {
        "coding": [{"code": code, "display": display, "system": LOINC} for code, display in codings],
        "text": text,
    }


def _quantity(value: float, unit: str) -> dict:
    return {"code": unit, "system": UCUM, "unit": unit, "value": value}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Practitioner, schedule and slots
# =============================================================================


async def get_practitioner(medplum: FhirClientProtocol, slot_days: int = SLOT_DAYS) -> dict:
    """The sample practitioner, created on first use, with a populated schedule."""
    practitioner = await medplum.create_resource_if_none_exist(
        dict(SAMPLE_PRACTITIONER), "Practitioner?identifier=123456789"
    )
    await ensure_schedule(medplum, practitioner, slot_days)
    return practitioner


async def ensure_schedule(medplum: FhirClientProtocol, practitioner: dict, slot_days: int) -> dict:
    schedule = await medplum.create_resource_if_none_exist(
        {"resourceType": "Schedule", "actor": [create_reference(practitioner)]},
        f"Schedule?actor={get_reference_string(practitioner)}",
    )
    today = datetime.now(timezone.utc).date()
    for offset in range(slot_days):
        await ensure_slots(medplum, schedule, today + timedelta(days=offset))
    return schedule


async def ensure_slots(medplum: FhirClientProtocol, schedule: dict, day: date) -> int:
    """Create 24 hourly Slots for ``day`` unless the schedule already has some.

    Returns the number of slots created.
    """
    day_start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    day_end = day_start + timedelta(days=1)

    existing = await medplum.search_one(
        "Slot",
        {
            "_summary": "true",
            "schedule": get_reference_string(schedule),
            "start": [f"ge{day_start.isoformat()}", f"lt{day_end.isoformat()}"],
        },
    )
    if existing is not None:
        return 0

    for hour in range(24):
        await medplum.create_resource(
            {
                "resourceType": "Slot",
                "start": (day_start + timedelta(hours=hour)).isoformat(),
                "schedule": create_reference(schedule),
            }
        )
    return 24


# =============================================================================
# Chart content
# =============================================================================


async def create_care_plans(medplum: FhirClientProtocol, patient: dict) -> None:
    await medplum.create_resource(
        {
            "resourceType": "CarePlan",
            "status": "completed",
            "intent": "order",
            "subject": create_reference(patient),
            "activity": [
                {
                    "detail": {
                        "code": {"text": "Recommendation to avoid exercise"},
                        "location": HOSPITAL,
                        "status": "completed",
                    }
                }
            ],
            "title": "Respiratory therapy",
            "period": {"start": "2020-01-01T00:00:00.000Z", "end": "2021-01-01T00:00:00.000Z"},
            "category": [{"text": "Respiratory therapy"}],
        }
    )
    await medplum.create_resource(
        {
            "resourceType": "CarePlan",
            "status": "active",
            "intent": "order",
            "subject": create_reference(patient),
            "activity": [
                {
                    "detail": {
                        "code": {"text": "Antenatal education"},
                        "location": HOSPITAL,
                        "status": "in-progress",
                    }
                }
            ],
            "title": "Routine antenatal care",
            "period": {"start": _now()},
            "category": [{"text": "Routine antenatal care"}],
        }
    )


async def create_diagnostic_report(medplum: FhirClientProtocol, patient: dict) -> dict:
    """DiagnosticReport with a single Hemoglobin A1c result."""
    hemoglobin_a1c = await medplum.create_resource(
        {
            "resourceType": "Observation",
            "subject": create_reference(patient),
            "code": {"text": "Hemoglobin A1c"},
            "valueQuantity": {"value": 5.4, "unit": "mmol/L"},
            "referenceRange": [{"high": {"value": 7.0}}],
        }
    )
    return await medplum.create_resource(
        {
            "resourceType": "DiagnosticReport",
            "status": "final",
            "code": {"text": "Hemoglobin A1c"},
            "subject": create_reference(patient),
            "result": [
                {
                    "reference": get_reference_string(hemoglobin_a1c),
                    "display": get_display_string(hemoglobin_a1c),
                }
            ],
        }
    )


async def create_medication_requests(
    medplum: FhirClientProtocol, patient: dict, practitioner: dict
) -> None:
    prescriptions = [
        (
            "active",
            "Every six hours (qualifier value)",
            {"frequency": 4, "period": 1, "periodUnit": "d"},
            "72 HR Fentanyl 0.025 MG/HR Transdermal System",
        ),
        (
            "stopped",
            "Every seventy two hours as needed (qualifier value)",
            {"frequency": 1, "period": 3, "periodUnit": "d"},
            "Acetaminophen 325 MG / Oxycodone Hydrochloride 10 MG Oral Tablet [Percocet]",
        ),
    ]
    for status, instruction, repeat, medication in prescriptions:
        await medplum.create_resource(
            {
                "resourceType": "MedicationRequest",
                "status": status,
                "intent": "order",
                "priority": "routine",
                "subject": create_reference(patient),
                "requester": create_reference(practitioner),
                "dosageInstruction": [
                    {"text": instruction, "sequence": 1, "timing": {"repeat": repeat}}
                ],
                "authoredOn": _now(),
                "medicationCodeableConcept": {"text": medication},
            }
        )


async def create_immunizations(medplum: FhirClientProtocol, patient: dict) -> None:
    await medplum.create_resource(
        {
            "resourceType": "Immunization",
            "status": "completed",
            "patient": create_reference(patient),
            "location": HOSPITAL,
            "occurrenceDateTime": _now(),
            "vaccineCode": {
                "text": (
                    "SARS-COV-2 (COVID-19) vaccine, mRNA, spike protein, LNP, "
                    "preservative free, 100 mcg/0.5mL dose"
                )
            },
        }
    )
    await medplum.create_resource(
        {
            "resourceType": "Immunization",
            "status": "not-done",
            "patient": create_reference(patient),
            "location": HOSPITAL,
            "vaccineCode": {"text": "Influenza, seasonal, injectable, preservative free"},
        }
    )


async def create_vital_signs(medplum: FhirClientProtocol, patient: dict) -> None:
    """Blood pressure panel plus the single-value vitals."""
    await medplum.create_resource(
        {
            "resourceType": "Observation",
            "subject": create_reference(patient),
            "code": _loinc([("85354-9", "Blood Pressure")], "Blood Pressure"),
            "component": [
                {
                    "code": _loinc([("8462-4", "Diastolic Blood Pressure")], "Diastolic Blood Pressure"),
                    "valueQuantity": _quantity(80, "mm[Hg]"),
                },
                {
                    "code": _loinc([("8480-6", "Systolic Blood Pressure")], "Systolic Blood Pressure"),
                    "valueQuantity": _quantity(120, "mm[Hg]"),
                },
            ],
            "effectiveDateTime": _now(),
            "status": "final",
        }
    )
    for codings, text, value, unit in VITAL_SIGNS:
        await medplum.create_resource(
            {
                "resourceType": "Observation",
                "subject": create_reference(patient),
                "code": _loinc(codings, text),
                "valueQuantity": _quantity(value, unit),
                "effectiveDateTime": _now(),
                "status": "final",
            }
        )


async def create_welcome_message(
    medplum: FhirClientProtocol, patient: dict, practitioner: dict
) -> None:
    await medplum.create_resource(
        {
            "resourceType": "Communication",
            "subject": create_reference(patient),
            "recipient": [create_reference(patient)],
            "sender": create_reference(practitioner),
            "payload": [{"contentString": "Hello and welcome to our practice"}],
        }
    )


# =============================================================================
# Bot
# =============================================================================


async def handler(medplum: FhirClientProtocol, event: BotEvent, slot_days: int = SLOT_DAYS) -> bool:
    """Set up the sample account for the Patient in ``event.input``.

    Returns False without changes when the Patient has been updated before
    (more than one history entry), True once the account is populated.
    """
    patient = dict(event.input or {})
    history = await medplum.read_history("Patient", patient["id"])
    if len(history.get("entry") or []) > 1:
        logger.info(f"[ACCOUNT_SETUP] Patient/{patient['id']} already set up, skipping")
        return False

    practitioner = await get_practitioner(medplum, slot_days)
    patient["generalPractitioner"] = [create_reference(practitioner)]
    patient = await medplum.update_resource(patient)

    await create_care_plans(medplum, patient)
    await create_diagnostic_report(medplum, patient)
    await create_medication_requests(medplum, patient, practitioner)
    await create_immunizations(medplum, patient)
    await create_vital_signs(medplum, patient)
    await create_welcome_message(medplum, patient, practitioner)

    logger.info(f"[ACCOUNT_SETUP] Populated sample account for Patient/{patient['id']}")
    return True
