"""Patient intake from a QuestionnaireResponse.

Triggered by a QuestionnaireResponse with ``firstName``/``lastName`` answers
(and an optional free-text ``comment``). Creates the Patient and, when a
comment was given, a review Task carrying it.
"""

from __future__ import annotations

import logging

from ..medplum.references import create_reference, get_reference_string
from ..protocols import FhirClientProtocol
from .schemas import BotEvent

logger = logging.getLogger(__name__)


def get_answer(response: dict, link_id: str) -> str | None:
    """First ``valueString`` answer for the item with ``link_id``."""
    for item in response.get("item", []):
        if item.get("linkId") == link_id:
            answers = item.get("answer") or [{}]
            return answers[0].get("valueString")
    return None


async def handler(medplum: FhirClientProtocol, event: BotEvent) -> bool:
    """Create a Patient from the intake form in ``event.input``."""
    response = event.input or {}

    first_name = get_answer(response, "firstName")
    if not first_name:
        logger.warning("Missing first name")
        return False
    last_name = get_answer(response, "lastName")
    if not last_name:
        logger.warning("Missing last name")
        return False

    patient = await medplum.create_resource(
        {"resourceType": "Patient", "name": [{"given": [first_name], "family": last_name}]}
    )
    logger.info(f"[INTAKE] Created {get_reference_string(patient)}")

    comment = get_answer(response, "comment")
    if comment:
        task = {
            "resourceType": "Task",
            "status": "requested",
            "intent": "order",
            "code": {"text": "Review patient intake"},
            "for": create_reference(patient),
            "note": [{"text": comment}],
        }
        if response.get("id"):
            task["focus"] = {"reference": get_reference_string(response)}
        await medplum.create_resource(task)

    return True
