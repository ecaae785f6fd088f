"""Finalize a DiagnosticReport and its result Observations."""

from __future__ import annotations

import logging

from ..protocols import FhirClientProtocol
from .schemas import BotEvent

logger = logging.getLogger(__name__)


async def handler(medplum: FhirClientProtocol, event: BotEvent) -> dict:
    """Set ``status`` to ``final`` on the report in ``event.input`` and every result.

    Returns the updated DiagnosticReport.
    """
    report = dict(event.input or {})

    for reference in report.get("result") or []:
        observation = await medplum.read_reference(reference)
        if observation.get("status") != "final":
            await medplum.update_resource({**observation, "status": "final"})

    report["status"] = "final"
    updated = await medplum.update_resource(report)
    logger.info(
        f"[FINALIZE] DiagnosticReport/{updated.get('id')} finalized "
        f"with {len(report.get('result') or [])} results"
    )
    return updated
