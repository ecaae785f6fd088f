"""DiagnosticReport -> RiskAssessment bot.

Triggered by a DiagnosticReport. For every referenced lab Observation with a
monitored LOINC code, sends the patient's three most recent daily values to
the prediction API, then records all probabilities in one RiskAssessment.

Observations are processed concurrently; each one resolves to a
PredictionSkipped, PredictionFailed or PredictionSucceeded so that a single
failure never affects the others.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any

from ...protocols import FhirClientProtocol
from ..schemas import BotEvent
from .aggregator import collect_lab_series, get_loinc_code
from .assessment import create_risk_assessment
from .codes import DEFAULT_LAB_CODES, LabCodeMap
from .prediction import PredictionClient, calculate_age, error_message, predict_lab_risk
from .schemas import (
    PatientInfo,
    PredictionFailed,
    PredictionResult,
    PredictionSkipped,
)

logger = logging.getLogger(__name__)


def _input_error(details: str) -> dict[str, str]:
    logger.warning(f"[LAB_RISK] {details}")
    return {"error": "Failed to process diagnostic report", "details": details}


async def process_observation(
    medplum: FhirClientProtocol,
    client: PredictionClient,
    observation: dict,
    patient: PatientInfo,
    lab_codes: LabCodeMap,
) -> PredictionResult:
    """Aggregate history and request a prediction for one Observation."""
    loinc_code = get_loinc_code(observation)
    if not lab_codes.is_monitored(loinc_code):
        reason = f"LOINC code {loinc_code} is not in the list of monitored blood tests"
        logger.info(f"[LAB_RISK] {reason}")
        return PredictionSkipped(reason=reason, loinc_code=loinc_code)

    subject_reference = (observation.get("subject") or {}).get("reference")
    if not subject_reference:
        logger.warning("[LAB_RISK] No patient reference found in observation")
        return PredictionFailed(
            error="Failed to process observation",
            details="No patient reference found in observation",
            loinc_code=loinc_code,
        )

    patient_id = subject_reference.split("/")[-1]
    series = await collect_lab_series(medplum, patient_id, loinc_code)
    if isinstance(series, PredictionSkipped):
        return series

    return await predict_lab_risk(client, patient, loinc_code, series)


async def process_reference(
    medplum: FhirClientProtocol,
    client: PredictionClient,
    reference: dict,
    patient: PatientInfo,
    lab_codes: LabCodeMap,
) -> PredictionResult:
    """Dereference one report result and process it; never raises."""
    ref_str = reference.get("reference")
    try:
        observation = await medplum.read_reference(reference)
        if not observation:
            return PredictionFailed(error="Observation not found", reference=ref_str)
        return await process_observation(medplum, client, observation, patient, lab_codes)
    except Exception as e:
        logger.error(f"[LAB_RISK] Error processing observation {ref_str}: {e}")
        return PredictionFailed(
            error="Failed to process observation",
            details=error_message(e),
            reference=ref_str,
        )


async def handler(
    medplum: FhirClientProtocol,
    event: BotEvent,
    lab_codes: LabCodeMap = DEFAULT_LAB_CODES,
    prediction_client: PredictionClient | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    """Run the risk prediction pipeline for the DiagnosticReport in ``event.input``.

    Returns a summary dict, or an ``{"error", "details"}`` dict when the
    report has no subject, the patient cannot be read, or there are no results.
    """
    report = event.input or {}
    if not isinstance(report, dict) or not isinstance(report.get("subject"), dict):
        return _input_error("No patient reference found")

    patient_reference = report["subject"].get("reference")
    if not patient_reference:
        return _input_error("No patient reference found")

    try:
        patient = await medplum.read_reference({"reference": patient_reference})
    except Exception as e:
        logger.error(f"[LAB_RISK] Patient lookup failed for {patient_reference}: {e}")
        patient = None
    if not patient:
        return _input_error("Patient not found")

    references = report.get("result") or []
    if not references:
        return _input_error("No observations found")

    patient_info = PatientInfo(
        patient_id=patient.get("id") or "00000",
        gender=patient.get("gender") or "unknown",
        age=calculate_age(patient.get("birthDate"), today),
    )
    client = prediction_client or PredictionClient()

    logger.info(
        f"[LAB_RISK] Processing {len(references)} observations "
        f"from diagnostic report {report.get('id')}"
    )
    results: list[PredictionResult] = await asyncio.gather(
        *(
            process_reference(medplum, client, reference, patient_info, lab_codes)
            for reference in references
        )
    )

    risk_assessment = await create_risk_assessment(medplum, report, results, lab_codes)
    risk_assessment_id = risk_assessment.get("id")

    summary = {
        "diagnosticReportId": report.get("id"),
        "patientId": patient.get("id"),
        "processedAt": datetime.now(timezone.utc).isoformat(),
        "totalObservations": len(references),
        "riskAssessment": {
            "id": risk_assessment_id,
            "reference": f"RiskAssessment/{risk_assessment_id}" if risk_assessment_id else None,
        },
        "results": [r.model_dump(by_alias=True, exclude_none=True) for r in results],
    }
    logger.info(f"[LAB_RISK] Completed processing diagnostic report {report.get('id')}")
    return summary
