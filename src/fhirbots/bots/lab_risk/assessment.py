"""RiskAssessment assembly and persistence.

Turns the successful per-test predictions of one DiagnosticReport into a
single FHIR RiskAssessment with a generated summary note.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Sequence
from datetime import date, datetime, timezone

from ...medplum.references import LOINC
from ...protocols import FhirClientProtocol
from .classifier import RISK_PROBABILITY_SYSTEM, classify_probability
from .codes import LabCodeMap
from .schemas import PredictionSucceeded

logger = logging.getLogger(__name__)

# Predictions above this probability count as elevated risk in the note
ELEVATED_THRESHOLD = 0.5
# More elevated tests than this triggers the stronger recommendation
COMPREHENSIVE_EVALUATION_THRESHOLD = 2
PREDICTION_MONTHS = 3

BASE_NOTE = (
    "This risk assessment was automatically generated based on machine learning "
    "analysis of historical lab values."
)

PERFORMER = {
    "reference": "Device/lab-prediction-bot",
    "display": "Lab Test Prediction Bot",
}

METHOD = {
    "coding": [
        {
            "system": "http://terminology.hl7.org/CodeSystem/risk-assessment-method",
            "code": "ASTM-E2552",
            "display": "Machine Learning Prediction",
        }
    ],
    "text": "Time series analysis of lab values using machine learning model",
}


def add_months(start: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the target month's length."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def build_prediction_entry(
    result: PredictionSucceeded, lab_codes: LabCodeMap, start: date
) -> dict:
    """One ``RiskAssessment.prediction`` element for a successful test."""
    test_name = lab_codes.name_for(result.loinc_code)
    risk_level = classify_probability(result.probability)
    end = add_months(start, PREDICTION_MONTHS)

    return {
        "outcome": {
            "coding": [
                {
                    "system": LOINC,
                    "code": result.loinc_code,
                    "display": test_name,
                }
            ],
            "text": f"Risk of Abnormal {test_name} in Next 3 Months",
        },
        "probabilityDecimal": result.probability,
        "qualitativeRisk": {
            "coding": [
                {
                    "system": RISK_PROBABILITY_SYSTEM,
                    "code": risk_level.code,
                    "display": risk_level.display,
                }
            ]
        },
        "whenPeriod": {
            "start": start.isoformat(),
            "end": end.isoformat(),
        },
        "rationale": f"Based on historical trend analysis of {test_name} values",
    }


def build_summary_note(predictions: Sequence[PredictionSucceeded], lab_codes: LabCodeMap) -> str:
    """Free-text summary naming the tests at elevated risk."""
    elevated = [
        lab_codes.name_for(p.loinc_code)
        for p in predictions
        if p.probability > ELEVATED_THRESHOLD
    ]

    note = BASE_NOTE
    if not elevated:
        return note + (
            " All analyzed tests show low risk of becoming abnormal in the next 3 months."
        )

    note += (
        f" The following tests show elevated risk of becoming abnormal: {', '.join(elevated)}."
    )
    if len(elevated) > COMPREHENSIVE_EVALUATION_THRESHOLD:
        note += " Recommend comprehensive health evaluation."
    else:
        note += " Recommend monitoring and lifestyle interventions as appropriate."
    return note


def build_risk_assessment(
    diagnostic_report: dict,
    results: Sequence[object],
    lab_codes: LabCodeMap,
    now: datetime | None = None,
) -> dict:
    """Assemble an unsaved RiskAssessment from the successful predictions."""
    now = now or datetime.now(timezone.utc)
    succeeded = [r for r in results if isinstance(r, PredictionSucceeded)]
    start = now.date()

    return {
        "resourceType": "RiskAssessment",
        "status": "final",
        "subject": {"reference": diagnostic_report.get("subject", {}).get("reference")},
        "encounter": {"reference": f"DiagnosticReport/{diagnostic_report.get('id')}"},
        "occurrenceDateTime": now.isoformat(),
        "performer": dict(PERFORMER),
        "method": METHOD,
        "basis": list(diagnostic_report.get("result", [])),
        "prediction": [build_prediction_entry(r, lab_codes, start) for r in succeeded],
        "note": [{"text": build_summary_note(succeeded, lab_codes)}],
    }


async def create_risk_assessment(
    medplum: FhirClientProtocol,
    diagnostic_report: dict,
    results: Sequence[object],
    lab_codes: LabCodeMap,
    now: datetime | None = None,
) -> dict:
    """Build and persist the RiskAssessment.

    If the write fails the unsaved resource (without an ``id``) is returned;
    callers check ``id`` to know whether it was stored.
    """
    risk_assessment = build_risk_assessment(diagnostic_report, results, lab_codes, now)
    try:
        created = await medplum.create_resource(risk_assessment)
    except Exception as e:
        logger.error(f"[LAB_RISK] Error creating RiskAssessment: {type(e).__name__}: {e}")
        return risk_assessment

    logger.info(f"[LAB_RISK] Created RiskAssessment with ID: {created.get('id')}")
    return created
