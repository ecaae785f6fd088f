"""Lab value risk prediction bot (DiagnosticReport -> RiskAssessment).

Usage:
    from fhirbots.bots.lab_risk import handler

    summary = await handler(medplum, BotEvent(input=diagnostic_report))
"""

from .aggregator import collect_lab_series, deduplicate_by_date, select_recent_window
from .assessment import build_risk_assessment, build_summary_note, create_risk_assessment
from .classifier import RiskLevel, classify_probability
from .codes import DEFAULT_LAB_CODES, LabCode, LabCodeMap
from .handler import handler
from .prediction import (
    PredictionClient,
    calculate_age,
    normalize_probability,
    parse_prediction_response,
)
from .schemas import (
    LabTest,
    PatientInfo,
    PredictionFailed,
    PredictionRequest,
    PredictionSkipped,
    PredictionSucceeded,
)

__all__ = [
    "handler",
    # Stages
    "collect_lab_series",
    "deduplicate_by_date",
    "select_recent_window",
    "PredictionClient",
    "calculate_age",
    "normalize_probability",
    "parse_prediction_response",
    "classify_probability",
    "build_risk_assessment",
    "build_summary_note",
    "create_risk_assessment",
    # Types
    "DEFAULT_LAB_CODES",
    "LabCode",
    "LabCodeMap",
    "LabTest",
    "PatientInfo",
    "PredictionRequest",
    "PredictionSkipped",
    "PredictionFailed",
    "PredictionSucceeded",
    "RiskLevel",
]
