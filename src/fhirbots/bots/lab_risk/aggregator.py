"""Observation history aggregation for the lab risk pipeline.

Pulls every stored value of one LOINC-coded test for a patient, collapses
repeated measurements on the same calendar day, and picks the recent window
the prediction model expects.
"""

from __future__ import annotations

import logging

from ...medplum.references import LOINC
from ...protocols import FhirClientProtocol
from .schemas import LabTest, PredictionSkipped

logger = logging.getLogger(__name__)

# Number of distinct dates the prediction model consumes
WINDOW_SIZE = 3


def get_loinc_code(observation: dict) -> str | None:
    """Return the LOINC code of an Observation, if it has one."""
    for coding in observation.get("code", {}).get("coding", []):
        if coding.get("system") == LOINC:
            return coding.get("code")
    return None


def format_test_date(effective: str | None) -> str:
    """Truncate an ISO timestamp to its calendar date (``YYYY-MM-DD``)."""
    if not effective or not isinstance(effective, str):
        return ""
    return effective.split("T")[0]


def observation_to_lab_test(observation: dict) -> LabTest:
    """Map an Observation onto a LabTest; missing value/unit become 0 / ''."""
    quantity = observation.get("valueQuantity") or {}
    return LabTest(
        test_name=get_loinc_code(observation) or "",
        test_date=format_test_date(observation.get("effectiveDateTime")),
        value=quantity.get("value") or 0,
        unit=quantity.get("unit") or "",
    )


def deduplicate_by_date(lab_tests: list[LabTest]) -> list[LabTest]:
    """Keep the first test seen for each calendar date, newest date first.

    Input is expected newest-first (the search sorts by ``-date``), so the
    kept entry is the latest measurement of that day. Undated tests are
    dropped. Running this on its own output returns the same list.
    """
    by_date: dict[str, LabTest] = {}
    for test in lab_tests:
        if test.test_date and test.test_date not in by_date:
            by_date[test.test_date] = test
    return sorted(by_date.values(), key=lambda t: t.test_date, reverse=True)


def select_recent_window(
    unique_tests: list[LabTest], size: int = WINDOW_SIZE
) -> list[LabTest] | None:
    """Take the ``size`` newest dates, returned oldest first.

    Returns None when fewer than ``size`` distinct dates are available.
    """
    window = unique_tests[:size]
    if len(window) < size:
        return None
    return sorted(window, key=lambda t: t.test_date)


async def collect_lab_series(
    medplum: FhirClientProtocol,
    patient_id: str,
    loinc_code: str,
    size: int = WINDOW_SIZE,
) -> list[LabTest] | PredictionSkipped:
    """Build the chronological series submitted to the predictor.

    Returns a PredictionSkipped when the patient has fewer than ``size``
    distinct measurement dates for this code.
    """
    # No _count: the whole history is needed for deduplication
    observations = await medplum.search_resources(
        "Observation",
        {"patient": patient_id, "code": loinc_code, "_sort": "-date"},
    )
    unique_tests = deduplicate_by_date([observation_to_lab_test(o) for o in observations])
    window = select_recent_window(unique_tests, size)

    if window is None:
        count = min(len(unique_tests), size)
        reason = (
            f"Not enough unique observations found. Only {count} available after deduplication."
        )
        logger.info(f"[LAB_RISK] {loinc_code}: {reason}")
        return PredictionSkipped(reason=reason, loinc_code=loinc_code, unique_count=count)

    return window
