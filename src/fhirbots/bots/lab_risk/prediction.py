"""Client for the remote lab value prediction API.

Sends a three-point chronological series plus patient demographics to
``POST /predict/`` and turns the loosely typed reply into a normalized
probability. Every failure is converted into a PredictionFailed so one
test can never abort its siblings.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import httpx
from pydantic import ValidationError

from ...config import BotConfig, get_config
from .schemas import (
    LabTest,
    PatientInfo,
    PredictionFailed,
    PredictionRequest,
    PredictionResponse,
    PredictionSucceeded,
)

logger = logging.getLogger(__name__)

# Used when the provider omits a probability
DEFAULT_PROBABILITY = 0.5


class PredictionAPIError(Exception):
    """The prediction API answered with a non-success status."""


# =============================================================================
# Pure helpers
# =============================================================================


def calculate_age(birth_date: str | None, today: date | None = None) -> int:
    """Age in whole years; 0 when the birth date is missing or unparseable."""
    if not birth_date:
        return 0
    try:
        dob = date.fromisoformat(birth_date[:10])
    except ValueError:
        logger.warning(f"[LAB_RISK] Unparseable birth date {birth_date!r}, using age 0")
        return 0

    today = today or date.today()
    age = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        age -= 1
    return max(age, 0)


def normalize_probability(value: float | None) -> float:
    """Scale a provider probability into [0, 1].

    Values above 1 are read as percentages. Missing values fall back to
    DEFAULT_PROBABILITY.
    """
    if value is None:
        return DEFAULT_PROBABILITY
    probability = float(value)
    if probability > 1:
        probability = probability / 100
    return min(max(probability, 0.0), 1.0)


def error_message(error: object) -> str:
    """Best-effort human-readable message from an exception, string or object."""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and "message" in error:
        return str(error["message"])
    if error is not None and hasattr(error, "message"):
        return str(error.message)
    return "Unknown error occurred"


@dataclass(frozen=True)
class ParsedPrediction:
    """A usable probability extracted from the provider response."""

    probability: float
    raw: dict[str, Any] = field(default_factory=dict)
    defaulted: bool = False


@dataclass(frozen=True)
class MalformedPrediction:
    """The provider response could not be interpreted."""

    reason: str
    raw: Any = None


def parse_prediction_response(payload: Any) -> ParsedPrediction | MalformedPrediction:
    """Validate a provider response and extract the first probability."""
    if not isinstance(payload, dict):
        return MalformedPrediction(
            reason=f"Expected a JSON object, got {type(payload).__name__}", raw=payload
        )

    try:
        response = PredictionResponse.model_validate(payload)
    except ValidationError as e:
        return MalformedPrediction(
            reason=f"Invalid prediction response: {e.errors()[0]['msg']}", raw=payload
        )

    if not response.predictions:
        return ParsedPrediction(probability=DEFAULT_PROBABILITY, raw=payload, defaulted=True)

    first = response.predictions[0]
    if first.probability is not None and not math.isfinite(first.probability):
        return MalformedPrediction(
            reason=f"Non-finite probability: {first.probability}", raw=payload
        )
    return ParsedPrediction(
        probability=normalize_probability(first.probability),
        raw=payload,
        defaulted=first.probability is None,
    )


# =============================================================================
# HTTP client
# =============================================================================


class PredictionClient:
    """Async client for the prediction API."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        config: BotConfig | None = None,
    ):
        config = config or get_config()
        self.predict_url = f"{(base_url or config.prediction_api_url).rstrip('/')}/predict/"
        self._timeout = timeout if timeout is not None else config.request_timeout
        self._transport = transport

    async def predict(self, request: PredictionRequest) -> Any:
        """POST the request and return the decoded JSON body.

        Raises:
            PredictionAPIError: On a non-2xx status
            httpx.HTTPError: On transport failures
            ValueError: If the body is not JSON
        """
        body = request.model_dump(by_alias=True)
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                self.predict_url,
                json=body,
                headers={"Content-Type": "application/json"},
            )
            if not response.is_success:
                raise PredictionAPIError(
                    f"API responded with status {response.status_code}: {response.reason_phrase}"
                )
            return response.json()


async def predict_lab_risk(
    client: PredictionClient,
    patient: PatientInfo,
    loinc_code: str,
    lab_tests: list[LabTest],
) -> PredictionSucceeded | PredictionFailed:
    """Run one prediction; never raises."""
    request = PredictionRequest(patient=patient, lab_tests=lab_tests)
    logger.info(f"[LAB_RISK] Making prediction for {loinc_code}")
    logger.debug(json.dumps(request.model_dump(by_alias=True), indent=2, ensure_ascii=False))

    try:
        payload = await client.predict(request)
    except Exception as e:
        logger.error(f"[LAB_RISK] Error making prediction for {loinc_code}: {e}")
        return PredictionFailed(
            error="Failed to make prediction",
            details=error_message(e),
            loinc_code=loinc_code,
        )

    parsed = parse_prediction_response(payload)
    if isinstance(parsed, MalformedPrediction):
        logger.error(f"[LAB_RISK] Malformed prediction for {loinc_code}: {parsed.reason}")
        return PredictionFailed(
            error="Failed to make prediction",
            details=parsed.reason,
            loinc_code=loinc_code,
        )

    if parsed.defaulted:
        logger.warning(
            f"[LAB_RISK] No probability in response for {loinc_code}. Using default value."
        )
    logger.info(f"[LAB_RISK] Extracted probability for {loinc_code}: {parsed.probability}")

    return PredictionSucceeded(
        loinc_code=loinc_code,
        probability=parsed.probability,
        raw_response=parsed.raw,
        lab_tests=lab_tests,
    )
