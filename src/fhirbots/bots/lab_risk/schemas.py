"""Pydantic schemas for the lab risk prediction pipeline.

Covers the prediction API wire format (request and response) and the
per-test outcome variants collected before building the RiskAssessment.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Prediction API request
# =============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LabTest(_CamelModel):
    """One dated lab value, as submitted to the prediction API."""

    test_name: str = Field(..., alias="testName", description="LOINC code of the test")
    test_date: str = Field(..., alias="testDate", description="Calendar date YYYY-MM-DD")
    value: float = Field(default=0, description="Measured value (0 when missing)")
    unit: str = Field(default="", description="Unit of measure ('' when missing)")


class PatientInfo(_CamelModel):
    """Patient demographics sent with each prediction request."""

    patient_id: str = Field(default="00000", alias="patientId")
    gender: str = Field(default="unknown")
    age: int = Field(default=0, ge=0)


class PredictionRequest(_CamelModel):
    """Body of ``POST /predict/``."""

    patient: PatientInfo
    lab_tests: list[LabTest] = Field(..., alias="labTests")


# =============================================================================
# Prediction API response
# =============================================================================


class ProviderPrediction(BaseModel):
    """One entry of the provider's ``predictions`` list."""

    model_config = ConfigDict(extra="allow")

    lab_name: str | None = None
    probability: float | None = Field(
        None, description="Either a 0-1 probability or a 0-100 percentage"
    )
    note: str | None = None


class PredictionResponse(BaseModel):
    """Provider response; only the first prediction is used."""

    model_config = ConfigDict(extra="allow")

    predictions: list[ProviderPrediction] = Field(default_factory=list)


# =============================================================================
# Per-test outcomes
# =============================================================================


class PredictionSkipped(_CamelModel):
    """The test was not sent to the predictor."""

    status: Literal["skipped"] = "skipped"
    reason: str
    loinc_code: str | None = Field(None, alias="loincCode")
    unique_count: int | None = Field(
        None, alias="uniqueCount", description="Distinct dates found, when history was too short"
    )


class PredictionFailed(_CamelModel):
    """Reading the observation or calling the predictor failed."""

    status: Literal["error"] = "error"
    error: str
    details: str | None = None
    loinc_code: str | None = Field(None, alias="loincCode")
    reference: str | None = None


class PredictionSucceeded(_CamelModel):
    """A normalized probability returned by the predictor."""

    status: Literal["success"] = "success"
    loinc_code: str = Field(..., alias="loincCode")
    probability: float = Field(..., ge=0.0, le=1.0)
    raw_response: dict[str, Any] = Field(default_factory=dict, alias="rawResponse")
    lab_tests: list[LabTest] = Field(default_factory=list, alias="labTests")


PredictionResult = Annotated[
    Union[PredictionSkipped, PredictionFailed, PredictionSucceeded],
    Field(discriminator="status"),
]
