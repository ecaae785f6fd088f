"""Probability to qualitative risk band mapping."""

from __future__ import annotations

from dataclasses import dataclass

RISK_PROBABILITY_SYSTEM = "http://terminology.hl7.org/CodeSystem/risk-probability"


@dataclass(frozen=True)
class RiskLevel:
    code: str
    display: str


NEGLIGIBLE = RiskLevel("negligible", "Negligible")
LOW = RiskLevel("low", "Low")
MODERATE = RiskLevel("moderate", "Moderate")
HIGH = RiskLevel("high", "High")


def classify_probability(probability: float) -> RiskLevel:
    """Map a probability to negligible (<0.10), low (<=0.50), moderate (<=0.75) or high."""
    probability = min(max(probability, 0.0), 1.0)
    if probability < 0.1:
        return NEGLIGIBLE
    if probability <= 0.5:
        return LOW
    if probability <= 0.75:
        return MODERATE
    return HIGH
