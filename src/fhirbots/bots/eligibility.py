"""Coverage eligibility check via the Opkit API.

Triggered by a CoverageEligibilityRequest. Looks up the patient, insurer,
provider and coverage, asks Opkit whether the plan is in force, then stamps
the request with the Opkit inquiry id and records a
CoverageEligibilityResponse carrying the deductible/copay benefits.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..config import BotConfig, get_config
from ..medplum.references import NPI, create_reference, get_identifier
from ..protocols import FhirClientProtocol
from .schemas import BotEvent

logger = logging.getLogger(__name__)

OPKIT_ELIGIBILITY_URL = "https://api.opkit.co/v1/eligibility_inquiries"
OPKIT_PAYER_SYSTEM = "https://docs.opkit.co/reference/getpayers"
OPKIT_INQUIRY_SYSTEM = "https://api.opkit.co/v1/eligibility_inquiries/{id}"

SERVICE_TYPES = ["health_benefit_plan_coverage"]
ALLOWABLE_BENEFIT_TYPES = ("deductible", "copay")

SERVICE_CATEGORY_DISPLAY = {"health_benefit_plan_coverage": "Health Benefit Plan Coverage"}
SERVICE_CATEGORY_CODE = {"health_benefit_plan_coverage": "30"}
NETWORK_CODES = {"out_of_network": "out", "in_network": "in"}
COVERAGE_UNITS = {"family": "family", "individual": "individual"}
BENEFIT_TYPES = {"deductible": "deductible", "copay": "copay"}
PERIOD_TERMS = {"service_year": "annual", "calendar_year": "annual"}


# =============================================================================
# Opkit request schema
# =============================================================================


class OpkitSubscriber(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    member_id: str | None = None
    date_of_birth: str | None = None
    email: str | None = None


class OpkitEligibilityRequest(BaseModel):
    """Body of ``POST /v1/eligibility_inquiries``."""

    model_config = ConfigDict(extra="forbid")

    provider_npi: str | None = None
    payer_id: str | None = None
    subscriber: OpkitSubscriber
    services: list[str] = Field(default_factory=lambda: list(SERVICE_TYPES))


def build_opkit_request(
    patient: dict, organization: dict, provider: dict, coverage: dict
) -> OpkitEligibilityRequest:
    """Map FHIR resources onto an Opkit eligibility inquiry."""
    name = (patient.get("name") or [{}])[0]
    email = next(
        (t.get("value") for t in patient.get("telecom", []) if t.get("system") == "email"),
        None,
    )
    return OpkitEligibilityRequest(
        provider_npi=get_identifier(provider, NPI),
        payer_id=get_identifier(organization, OPKIT_PAYER_SYSTEM),
        subscriber=OpkitSubscriber(
            first_name=(name.get("given") or [None])[0],
            last_name=name.get("family"),
            member_id=coverage.get("subscriberId"),
            date_of_birth=patient.get("birthDate"),
            email=email,
        ),
    )


# =============================================================================
# Opkit response -> FHIR mapping
# =============================================================================


def _coding(system: str | None, code: str, display: str | None = None) -> dict:
    coding: dict[str, Any] = {"code": code}
    if system:
        coding = {"system": system, **coding}
    if display:
        coding["display"] = display
    return {"coding": [coding]}


def _usd(cents: float) -> dict:
    # Opkit currency values are in cents
    return {"value": cents / 100, "currency": "USD"}


def is_plan_active(benefits: list[dict]) -> bool:
    """True when Opkit reports active coverage for the health benefit plan."""
    return any(
        b.get("type") == "active_coverage" and b.get("service") == "health_benefit_plan_coverage"
        for b in benefits
    )


def generate_benefits(
    benefits: list[dict], service: str | None, network: str | None, coverage: str | None
) -> list[dict] | None:
    """FHIR ``benefit`` elements for one (service, network, coverage) combination.

    Yearly amounts become ``allowedMoney``; the matching ``remaining`` entry,
    when present, becomes ``usedMoney``.
    """
    matching = [
        b
        for b in benefits
        if b.get("service") == service
        and b.get("network") == network
        and b.get("coverage") == coverage
    ]
    remaining = next((b for b in matching if b.get("period") == "remaining"), None)

    fhir_benefits = []
    for benefit in matching:
        benefit_type = BENEFIT_TYPES.get(benefit.get("type"))
        if benefit.get("period") == "remaining" or not benefit_type:
            continue

        values = benefit.get("values") or [{}]
        entry: dict[str, Any] = {"type": _coding(None, benefit_type)}
        if values[0].get("type") == "percent":
            entry["allowedUnsignedInt"] = values[0].get("value")
        else:
            entry["allowedMoney"] = _usd(values[0].get("value", 0))
            if remaining and remaining.get("values"):
                entry["usedMoney"] = _usd(remaining["values"][0].get("value", 0))
        fhir_benefits.append(entry)

    return fhir_benefits or None


def generate_items(opkit_response: dict) -> list[dict]:
    """``CoverageEligibilityResponse.insurance.item`` from Opkit plan benefits."""
    benefits = opkit_response.get("plan", {}).get("benefits", [])
    items = []
    for benefit in benefits:
        if benefit.get("type") not in ALLOWABLE_BENEFIT_TYPES:
            continue

        service = benefit.get("service")
        network = benefit.get("network")
        coverage = benefit.get("coverage")
        period = benefit.get("period")

        fhir_benefit = generate_benefits(benefits, service, network, coverage)
        if not fhir_benefit:
            continue

        item: dict[str, Any] = {"benefit": fhir_benefit}
        if service in SERVICE_CATEGORY_DISPLAY:
            item["category"] = _coding(
                "http://terminology.hl7.org/CodeSystem/ex-benefitcategory",
                SERVICE_CATEGORY_CODE[service],
                SERVICE_CATEGORY_DISPLAY[service],
            )
        if network in NETWORK_CODES:
            item["network"] = _coding(
                "http://terminology.hl7.org/CodeSystem/benefit-network", NETWORK_CODES[network]
            )
        if coverage in COVERAGE_UNITS:
            item["unit"] = _coding(
                "http://terminology.hl7.org/CodeSystem/benefit-unit", COVERAGE_UNITS[coverage]
            )
        if period in PERIOD_TERMS:
            item["term"] = _coding(
                "http://terminology.hl7.org/CodeSystem/benefit-term", PERIOD_TERMS[period]
            )
        items.append(item)

    return items


# =============================================================================
# HTTP client
# =============================================================================


class OpkitClient:
    """Async client for Opkit eligibility inquiries."""

    def __init__(
        self,
        api_key: str | None = None,
        url: str = OPKIT_ELIGIBILITY_URL,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        config: BotConfig | None = None,
    ):
        config = config or get_config()
        self._api_key = api_key or config.opkit_api_key or ""
        self._url = url
        self._timeout = timeout if timeout is not None else config.request_timeout
        self._transport = transport

    async def check_eligibility(self, request: OpkitEligibilityRequest) -> dict:
        token = base64.b64encode(f"{self._api_key}:".encode("utf-8")).decode("utf-8")
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                self._url,
                json=request.model_dump(),
                headers={
                    "Authorization": f"Basic {token}",
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
            return response.json()


# =============================================================================
# Bot
# =============================================================================


async def handler(
    medplum: FhirClientProtocol,
    event: BotEvent,
    opkit: OpkitClient | None = None,
) -> bool:
    """Check eligibility for the CoverageEligibilityRequest in ``event.input``.

    Returns True when the request was handled (including when linked
    resources are missing) and False when Opkit returned no benefits.
    """
    request = event.input
    if not request:
        logger.info("[ELIGIBILITY] No coverage eligibility request found")
        return True

    patient = await medplum.read_reference(request.get("patient"))
    if not patient:
        logger.info("[ELIGIBILITY] No patient found")
        return True
    organization = await medplum.read_reference(request.get("insurer"))
    if not organization:
        logger.info("[ELIGIBILITY] No payor found")
        return True
    provider = await medplum.read_reference(request.get("provider"))
    if not provider:
        logger.info("[ELIGIBILITY] No provider found")
        return True
    insurance = (request.get("insurance") or [{}])[0]
    # either an insurance backbone element or a bare Coverage reference
    coverage = await medplum.read_reference(insurance.get("coverage") or insurance)

    opkit_request = build_opkit_request(patient, organization, provider, coverage)
    logger.debug(json.dumps(opkit_request.model_dump(), indent=2))

    opkit = opkit or OpkitClient(api_key=event.secret("OPKIT_API_KEY"))
    try:
        result = await opkit.check_eligibility(opkit_request)
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"[ELIGIBILITY] Error checking eligibility request: {e}")
        result = None

    if not result or not result.get("plan", {}).get("benefits"):
        return False

    active = is_plan_active(result["plan"]["benefits"])

    updated_request = await medplum.update_resource(
        {
            "resourceType": "CoverageEligibilityRequest",
            "id": request.get("id"),
            "identifier": [{"system": OPKIT_INQUIRY_SYSTEM, "value": result.get("id")}],
            "insurer": create_reference(organization),
            "patient": create_reference(patient),
            "insurance": [{"focal": active, "coverage": create_reference(coverage)}],
        }
    )

    eligibility_response = await medplum.create_resource(
        {
            "resourceType": "CoverageEligibilityResponse",
            "status": "active" if active else "inactive",
            "outcome": "complete",
            "purpose": ["validation", "benefits"],
            "request": create_reference(updated_request),
            "disposition": (
                "Policy is currently in-force." if active else "Policy is currently not in-force."
            ),
            "patient": create_reference(patient),
            "insurer": create_reference(organization),
            "insurance": [
                {
                    "coverage": create_reference(coverage),
                    "inforce": active,
                    "item": generate_items(result),
                }
            ],
        }
    )
    logger.info(
        f"[ELIGIBILITY] Created CoverageEligibilityResponse {eligibility_response.get('id')} "
        f"(inforce={active})"
    )
    return True
