"""Encounter billing export to Candid Health.

Triggered by an Encounter. Gathers the patient, service facility, primary
performer and the patient's Coverage, converts them into a Candid
CodedEncounter and submits it to the Candid ``encounters/v4`` endpoint.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from ..config import BotConfig, get_config
from ..medplum.references import (
    ICD10,
    NPI,
    SSN,
    get_code_by_system,
    get_identifier,
    get_reference_string,
)
from ..protocols import FhirClientProtocol
from .schemas import BotEvent, BotInputError

logger = logging.getLogger(__name__)

PARTICIPATION_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ParticipationType"
COVERAGE_CLASS_SYSTEM = "http://terminology.hl7.org/CodeSystem/coverage-class"
SOPT_SYSTEM = "https://nahdo.org/sopt"

# '18' - Self
SELF_RELATIONSHIP_CODE = "18"
# '10' - Telehealth provided in patient's home
PLACE_OF_SERVICE_CODE = "10"

# NAHDO Source of Payment Typology -> Candid insurance type, first match wins.
# (codes, match by prefix, candid code)
SOPT_TO_CANDID: tuple[tuple[tuple[str, ...], bool, str], ...] = (
    (("81",), False, "09"),  # Self-pay
    (("512",), False, "12"),  # Preferred Provider Organization (PPO)
    (("513",), False, "13"),  # Point of Service (POS)
    (("52", "53"), True, "15"),  # Indemnity Insurance
    (("111",), False, "16"),  # HMO Medicare Risk
    (("561", "517"), False, "17"),  # Dental Maintenance Organization
    (("96",), False, "13"),  # Automobile Medical
    (("6",), True, "BL"),  # Blue Cross/Blue Shield
    (("311",), True, "CH"),  # CHAMPUS
    (("93",), False, "DS"),  # Disability
    (("391",), False, "FI"),  # Federal Employees Program
    (("511",), False, "HM"),  # Health Maintenance Organization (HMO)
    (("97",), False, "LM"),  # Liability Medical
    (("2",), True, "MC"),  # Medicaid
    (("341",), False, "MC"),  # Title V
    (("32",), True, "VA"),  # Veterans Affairs Plan
    (("95",), True, "VA"),  # Workers' Compensation Health Claim
)


def convert_coverage_type(coverage_type: dict | list | None) -> str:
    """Translate Coverage.type (NAHDO SOPT coding) into a Candid insurance type code."""
    code = get_code_by_system(coverage_type, SOPT_SYSTEM)
    if not code:
        return "not_given"
    for codes, by_prefix, candid_code in SOPT_TO_CANDID:
        if code.startswith(codes) if by_prefix else code in codes:
            return candid_code
    return "not_given"


def extract_date(value: str | None) -> str | None:
    """Date part of an ISO timestamp."""
    if not value:
        return None
    return value.split("T")[0]


def convert_address(address: dict | None) -> dict | None:
    if not address:
        return None
    lines = address.get("line") or []
    postal = (address.get("postalCode") or "").split("-")
    return {
        "address1": lines[0] if lines else None,
        "address2": lines[1] if len(lines) > 1 else "",
        "city": address.get("city"),
        "state": address.get("state"),
        "zip_code": postal[0] or None,
        "zip_plus_four_code": postal[1] if len(postal) > 1 else None,
    }


def convert_gender(gender: str | None) -> str:
    return gender or "not_given"


def _first_name(resource: dict) -> str | None:
    return ((resource.get("name") or [{}])[0].get("given") or [None])[0]


def _last_name(resource: dict) -> str | None:
    return (resource.get("name") or [{}])[0].get("family")


def convert_patient(patient: dict | None) -> dict | None:
    if not patient:
        return None
    return {
        "first_name": _first_name(patient),
        "last_name": _last_name(patient),
        "gender": convert_gender(patient.get("gender")),
        "external_id": get_reference_string(patient),
        "date_of_birth": patient.get("birthDate"),
        "address": convert_address((patient.get("address") or [None])[0]),
    }


def find_coverage_class(coverage: dict, class_type: str) -> dict | None:
    """First Coverage.class entry of the given type (group, plan, rxbin, ...)."""
    for klass in coverage.get("class", []):
        if get_code_by_system(klass.get("type"), COVERAGE_CLASS_SYSTEM) == class_type:
            return klass
    return None


def convert_insurance_card(coverage: dict | None) -> dict | None:
    if not coverage:
        return None
    group = find_coverage_class(coverage, "group") or {}
    return {
        "insurance_card_id": "",
        "member_id": (coverage.get("identifier") or [{}])[0].get("value"),
        "payer_name": "string",
        "payer_id": "00019",
        "rx_bin": (find_coverage_class(coverage, "rxbin") or {}).get("value"),
        "rx_pcn": (find_coverage_class(coverage, "rxpcn") or {}).get("value"),
        "image_url_front": "string",
        "image_url_back": "string",
        "group_number": group.get("value"),
        "plan_name": group.get("name"),
        "plan_type": convert_coverage_type(coverage.get("type")),
    }


def convert_diagnoses(encounter: dict) -> list[dict]:
    """ICD-10 codings from Encounter.reasonCode."""
    diagnoses = []
    for reason in encounter.get("reasonCode", []):
        coding = next((c for c in reason.get("coding", []) if c.get("system") == ICD10), None)
        if coding:
            diagnoses.append(
                {"code_type": "ABK", "code": coding.get("code"), "name": coding.get("display") or ""}
            )
    return diagnoses


def find_primary_performer(encounter: dict) -> dict | None:
    """Reference of the participant with type PPRF (primary performer)."""
    for participant in encounter.get("participant", []):
        types = participant.get("type") or []
        if types and get_code_by_system(types[0], PARTICIPATION_TYPE_SYSTEM) == "PPRF":
            return participant.get("individual")
    return None


def build_coded_encounter(
    encounter: dict,
    patient: dict,
    provider: dict,
    service_facility: dict,
    coverage: dict,
) -> dict[str, Any]:
    """Assemble the Candid CodedEncounter body."""
    candid_patient = convert_patient(patient)
    subscriber = {k: v for k, v in candid_patient.items() if k != "external_id"}
    provider_address = convert_address((provider.get("address") or [None])[0])
    facility_address = convert_address((service_facility.get("address") or [None])[0])

    return {
        "patient": candid_patient,
        "billing_provider": {
            "first_name": _first_name(provider),
            "last_name": _last_name(provider),
            "address": provider_address,
            "tax_id": get_identifier(provider, SSN),
            "npi": get_identifier(provider, NPI),
        },
        "rendering_provider": {
            "first_name": _first_name(provider),
            "last_name": _last_name(provider),
            "address": provider_address,
            "npi": get_identifier(provider, NPI),
        },
        "subscriber_primary": {
            **subscriber,
            "individual_id": candid_patient["external_id"],
            "patient_relationship_to_subscriber_code": SELF_RELATIONSHIP_CODE,
            "insurance_card": convert_insurance_card(coverage),
        },
        "diagnoses": convert_diagnoses(encounter),
        "place_of_service_code": PLACE_OF_SERVICE_CODE,
        "external_id": get_reference_string(encounter),
        "date_of_service": extract_date((encounter.get("period") or {}).get("start")),
        "patient_authorized_release": True,
        "benefits_assigned_to_provider": True,
        "provider_accepts_assignment": True,
        "billable_status": "BILLABLE",
        "responsible_party": "INSURANCE_PAY",
        "end_date_of_service": extract_date((encounter.get("period") or {}).get("end")),
        "appointment_type": (
            ((encounter.get("type") or [{}])[0].get("coding") or [{}])[0].get("display")
        ),
        "service_facility": {
            "organization_name": service_facility.get("name"),
            "address": facility_address,
        },
        "pay_to_address": facility_address,
        "synchronicity": "Synchronous",
    }


class CandidClient:
    """Async client for the Candid Health API (token auth + encounters)."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        config: BotConfig | None = None,
    ):
        config = config or get_config()
        self._api_key = api_key
        self._api_secret = api_secret
        self._base_url = base_url or config.candid_api_url
        if not self._base_url.endswith("/"):
            self._base_url += "/"
        self._timeout = timeout if timeout is not None else config.request_timeout
        self._transport = transport

    async def submit_encounter(self, coded_encounter: dict) -> dict:
        """Authenticate and POST the CodedEncounter; returns Candid's JSON reply."""
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            auth = await client.post(
                f"{self._base_url}auth/v2/token",
                json={"client_id": self._api_key, "client_secret": self._api_secret},
                headers={"Content-Type": "application/json"},
            )
            auth.raise_for_status()
            token = auth.json()["access_token"]

            response = await client.post(
                f"{self._base_url}encounters/v4",
                json=coded_encounter,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {token}",
                },
            )
            return response.json()


async def handler(
    medplum: FhirClientProtocol,
    event: BotEvent,
    candid: CandidClient | None = None,
) -> dict:
    """Submit the Encounter in ``event.input`` to Candid Health.

    Raises:
        BotInputError: When the patient, service provider, primary
            performer or coverage is missing.
    """
    encounter: dict = event.input or {}

    if not encounter.get("subject"):
        raise BotInputError("Missing Patient")
    patient = await medplum.read_reference(encounter["subject"])

    if not encounter.get("serviceProvider"):
        raise BotInputError("Missing Service Provider")
    service_facility = await medplum.read_reference(encounter["serviceProvider"])

    if not encounter.get("participant"):
        raise BotInputError("Missing provider")
    provider_reference = find_primary_performer(encounter)
    if not provider_reference:
        raise BotInputError("Missing provider")
    provider = await medplum.read_reference(provider_reference)

    coverage = await medplum.search_one(
        "Coverage", {"beneficiary": get_reference_string(patient)}
    )
    if not coverage:
        raise BotInputError("Missing Coverage")

    coded_encounter = build_coded_encounter(encounter, patient, provider, service_facility, coverage)

    if candid is None:
        api_key = event.secret("CANDID_API_KEY")
        api_secret = event.secret("CANDID_API_SECRET")
        if not api_key or not api_secret:
            raise BotInputError("Missing CANDID_API_KEY / CANDID_API_SECRET secrets")
        candid = CandidClient(api_key, api_secret)

    result = await candid.submit_encounter(coded_encounter)
    logger.info(f"[CANDID] Received response from Candid:\n{json.dumps(result, indent=2)}")
    return result
