"""Tests for the partner-integration and workflow bots.

Partner APIs (Opkit, Candid) are faked with httpx.MockTransport; FHIR data
lives in a FhirJsonStore under a temp dir.

Usage:
    uv run pytest test_bots.py
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from fhirbots.bots import (
    account_setup,
    candid,
    eligibility,
    finalize_report,
    hello_patient,
    patient_dedup,
    patient_intake,
    stripe_invoice,
)
from fhirbots.bots.schemas import BotEvent, BotInputError
from fhirbots.medplum import FhirJsonStore
from fhirbots.medplum.references import NPI, create_reference


def test_bot_event_secret_lookup():
    event = BotEvent.model_validate(
        {
            "input": {},
            "contentType": "application/json",
            "secrets": {"A": {"name": "A", "valueString": "x"}, "B": "y"},
        }
    )
    assert event.content_type == "application/json"
    assert event.secret("A") == "x"
    assert event.secret("B") == "y"
    assert event.secret("C", "fallback") == "fallback"


# =============================================================================
# Eligibility (Opkit)
# =============================================================================

PLAN = "health_benefit_plan_coverage"

OPKIT_RESPONSE = {
    "id": "inq_123",
    "plan": {
        "benefits": [
            {"type": "active_coverage", "service": PLAN},
            {
                "type": "deductible",
                "service": PLAN,
                "network": "in_network",
                "coverage": "individual",
                "period": "calendar_year",
                "values": [{"type": "currency", "value": 150000}],
            },
            {
                "type": "deductible",
                "service": PLAN,
                "network": "in_network",
                "coverage": "individual",
                "period": "remaining",
                "values": [{"type": "currency", "value": 50000}],
            },
            {
                "type": "copay",
                "service": PLAN,
                "network": "in_network",
                "coverage": "individual",
                "period": "service_year",
                "values": [{"type": "percent", "value": 20}],
            },
        ]
    },
}


def test_generate_benefits_converts_cents_and_percentages():
    benefits = eligibility.generate_benefits(
        OPKIT_RESPONSE["plan"]["benefits"], PLAN, "in_network", "individual"
    )

    assert benefits == [
        {
            "type": {"coding": [{"code": "deductible"}]},
            "allowedMoney": {"value": 1500.0, "currency": "USD"},
            "usedMoney": {"value": 500.0, "currency": "USD"},
        },
        {"type": {"coding": [{"code": "copay"}]}, "allowedUnsignedInt": 20},
    ]
    assert eligibility.generate_benefits([], PLAN, "in_network", "individual") is None


def test_generate_items_maps_terminology():
    items = eligibility.generate_items(OPKIT_RESPONSE)
    first = items[0]

    assert first["category"]["coding"][0]["code"] == "30"
    assert first["network"]["coding"][0]["code"] == "in"
    assert first["unit"]["coding"][0]["code"] == "individual"
    assert first["term"]["coding"][0]["code"] == "annual"


async def seed_eligibility_request(store) -> dict:
    patient = await store.create_resource(
        {
            "resourceType": "Patient",
            "name": [{"given": ["Jane"], "family": "Doe"}],
            "birthDate": "1990-01-01",
            "telecom": [{"system": "email", "value": "jane@example.com"}],
        }
    )
    insurer = await store.create_resource(
        {
            "resourceType": "Organization",
            "name": "Aetna",
            "identifier": [{"system": eligibility.OPKIT_PAYER_SYSTEM, "value": "payer-1"}],
        }
    )
    provider = await store.create_resource(
        {"resourceType": "Practitioner", "identifier": [{"system": NPI, "value": "1234567893"}]}
    )
    coverage = await store.create_resource(
        {"resourceType": "Coverage", "subscriberId": "MEM-1", "beneficiary": create_reference(patient)}
    )
    return await store.create_resource(
        {
            "resourceType": "CoverageEligibilityRequest",
            "status": "active",
            "patient": create_reference(patient),
            "insurer": create_reference(insurer),
            "provider": create_reference(provider),
            "insurance": [{"coverage": create_reference(coverage)}],
        }
    )


@pytest.mark.asyncio
async def test_eligibility_records_response(store, config):
    request = await seed_eligibility_request(store)
    sent: list[httpx.Request] = []

    def opkit_api(http_request: httpx.Request) -> httpx.Response:
        sent.append(http_request)
        return httpx.Response(200, json=OPKIT_RESPONSE)

    opkit = eligibility.OpkitClient(
        api_key="sk_test", transport=httpx.MockTransport(opkit_api), config=config
    )
    assert await eligibility.handler(store, BotEvent(input=request), opkit=opkit) is True

    body = json.loads(sent[0].content)
    assert body["provider_npi"] == "1234567893"
    assert body["payer_id"] == "payer-1"
    assert body["subscriber"]["member_id"] == "MEM-1"
    assert body["subscriber"]["email"] == "jane@example.com"
    expected_auth = base64.b64encode(b"sk_test:").decode()
    assert sent[0].headers["Authorization"] == f"Basic {expected_auth}"

    updated = await store.read_resource("CoverageEligibilityRequest", request["id"])
    assert updated["identifier"][0]["value"] == "inq_123"
    assert updated["insurance"][0]["focal"] is True

    [response] = await store.search_resources("CoverageEligibilityResponse")
    assert response["status"] == "active"
    assert response["disposition"] == "Policy is currently in-force."
    assert response["insurance"][0]["inforce"] is True
    assert response["request"]["reference"] == f"CoverageEligibilityRequest/{request['id']}"


@pytest.mark.asyncio
async def test_eligibility_without_benefits_returns_false(store, config):
    request = await seed_eligibility_request(store)
    opkit = eligibility.OpkitClient(
        api_key="sk_test",
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"plan": {}})),
        config=config,
    )

    assert await eligibility.handler(store, BotEvent(input=request), opkit=opkit) is False
    assert await store.search_resources("CoverageEligibilityResponse") == []


# =============================================================================
# Candid Health
# =============================================================================


@pytest.mark.parametrize(
    "code,expected",
    [
        ("81", "09"),
        ("512", "12"),
        ("513", "13"),
        ("521", "15"),
        ("53", "15"),
        ("111", "16"),
        ("561", "17"),
        ("517", "17"),
        ("96", "13"),
        ("62", "BL"),
        ("3111", "CH"),
        ("93", "DS"),
        ("391", "FI"),
        ("511", "HM"),
        ("97", "LM"),
        ("21", "MC"),
        ("341", "MC"),
        ("32", "VA"),
        ("951", "VA"),
        ("99", "not_given"),
    ],
)
def test_convert_coverage_type(code, expected):
    concept = {"coding": [{"system": candid.SOPT_SYSTEM, "code": code}]}
    assert candid.convert_coverage_type(concept) == expected


def test_convert_coverage_type_without_sopt_coding():
    assert candid.convert_coverage_type(None) == "not_given"
    assert candid.convert_coverage_type({"coding": [{"system": "other", "code": "81"}]}) == "not_given"


def test_convert_address_splits_zip_plus_four():
    address = candid.convert_address(
        {"line": ["1 Main St"], "city": "Springfield", "state": "IL", "postalCode": "62701-1234"}
    )
    assert address["zip_code"] == "62701"
    assert address["zip_plus_four_code"] == "1234"
    assert address["address2"] == ""


async def seed_encounter(store) -> dict:
    patient = await store.create_resource(
        {
            "resourceType": "Patient",
            "name": [{"given": ["Homer"], "family": "Simpson"}],
            "gender": "male",
            "birthDate": "1956-05-12",
            "address": [{"line": ["742 Evergreen Terrace"], "city": "Springfield", "state": "IL", "postalCode": "62701"}],
        }
    )
    facility = await store.create_resource(
        {"resourceType": "Organization", "name": "Springfield Clinic", "address": [{"city": "Springfield"}]}
    )
    provider = await store.create_resource(
        {
            "resourceType": "Practitioner",
            "name": [{"given": ["Julius"], "family": "Hibbert"}],
            "identifier": [{"system": NPI, "value": "1234567893"}],
        }
    )
    await store.create_resource(
        {
            "resourceType": "Coverage",
            "beneficiary": create_reference(patient),
            "identifier": [{"value": "MEMBER-9"}],
            "type": {"coding": [{"system": candid.SOPT_SYSTEM, "code": "512"}]},
            "class": [
                {
                    "type": {"coding": [{"system": candid.COVERAGE_CLASS_SYSTEM, "code": "group"}]},
                    "value": "GRP-1",
                    "name": "Gold PPO",
                }
            ],
        }
    )
    return {
        "resourceType": "Encounter",
        "id": "enc-1",
        "subject": create_reference(patient),
        "serviceProvider": create_reference(facility),
        "participant": [
            {
                "type": [{"coding": [{"system": candid.PARTICIPATION_TYPE_SYSTEM, "code": "PPRF"}]}],
                "individual": create_reference(provider),
            }
        ],
        "period": {"start": "2024-03-01T09:00:00Z", "end": "2024-03-01T09:30:00Z"},
        "reasonCode": [
            {"coding": [{"system": "http://hl7.org/fhir/sid/icd-10", "code": "E11.9", "display": "Type 2 diabetes"}]}
        ],
    }


@pytest.mark.asyncio
async def test_candid_submits_coded_encounter(store, config):
    encounter = await seed_encounter(store)
    submitted: list[dict] = []

    def candid_api(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/auth/v2/token"):
            return httpx.Response(200, json={"access_token": "candid-token"})
        assert request.headers["Authorization"] == "Bearer candid-token"
        submitted.append(json.loads(request.content))
        return httpx.Response(200, json={"encounter_id": "cand-1"})

    client = candid.CandidClient(
        "key", "secret", base_url="https://candid.test/api", transport=httpx.MockTransport(candid_api), config=config
    )
    result = await candid.handler(store, BotEvent(input=encounter), candid=client)

    assert result == {"encounter_id": "cand-1"}
    [body] = submitted
    assert body["external_id"] == "Encounter/enc-1"
    assert body["date_of_service"] == "2024-03-01"
    assert body["patient"]["first_name"] == "Homer"
    assert body["rendering_provider"]["npi"] == "1234567893"
    assert body["diagnoses"] == [{"code_type": "ABK", "code": "E11.9", "name": "Type 2 diabetes"}]
    card = body["subscriber_primary"]["insurance_card"]
    assert card["plan_type"] == "12"
    assert card["member_id"] == "MEMBER-9"
    assert card["group_number"] == "GRP-1"
    assert body["service_facility"]["organization_name"] == "Springfield Clinic"


@pytest.mark.asyncio
async def test_candid_requires_linked_resources(store):
    encounter = await seed_encounter(store)

    with pytest.raises(BotInputError, match="Missing Patient"):
        await candid.handler(store, BotEvent(input={**encounter, "subject": None}))
    with pytest.raises(BotInputError, match="Missing Service Provider"):
        await candid.handler(store, BotEvent(input={**encounter, "serviceProvider": None}))
    with pytest.raises(BotInputError, match="Missing provider"):
        await candid.handler(store, BotEvent(input={**encounter, "participant": []}))


@pytest.mark.asyncio
async def test_candid_requires_secrets_without_client(store):
    encounter = await seed_encounter(store)
    with pytest.raises(BotInputError, match="CANDID_API_KEY"):
        await candid.handler(store, BotEvent(input=encounter))


# =============================================================================
# Patient deduplication
# =============================================================================


def ssn_patient(birth_date: str = "1948-07-01") -> dict:
    return {
        "resourceType": "Patient",
        "identifier": [{"system": "http://hl7.org/fhir/sid/us-ssn", "value": "999-47-5984"}],
        "birthDate": birth_date,
        "name": [{"family": "Smith", "given": ["John"]}],
    }


@pytest.mark.asyncio
async def test_dedup_links_matching_patient(store):
    original = await store.create_resource(ssn_patient())
    duplicate = await store.create_resource(ssn_patient())

    assert await patient_dedup.handler(store, BotEvent(input=duplicate)) is True

    linked = await store.read_resource("Patient", original["id"])
    assert linked["link"] == [
        {
            "type": "replaces",
            "other": {"reference": f"Patient/{duplicate['id']}", "display": "John Smith"},
        }
    ]
    assert (await store.read_resource("Patient", duplicate["id"]))["active"] is False


@pytest.mark.asyncio
async def test_dedup_flags_identifier_collision(store, caplog):
    original = await store.create_resource(ssn_patient())
    newcomer = await store.create_resource(ssn_patient(birth_date="1990-01-01"))

    with caplog.at_level(logging.WARNING):
        assert await patient_dedup.handler(store, BotEvent(input=newcomer)) is True

    assert "Potential duplicate identifiers found" in caplog.text
    assert "link" not in await store.read_resource("Patient", original["id"])
    assert (await store.read_resource("Patient", newcomer["id"]))["active"] is True


@pytest.mark.asyncio
async def test_dedup_rejects_other_resources(store):
    with pytest.raises(BotInputError, match="Expected Patient"):
        await patient_dedup.handler(store, BotEvent(input={"resourceType": "Practitioner"}))


# =============================================================================
# Stripe invoices
# =============================================================================


def stripe_event(status: str = "paid", object_type: str = "invoice") -> dict:
    return {
        "status": status,
        "object": {
            "id": "in_1",
            "object": object_type,
            "amount_due": 2000,
            "amount_paid": 1500,
            "currency": "usd",
            "customer": "cus_1",
            "hosted_invoice_url": "https://stripe.test/i/in_1",
            "invoice_pdf": "https://stripe.test/i/in_1.pdf",
            "lines": {"data": [{"id": "il_1", "quantity": 2, "amount": 2000, "currency": "usd"}]},
        },
    }


@pytest.mark.parametrize(
    "status,expected",
    [("paid", "balanced"), ("open", "issued"), ("void", "cancelled"), ("uncollectible", "cancelled"), ("draft", "draft"), (None, "draft")],
)
def test_invoice_status_mapping(status, expected):
    assert stripe_invoice.get_invoice_status(status) == expected


@pytest.mark.asyncio
async def test_stripe_invoice_created_once_and_linked(store):
    account = await store.create_resource(
        {"resourceType": "Account", "status": "active", "identifier": [{"value": "cus_1"}]}
    )

    assert await stripe_invoice.handler(store, BotEvent(input=stripe_event())) is True
    assert await stripe_invoice.handler(store, BotEvent(input=stripe_event())) is True

    [invoice] = await store.search_resources("Invoice")
    assert invoice["status"] == "balanced"
    assert invoice["totalGross"] == {"value": 20.0, "currency": "USD"}
    assert invoice["totalNet"] == {"value": 15.0, "currency": "USD"}
    assert invoice["lineItem"][0]["priceComponent"][0]["factor"] == 2
    assert invoice["account"]["reference"] == f"Account/{account['id']}"


@pytest.mark.asyncio
async def test_stripe_ignores_non_invoice_payloads(store):
    assert await stripe_invoice.handler(store, BotEvent(input=stripe_event(object_type="charge"))) is False
    assert await stripe_invoice.handler(store, BotEvent(input={"object": {}})) is False
    assert await store.search_resources("Invoice") == []


# =============================================================================
# Account setup
# =============================================================================


@pytest.mark.asyncio
async def test_account_setup_populates_new_patient(store):
    patient = await store.create_resource(
        {"resourceType": "Patient", "name": [{"given": ["John"], "family": "Doe"}]}
    )

    assert await account_setup.handler(store, BotEvent(input=patient), slot_days=1) is True

    check = await store.read_resource("Patient", patient["id"])
    assert len(check["generalPractitioner"]) == 1

    subject = f"Patient/{patient['id']}"
    observations = await store.search_resources("Observation", {"subject": subject})
    assert len(observations) == 7
    assert len(await store.search_resources("CarePlan", {"subject": subject})) == 2
    assert len(await store.search_resources("MedicationRequest", {"subject": subject})) == 2
    assert len(await store.search_resources("Immunization", {"patient": subject})) == 2
    assert len(await store.search_resources("Slot")) == 24

    # Updated patients are not set up again
    assert await account_setup.handler(store, BotEvent(input=check), slot_days=1) is False


@pytest.mark.asyncio
async def test_account_setup_reuses_practitioner_and_slots(store):
    for name in ("Ann", "Bob"):
        patient = await store.create_resource({"resourceType": "Patient", "name": [{"given": [name]}]})
        await account_setup.handler(store, BotEvent(input=patient), slot_days=1)

    assert len(await store.search_resources("Practitioner")) == 1
    assert len(await store.search_resources("Schedule")) == 1
    assert len(await store.search_resources("Slot")) == 24


class PagedStore(FhirJsonStore):
    """Store that returns one default-sized page when no _count is sent."""

    def _search(self, resource_type: str, params: dict) -> dict:
        bundle = super()._search(resource_type, params)
        if "_count" not in params:
            bundle["entry"] = bundle["entry"][:20]
        return bundle


@pytest.mark.asyncio
async def test_account_setup_slots_are_not_duplicated_across_pages(tmp_path):
    store = PagedStore(tmp_path / "fhir")
    practitioner = await store.create_resource(dict(account_setup.SAMPLE_PRACTITIONER))

    schedule = await account_setup.ensure_schedule(store, practitioner, 30)
    await account_setup.ensure_schedule(store, practitioner, 30)

    assert len(list((tmp_path / "fhir" / "Slot").glob("*.json"))) == 720
    first_day = datetime.now(timezone.utc).date()
    assert await account_setup.ensure_slots(store, schedule, first_day) == 0
    assert await account_setup.ensure_slots(store, schedule, first_day + timedelta(days=30)) == 24


# =============================================================================
# Intake, finalize, hello
# =============================================================================


def intake_response(first: str, last: str, comment: str | None = None) -> dict:
    items = [
        {"linkId": "firstName", "answer": [{"valueString": first}]},
        {"linkId": "lastName", "answer": [{"valueString": last}]},
    ]
    if comment:
        items.append({"linkId": "comment", "answer": [{"valueString": comment}]})
    return {"resourceType": "QuestionnaireResponse", "item": items}


@pytest.mark.asyncio
async def test_patient_intake_creates_patient_and_task(store):
    event = BotEvent(input=intake_response("John", "Smith", "Please review urgently"))
    assert await patient_intake.handler(store, event) is True

    [patient] = await store.search_resources("Patient")
    assert patient["name"] == [{"given": ["John"], "family": "Smith"}]
    [task] = await store.search_resources("Task")
    assert task["note"] == [{"text": "Please review urgently"}]
    assert task["for"]["reference"] == f"Patient/{patient['id']}"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "first,last,message",
    [("", "Smith", "Missing first name"), ("John", "", "Missing last name")],
)
async def test_patient_intake_requires_names(store, caplog, first, last, message):
    with caplog.at_level(logging.WARNING):
        assert await patient_intake.handler(store, BotEvent(input=intake_response(first, last))) is False
    assert message in caplog.text
    assert await store.search_resources("Patient") == []


@pytest.mark.asyncio
async def test_finalize_report(store):
    observation = await store.create_resource(
        {"resourceType": "Observation", "status": "preliminary", "code": {"text": "Body Mass Index"}}
    )
    report = await store.create_resource(
        {
            "resourceType": "DiagnosticReport",
            "status": "preliminary",
            "result": [create_reference(observation)],
        }
    )

    await finalize_report.handler(store, BotEvent(input=report))

    assert (await store.read_resource("DiagnosticReport", report["id"]))["status"] == "final"
    assert (await store.read_resource("Observation", observation["id"]))["status"] == "final"


@pytest.mark.asyncio
async def test_hello_patient(store, caplog):
    patient = {"resourceType": "Patient", "name": [{"given": ["Marge"], "family": "Simpson"}]}
    with caplog.at_level(logging.INFO):
        assert await hello_patient.handler(store, BotEvent(input=patient)) is True
    assert "Hello Marge Simpson!" in caplog.text
