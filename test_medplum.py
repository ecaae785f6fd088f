"""Tests for the FHIR clients: MedplumClient (HTTP) and FhirJsonStore (disk).

Usage:
    uv run pytest test_medplum.py
"""

from __future__ import annotations

import json

import httpx
import pytest

from fhirbots.medplum import (
    FhirJsonStore,
    MedplumClient,
    ResourceNotFoundError,
    create_reference,
    get_code_by_system,
    get_display_string,
    get_fhir_client,
    parse_reference,
)
from fhirbots.medplum.operations import FhirOperationsMixin, normalize_params
from fhirbots.medplum.references import LOINC


# =============================================================================
# Reference helpers
# =============================================================================


def test_parse_reference():
    assert parse_reference({"reference": "Patient/123"}) == ("Patient", "123")
    assert parse_reference("Observation/abc") == ("Observation", "abc")
    with pytest.raises(ValueError):
        parse_reference(None)
    with pytest.raises(ValueError):
        parse_reference({"reference": "Patient"})


def test_create_reference_uses_name_as_display():
    patient = {"resourceType": "Patient", "id": "p1", "name": [{"given": ["John"], "family": "Smith"}]}
    assert create_reference(patient) == {"reference": "Patient/p1", "display": "John Smith"}
    assert create_reference({"resourceType": "Slot", "id": "s1"}) == {"reference": "Slot/s1"}
    assert get_display_string({"resourceType": "Observation", "id": "o", "code": {"text": "A1c"}}) == "A1c"


def test_get_code_by_system_accepts_concept_lists():
    concept = {"coding": [{"system": "other", "code": "x"}, {"system": LOINC, "code": "2085-9"}]}
    assert get_code_by_system(concept, LOINC) == "2085-9"
    assert get_code_by_system([{"coding": []}, concept], LOINC) == "2085-9"
    assert get_code_by_system(None, LOINC) is None


def test_normalize_params():
    assert normalize_params("Patient", "Patient?identifier=123") == {"identifier": "123"}
    assert normalize_params("Patient", "identifier=123&name=Smith") == {
        "identifier": "123",
        "name": "Smith",
    }
    assert normalize_params("Patient", {"name": "Smith", "birthdate": None}) == {"name": "Smith"}
    with pytest.raises(ValueError):
        normalize_params("Patient", "Observation?code=1")


# =============================================================================
# MedplumClient
# =============================================================================


class FakeMedplum:
    """Minimal Medplum server for MockTransport."""

    def __init__(self):
        self.token_requests = 0
        self.requests: list[httpx.Request] = []
        self.practitioners: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth2/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600})

        if request.headers.get("Authorization") != "Bearer tok-1":
            return httpx.Response(401)

        if path == "/fhir/R4/Patient/123":
            return httpx.Response(200, json={"resourceType": "Patient", "id": "123"})
        if path == "/fhir/R4/Practitioner" and request.method == "GET":
            entries = [{"resource": p} for p in self.practitioners]
            return httpx.Response(200, json={"resourceType": "Bundle", "entry": entries})
        if path == "/fhir/R4/Practitioner" and request.method == "POST":
            created = {**json.loads(request.content), "id": "prac-1"}
            self.practitioners.append(created)
            return httpx.Response(201, json=created)
        return httpx.Response(404, json={"resourceType": "OperationOutcome"})


def make_client(server: FakeMedplum, config) -> MedplumClient:
    return MedplumClient(
        client_id="id",
        client_secret="secret",
        base_url="https://medplum.test/",
        transport=httpx.MockTransport(server),
        config=config,
    )


@pytest.mark.asyncio
async def test_medplum_client_reuses_token(config):
    server = FakeMedplum()
    client = make_client(server, config)

    patient = await client.read_reference({"reference": "Patient/123"})
    await client.read_resource("Patient", "123")

    assert patient == {"resourceType": "Patient", "id": "123"}
    assert server.token_requests == 1
    assert server.requests[1].headers["Accept"] == "application/fhir+json"


@pytest.mark.asyncio
async def test_medplum_client_raises_on_http_errors(config):
    client = make_client(FakeMedplum(), config)
    with pytest.raises(httpx.HTTPStatusError) as excinfo:
        await client.read_resource("Patient", "missing")
    assert excinfo.value.response.status_code == 404


@pytest.mark.asyncio
async def test_medplum_client_conditional_create(config):
    server = FakeMedplum()
    client = make_client(server, config)
    practitioner = {"resourceType": "Practitioner", "name": [{"family": "Smith"}]}

    first = await client.create_resource_if_none_exist(practitioner, "Practitioner?identifier=42")
    second = await client.create_resource_if_none_exist(practitioner, "Practitioner?identifier=42")

    assert first["id"] == second["id"] == "prac-1"
    assert len(server.practitioners) == 1
    search = server.requests[-1]
    assert search.url.params["identifier"] == "42"
    assert search.url.params["_count"] == "1"


@pytest.mark.asyncio
async def test_medplum_client_requires_credentials(config):
    client = MedplumClient(config=config, transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(ValueError, match="MEDPLUM_CLIENT_ID"):
        await client.read_resource("Patient", "1")


def test_get_fhir_client_selects_backend(tmp_path, config):
    config.fhir_backend = "local"
    config.fhir_data_dir = str(tmp_path)
    assert isinstance(get_fhir_client(config), FhirJsonStore)

    config.fhir_backend = "medplum"
    assert isinstance(get_fhir_client(config), MedplumClient)


# =============================================================================
# FhirJsonStore
# =============================================================================


def test_backends_must_implement_rest_verbs():
    class ReadOnly(FhirOperationsMixin):
        async def get(self, path, params=None):
            return {}

    with pytest.raises(TypeError):
        ReadOnly()


@pytest.mark.asyncio
async def test_store_versions_and_history(store):
    patient = await store.create_resource({"resourceType": "Patient", "name": [{"family": "Doe"}]})
    assert patient["meta"]["versionId"] == "1"

    updated = await store.update_resource({**patient, "active": True})
    assert updated["meta"]["versionId"] == "2"

    history = await store.read_history("Patient", patient["id"])
    assert [e["resource"]["meta"]["versionId"] for e in history["entry"]] == ["2", "1"]


@pytest.mark.asyncio
async def test_store_read_missing_resource(store):
    with pytest.raises(ResourceNotFoundError):
        await store.read_resource("Patient", "nope")


@pytest.mark.asyncio
async def test_store_search_by_patient_code_and_date(store):
    for effective, subject, code in [
        ("2024-01-02T10:00:00Z", "Patient/a", "2085-9"),
        ("2024-01-05T10:00:00Z", "Patient/a", "2085-9"),
        ("2024-01-03T10:00:00Z", "Patient/a", "2085-9"),
        ("2024-01-04T10:00:00Z", "Patient/b", "2085-9"),
        ("2024-01-06T10:00:00Z", "Patient/a", "1988-5"),
    ]:
        await store.create_resource(
            {
                "resourceType": "Observation",
                "subject": {"reference": subject},
                "code": {"coding": [{"system": LOINC, "code": code}]},
                "effectiveDateTime": effective,
            }
        )

    found = await store.search_resources(
        "Observation", {"patient": "a", "code": "2085-9", "_sort": "-date"}
    )
    assert [o["effectiveDateTime"][:10] for o in found] == [
        "2024-01-05",
        "2024-01-03",
        "2024-01-02",
    ]

    limited = await store.search_resources(
        "Observation", {"subject": "Patient/a", "code": f"{LOINC}|2085-9", "_count": 1}
    )
    assert len(limited) == 1


@pytest.mark.asyncio
async def test_store_search_by_start_prefixes(store):
    for start in ("2024-01-01T09:00:00Z", "2024-01-01T23:00:00+00:00", "2024-01-02T00:00:00Z"):
        await store.create_resource({"resourceType": "Slot", "start": start})

    same_day = await store.search_resources(
        "Slot", {"start": ["ge2024-01-01T00:00:00+00:00", "lt2024-01-02T00:00:00+00:00"]}
    )
    assert sorted(s["start"][:13] for s in same_day) == ["2024-01-01T09", "2024-01-01T23"]

    later = await store.search_resources("Slot", {"start": "gt2024-01-01T23:00:00Z"})
    assert [s["start"] for s in later] == ["2024-01-02T00:00:00Z"]
    assert len(await store.search_resources("Slot", {"start": "2024-01-02"})) == 1


@pytest.mark.asyncio
async def test_store_search_by_identifier(store):
    await store.create_resource(
        {"resourceType": "Patient", "identifier": [{"system": "urn:ssn", "value": "999"}]}
    )

    assert await store.search_one("Patient", "identifier=999") is not None
    assert await store.search_one("Patient", {"identifier": "urn:ssn|999"}) is not None
    assert await store.search_one("Patient", {"identifier": "urn:other|999"}) is None
    assert await store.search_one("Patient", {"identifier": "000"}) is None


@pytest.mark.asyncio
async def test_store_conditional_create_by_reference(store):
    schedule = {"resourceType": "Schedule", "actor": [{"reference": "Practitioner/p"}]}

    created = await store.create_resource_if_none_exist(schedule, "Schedule/main")
    again = await store.create_resource_if_none_exist(schedule, "Schedule/main")

    assert created["id"] == "main"
    assert again["meta"]["versionId"] == "1"
