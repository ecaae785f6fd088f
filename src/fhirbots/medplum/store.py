"""Local JSON-based FHIR R4 store.

Filesystem-backed stand-in for MedplumClient that reads and writes FHIR R4
resources as JSON files under ``{data_dir}/{ResourceType}/{id}.json``.
Previous versions are kept under ``{ResourceType}/_history/{id}/{version}.json``.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

from ..config import get_config
from .operations import FhirOperationsMixin, ResourceNotFoundError

# Search params that match a Reference-typed field, and the fields they check
REFERENCE_PARAMS: dict[str, tuple[str, ...]] = {
    "subject": ("subject", "patient"),
    "patient": ("subject", "patient", "beneficiary"),
    "beneficiary": ("beneficiary",),
    "actor": ("actor",),
    "schedule": ("schedule",),
    "account": ("account",),
    "requester": ("requester",),
}

# Search params that match a date field, and the field they check
DATE_PARAMS: dict[str, str] = {
    "start": "start",
}

# FHIR date comparison prefixes
DATE_PREFIXES = ("eq", "ne", "gt", "lt", "ge", "le")


class FhirJsonStore(FhirOperationsMixin):
    """Local FHIR store backed by JSON files on disk.

    Drop-in replacement for MedplumClient: same get()/post()/put() interface,
    but reads/writes from ``{data_dir}/{ResourceType}/{id}.json``.
    """

    def __init__(self, data_dir: str | Path | None = None):
        if data_dir is None:
            data_dir = get_config().fhir_data_dir or str(Path.cwd() / "data" / "fhir")
        self._data_dir = Path(data_dir)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, path: str, params: dict | None = None) -> dict:
        """Read resources from disk.

        Supports three forms:
          - ``/Patient/123``           -> single resource read
          - ``/Patient/123/_history``  -> version history Bundle
          - ``/Patient``               -> search (returns FHIR Bundle)

        Recognised search parameters:
          name, birthdate, identifier, code, status, category, type,
          subject, patient, beneficiary, actor, schedule, account,
          requester, start (with eq/ne/gt/lt/ge/le prefixes), _count, _sort
        """
        parts = path.strip("/").split("/")
        resource_type = parts[0]

        if len(parts) == 3 and parts[2] == "_history":
            return self._history(resource_type, parts[1])

        if len(parts) == 2:
            return self._read_resource(resource_type, parts[1])

        return self._search(resource_type, params or {})

    async def post(self, path: str, data: dict) -> dict:
        """Write a new FHIR resource to disk.

        Assigns a UUID ``id`` and version 1. Returns the stored resource.
        """
        resource_type = path.strip("/").split("/")[0]
        resource = {**data, "resourceType": resource_type, "id": str(uuid.uuid4())}
        return self._write(resource_type, resource, version=1)

    async def put(self, path: str, data: dict) -> dict:
        """Replace (or create with a client-assigned id) a resource on disk."""
        parts = path.strip("/").split("/")
        if len(parts) != 2:
            raise ValueError(f"Update requires /ResourceType/id, got: {path}")
        resource_type, resource_id = parts

        version = 1
        file_path = self._data_dir / resource_type / f"{resource_id}.json"
        if file_path.exists():
            current = json.loads(file_path.read_text(encoding="utf-8"))
            version = int(current.get("meta", {}).get("versionId", "1")) + 1

        resource = {**data, "resourceType": resource_type, "id": resource_id}
        return self._write(resource_type, resource, version=version)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _write(self, resource_type: str, resource: dict, version: int) -> dict:
        resource["meta"] = {
            **resource.get("meta", {}),
            "versionId": str(version),
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }
        text = json.dumps(resource, indent=2, ensure_ascii=False)

        resource_dir = self._data_dir / resource_type
        history_dir = resource_dir / "_history" / resource["id"]
        history_dir.mkdir(parents=True, exist_ok=True)

        (resource_dir / f"{resource['id']}.json").write_text(text, encoding="utf-8")
        (history_dir / f"{version}.json").write_text(text, encoding="utf-8")
        return json.loads(text)

    def _read_resource(self, resource_type: str, resource_id: str) -> dict:
        """Read a single resource file. Raises ResourceNotFoundError if missing."""
        file_path = self._data_dir / resource_type / f"{resource_id}.json"
        if not file_path.exists():
            raise ResourceNotFoundError(f"{resource_type}/{resource_id} not found")
        return json.loads(file_path.read_text(encoding="utf-8"))

    def _history(self, resource_type: str, resource_id: str) -> dict:
        """Return all stored versions of a resource, newest first."""
        history_dir = self._data_dir / resource_type / "_history" / resource_id
        if not history_dir.is_dir():
            raise ResourceNotFoundError(f"{resource_type}/{resource_id} not found")

        versions = sorted(
            (p for p in history_dir.iterdir() if p.suffix == ".json"),
            key=lambda p: int(p.stem),
            reverse=True,
        )
        entries = [
            {"resource": json.loads(p.read_text(encoding="utf-8"))} for p in versions
        ]
        return {"resourceType": "Bundle", "type": "history", "entry": entries}

    def _search(self, resource_type: str, params: dict) -> dict:
        """Search resources on disk and return a FHIR Bundle.

        Applies basic filters then wraps matching resources in a Bundle.
        """
        resource_dir = self._data_dir / resource_type
        if not resource_dir.is_dir():
            return {"resourceType": "Bundle", "type": "searchset", "entry": []}

        resources: list[dict] = []
        for file_path in resource_dir.iterdir():
            if not file_path.suffix == ".json":
                continue
            resource = json.loads(file_path.read_text(encoding="utf-8"))
            if self._matches(resource, params):
                resources.append(resource)

        # Sorting
        sort_key = str(params.get("_sort", ""))
        descending = sort_key.startswith("-")
        if sort_key:
            sort_field = sort_key.lstrip("-")
            field_map = {"_lastUpdated": "meta.lastUpdated"}
            sort_field = field_map.get(sort_field, sort_field)
            if sort_field == "date":
                # effectiveDateTime (Observation), date (DocumentReference), authoredOn, issued
                resources.sort(
                    key=lambda r: self._get_nested(r, "effectiveDateTime")
                    or self._get_nested(r, "date")
                    or self._get_nested(r, "authoredOn")
                    or self._get_nested(r, "issued")
                    or "",
                    reverse=descending,
                )
            else:
                resources.sort(
                    key=lambda r: self._get_nested(r, sort_field) or "",
                    reverse=descending,
                )

        # Count limit
        count = params.get("_count")
        if count is not None:
            resources = resources[: int(count)]

        entries = [
            {"resource": r, "fullUrl": f"{resource_type}/{r.get('id', '')}"}
            for r in resources
        ]

        return {"resourceType": "Bundle", "type": "searchset", "entry": entries}

    def _matches(self, resource: dict, params: dict) -> bool:
        """Check whether *resource* matches all non-meta search params."""
        for key, value in params.items():
            if key.startswith("_"):
                continue  # Skip _count, _sort, _summary

            if key in DATE_PARAMS:
                values = value if isinstance(value, (list, tuple)) else [value]
                field = resource.get(DATE_PARAMS[key])
                if not all(self._match_date(field, str(v)) for v in values):
                    return False
                continue

            value = str(value)

            if key == "name":
                if not self._match_name(resource, value):
                    return False

            elif key == "birthdate":
                if resource.get("birthDate", "") != value:
                    return False

            elif key == "identifier":
                if not self._match_identifier(resource, value):
                    return False

            elif key in REFERENCE_PARAMS:
                if not self._match_reference(resource, REFERENCE_PARAMS[key], value):
                    return False

            elif key == "status":
                if resource.get("status", "") != value:
                    return False

            elif key in ("code", "category", "type"):
                if not self._match_concept(resource.get(key), value):
                    return False

        return True

    # -- match helpers --------------------------------------------------

    @staticmethod
    def _match_name(resource: dict, query: str) -> bool:
        """Case-insensitive partial match on Patient name fields."""
        query_lower = query.lower()
        for name_obj in resource.get("name", []):
            family = (name_obj.get("family") or "").lower()
            givens = " ".join(name_obj.get("given", [])).lower()
            if query_lower in family or query_lower in givens:
                return True
        return False

    @staticmethod
    def _match_identifier(resource: dict, value: str) -> bool:
        """Match ``value`` or ``system|value`` against resource.identifier."""
        system, _, ident = value.rpartition("|")
        for identifier in resource.get("identifier", []):
            if identifier.get("value") != ident:
                continue
            if not system or identifier.get("system") == system:
                return True
        return False

    @staticmethod
    def _match_concept(concept: dict | list | None, value: str) -> bool:
        """Match ``code`` or ``system|code`` against CodeableConcept codings."""
        system, _, code = value.rpartition("|")
        concepts = concept if isinstance(concept, list) else [concept or {}]
        for item in concepts:
            for coding in item.get("coding", []):
                if coding.get("code") != code:
                    continue
                if not system or coding.get("system") == system:
                    return True
        return False

    @staticmethod
    def _match_reference(resource: dict, fields: tuple[str, ...], value: str) -> bool:
        """Match a Reference field against ``Type/id`` or a bare id."""
        for field in fields:
            refs = resource.get(field)
            if isinstance(refs, dict):
                refs = [refs]
            if not isinstance(refs, list):
                continue
            for ref in refs:
                ref_str = ref.get("reference", "") if isinstance(ref, dict) else ""
                if ref_str == value or ref_str.split("/")[-1] == value:
                    return True
        return False

    @staticmethod
    def _match_date(field: str | None, value: str) -> bool:
        """Compare a date/instant field against ``[prefix]date`` (``ge2024-01-01``)."""
        if not field:
            return False
        prefix = value[:2] if value[:2] in DATE_PREFIXES else "eq"
        query = value[2:] if value[:2] in DATE_PREFIXES else value
        actual, expected = _parse_instant(field), _parse_instant(query)
        return {
            "eq": actual == expected,
            "ne": actual != expected,
            "gt": actual > expected,
            "lt": actual < expected,
            "ge": actual >= expected,
            "le": actual <= expected,
        }[prefix]

    @staticmethod
    def _get_nested(d: dict, dotted_key: str) -> str | None:
        """Retrieve a (possibly dotted) key from a dict."""
        parts = dotted_key.split(".")
        current: dict | str | None = d
        for part in parts:
            if isinstance(current, dict):
                current = current.get(part)
            else:
                return None
        return current if isinstance(current, str) else None


def _parse_instant(value: str) -> datetime:
    """Parse a FHIR date or instant; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
