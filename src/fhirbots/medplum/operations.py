"""High-level FHIR operations shared by MedplumClient and FhirJsonStore.

Both backends only need to implement the raw REST verbs (``get``, ``post``,
``put``); reading references, searching and conditional creates are built
on top of them here.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import parse_qsl

import httpx

from .references import parse_reference

logger = logging.getLogger(__name__)


class ResourceNotFoundError(Exception):
    """Raised when a requested FHIR resource does not exist."""


def normalize_params(
    resource_type: str, params: dict[str, Any] | str | None
) -> dict[str, Any]:
    """Turn search params into a dict.

    Accepts a dict, a query string (``"identifier=123"``) or a full search
    URL fragment (``"Patient?identifier=123"``).
    """
    if params is None:
        return {}
    if isinstance(params, dict):
        return {k: v for k, v in params.items() if v is not None}
    query = params
    if "?" in query:
        prefix, query = query.split("?", 1)
        if prefix and prefix.strip("/") != resource_type:
            raise ValueError(f"Search query {params!r} does not target {resource_type}")
    return dict(parse_qsl(query, keep_blank_values=True))


class FhirOperationsMixin(ABC):
    """FHIR convenience operations on top of raw ``get``/``post``/``put``."""

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        """Read a resource, its history, or a search Bundle."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        """Create a resource."""

    @abstractmethod
    async def put(self, path: str, data: dict) -> dict:
        """Replace a resource."""

    async def read_resource(self, resource_type: str, resource_id: str) -> dict:
        return await self.get(f"/{resource_type}/{resource_id}")

    async def read_reference(self, reference: dict | str | None) -> dict:
        resource_type, resource_id = parse_reference(reference)
        return await self.read_resource(resource_type, resource_id)

    async def read_history(self, resource_type: str, resource_id: str) -> dict:
        return await self.get(f"/{resource_type}/{resource_id}/_history")

    async def search(
        self, resource_type: str, params: dict[str, Any] | str | None = None
    ) -> dict:
        return await self.get(f"/{resource_type}", params=normalize_params(resource_type, params))

    async def search_resources(
        self, resource_type: str, params: dict[str, Any] | str | None = None
    ) -> list[dict]:
        bundle = await self.search(resource_type, params)
        return [
            entry["resource"]
            for entry in bundle.get("entry", [])
            if isinstance(entry.get("resource"), dict)
        ]

    async def search_one(
        self, resource_type: str, params: dict[str, Any] | str | None = None
    ) -> dict | None:
        query = normalize_params(resource_type, params)
        query["_count"] = "1"
        resources = await self.search_resources(resource_type, query)
        return resources[0] if resources else None

    async def create_resource(self, resource: dict) -> dict:
        resource_type = resource.get("resourceType")
        if not resource_type:
            raise ValueError("Missing resourceType")
        return await self.post(f"/{resource_type}", resource)

    async def update_resource(self, resource: dict) -> dict:
        resource_type = resource.get("resourceType")
        resource_id = resource.get("id")
        if not resource_type or not resource_id:
            raise ValueError("Missing resourceType or id")
        return await self.put(f"/{resource_type}/{resource_id}", resource)

    async def create_resource_if_none_exist(self, resource: dict, query: str) -> dict:
        """Return the first resource matching ``query``, creating ``resource`` if none does.

        ``query`` is either a search (``"Practitioner?identifier=123"``) or a
        direct reference (``"Schedule/123"``).
        """
        resource_type = resource["resourceType"]
        if "?" not in query and "=" not in query:
            try:
                return await self.read_reference(query)
            except httpx.HTTPStatusError as e:
                if e.response.status_code != 404:
                    raise
            except ResourceNotFoundError:
                pass
            logger.debug(f"[FHIR] {query} not found, creating")
            if not resource.get("id"):
                resource = {**resource, "id": query.rstrip("/").split("/")[-1]}
            return await self.update_resource(resource)

        existing = await self.search_one(resource_type, query)
        if existing is not None:
            return existing
        return await self.create_resource(resource)
