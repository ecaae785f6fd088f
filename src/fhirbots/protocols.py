"""Protocol definitions for fhirbots interfaces."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class FhirClientProtocol(Protocol):
    """Interface every bot uses to talk to a FHIR resource store.

    Both MedplumClient (remote Medplum API) and FhirJsonStore (local files)
    implement this, so bots can run against either.
    """

    async def read_resource(self, resource_type: str, resource_id: str) -> dict:
        """Read a resource by type and id."""
        ...

    async def read_reference(self, reference: dict | str | None) -> dict:
        """Dereference a FHIR Reference (``{"reference": "Patient/123"}``)."""
        ...

    async def read_history(self, resource_type: str, resource_id: str) -> dict:
        """Return the version history Bundle of a resource."""
        ...

    async def search(self, resource_type: str, params: dict[str, Any] | None = None) -> dict:
        """Search and return a searchset Bundle."""
        ...

    async def search_resources(
        self, resource_type: str, params: dict[str, Any] | None = None
    ) -> list[dict]:
        """Search and return the matching resources."""
        ...

    async def search_one(
        self, resource_type: str, params: dict[str, Any] | None = None
    ) -> dict | None:
        """Search and return the first match, or None."""
        ...

    async def create_resource(self, resource: dict) -> dict:
        """Create a resource and return it with its server-assigned id."""
        ...

    async def update_resource(self, resource: dict) -> dict:
        """Replace a resource by id and return the stored version."""
        ...

    async def create_resource_if_none_exist(self, resource: dict, query: str) -> dict:
        """Conditional create: return the first match for ``query`` or create ``resource``."""
        ...
