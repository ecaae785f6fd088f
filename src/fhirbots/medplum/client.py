"""Medplum OAuth2 client with token management.

Provides async HTTP client for Medplum FHIR R4 API with automatic
OAuth2 client credentials token refresh.
"""

from __future__ import annotations

import time

import httpx

from ..config import BotConfig, get_config
from .operations import FhirOperationsMixin


class MedplumClient(FhirOperationsMixin):
    """Async Medplum FHIR client with OAuth2 token management."""

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        config: BotConfig | None = None,
    ):
        config = config or get_config()
        base = (base_url or config.medplum_base_url).rstrip("/")
        self.token_url = f"{base}/oauth2/token"
        self.fhir_url = f"{base}/fhir/R4"
        self._client_id = client_id or config.medplum_client_id
        self._client_secret = client_secret or config.medplum_client_secret
        self._token: str | None = None
        self._token_expires: float = 0
        self._timeout = timeout if timeout is not None else config.request_timeout
        self._transport = transport

    def _check_credentials(self) -> str | None:
        """Check if credentials are configured. Returns error message if not."""
        if not self._client_id or not self._client_secret:
            return "Medplum credentials not configured (MEDPLUM_CLIENT_ID, MEDPLUM_CLIENT_SECRET)"
        return None

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _get_token(self) -> str:
        """Get valid token, refreshing if expired."""
        # Check if current token is still valid (with 60s buffer)
        if self._token and time.time() < self._token_expires - 60:
            return self._token

        error = self._check_credentials()
        if error:
            raise ValueError(error)

        async with self._http() as client:
            response = await client.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            response.raise_for_status()
            data = response.json()

            self._token = data["access_token"]
            # Default to 1 hour if expires_in not provided
            expires_in = data.get("expires_in", 3600)
            self._token_expires = time.time() + expires_in

            return self._token

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        data: dict | None = None,
    ) -> dict:
        token = await self._get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/fhir+json",
        }
        if data is not None:
            headers["Content-Type"] = "application/fhir+json"

        async with self._http() as client:
            response = await client.request(
                method,
                f"{self.fhir_url}{path}",
                params=params,
                json=data,
                headers=headers,
            )
            response.raise_for_status()
            if not response.content:
                return {}
            return response.json()

    async def get(self, path: str, params: dict | None = None) -> dict:
        """GET request to FHIR API.

        Args:
            path: API path (e.g., "/Patient" or "/Patient/123")
            params: Optional query parameters

        Returns:
            Response JSON as dict

        Raises:
            httpx.HTTPStatusError: On HTTP errors
        """
        return await self._request("GET", path, params=params)

    async def post(self, path: str, data: dict) -> dict:
        """POST request to FHIR API.

        Args:
            path: API path (e.g., "/Patient")
            data: FHIR resource body

        Returns:
            Response JSON as dict

        Raises:
            httpx.HTTPStatusError: On HTTP errors
        """
        return await self._request("POST", path, data=data)

    async def put(self, path: str, data: dict) -> dict:
        """PUT request to FHIR API (update by id)."""
        return await self._request("PUT", path, data=data)
