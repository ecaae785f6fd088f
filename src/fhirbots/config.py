"""Configuration for fhirbots.

Values come from environment variables (a ``.env`` file is loaded by the
CLI and API entry points via python-dotenv).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class BotConfig:
    """Configuration shared by the bots, the CLI and the API."""

    # FHIR backend: "medplum" (remote API) or "local" (JSON files on disk)
    fhir_backend: str = "medplum"
    fhir_data_dir: str | None = None

    # Medplum OAuth2 client credentials
    medplum_client_id: str | None = None
    medplum_client_secret: str | None = None
    medplum_base_url: str = "https://api.medplum.com"

    # Partner APIs
    prediction_api_url: str = "http://83.212.74.123:8000"
    opkit_api_key: str | None = None
    candid_api_url: str = "https://api-staging.joincandidhealth.com/api/"

    # HTTP request timeout in seconds
    request_timeout: float = 30.0

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> BotConfig:
        """Load configuration from environment variables."""
        return cls(
            fhir_backend=os.getenv("FHIR_BACKEND", "medplum").lower(),
            fhir_data_dir=os.getenv("FHIR_DATA_DIR") or None,
            medplum_client_id=os.getenv("MEDPLUM_CLIENT_ID"),
            medplum_client_secret=os.getenv("MEDPLUM_CLIENT_SECRET"),
            medplum_base_url=os.getenv("MEDPLUM_BASE_URL", "https://api.medplum.com"),
            prediction_api_url=os.getenv("PREDICTION_API_URL", "http://83.212.74.123:8000"),
            opkit_api_key=os.getenv("OPKIT_API_KEY"),
            candid_api_url=os.getenv(
                "CANDID_API_URL", "https://api-staging.joincandidhealth.com/api/"
            ),
            request_timeout=float(os.getenv("FHIRBOTS_REQUEST_TIMEOUT", "30")),
            host=os.getenv("FHIRBOTS_HOST", "0.0.0.0"),
            port=int(os.getenv("FHIRBOTS_PORT", "8000")),
            debug=_env_flag("FHIRBOTS_DEBUG"),
            log_level=os.getenv("FHIRBOTS_LOG_LEVEL", "INFO").upper(),
            cors_origins=os.getenv("FHIRBOTS_CORS_ORIGINS", "*").split(","),
        )


# Global config instance
_config: BotConfig | None = None


def get_config() -> BotConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = BotConfig.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next call re-reads the environment."""
    global _config
    _config = None
