"""Configuration for the REST server.

Engine settings (storage, retries, SLA) come from
:class:`flowforge.engine.config.EngineConfig`; this only covers what is specific
to serving HTTP.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the REST API."""

    # Dev-friendly CORS (Vite). Override via FLOWFORGE_SERVER_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        description="Comma-separated list of allowed CORS origins.",
    )

    sla_sweep_enabled: bool = Field(
        default=True,
        description=(
            "If true, the server runs the SLA monitor in a background thread every "
            "FLOWFORGE_SLA_SWEEP_INTERVAL_SECONDS."
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="FLOWFORGE_SERVER_",
        env_file=".env",
        extra="ignore",
    )

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
