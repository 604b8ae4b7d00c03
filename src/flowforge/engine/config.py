"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables (prefixed ``FLOWFORGE_``)
- and a local `.env` file (if present)

Nested sections use their own prefixes so they can be overridden one by one,
e.g. ``FLOWFORGE_STORAGE_PATH`` or ``FLOWFORGE_SLA_SWEEP_INTERVAL_SECONDS``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageConfig(BaseSettings):
    """Where definitions, instances and tasks are persisted."""

    path: Path = Field(
        default=Path("flowforge_state"),
        description="Directory holding the JSON stores",
    )

    model_config = SettingsConfigDict(
        env_prefix="FLOWFORGE_STORAGE_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def definitions_file(self) -> Path:
        return self.path / "definitions.json"

    @property
    def instances_file(self) -> Path:
        return self.path / "instances.json"

    @property
    def tasks_file(self) -> Path:
        return self.path / "tasks.json"


class RetryConfig(BaseSettings):
    """Default connector retry policy for definitions that don't set one."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Total attempts per connector call, including the first",
    )
    backoff: Literal["fixed", "linear", "exponential"] = Field(
        default="exponential",
        description="Backoff strategy between attempts",
    )
    initial_delay_ms: int = Field(default=1000, ge=0, description="Delay before the 2nd attempt")
    max_delay_ms: int = Field(default=60000, ge=0, description="Upper bound for any single delay")

    model_config = SettingsConfigDict(
        env_prefix="FLOWFORGE_RETRY_",
        env_file=".env",
        extra="ignore",
    )


class SlaConfig(BaseSettings):
    """SLA sweep settings."""

    sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="How often the SLA monitor looks for overdue work",
    )
    escalation_role: str = Field(
        default="admin",
        description="Role notified when a definition does not name one",
    )
    escalation_template: str = Field(
        default="sla-breach",
        description="Notifier template used for escalation messages",
    )

    model_config = SettingsConfigDict(
        env_prefix="FLOWFORGE_SLA_",
        env_file=".env",
        extra="ignore",
    )


class NotificationConfig(BaseSettings):
    """How email nodes and escalations are delivered.

    ``log`` only writes notifications to the log; ``smtp`` sends real mail.
    """

    backend: Literal["log", "smtp"] = Field(default="log", description="Notifier backend")
    host: str = Field(default="localhost", description="SMTP host")
    port: int = Field(default=587, description="SMTP port")
    sender: str = Field(default="flowforge@localhost", description="From address")
    username: str | None = Field(default=None, description="SMTP login user")
    password: str | None = Field(default=None, description="SMTP login password")
    use_tls: bool = Field(default=True, description="Issue STARTTLS before login")

    model_config = SettingsConfigDict(
        env_prefix="FLOWFORGE_SMTP_",
        env_file=".env",
        extra="ignore",
    )


class EngineConfig(BaseSettings):
    """Main configuration for the engine."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug logging for flowforge loggers",
    )
    max_steps_per_advance: int = Field(
        default=10000,
        gt=0,
        description="Upper bound on node dispatches in one advance call (cycle guard)",
    )
    connectors_file: Path | None = Field(
        default=None,
        description="JSON file mapping connector refs to HTTP endpoints",
    )
    decision_tables_file: Path | None = Field(
        default=None,
        description="JSON file with decision tables for the in-process table service",
    )

    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Storage configuration",
    )
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Default retry policy",
    )
    sla: SlaConfig = Field(
        default_factory=SlaConfig,
        description="SLA monitor configuration",
    )
    notifications: NotificationConfig = Field(
        default_factory=NotificationConfig,
        description="Notifier configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="FLOWFORGE_",
        env_file=".env",
        extra="ignore",
    )
