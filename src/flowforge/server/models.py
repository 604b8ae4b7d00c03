"""Request bodies for the REST server.

Responses reuse the engine models directly.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from flowforge.engine.definitions.models import DefinitionSettings


class CreateDefinitionRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    created_by: str = "api"


class UpdateDefinitionRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    settings: DefinitionSettings | None = None


class PublishRequest(BaseModel):
    published_by: str = "api"


class StartInstanceRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)
    started_by: str = "api"
    version: int | None = None


class FormSubmissionRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    submitted_by: str = "anonymous"


class ActorRequest(BaseModel):
    actor: str = "api"


class ResumeRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    actor: str | None = None


class ActionResultRequest(BaseModel):
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class TaskUserRequest(BaseModel):
    user_id: str


class CompleteTaskRequest(BaseModel):
    user_id: str
    outcome: str
    data: dict[str, Any] = Field(default_factory=dict)
    comments: str | None = None


class DelegateTaskRequest(BaseModel):
    user_id: str
    to_user_id: str


class ValidationReport(BaseModel):
    valid: bool
    violations: list[str] = Field(default_factory=list)


class SweepResult(BaseModel):
    escalated: int
    items: list[dict[str, Any]] = Field(default_factory=list)
