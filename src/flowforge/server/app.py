"""FastAPI app factory.

Endpoints are thin wrappers over :class:`flowforge.engine.service.WorkflowService`.
Engine errors are mapped to HTTP statuses in one place (see
``_register_error_handlers``).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flowforge import __version__
from flowforge.engine.config import EngineConfig
from flowforge.engine.definitions.models import (
    Definition,
    DefinitionDraft,
    Edge,
    Node,
    Trigger,
    Variable,
)
from flowforge.engine.errors import (
    EvaluationError,
    FlowForgeError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from flowforge.engine.service import WorkflowService
from flowforge.engine.workflow.models import Instance, Task
from flowforge.server.config import ServerSettings
from flowforge.server.models import (
    ActionResultRequest,
    ActorRequest,
    CompleteTaskRequest,
    CreateDefinitionRequest,
    DelegateTaskRequest,
    FormSubmissionRequest,
    PublishRequest,
    ResumeRequest,
    StartInstanceRequest,
    SweepResult,
    TaskUserRequest,
    UpdateDefinitionRequest,
    ValidationReport,
)
from flowforge.server.sla_runner import SlaSweepRunner

logger = logging.getLogger(__name__)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    def not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateError)
    def invalid_state(_request: Request, exc: InvalidStateError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    def invalid_definition(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422, content={"detail": str(exc), "violations": exc.violations}
        )

    @app.exception_handler(EvaluationError)
    def invalid_expression(_request: Request, exc: EvaluationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(FlowForgeError)
    def engine_error(_request: Request, exc: FlowForgeError) -> JSONResponse:
        logger.warning("Request failed: %s", exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})


def create_app(
    service: WorkflowService | None = None,
    settings: ServerSettings | None = None,
) -> FastAPI:
    settings = settings or ServerSettings()
    config = EngineConfig()
    service = service or WorkflowService.from_config(config)
    runner = SlaSweepRunner(service, interval_seconds=config.sla.sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if settings.sla_sweep_enabled:
            runner.start()
        try:
            yield
        finally:
            runner.stop()

    app = FastAPI(
        title="FlowForge",
        version=__version__,
        description="REST API over the FlowForge workflow engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Expose for request handlers and tests.
    app.state.settings = settings
    app.state.service = service
    app.state.sla_runner = runner

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # -- definitions --------------------------------------------------------

    @app.get("/api/v1/definitions", response_model=list[DefinitionDraft])
    def list_definitions(status: str | None = None, search: str | None = None) -> Any:
        return service.list_definitions(status=status, search=search)

    @app.post("/api/v1/definitions", response_model=DefinitionDraft, status_code=201)
    def create_definition(req: CreateDefinitionRequest) -> Any:
        return service.create_definition(
            req.name, description=req.description, created_by=req.created_by
        )

    @app.post("/api/v1/definitions/import", response_model=DefinitionDraft, status_code=201)
    def import_definition(payload: dict[str, Any]) -> Any:
        return service.import_definition(payload, created_by="api")

    @app.get("/api/v1/definitions/{definition_id}", response_model=DefinitionDraft)
    def get_definition(definition_id: str) -> Any:
        return service.get_draft(definition_id)

    @app.patch("/api/v1/definitions/{definition_id}", response_model=DefinitionDraft)
    def update_definition(definition_id: str, req: UpdateDefinitionRequest) -> Any:
        return service.update_definition(
            definition_id, name=req.name, description=req.description, settings=req.settings
        )

    @app.delete("/api/v1/definitions/{definition_id}", status_code=204)
    def delete_definition(definition_id: str) -> Response:
        service.delete_definition(definition_id)
        return Response(status_code=204)

    @app.post("/api/v1/definitions/{definition_id}/validate", response_model=ValidationReport)
    def validate_definition(definition_id: str) -> ValidationReport:
        violations = service.validate_definition(definition_id)
        return ValidationReport(valid=not violations, violations=violations)

    @app.post("/api/v1/definitions/{definition_id}/publish", response_model=Definition)
    def publish(definition_id: str, req: PublishRequest | None = None) -> Any:
        published_by = req.published_by if req is not None else "api"
        return service.publish(definition_id, published_by=published_by)

    @app.post("/api/v1/definitions/{definition_id}/unpublish", response_model=DefinitionDraft)
    def unpublish(definition_id: str) -> Any:
        return service.unpublish(definition_id)

    @app.post("/api/v1/definitions/{definition_id}/archive", response_model=DefinitionDraft)
    def archive(definition_id: str) -> Any:
        return service.archive(definition_id)

    @app.get("/api/v1/definitions/{definition_id}/versions", response_model=list[Definition])
    def list_versions(definition_id: str) -> Any:
        return service.list_versions(definition_id)

    @app.get("/api/v1/definitions/{definition_id}/active", response_model=Definition)
    def get_active(definition_id: str) -> Any:
        return service.get_definition(definition_id)

    @app.get(
        "/api/v1/definitions/{definition_id}/versions/{version}", response_model=Definition
    )
    def get_version(definition_id: str, version: int) -> Any:
        return service.get_definition(definition_id, version)

    # -- graph editing ------------------------------------------------------

    @app.post("/api/v1/definitions/{definition_id}/nodes", response_model=Node, status_code=201)
    def add_node(definition_id: str, node: dict[str, Any]) -> Any:
        return service.add_node(definition_id, node)

    @app.patch("/api/v1/definitions/{definition_id}/nodes/{node_id}", response_model=Node)
    def update_node(definition_id: str, node_id: str, changes: dict[str, Any]) -> Any:
        return service.update_node(definition_id, node_id, changes)

    @app.delete("/api/v1/definitions/{definition_id}/nodes/{node_id}", status_code=204)
    def delete_node(definition_id: str, node_id: str) -> Response:
        service.delete_node(definition_id, node_id)
        return Response(status_code=204)

    @app.post("/api/v1/definitions/{definition_id}/edges", response_model=Edge, status_code=201)
    def add_edge(definition_id: str, edge: dict[str, Any]) -> Any:
        return service.add_edge(definition_id, edge)

    @app.patch("/api/v1/definitions/{definition_id}/edges/{edge_id}", response_model=Edge)
    def update_edge(definition_id: str, edge_id: str, changes: dict[str, Any]) -> Any:
        return service.update_edge(definition_id, edge_id, changes)

    @app.delete("/api/v1/definitions/{definition_id}/edges/{edge_id}", status_code=204)
    def delete_edge(definition_id: str, edge_id: str) -> Response:
        service.delete_edge(definition_id, edge_id)
        return Response(status_code=204)

    @app.post(
        "/api/v1/definitions/{definition_id}/triggers", response_model=Trigger, status_code=201
    )
    def add_trigger(definition_id: str, trigger: dict[str, Any]) -> Any:
        return service.add_trigger(definition_id, trigger)

    @app.patch(
        "/api/v1/definitions/{definition_id}/triggers/{trigger_id}", response_model=Trigger
    )
    def update_trigger(definition_id: str, trigger_id: str, changes: dict[str, Any]) -> Any:
        return service.update_trigger(definition_id, trigger_id, changes)

    @app.delete("/api/v1/definitions/{definition_id}/triggers/{trigger_id}", status_code=204)
    def delete_trigger(definition_id: str, trigger_id: str) -> Response:
        service.delete_trigger(definition_id, trigger_id)
        return Response(status_code=204)

    @app.put("/api/v1/definitions/{definition_id}/variables", response_model=list[Variable])
    def set_variables(definition_id: str, variables: list[dict[str, Any]]) -> Any:
        return service.set_variables(definition_id, variables)

    # -- instances ----------------------------------------------------------

    @app.post(
        "/api/v1/definitions/{definition_id}/instances", response_model=Instance, status_code=201
    )
    def start_instance(definition_id: str, req: StartInstanceRequest) -> Any:
        return service.start_instance(
            definition_id, req.input, started_by=req.started_by, version=req.version
        )

    @app.post("/api/v1/forms/{form_id}/submissions", response_model=list[Instance])
    def submit_form(form_id: str, req: FormSubmissionRequest) -> Any:
        return service.handle_form_submission(form_id, req.data, submitted_by=req.submitted_by)

    @app.get("/api/v1/instances", response_model=list[Instance])
    def list_instances(definition_id: str | None = None, status: str | None = None) -> Any:
        return service.list_instances(definition_id=definition_id, status=status)

    @app.get("/api/v1/instances/{instance_id}", response_model=Instance)
    def get_instance(instance_id: str) -> Any:
        return service.get_instance(instance_id)

    @app.get("/api/v1/instances/{instance_id}/tasks", response_model=list[Task])
    def instance_tasks(instance_id: str) -> Any:
        return service.instance_tasks(instance_id)

    @app.post("/api/v1/instances/{instance_id}/advance", response_model=Instance)
    def advance(instance_id: str) -> Any:
        return service.advance(instance_id)

    @app.post("/api/v1/instances/{instance_id}/cancel", response_model=Instance)
    def cancel(instance_id: str, req: ActorRequest) -> Any:
        return service.cancel_instance(instance_id, req.actor)

    @app.post("/api/v1/instances/{instance_id}/pause", response_model=Instance)
    def pause(instance_id: str, req: ActorRequest) -> Any:
        return service.pause_instance(instance_id, req.actor)

    @app.post("/api/v1/instances/{instance_id}/resume", response_model=Instance)
    def resume(instance_id: str, req: ResumeRequest) -> Any:
        return service.resume_instance(instance_id, req.data, req.actor)

    @app.post("/api/v1/instances/{instance_id}/actions/{call_id}", response_model=Instance)
    def resolve_action(instance_id: str, call_id: str, req: ActionResultRequest) -> Any:
        return service.resolve_action(instance_id, call_id, req.outputs, req.error)

    # -- tasks --------------------------------------------------------------

    @app.get("/api/v1/tasks", response_model=list[Task])
    def list_tasks(
        assignee: str | None = None,
        status: str | None = None,
        instance_id: str | None = None,
        definition_id: str | None = None,
    ) -> Any:
        return service.list_tasks(
            assignee=assignee, status=status, instance_id=instance_id, definition_id=definition_id
        )

    @app.get("/api/v1/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str) -> Any:
        return service.get_task(task_id)

    @app.post("/api/v1/tasks/{task_id}/claim", response_model=Task)
    def claim_task(task_id: str, req: TaskUserRequest) -> Any:
        return service.claim_task(task_id, req.user_id)

    @app.post("/api/v1/tasks/{task_id}/release", response_model=Task)
    def release_task(task_id: str, req: TaskUserRequest) -> Any:
        return service.release_task(task_id, req.user_id)

    @app.post("/api/v1/tasks/{task_id}/complete", response_model=Task)
    def complete_task(task_id: str, req: CompleteTaskRequest) -> Any:
        return service.complete_task(task_id, req.user_id, req.outcome, req.data, req.comments)

    @app.post("/api/v1/tasks/{task_id}/delegate", response_model=Task)
    def delegate_task(task_id: str, req: DelegateTaskRequest) -> Any:
        return service.delegate_task(task_id, req.user_id, req.to_user_id)

    # -- SLA ----------------------------------------------------------------

    @app.post("/api/v1/sla/sweep", response_model=SweepResult)
    def sla_sweep() -> SweepResult:
        items = service.sla_sweep()
        return SweepResult(
            escalated=len(items),
            items=[
                {"kind": i.kind, "id": i.id, "instance_id": i.instance_id} for i in items
            ],
        )

    return app
