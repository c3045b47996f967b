"""Starlette HTTP intake for deployment requests.

Accepting a deployment and executing it are separate steps: ``POST
/deployments`` persists one PENDING record per target account, hands each id
to the queue and answers 201 immediately. Progress is observed through
``GET /deployments/{id}`` or the SNS topic.
"""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from sso_deployer.app import AppContext, build_app_context
from sso_deployer.execution.errors import CloudCallError
from sso_deployer.store.db import AwsSettingsNotConfiguredError
from sso_deployer.store.models import DeploymentAction, ResourceType
from sso_deployer.utils.blocking import run_blocking
from sso_deployer.utils.time import seconds_between

logger = logging.getLogger(__name__)

_ACCOUNT_ID_RE = re.compile(r"^\d{12}$")


class DeploymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_ids: list[str] = Field(alias="accountIds", min_length=1)
    resource_type: ResourceType = Field(alias="type")
    action: DeploymentAction
    role_id: str | None = Field(default=None, alias="roleId")
    permission_set_id: str | None = Field(default=None, alias="permissionSetId")
    requested_by: str | None = Field(default=None, alias="requestedBy", max_length=256)

    @field_validator("account_ids")
    @classmethod
    def _validate_account_ids(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value]
        invalid = [item for item in cleaned if not _ACCOUNT_ID_RE.match(item)]
        if invalid:
            raise ValueError(f"Account IDs must be 12 digits: {', '.join(invalid)}")
        return cleaned

    @model_validator(mode="after")
    def _require_resource_id(self) -> "DeploymentRequest":
        if self.resource_type is ResourceType.ROLE and not self.role_id:
            raise ValueError("roleId is required for role deployments")
        if self.resource_type is ResourceType.PERMISSION_SET and not self.permission_set_id:
            raise ValueError("permissionSetId is required for permission set deployments")
        return self

    @property
    def resource_id(self) -> str:
        if self.resource_type is ResourceType.ROLE:
            return str(self.role_id)
        return str(self.permission_set_id)


def _context(request: Request) -> AppContext:
    return request.app.state.context


async def create_deployments(request: Request) -> Response:
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Request body must be JSON"}, status_code=400)

    try:
        payload = DeploymentRequest.model_validate(body)
    except ValidationError as exc:
        return JSONResponse(
            {
                "error": "Invalid deployment request",
                "details": exc.errors(include_url=False, include_context=False),
            },
            status_code=400,
        )

    ctx = _context(request)
    if payload.resource_type is ResourceType.ROLE:
        resource = await run_blocking(ctx.store.get_role, payload.resource_id)
        missing = "Role not found"
    else:
        resource = await run_blocking(ctx.store.get_permission_set, payload.resource_id)
        missing = "Permission Set not found"
    if resource is None:
        return JSONResponse({"error": missing}, status_code=404)

    created = []
    for account_id in payload.account_ids:
        record = await run_blocking(
            ctx.store.create_deployment,
            account_id,
            payload.resource_type,
            payload.resource_id,
            payload.action,
            payload.requested_by,
        )
        ctx.queue.enqueue(record.deployment_id)
        created.append(record.to_dict())

    return JSONResponse({"deployments": created}, status_code=201)


async def get_deployment(request: Request) -> Response:
    ctx = _context(request)
    deployment_id = request.path_params["deployment_id"]
    record = await run_blocking(ctx.store.get_deployment, deployment_id)
    if record is None:
        return JSONResponse({"error": "Deployment not found"}, status_code=404)
    logs = await run_blocking(ctx.store.list_logs, deployment_id)
    body = record.to_dict()
    body["durationSeconds"] = seconds_between(record.started_at, record.completed_at)
    body["logs"] = [log.to_dict() for log in logs]
    return JSONResponse(body)


async def queue_status(request: Request) -> Response:
    return JSONResponse({"status": _context(request).queue.snapshot().to_dict()})


async def sync_accounts(request: Request) -> Response:
    ctx = _context(request)
    try:
        settings = await run_blocking(ctx.store.require_aws_settings)
    except AwsSettingsNotConfiguredError as exc:
        return JSONResponse({"error": str(exc)}, status_code=409)
    try:
        synced = await ctx.organizations.sync_accounts(ctx.store, settings)
    except CloudCallError as exc:
        logger.error("Account sync failed: %s", exc)
        return JSONResponse({"error": str(exc), "code": exc.code}, status_code=502)
    return JSONResponse({"synced": synced})


async def health(request: Request) -> Response:
    return JSONResponse({"status": "healthy", "queueRunning": _context(request).queue.running})


def create_http_app(context: AppContext | None = None) -> Starlette:
    """Create the HTTP application around ``context`` (built from settings when omitted)."""
    ctx = context or build_app_context()

    routes = [
        Route("/deployments", endpoint=create_deployments, methods=["POST"]),
        Route("/deployments/queue", endpoint=queue_status, methods=["GET"]),
        Route("/deployments/{deployment_id}", endpoint=get_deployment, methods=["GET"]),
        Route("/accounts/sync", endpoint=sync_accounts, methods=["POST"]),
        Route("/health", endpoint=health, methods=["GET"]),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting deployment queue worker")
        ctx.queue.start()
        try:
            yield
        finally:
            logger.info("Stopping deployment queue worker")
            await ctx.aclose()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.context = ctx
    return app
