"""FastAPI application exposing builds, deploys and the platform list.

Handlers are plain functions, so FastAPI runs each request on its own
worker thread; builds and deploys block for minutes at a time.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from http import HTTPStatus

from fastapi import Depends, FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse
from starlette.background import BackgroundTask

from buildworker.api.auth import ApiCredentials, basic_auth
from buildworker.api.schemas import BuildRequest, DeployRequest, DeployResponse, ErrorBody, PlatformBody
from buildworker.errors import (
    BuildworkerError,
    CommandError,
    ConfigurationError,
    RequestError,
    RollbackError,
    SigningError,
)
from buildworker.models import ModuleRef
from buildworker.observability import ActivityLog
from buildworker.service import BuildService

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Artifact-Signature"


class RequestFailed(Exception):
    """Carries a worker error together with the request's activity log."""

    def __init__(self, error: BuildworkerError, log: ActivityLog) -> None:
        super().__init__(error.message)
        self.error = error
        self.log = log


def _status_for(error: BuildworkerError) -> int:
    if isinstance(error, RollbackError | SigningError | ConfigurationError):
        return HTTPStatus.INTERNAL_SERVER_ERROR
    if isinstance(error, CommandError) and error.context.get("operation") == "go tool dist list":
        return HTTPStatus.INTERNAL_SERVER_ERROR
    return HTTPStatus.BAD_REQUEST


def create_app(service: BuildService, credentials: ApiCredentials) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        service.startup()
        yield

    app = FastAPI(title="buildworker", lifespan=lifespan)
    authenticated = Depends(basic_auth(credentials))

    @app.exception_handler(RequestFailed)
    def handle_failure(_request: Request, exc: RequestFailed) -> JSONResponse:
        error = exc.error
        if isinstance(error, RollbackError):
            logger.critical("package cache restore failed, manual recovery needed: %s", error)
        else:
            logger.error("request failed: %s", error)
        body = ErrorBody(message=str(error), log=exc.log.to_text(), code=error.code)
        return JSONResponse(status_code=_status_for(error), content=body.model_dump())

    @app.post("/build", dependencies=[authenticated])
    def build(request: BuildRequest) -> FileResponse:
        log = ActivityLog()
        try:
            if not request.os or not request.arch:
                raise RequestError("Missing required fields: GOOS and GOARCH.")
            outcome = service.build(request.caddy_version or None, request.platform(), request.modules(), log=log)
        except BuildworkerError as exc:
            raise RequestFailed(exc, log) from exc
        headers = {}
        if outcome.signature is not None:
            headers[SIGNATURE_HEADER] = base64.b64encode(outcome.signature).decode("ascii")
        return FileResponse(
            outcome.archive,
            filename=outcome.archive.name,
            headers=headers,
            background=BackgroundTask(outcome.cleanup),
        )

    @app.post("/deploy-caddy", dependencies=[authenticated])
    def deploy_caddy(request: DeployRequest) -> DeployResponse:
        log = ActivityLog()
        try:
            if not request.caddy_version:
                raise RequestError("Missing required field: CaddyVersion.")
            result = service.deploy_host(request.caddy_version, log=log)
        except BuildworkerError as exc:
            raise RequestFailed(exc, log) from exc
        return DeployResponse(target=result.target, state=result.state.value)

    @app.post("/deploy-plugin", dependencies=[authenticated])
    def deploy_plugin(request: DeployRequest) -> DeployResponse:
        log = ActivityLog()
        try:
            if not request.caddy_version or not request.plugin_package or not request.plugin_version:
                raise RequestError("Missing required fields: CaddyVersion, PluginPackage and PluginVersion.")
            result = service.deploy_module(
                request.caddy_version,
                ModuleRef(request.plugin_package, request.plugin_version),
                request.roster(),
                log=log,
            )
        except BuildworkerError as exc:
            raise RequestFailed(exc, log) from exc
        return DeployResponse(target=result.target, state=result.state.value)

    @app.get("/supported-platforms", dependencies=[authenticated])
    def supported_platforms() -> list[PlatformBody]:
        log = ActivityLog()
        try:
            platforms = service.supported_platforms(log=log)
        except BuildworkerError as exc:
            raise RequestFailed(exc, log) from exc
        return [PlatformBody.from_platform(platform) for platform in platforms]

    return app
