"""HTTP API: SwitchBot webhook receiver and device projection endpoints."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Config
from .controller import DeviceController, DeviceManager
from .errors import MalformedPayloadError
from .health import HealthMonitor
from .logging import get_logger, redact_mapping
from .metrics import METRICS_CONTENT_TYPE, latest_metrics, observe_request, record_inbound_update


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_key:
            return
        api_key_header = request.headers.get("X-API-Key")
        auth_header = request.headers.get("Authorization")
        if api_key_header == config.api_key:
            return
        if auth_header and auth_header.lower().startswith("apikey "):
            if auth_header.split(" ", 1)[1] == config.api_key:
                return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return _auth_guard


class DevicePatch(BaseModel):
    """Write triggers for a fan; omitted fields are left alone."""

    active: Optional[bool] = None
    rotation_speed: Optional[int] = Field(default=None, ge=0, le=100)
    swing_enabled: Optional[bool] = None
    light_on: Optional[bool] = None
    brightness: Optional[int] = Field(default=None, ge=0, le=100)


class DeviceOut(BaseModel):
    device_id: str
    name: str
    device_type: str
    connection_type: str
    state: Dict[str, Any]
    pending: Dict[str, Any]
    projection: Dict[str, Any]
    update_in_progress: bool
    queue_state: str
    last_refresh: Optional[float]


def create_app(
    config: Config,
    manager: DeviceManager,
    health: Optional[HealthMonitor] = None,
) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("switchbot.api")
    request_logger = get_logger("switchbot.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    app = FastAPI(
        title="SwitchBot Fan Bridge API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    def _controller(device_id: str) -> DeviceController:
        try:
            return manager.get(device_id)
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found") from None

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception:  # pragma: no cover - defensive
            logger.exception("Unhandled API error")
            return JSONResponse(status_code=500, content={"detail": "Internal server error"})
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        duration_seconds = time.perf_counter() - start
        observe_request(request.method, path_template, response.status_code, duration_seconds)
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redacted_headers,
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": jsonable_errors(exc)},
        )

    @app.post("/webhook", status_code=status.HTTP_202_ACCEPTED)
    async def webhook(request: Request) -> Dict[str, str]:
        try:
            payload = await request.json()
        except ValueError:
            record_inbound_update("webhook", "malformed")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON") from None
        try:
            result = manager.handle_webhook(payload)
        except MalformedPayloadError as exc:
            record_inbound_update("webhook", "malformed")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if result == "ignored":
            record_inbound_update("webhook", "ignored")
        logger.debug("Webhook processed", extra={"result": result})
        return {"status": result}

    @app.get("/health", dependencies=[Depends(auth_dependency)])
    async def health_check() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/status", dependencies=[Depends(auth_dependency)])
    async def bridge_status() -> Dict[str, Any]:
        subsystems = dict(await health.snapshot()) if health is not None else {}
        return {
            "devices": len(manager.controllers),
            "webhook_registered": manager.webhook_registered,
            "subsystems": subsystems,
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/devices", dependencies=[Depends(auth_dependency)], response_model=List[DeviceOut])
    async def list_devices() -> List[DeviceOut]:
        return [DeviceOut(**snapshot) for snapshot in manager.snapshots()]

    @app.get("/devices/{device_id}", dependencies=[Depends(auth_dependency)], response_model=DeviceOut)
    async def get_device(device_id: str) -> DeviceOut:
        return DeviceOut(**_controller(device_id).snapshot())

    @app.patch(
        "/devices/{device_id}",
        dependencies=[Depends(auth_dependency)],
        response_model=DeviceOut,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def update_device(device_id: str, payload: DevicePatch) -> DeviceOut:
        controller = _controller(device_id)
        changes = payload.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No writable fields supplied")
        for name, value in changes.items():
            controller.set_characteristic(name, value)
        return DeviceOut(**controller.snapshot())

    @app.post("/devices/{device_id}/refresh", dependencies=[Depends(auth_dependency)])
    async def refresh_device(device_id: str) -> Dict[str, Any]:
        controller = _controller(device_id)
        ran = await controller.request_refresh()
        if not ran:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT, detail="Update in progress; refresh skipped"
            )
        return {"refreshed": True, "device": controller.snapshot()}

    return app


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {key: value for key, value in error.items() if key in {"loc", "msg", "type"}}
        for error in exc.errors()
    ]


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(self, config: Config, manager: DeviceManager, health: Optional[HealthMonitor] = None) -> None:
        self.config = config
        self.manager = manager
        self.health = health
        self.logger = get_logger("switchbot.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.manager, self.health)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info("API server starting", extra={"host": self.config.api_host, "port": self.config.api_port})
        if self.health is not None:
            await self.health.record_success("api")

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        task, self._server_task = self._server_task, None
        self._server = None
        if task is None:
            return
        try:
            await task
        except (OSError, SystemExit) as exc:
            # uvicorn exits when the port cannot be bound.
            self.logger.error("API server exited with an error", extra={"error": str(exc)})
            if self.health is not None:
                await self.health.record_failure("api", exc)
