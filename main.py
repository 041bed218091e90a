import logging
import re
import secrets
import time
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from config.settings import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DEFAULT_PORT,
    HOST,
    METRICS_ENABLED,
    PORT,
    RATE_LIMIT,
    XEN_HOST,
    XEN_PASSWORD,
    XEN_SESSION_CHECKOUT_TIMEOUT,
    XEN_SESSION_POOL_SIZE,
    XEN_USERNAME,
    XEN_VERIFY_SSL,
)
from core.errors import XenServerError
from core.logger import log_event
from core.metrics import REQUEST_COUNT, REQUEST_LATENCY
from core.user_controller import UserController
from core.vm_controller import VMController
from core.xen_session import SessionManager, SessionPool, XenServerConfig
from schemas.user_schema import UserCreateSchema, UserCreated, UserDescriptor
from schemas.vm_schema import (
    VMActionResult,
    VMCreateSchema,
    VMCreated,
    VMDescriptor,
    VMMetrics,
)

UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}$"
)

security = HTTPBasic()


def resolve_port(raw: Optional[str]) -> int:
    """
    Parse the PORT setting. Anything that is not an integer in 1..65535
    falls back to the default port with a warning.
    """
    try:
        port = int(raw)
    except (TypeError, ValueError):
        port = 0
    if not 1 <= port <= 65535:
        log_event(f"[app] Invalid PORT {raw!r}. Using default port {DEFAULT_PORT}.", logging.WARNING)
        return DEFAULT_PORT
    return port


def build_session_provider():
    config = XenServerConfig(
        host=XEN_HOST,
        username=XEN_USERNAME,
        password=XEN_PASSWORD,
        verify_ssl=XEN_VERIFY_SSL,
    )
    if XEN_SESSION_POOL_SIZE > 0:
        log_event(f"[app] Using XenAPI session pool of size {XEN_SESSION_POOL_SIZE}")
        return SessionPool(config, XEN_SESSION_POOL_SIZE, XEN_SESSION_CHECKOUT_TIMEOUT)
    return SessionManager(config)


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------
def get_vm_controller(request: Request) -> VMController:
    return request.app.state.vm_controller


def get_user_controller(request: Request) -> UserController:
    return request.app.state.user_controller


def require_admin(request: Request, credentials: HTTPBasicCredentials = Depends(security)) -> str:
    expected_username = request.app.state.admin_username
    expected_password = request.app.state.admin_password

    username_ok = secrets.compare_digest(
        credentials.username.encode("utf-8"), expected_username.encode("utf-8")
    )
    password_ok = bool(expected_password) and secrets.compare_digest(
        credentials.password.encode("utf-8"), expected_password.encode("utf-8")
    )
    if not (username_ok and password_ok):
        log_event(f"[api] Rejected credentials for {request.method} {request.url.path}")
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def valid_vm_uuid(uuid: str) -> str:
    if not UUID_PATTERN.match(uuid):
        raise HTTPException(status_code=400, detail="Invalid UUID format")
    return uuid


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------
system_router = APIRouter()
router = APIRouter(prefix="/v1/api")


@system_router.get("/", tags=["System"])
def root(request: Request):
    return {
        "message": "XenServer VM gateway is running",
        "version": request.app.version,
    }


@system_router.get("/metrics", tags=["Monitoring"])
def metrics(request: Request):
    if not request.app.state.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/vms", response_model=List[VMDescriptor], tags=["VM Management"])
def list_vms(controller: VMController = Depends(get_vm_controller)):
    return controller.list_vms()


@router.get("/vms/{uuid}/metrics", response_model=VMMetrics, tags=["VM Management"])
def get_vm_metrics(
    vm_uuid: str = Depends(valid_vm_uuid),
    controller: VMController = Depends(get_vm_controller),
):
    return controller.get_vm_metrics(vm_uuid)


@router.post(
    "/vms/{uuid}/start",
    response_model=VMActionResult,
    dependencies=[Depends(require_admin)],
    tags=["VM Management"],
)
def start_vm(
    vm_uuid: str = Depends(valid_vm_uuid),
    controller: VMController = Depends(get_vm_controller),
):
    return controller.start_vm(vm_uuid)


@router.post(
    "/vms/{uuid}/stop",
    response_model=VMActionResult,
    dependencies=[Depends(require_admin)],
    tags=["VM Management"],
)
def stop_vm(
    vm_uuid: str = Depends(valid_vm_uuid),
    controller: VMController = Depends(get_vm_controller),
):
    return controller.stop_vm(vm_uuid)


@router.post(
    "/vms/{uuid}/reboot",
    response_model=VMActionResult,
    dependencies=[Depends(require_admin)],
    tags=["VM Management"],
)
def reboot_vm(
    vm_uuid: str = Depends(valid_vm_uuid),
    controller: VMController = Depends(get_vm_controller),
):
    return controller.reboot_vm(vm_uuid)


@router.post(
    "/vms",
    response_model=VMCreated,
    status_code=201,
    dependencies=[Depends(require_admin)],
    tags=["VM Management"],
)
def create_vm(payload: VMCreateSchema, controller: VMController = Depends(get_vm_controller)):
    return controller.create_vm(payload)


@router.delete(
    "/vms/{uuid}",
    response_model=VMActionResult,
    dependencies=[Depends(require_admin)],
    tags=["VM Management"],
)
def delete_vm(
    vm_uuid: str = Depends(valid_vm_uuid),
    controller: VMController = Depends(get_vm_controller),
):
    return controller.delete_vm(vm_uuid)


@router.get(
    "/users",
    response_model=List[UserDescriptor],
    dependencies=[Depends(require_admin)],
    tags=["Users"],
)
def list_users(controller: UserController = Depends(get_user_controller)):
    return controller.list_users()


@router.post(
    "/users",
    response_model=UserCreated,
    status_code=201,
    dependencies=[Depends(require_admin)],
    tags=["Users"],
)
def create_user(payload: UserCreateSchema, controller: UserController = Depends(get_user_controller)):
    return controller.create_user(payload.username, payload.password, payload.role)


@router.delete("/users/{username}", dependencies=[Depends(require_admin)], tags=["Users"])
def delete_user(username: str, controller: UserController = Depends(get_user_controller)):
    controller.delete_user(username)
    return {"message": "User deleted"}


# ----------------------------------------------------------------------
# Middleware / error handlers
# ----------------------------------------------------------------------
async def metrics_middleware(request: Request, call_next):
    endpoint = request.url.path
    method = request.method

    if not request.app.state.metrics_enabled or endpoint == "/metrics":
        return await call_next(request)

    start_time = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.time() - start_time
        REQUEST_COUNT.labels(method=method, endpoint=endpoint).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)


async def xen_error_handler(request: Request, exc: XenServerError):
    log_event(f"[api] {request.method} {request.url.path} failed: {exc.message}", logging.WARNING)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    error_types = {error.get("type") for error in exc.errors()}
    if "json_invalid" in error_types:
        detail = "Invalid JSON format"
    elif "missing" in error_types:
        detail = "Missing required parameters"
    else:
        detail = "Invalid request parameters"
    return JSONResponse(status_code=400, content={"detail": detail})


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_event("[app] xen-gateway started")
    yield
    sessions = getattr(app.state, "sessions", None)
    if sessions is not None:
        sessions.close()
    log_event("[app] xen-gateway stopped")


def create_app(
    vm_controller: Optional[VMController] = None,
    user_controller: Optional[UserController] = None,
    admin_username: str = ADMIN_USERNAME,
    admin_password: str = ADMIN_PASSWORD,
    rate_limit: str = RATE_LIMIT,
    metrics_enabled: bool = METRICS_ENABLED,
) -> FastAPI:
    app = FastAPI(
        title="XenServer VM Gateway",
        description=(
            "REST control plane for virtual machines on a XenServer / XCP-ng pool.\n\n"
            "Features:\n"
            "- VM list, metrics, start, stop, reboot, create from template, delete\n"
            "- Minimal RBAC user administration\n"
            "- Basic auth on mutating endpoints, per-client rate limiting\n"
            "- Prometheus metrics"
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    sessions = None
    if vm_controller is None or user_controller is None:
        sessions = build_session_provider()
    app.state.sessions = sessions
    app.state.vm_controller = vm_controller or VMController(sessions)
    app.state.user_controller = user_controller or UserController(sessions)
    app.state.admin_username = admin_username
    app.state.admin_password = admin_password
    app.state.metrics_enabled = metrics_enabled

    limiter = Limiter(key_func=get_remote_address, application_limits=[rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(XenServerError, xen_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.middleware("http")(metrics_middleware)

    app.include_router(system_router)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    port = resolve_port(PORT)
    log_event(f"[app] Server running on port {port}")
    uvicorn.run(app, host=HOST, port=port)
