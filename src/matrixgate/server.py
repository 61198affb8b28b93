"""REST API server for the video matrix.

Wires the access-control layer and the command gateway to HTTP routes.
Callers log in once, then present the session token either as
``Authorization: Bearer <token>`` or through the cookie set by /login.

    GET  /health          -> {"status": "ok", "connected": bool}
    POST /login           <- {"username": "...", "password": "..."}
    POST /logout
    GET  /status          -> {"connected": bool, "device_address": ..., ...}
    POST /connect         -> {"success": bool, "connected": bool}
    POST /switch          <- {"input": 0-8, "output": 1-8}
    GET  /query-status    -> {"routing": {"<output>": <input>, ...}}
    POST /disconnect      -> {"connected": false}
"""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from typing import Annotated, AsyncIterator

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from matrixgate.auth.access import AccessControl
from matrixgate.auth.ratelimit import RequestRateLimiter
from matrixgate.config.settings import Settings
from matrixgate.domain.models import Session
from matrixgate.errors import MatrixGateError
from matrixgate.matrix.cache import StatusCache
from matrixgate.matrix.gateway import CommandGateway
from matrixgate.matrix.link import MatrixLink

logger = logging.getLogger(__name__)

SESSION_COOKIE = "matrixgate_session"


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    username: str = Field(default="", description="Alphanumeric account name")
    password: str = Field(default="", description="Account password")


class LoginResponse(BaseModel):
    session: str = Field(description="Session token for subsequent requests")
    username: str
    role: str
    permissions: list[str]


class SwitchRequest(BaseModel):
    input: int = Field(description="Input number, 0 switches the output off")
    output: int = Field(description="Output number, starting at 1")


class SwitchResponse(BaseModel):
    success: bool = True
    input: int
    output: int
    ack: str = Field(description="Raw acknowledgment from the matrix")


class StatusResponse(BaseModel):
    connected: bool
    device_address: str
    device_port: int
    user: str | None = None


class ConnectResponse(BaseModel):
    success: bool
    connected: bool


class RoutingResponse(BaseModel):
    success: bool = True
    routing: dict[int, int]


class HealthResponse(BaseModel):
    status: str = "ok"
    connected: bool = False


def _http_error(exc: MatrixGateError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


# ---------------------------------------------------------------------------
# Session dependency
# ---------------------------------------------------------------------------

bearer_scheme = HTTPBearer(auto_error=False)

BearerCredentials = Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)]


def _session_token(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if credentials is not None:
        return credentials.credentials
    return request.cookies.get(SESSION_COOKIE)


def current_session(request: Request, credentials: BearerCredentials) -> Session | None:
    """Resolve the caller's session; None when authentication is disabled."""
    acl: AccessControl = request.app.state.access
    if not acl.enabled:
        return None
    try:
        return acl.resolve(_session_token(request, credentials))
    except MatrixGateError as e:
        raise _http_error(e) from e


CurrentSession = Annotated[Session | None, Depends(current_session)]


# ---------------------------------------------------------------------------
# Request rate limiting
# ---------------------------------------------------------------------------

class RateLimitMiddleware(BaseHTTPMiddleware):
    """Refuse clients that exceed the request budget with 429."""

    def __init__(
        self,
        app: FastAPI,
        limiter: RequestRateLimiter,
        exempt_paths: frozenset[str] = frozenset({"/health"}),
    ) -> None:
        super().__init__(app)
        self._limiter = limiter
        self._exempt_paths = exempt_paths

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self._exempt_paths:
            return await call_next(request)

        client_address = request.client.host if request.client else ""
        decision = self._limiter.hit(client_address)
        headers = {
            "RateLimit-Limit": str(decision.limit),
            "RateLimit-Remaining": str(decision.remaining),
            "RateLimit-Reset": str(math.ceil(decision.reset_after)),
        }
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s", client_address)
            headers["Retry-After"] = headers["RateLimit-Reset"]
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests, please try again later"},
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response


# 400 detail for request bodies that fail model validation
VALIDATION_DETAILS = {
    "/login": "Invalid credentials format",
    "/switch": "Invalid input or output value",
}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings | None = None,
    access: AccessControl | None = None,
    link: MatrixLink | None = None,
    cache: StatusCache | None = None,
    gateway: CommandGateway | None = None,
    limiter: RequestRateLimiter | None = None,
    connect_on_startup: bool = True,
) -> FastAPI:
    """Create the matrix control REST API application.

    Args:
        settings: Loaded configuration. Defaults to ``Settings()``.
        access: Optional pre-built AccessControl (for testing).
        link: Optional pre-built MatrixLink (for testing).
        cache: Optional pre-built StatusCache (for testing).
        gateway: Optional pre-built CommandGateway (for testing). When
            given, its link is the one used for startup and shutdown.
        limiter: Optional pre-built RequestRateLimiter (for testing).
            Built from ``security.rate_limit_*`` otherwise; a
            ``rate_limit_max`` of 0 turns rate limiting off.
        connect_on_startup: Whether to try connecting to the matrix when
            the application starts.
    """
    settings = settings or Settings()
    if access is None:
        access = AccessControl.from_settings(settings)
    if gateway is None:
        link = link or MatrixLink.from_config(settings.matrix)
        cache = cache or StatusCache(ttl=settings.security.status_cache_ttl)
        gateway = CommandGateway.from_config(settings.matrix, access, link, cache)
    if limiter is None and settings.security.rate_limit_max > 0:
        limiter = RequestRateLimiter(
            max_requests=settings.security.rate_limit_max,
            window_seconds=settings.security.rate_limit_window,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        gw: CommandGateway = app.state.gateway
        logger.info(
            "Matrix control server started (matrix=%s:%d, auth=%s)",
            gw.link.host, gw.link.port,
            "enabled" if app.state.access.enabled else "DISABLED",
        )
        if not app.state.access.enabled:
            logger.warning("Authentication is disabled!")
        if connect_on_startup:
            logger.info("Attempting initial connection...")
            await gw.link.ensure_connected()

        yield

        await gw.link.shutdown()
        logger.info("Matrix control server stopped")

    app = FastAPI(
        title="matrixgate",
        description="Authenticated REST control for a telnet video matrix",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.access = access
    app.state.gateway = gateway

    if limiter is not None:
        app.add_middleware(RateLimitMiddleware, limiter=limiter)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = sorted({".".join(str(part) for part in err["loc"][1:]) for err in exc.errors()})
        logger.warning("Rejected malformed %s request (fields: %s)", request.url.path, fields)
        detail = VALIDATION_DETAILS.get(request.url.path, "Invalid request parameters")
        return JSONResponse(status_code=400, content={"detail": detail})

    @app.get("/health")
    async def health_check() -> HealthResponse:
        gw: CommandGateway = app.state.gateway
        return HealthResponse(status="ok", connected=gw.link.is_connected)

    # -------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------

    @app.post("/login")
    async def login(body: LoginRequest, request: Request, response: Response) -> LoginResponse:
        acl: AccessControl = app.state.access
        client_address = request.client.host if request.client else ""
        try:
            session = await acl.authenticate(client_address, body.username, body.password)
        except MatrixGateError as e:
            raise _http_error(e) from e

        timeout = app.state.settings.security.session_timeout
        response.set_cookie(
            SESSION_COOKIE,
            session.token,
            httponly=True,
            samesite="strict",
            max_age=int(timeout) if timeout else None,
        )
        return LoginResponse(
            session=session.token,
            username=session.username,
            role=session.role.value,
            permissions=sorted(p.value for p in session.permissions),
        )

    @app.post("/logout")
    async def logout(
        request: Request, response: Response, credentials: BearerCredentials
    ) -> dict[str, bool]:
        acl: AccessControl = app.state.access
        acl.logout(_session_token(request, credentials))
        response.delete_cookie(SESSION_COOKIE)
        return {"success": True}

    # -------------------------------------------------------------------
    # Matrix control
    # -------------------------------------------------------------------

    @app.get("/status")
    async def status(session: CurrentSession) -> StatusResponse:
        gw: CommandGateway = app.state.gateway
        try:
            info = gw.status(session)
        except MatrixGateError as e:
            raise _http_error(e) from e
        return StatusResponse(**info, user=session.username if session else None)

    @app.post("/connect")
    async def connect(session: CurrentSession) -> ConnectResponse:
        gw: CommandGateway = app.state.gateway
        try:
            success = await gw.connect(session)
        except MatrixGateError as e:
            raise _http_error(e) from e
        return ConnectResponse(success=success, connected=gw.link.is_connected)

    @app.post("/switch")
    async def switch(body: SwitchRequest, session: CurrentSession) -> SwitchResponse:
        gw: CommandGateway = app.state.gateway
        try:
            ack = await gw.switch_route(session, body.input, body.output)
        except MatrixGateError as e:
            raise _http_error(e) from e
        return SwitchResponse(input=body.input, output=body.output, ack=ack)

    @app.get("/query-status")
    async def query_status(session: CurrentSession) -> RoutingResponse:
        gw: CommandGateway = app.state.gateway
        try:
            snapshot = await gw.query_routing(session)
        except MatrixGateError as e:
            raise _http_error(e) from e
        return RoutingResponse(routing=snapshot.routes)

    @app.post("/disconnect")
    async def disconnect(session: CurrentSession) -> dict[str, bool]:
        gw: CommandGateway = app.state.gateway
        try:
            await gw.disconnect(session)
        except MatrixGateError as e:
            raise _http_error(e) from e
        return {"success": True, "connected": False}

    return app


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

def main(settings: Settings | None = None) -> None:
    """Run the matrix control server."""
    settings = settings or Settings()
    app = create_app(settings=settings)
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    main()
