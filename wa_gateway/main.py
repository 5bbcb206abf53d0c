import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from wa_gateway.config import Settings, settings
from wa_gateway.dependencies import Gateway, build_gateway
from wa_gateway.logging_config import bind_request_id, get_logger, get_request_id, reset_request_id, setup_logging
from wa_gateway.routers import debug, messages, sessions

logger = get_logger("http")

MAX_LOGGED_BODY_CHARS = 600
PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}


def create_app(gateway: Optional[Gateway] = None, app_settings: Optional[Settings] = None) -> FastAPI:
    app_settings = app_settings or (gateway.settings if gateway else settings)

    app = FastAPI(
        title="WA Gateway",
        description="Multi-session chat gateway with outbound message governance",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins(),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def api_key_guard(request: Request, call_next):
        if app_settings.api_key and request.url.path not in PUBLIC_PATHS and request.method != "OPTIONS":
            if request.headers.get("x-api-key") != app_settings.api_key:
                return JSONResponse(status_code=401, content={"error": "unauthorized"})
        return await call_next(request)

    @app.middleware("http")
    async def request_log(request: Request, call_next):
        token = bind_request_id(request.headers.get("x-request-id"))
        started = time.monotonic()
        body = (await request.body()).decode("utf-8", errors="replace")
        logger.info(
            f"{request.method} {request.url.path}",
            extra={"context": {"body": body[:MAX_LOGGED_BODY_CHARS]} if body else {}},
        )
        try:
            response = await call_next(request)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={"context": {"status": response.status_code, "elapsed_ms": elapsed_ms}},
            )
            response.headers["X-Request-ID"] = get_request_id()
            return response
        finally:
            reset_request_id(token)

    @app.exception_handler(RequestValidationError)
    async def invalid_payload(request: Request, exc: RequestValidationError):
        logger.info("Invalid payload", extra={"context": {"errors": exc.errors()}})
        return JSONResponse(status_code=400, content={"error": "invalid_payload"})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    app.include_router(sessions.router)
    app.include_router(messages.router)
    app.include_router(debug.router)

    @app.on_event("startup")
    async def start_gateway() -> None:
        if getattr(app.state, "gateway", None) is None:
            app.state.gateway = build_gateway(app_settings)
        logger.info("Gateway started", extra={"context": {"port": app_settings.port}})

    @app.on_event("shutdown")
    async def stop_gateway() -> None:
        gw: Optional[Gateway] = getattr(app.state, "gateway", None)
        if gw is not None:
            await gw.shutdown()
        logger.info("Gateway stopped")

    @app.get("/health")
    async def health():
        return {"ok": True}

    if gateway is not None:
        app.state.gateway = gateway
    return app


setup_logging(settings.log_level)
app = create_app()
