"""Application factory for the metered provider gateway."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from provider_gateway.errors import GatewayError, MissingFieldError, ValidationError
from provider_gateway.logging import StructuredLogger, get_logger

from .limits import BodyLimitMiddleware, route_limits
from .routes import audio, health, llm, media, messages, phone
from .services import GatewayServices, build_services
from .settings import Settings, get_settings

REQUEST_ID_HEADER = "X-Request-ID"


def error_response(exc: GatewayError) -> JSONResponse:
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.http_status, content=exc.to_body(), headers=headers)


def validation_error(exc: RequestValidationError) -> GatewayError:
    errors = exc.errors()
    missing = [
        ".".join(str(part) for part in error.get("loc", ())[1:])
        for error in errors
        if error.get("type") == "missing"
    ]
    if missing:
        return MissingFieldError(f"Missing required fields: {', '.join(missing)}")
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = first.get("msg", "Invalid request")
    return ValidationError(f"{location}: {message}" if location else message)


def _logger_for(request: Request) -> StructuredLogger:
    services = getattr(request.app.state, "services", None)
    return services.logger if services is not None else get_logger("gateway_api")


def create_app(services: GatewayServices | None = None, *, settings: Settings | None = None) -> FastAPI:
    """
    Build the gateway app.

    Passing ``services`` wires the app immediately and leaves their lifecycle
    to the caller. Without them the lifespan builds the production wiring from
    ``settings`` and tears it down on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if app.state.services is not None:
            await app.state.services.start()
            yield
            return

        client = httpx.AsyncClient(timeout=settings.upstream_timeout_sec)
        built = await build_services(settings, client)
        app.state.services = built
        await built.start()
        try:
            yield
        finally:
            await built.close()
            await client.aclose()

    app = FastAPI(title="Metered Provider Gateway", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        logger = _logger_for(request)
        if exc.http_status >= 500:
            logger.log_error(exc, f"{request.method} {request.url.path} failed", path=request.url.path)
        else:
            logger.warning(
                "Request rejected",
                path=request.url.path,
                error_code=exc.code.value,
                http_status=exc.http_status,
            )
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(validation_error(exc))

    app.add_middleware(
        BodyLimitMiddleware,
        limits=route_limits(
            settings.base_path,
            llm=settings.body_limit_llm,
            audio=settings.body_limit_audio,
            media=settings.body_limit_media,
            telephony=settings.body_limit_telephony,
        ),
        default_limit=settings.body_limit_telephony,
    )

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        logger = _logger_for(request)
        with logger.request_context(request.headers.get(REQUEST_ID_HEADER)) as request_id:
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    prefix = settings.base_path
    app.include_router(health.router, prefix=prefix, tags=["Health"])
    app.include_router(llm.router, prefix=prefix, tags=["LLM"])
    app.include_router(audio.router, prefix=prefix, tags=["Audio"])
    app.include_router(media.router, prefix=prefix, tags=["Media"])
    app.include_router(phone.router, prefix=prefix, tags=["Phone"])
    app.include_router(messages.router, prefix=prefix, tags=["Messages"])
    return app
