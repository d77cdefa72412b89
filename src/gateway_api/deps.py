"""FastAPI dependency injection utilities."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Annotated
from urllib.parse import parse_qsl

from fastapi import Depends, Header, Request

from provider_gateway.budget import GatewayTenant
from provider_gateway.errors import (
    ErrorContext,
    InvalidApiKeyError,
    InvalidTenantError,
    MissingApiKeyError,
    ServiceUnavailableError,
    ValidationError,
)
from provider_gateway.gateway import MeteredGateway
from provider_gateway.webhooks import SIGNATURE_HEADER, client_ip

from .auth import parse_bearer
from .services import GatewayServices

TWILIO_SOURCE = "twilio"


async def get_services(request: Request) -> GatewayServices:
    """Services wired for this application instance."""
    return request.app.state.services


async def get_gateway(services: Annotated[GatewayServices, Depends(get_services)]) -> MeteredGateway:
    return services.gateway


async def require_tenant(
    services: Annotated[GatewayServices, Depends(get_services)],
    authorization: Annotated[str | None, Header()] = None,
) -> GatewayTenant:
    """Resolve the bearer service key to a tenant."""
    key = parse_bearer(authorization)
    if key is None:
        raise MissingApiKeyError("Missing API key. Send Authorization: Bearer <service key>.")
    tenant = await services.key_resolver.resolve(key)
    if tenant is None:
        raise InvalidApiKeyError("Invalid API key")
    return tenant


async def read_params(request: Request) -> tuple[dict[str, str], str | None]:
    """
    Callback parameters from a form-encoded or JSON body, stringified.

    Never raises on a bad body: the signature check must run first so that
    garbage from an unsigned caller still counts toward its penalty. A body
    that cannot be parsed yields no params and a problem description.
    """
    body = await request.body()
    if not body:
        return {}, None
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}, "Malformed JSON body"
        if not isinstance(data, dict):
            return {}, "Callback body must be an object"
        return {str(key): "" if value is None else str(value) for key, value in data.items()}, None
    return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True)), None


@dataclass(frozen=True)
class WebhookCall:
    tenant: GatewayTenant
    params: dict[str, str]


async def verified_webhook(
    tenant_id: str,
    request: Request,
    services: Annotated[GatewayServices, Depends(get_services)],
) -> WebhookCall:
    """Verify the provider signature, then resolve the tenant named in the path."""
    if services.verifier is None:
        raise ServiceUnavailableError("Phone service not configured")
    params, problem = await read_params(request)
    await services.verifier.verify(
        ip=client_ip(request.headers, request.client.host if request.client else None),
        source=TWILIO_SOURCE,
        path=request.url.path,
        query=request.url.query,
        signature=request.headers.get(SIGNATURE_HEADER),
        params=params,
    )
    if problem is not None:
        raise ValidationError(problem)
    tenant = await services.webhook_tenants.resolve(tenant_id)
    if tenant is None:
        raise InvalidTenantError("Unknown tenant", context=ErrorContext(tenant_id=tenant_id))
    return WebhookCall(tenant=tenant, params=params)


ServicesDep = Annotated[GatewayServices, Depends(get_services)]
GatewayDep = Annotated[MeteredGateway, Depends(get_gateway)]
TenantDep = Annotated[GatewayTenant, Depends(require_tenant)]
WebhookDep = Annotated[WebhookCall, Depends(verified_webhook)]
