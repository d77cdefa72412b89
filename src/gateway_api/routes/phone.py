"""Voice calls and phone number lifecycle."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field

from provider_gateway.adapters import Capability
from provider_gateway.adapters.types import CallRequest, NumberRequest, PhoneNumber
from provider_gateway.errors import ServiceUnavailableError, ValidationError

from ..deps import GatewayDep, ServicesDep, TenantDep, WebhookDep

router = APIRouter()

MAX_INBOUND_MINUTES = 240


class OutboundCallBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str = Field(..., min_length=1)
    from_: str = Field(..., min_length=1, alias="from")
    webhook_url: str | None = None


class OutboundCallResponse(BaseModel):
    status: str = "initiated"
    call_sid: str


class InboundCallBody(BaseModel):
    call_sid: str | None = None
    duration_minutes: Any = 1
    status: str | None = None


class InboundCallResponse(BaseModel):
    status: str = "billed"
    call_sid: str | None = None
    minutes: int
    charge: str


class NumberBody(BaseModel):
    area_code: str | None = None
    country: str = "US"
    voice: bool = True
    mms: bool = True


class NumberResponse(BaseModel):
    id: str
    phone_number: str
    friendly_name: str
    capabilities: dict[str, bool] = Field(default_factory=dict)


def _number_response(number: PhoneNumber) -> NumberResponse:
    return NumberResponse(
        id=number.id,
        phone_number=number.phone_number,
        friendly_name=number.friendly_name,
        capabilities=number.capabilities,
    )


def inbound_minutes(value: Any) -> int:
    """Whole minutes in ``[1, 240]``; anything else is a validation error."""
    if value is None:
        return 1
    if isinstance(value, bool):
        raise ValidationError("duration_minutes must be an integer")
    try:
        minutes = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("duration_minutes must be an integer") from exc
    if minutes != value and str(minutes) != str(value).strip():
        raise ValidationError("duration_minutes must be an integer")
    if minutes < 1 or minutes > MAX_INBOUND_MINUTES:
        raise ValidationError(f"duration_minutes must be between 1 and {MAX_INBOUND_MINUTES}")
    return minutes


def parse_duration_seconds(raw: str | None) -> int:
    try:
        return max(0, int(raw or 0))
    except ValueError:
        return 0


# =============================================================================
# Calls
# =============================================================================


@router.post("/phone/outbound", response_model=OutboundCallResponse)
async def outbound_call(body: OutboundCallBody, gateway: GatewayDep, tenant: TenantDep) -> OutboundCallResponse:
    payload = CallRequest(tenant_id=tenant.id, to=body.to, from_=body.from_, twiml_url=body.webhook_url)
    # billed from the status callback once the duration is known
    result = await gateway.execute(tenant, Capability.PHONE_OUTBOUND, payload, deferred=True)
    return OutboundCallResponse(call_sid=result.result.call_sid)


@router.post("/phone/inbound", response_model=InboundCallResponse)
async def inbound_call(body: InboundCallBody, gateway: GatewayDep, tenant: TenantDep) -> InboundCallResponse:
    minutes = inbound_minutes(body.duration_minutes)
    result = await gateway.execute_priced(
        tenant,
        Capability.PHONE_INBOUND,
        lambda adapter: adapter.bill_inbound_minutes(minutes),
        metadata={"call_sid": body.call_sid, "minutes": minutes, "status": body.status},
    )
    return InboundCallResponse(call_sid=body.call_sid, minutes=minutes, charge=str(result.charge))


@router.post("/phone/outbound/status/{tenant_id}")
async def outbound_call_status(webhook: WebhookDep, gateway: GatewayDep) -> dict[str, Any]:
    params = webhook.params
    event = await gateway.bill_call_completion(
        webhook.tenant.id,
        params.get("CallSid", ""),
        parse_duration_seconds(params.get("CallDuration")),
        params.get("CallStatus", ""),
    )
    return {"received": True, "billed": event is not None}


# =============================================================================
# Numbers
# =============================================================================


@router.post("/phone/numbers", response_model=NumberResponse)
async def provision_number(body: NumberBody, gateway: GatewayDep, tenant: TenantDep) -> NumberResponse:
    payload = NumberRequest(
        tenant_id=tenant.id,
        area_code=body.area_code,
        country=body.country,
        voice=body.voice,
        mms=body.mms,
    )
    result = await gateway.execute(tenant, Capability.PHONE_NUMBER_PROVISION, payload)
    return _number_response(result.result)


@router.get("/phone/numbers", response_model=list[NumberResponse])
async def list_numbers(services: ServicesDep, tenant: TenantDep) -> list[NumberResponse]:
    if services.telephony is None:
        raise ServiceUnavailableError("Phone service not configured")
    numbers = await services.telephony.list_numbers(tenant.id)
    return [_number_response(number) for number in numbers]


@router.delete("/phone/numbers/{number_id}")
async def release_number(number_id: str, services: ServicesDep, tenant: TenantDep) -> dict[str, Any]:
    if services.telephony is None:
        raise ServiceUnavailableError("Phone service not configured")
    await services.telephony.release_number(tenant.id, number_id)
    return {"id": number_id, "released": True}
