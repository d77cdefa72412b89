"""Outbound SMS/MMS and the inbound message webhooks."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Response
from pydantic import BaseModel, ConfigDict, Field

from provider_gateway.adapters import Capability
from provider_gateway.adapters.types import MessageRequest
from provider_gateway.errors import MissingFieldError, ServiceUnavailableError

from ..deps import GatewayDep, ServicesDep, TenantDep, WebhookDep

router = APIRouter()

EMPTY_TWIML = "<?xml version=\"1.0\" encoding=\"UTF-8\"?><Response></Response>"


class SmsBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str | None = None
    from_: str | None = Field(default=None, alias="from")
    body: str | None = None
    media_url: str | list[str] | None = None


class SmsResponse(BaseModel):
    sid: str | None
    status: str
    capability: str


def media_urls(value: str | list[str] | None) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    return tuple(url for url in value if url)


def inbound_media_count(params: dict[str, str]) -> int:
    try:
        return int(params.get("NumMedia") or 0)
    except ValueError:
        return 0


@router.post("/messages/sms", response_model=SmsResponse)
async def send_sms(body: SmsBody, gateway: GatewayDep, tenant: TenantDep) -> SmsResponse:
    missing = [name for name, value in (("to", body.to), ("from", body.from_), ("body", body.body)) if not value]
    if missing:
        raise MissingFieldError(f"Missing required fields: {', '.join(missing)}")
    payload = MessageRequest(
        to=body.to,
        from_=body.from_,
        body=body.body,
        media_urls=media_urls(body.media_url),
        tenant_id=tenant.id,
    )
    capability = Capability.MMS_OUTBOUND if payload.is_mms else Capability.SMS_OUTBOUND
    result = await gateway.execute(tenant, capability, payload)
    output = result.result
    return SmsResponse(sid=output.sid, status=output.status, capability=output.capability)


@router.post("/messages/sms/inbound/{tenant_id}")
async def inbound_sms(webhook: WebhookDep, services: ServicesDep) -> Response:
    if services.telephony is None:
        raise ServiceUnavailableError("SMS service not configured")
    params = webhook.params
    message_sid = params.get("MessageSid") or params.get("SmsSid")
    usage = services.telephony.bill_inbound_message(
        is_mms=inbound_media_count(params) > 0,
        message_sid=message_sid,
    )
    await services.gateway.record_usage(
        webhook.tenant.id,
        Capability(usage.result.capability),
        services.telephony.name,
        usage,
        reference_id=f"sms-in:{message_sid}" if message_sid else None,
        metadata={"message_sid": message_sid, "from": params.get("From"), "to": params.get("To")},
    )
    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post("/messages/sms/status/{tenant_id}")
async def sms_status(webhook: WebhookDep, services: ServicesDep) -> dict[str, Any]:
    services.logger.info(
        "SMS status callback",
        tenant_id=webhook.tenant.id,
        message_sid=webhook.params.get("MessageSid"),
        message_status=webhook.params.get("MessageStatus"),
    )
    return {"received": True}
