"""
Twilio adapter: voice calls, SMS/MMS and phone number lifecycle.

Billing models:
- Calls are duration-counted. Outbound calls are billed later from the
  status callback (``bill_call``); initiation itself is free. Inbound calls
  are billed from the minutes the platform reports (``bill_inbound_minutes``).
- Messages are a flat per-message rate; attached media moves a message to the
  MMS tier.
- Numbers carry a monthly fee, charged at purchase and by the monthly job.

Telephony margins come from the margin config when a ``twilio`` rule matches
the capability name, otherwise from the per-capability defaults below.
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any
from urllib.parse import quote

import httpx

from ..credit import Credit
from ..errors import MissingFieldError, NoNumbersAvailableError, NumberNotFoundError, UpstreamError
from ..margin import MarginConfig, find_rule, with_margin
from .base import AdapterResult, Capability, read_json, send
from .types import (
    CallOutput,
    CallRequest,
    CallUsage,
    MessageOutput,
    MessageRequest,
    NumberRequest,
    PhoneNumber,
)

DEFAULT_BASE_URL = "https://api.twilio.com"
TENANT_NUMBER_PREFIX = "gw:tenant:"

CALL_COST_PER_MINUTE = Decimal("0.013")
SMS_COST = Decimal("0.0079")
MMS_COST = Decimal("0.02")
NUMBER_MONTHLY_COST = Decimal("1.15")

DEFAULT_MARGINS: dict[Capability, Decimal] = {
    Capability.SMS_OUTBOUND: Decimal("2.53"),
    Capability.MMS_OUTBOUND: Decimal("2.5"),
    Capability.SMS_INBOUND: Decimal("1.27"),
    Capability.MMS_INBOUND: Decimal("1.25"),
    Capability.PHONE_NUMBER_PROVISION: Decimal("2.6"),
    Capability.PHONE_NUMBER_MONTHLY: Decimal("2.6"),
}


def billed_minutes(duration_seconds: int) -> int:
    """Whole minutes billed for a call: any started minute counts."""
    if duration_seconds <= 0:
        return 0
    return math.ceil(duration_seconds / 60)


def tenant_friendly_name(tenant_id: str) -> str:
    return f"{TENANT_NUMBER_PREFIX}{tenant_id}"


def _phone_number(row: dict[str, Any]) -> PhoneNumber:
    return PhoneNumber(
        id=str(row.get("sid") or ""),
        phone_number=str(row.get("phone_number") or ""),
        friendly_name=str(row.get("friendly_name") or ""),
        capabilities=dict(row.get("capabilities") or {}),
    )


class TwilioAdapter:
    name = "twilio"
    capabilities = frozenset(
        {
            Capability.PHONE_OUTBOUND,
            Capability.PHONE_INBOUND,
            Capability.SMS_OUTBOUND,
            Capability.MMS_OUTBOUND,
            Capability.SMS_INBOUND,
            Capability.MMS_INBOUND,
            Capability.PHONE_NUMBER_PROVISION,
            Capability.PHONE_NUMBER_MONTHLY,
        }
    )

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        client: httpx.AsyncClient,
        margin_config: MarginConfig,
        webhook_base_url: str,
        base_url: str = DEFAULT_BASE_URL,
        default_twiml_url: str | None = None,
        cost_per_minute: Decimal = CALL_COST_PER_MINUTE,
        sms_cost: Decimal = SMS_COST,
        mms_cost: Decimal = MMS_COST,
        number_monthly_cost: Decimal = NUMBER_MONTHLY_COST,
    ) -> None:
        self._account_sid = account_sid
        self._auth = (account_sid, auth_token)
        self._client = client
        self._margin_config = margin_config
        self._webhook_base_url = webhook_base_url.rstrip("/")
        self._base_url = base_url.rstrip("/")
        self._default_twiml_url = default_twiml_url
        self._cost_per_minute = cost_per_minute
        self._sms_cost = sms_cost
        self._mms_cost = mms_cost
        self._number_monthly_cost = number_monthly_cost

    def _account_url(self, path: str) -> str:
        return f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/{path}"

    def _charge(self, cost: Credit, capability: Capability) -> Credit:
        rule = find_rule(self._margin_config, self.name, capability.value)
        if rule is not None:
            return with_margin(cost, rule.margin)
        return with_margin(cost, DEFAULT_MARGINS.get(capability, self._margin_config.default_margin))

    def _priced(self, result: Any, cost: Credit, capability: Capability) -> AdapterResult[Any]:
        return AdapterResult(result=result, cost=cost, charge=self._charge(cost, capability))

    def status_callback_url(self, tenant_id: str) -> str:
        return f"{self._webhook_base_url}/phone/outbound/status/{tenant_id}"

    # =========================================================================
    # Calls
    # =========================================================================

    async def initiate_call(self, payload: CallRequest) -> AdapterResult[CallOutput]:
        twiml_url = payload.twiml_url or self._default_twiml_url
        if not twiml_url:
            raise MissingFieldError("webhook_url is required to place a call")
        response = await send(
            self._client,
            self.name,
            "POST",
            self._account_url("Calls.json"),
            auth=self._auth,
            data={
                "To": payload.to,
                "From": payload.from_,
                "Url": twiml_url,
                "StatusCallback": self.status_callback_url(payload.tenant_id),
                "StatusCallbackMethod": "POST",
            },
        )
        body = read_json(response, self.name)
        result = CallOutput(call_sid=str(body.get("sid") or ""), status=str(body.get("status") or "queued"))
        # duration is unknown until the status callback arrives
        return AdapterResult(result=result, cost=Credit.zero(), charge=Credit.zero())

    def bill_call(self, duration_seconds: int) -> AdapterResult[CallUsage]:
        minutes = billed_minutes(duration_seconds)
        cost = Credit.from_dollars(minutes * self._cost_per_minute)
        return self._priced(CallUsage(minutes=minutes, duration_seconds=duration_seconds), cost, Capability.PHONE_OUTBOUND)

    def bill_inbound_minutes(self, minutes: int) -> AdapterResult[CallUsage]:
        cost = Credit.from_dollars(max(0, minutes) * self._cost_per_minute)
        return self._priced(CallUsage(minutes=minutes), cost, Capability.PHONE_INBOUND)

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(self, payload: MessageRequest) -> AdapterResult[MessageOutput]:
        capability = Capability.MMS_OUTBOUND if payload.is_mms else Capability.SMS_OUTBOUND
        form: dict[str, Any] = {"To": payload.to, "From": payload.from_, "Body": payload.body}
        if payload.media_urls:
            form["MediaUrl"] = list(payload.media_urls)
        response = await send(
            self._client,
            self.name,
            "POST",
            self._account_url("Messages.json"),
            auth=self._auth,
            data=form,
        )
        body = read_json(response, self.name)
        result = MessageOutput(
            sid=body.get("sid"),
            status=str(body.get("status") or "queued"),
            capability=capability.value,
        )
        cost = Credit.from_dollars(self._mms_cost if payload.is_mms else self._sms_cost)
        return self._priced(result, cost, capability)

    def bill_inbound_message(self, *, is_mms: bool, message_sid: str | None = None) -> AdapterResult[MessageOutput]:
        capability = Capability.MMS_INBOUND if is_mms else Capability.SMS_INBOUND
        result = MessageOutput(sid=message_sid, status="received", capability=capability.value)
        cost = Credit.from_dollars(self._mms_cost if is_mms else self._sms_cost)
        return self._priced(result, cost, capability)

    # =========================================================================
    # Numbers
    # =========================================================================

    async def provision_number(self, payload: NumberRequest) -> AdapterResult[PhoneNumber]:
        search: dict[str, str] = {
            "SmsEnabled": "true",
            "VoiceEnabled": "true" if payload.voice else "false",
            "MmsEnabled": "true" if payload.mms else "false",
            "PageSize": "1",
        }
        if payload.area_code:
            search["AreaCode"] = payload.area_code
        response = await send(
            self._client,
            self.name,
            "GET",
            self._account_url(f"AvailablePhoneNumbers/{quote(payload.country, safe='')}/Local.json"),
            auth=self._auth,
            params=search,
        )
        candidates = read_json(response, self.name).get("available_phone_numbers") or []
        if not candidates:
            raise NoNumbersAvailableError("No phone numbers available for the requested criteria")

        response = await send(
            self._client,
            self.name,
            "POST",
            self._account_url("IncomingPhoneNumbers.json"),
            auth=self._auth,
            data={
                "PhoneNumber": candidates[0]["phone_number"],
                "FriendlyName": tenant_friendly_name(payload.tenant_id),
            },
        )
        purchased = _phone_number(read_json(response, self.name))
        return self._priced(purchased, Credit.from_dollars(self._number_monthly_cost), Capability.PHONE_NUMBER_PROVISION)

    def bill_number_month(self, number_id: str) -> AdapterResult[str]:
        return self._priced(number_id, Credit.from_dollars(self._number_monthly_cost), Capability.PHONE_NUMBER_MONTHLY)

    async def list_numbers(self, tenant_id: str) -> list[PhoneNumber]:
        response = await send(
            self._client,
            self.name,
            "GET",
            self._account_url("IncomingPhoneNumbers.json"),
            auth=self._auth,
            params={"FriendlyName": tenant_friendly_name(tenant_id)},
        )
        rows = read_json(response, self.name).get("incoming_phone_numbers") or []
        return [_phone_number(row) for row in rows]

    async def release_number(self, tenant_id: str, number_id: str) -> None:
        try:
            response = await send(
                self._client,
                self.name,
                "GET",
                self._account_url(f"IncomingPhoneNumbers/{quote(number_id, safe='')}.json"),
                auth=self._auth,
            )
        except UpstreamError as exc:
            if exc.upstream_status == 404:
                raise NumberNotFoundError("Phone number not found") from exc
            raise
        owner = read_json(response, self.name).get("friendly_name")
        if owner != tenant_friendly_name(tenant_id):
            raise NumberNotFoundError("Phone number not found")
        await send(
            self._client,
            self.name,
            "DELETE",
            self._account_url(f"IncomingPhoneNumbers/{quote(number_id, safe='')}.json"),
            auth=self._auth,
        )
