"""
Metered request orchestration.

``MeteredGateway.execute`` runs a request through a fixed pipeline:

    rate limit -> circuit breaker -> spend limit -> credit floor -> adapter -> upstream
               -> override discount -> meter event -> ledger debit

Nothing is metered or debited unless the upstream call succeeded, and every
failure before the meter stage propagates without side effects. Deferred
capabilities (outbound calls) stop after the upstream stage; their usage is
billed later through ``record_usage`` once a signed callback reports it.
Streamed completions pass the same gates, are relayed chunk by chunk through
``execute_stream`` and are billed once the upstream stream ends normally.

Example:
    ```python
    gateway = MeteredGateway(
        registry=AdapterRegistry([openrouter]),
        meter=emitter,
        budget_checker=SpendLimitBudgetChecker(aggregator),
        credit_gate=CreditGate(ledger=ledger),
    )
    result = await gateway.execute(tenant, Capability.CHAT_COMPLETIONS, payload)
    ```
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from .adapters import AdapterRegistry
from .adapters.base import AdapterResult, Capability, CompletionStream
from .budget import BudgetChecker, CreditGate, GatewayTenant
from .credit import Credit
from .errors import BudgetExceededError, ErrorContext, GatewayError, ServiceUnavailableError, UpstreamError
from .logging import StructuredLogger, get_logger, timed
from .margin import apply_discount
from .metering import MeterEvent, MeterSink, now_ms
from .overrides import RateOverrideCache
from .rate_limit import CapabilityRateLimiter, CircuitBreaker

CALL_COMPLETED = "completed"


@dataclass(frozen=True)
class BillableNumber:
    tenant_id: str
    number_id: str
    phone_number: str = ""
    provider: str = "twilio"


def call_reference_id(call_sid: str) -> str:
    return f"call:{call_sid}"


def number_billing_reference_id(number_id: str, now: datetime) -> str:
    return f"phone-billing:{number_id}:{now.astimezone(timezone.utc):%Y-%m}"


class MeteredGateway:
    def __init__(
        self,
        *,
        registry: AdapterRegistry,
        meter: MeterSink,
        budget_checker: BudgetChecker | None = None,
        credit_gate: CreditGate | None = None,
        override_cache: RateOverrideCache | None = None,
        rate_limiter: CapabilityRateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.registry = registry
        self._meter = meter
        self._budget_checker = budget_checker
        self._credit_gate = credit_gate
        self._override_cache = override_cache
        self._rate_limiter = rate_limiter
        self._circuit_breaker = circuit_breaker
        self._logger = logger or get_logger("provider_gateway.gateway")
        self._clock = clock

    # =========================================================================
    # Request pipeline
    # =========================================================================

    async def execute(
        self,
        tenant: GatewayTenant,
        capability: Capability,
        payload: Any,
        *,
        provider: str | None = None,
        estimated_cost: Credit | None = None,
        deferred: bool = False,
    ) -> AdapterResult[Any]:
        """
        Run one metered request.

        Args:
            tenant: The authenticated tenant
            capability: Capability being invoked
            payload: Capability-specific request passed to the adapter method
            provider: Pin resolution to a named adapter
            estimated_cost: Expected cost for the spend-limit check
            deferred: Skip metering and debit; usage is billed by a later callback

        Returns:
            The adapter result with the post-discount charge
        """
        adapter = await self._preflight(tenant, capability, provider=provider, estimated_cost=estimated_cost)
        method = self.registry.method_for(adapter, capability)
        result = await self._call_upstream(tenant.id, capability, adapter.name, method, payload)
        if deferred:
            self._logger.info(
                "Deferred billing until usage is reported",
                tenant_id=tenant.id,
                capability=capability.value,
                provider=adapter.name,
            )
            return result
        return await self._bill(tenant.id, capability, adapter.name, result)

    async def execute_stream(
        self,
        tenant: GatewayTenant,
        capability: Capability,
        payload: Any,
        *,
        provider: str | None = None,
    ) -> AsyncIterator[bytes]:
        """
        Open a streamed request and return the chunks to relay.

        Every gate and the upstream status are settled before this returns, so
        rejections surface as ordinary errors rather than a broken stream. The
        call is metered and debited once, after the last chunk; a stream the
        client abandons or the upstream cuts short is logged and not billed.
        """
        adapter = await self._preflight(tenant, capability, provider=provider, estimated_cost=None)
        method = self.registry.method_for(adapter, capability, stream=True)
        try:
            with timed() as timing:
                stream = await method(payload)
        except UpstreamError as exc:
            self._logger.log_upstream(
                adapter.name,
                capability.value,
                status=exc.upstream_status,
                duration_ms=timing["elapsed_ms"],
                tenant_id=tenant.id,
                error=str(exc),
            )
            raise
        self._logger.log_upstream(
            adapter.name,
            capability.value,
            status=200,
            duration_ms=timing["elapsed_ms"],
            tenant_id=tenant.id,
            stream=True,
        )
        return self._relay(tenant.id, capability, adapter.name, stream)

    async def execute_priced(
        self,
        tenant: GatewayTenant,
        capability: Capability,
        price: Callable[[Any], AdapterResult[Any]],
        *,
        provider: str | None = None,
        reference_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AdapterResult[Any]:
        """
        Pre-flight gates, then bill usage the platform already knows.

        ``price`` receives the resolved adapter and returns the priced result
        without an upstream round-trip, as for inbound call minutes.
        """
        adapter = await self._preflight(tenant, capability, provider=provider, estimated_cost=None)
        result = price(adapter)
        return await self._bill(tenant.id, capability, adapter.name, result, reference_id=reference_id, metadata=metadata)

    async def record_usage(
        self,
        tenant_id: str,
        capability: Capability,
        provider: str,
        result: AdapterResult[Any],
        *,
        reference_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> MeterEvent | None:
        """
        Bill usage reported after the fact.

        Returns the emitted event, or None when ``reference_id`` was already billed.
        """
        if reference_id is not None and self._credit_gate is not None:
            if await self._credit_gate.ledger.has_reference_id(reference_id):
                self._logger.info(
                    "Usage already billed",
                    tenant_id=tenant_id,
                    capability=capability.value,
                    provider=provider,
                    reference_id=reference_id,
                )
                return None
        charge = await self._discounted(provider, result.charge)
        return await self._meter_and_debit(
            tenant_id,
            capability,
            provider,
            result.cost,
            charge,
            reference_id=reference_id,
            metadata=metadata,
        )

    async def bill_call_completion(
        self,
        tenant_id: str,
        call_sid: str,
        duration_seconds: int,
        status: str,
    ) -> MeterEvent | None:
        if status != CALL_COMPLETED or duration_seconds <= 0:
            self._logger.debug(
                "Call status not billable",
                tenant_id=tenant_id,
                call_sid=call_sid,
                status=status,
                duration_seconds=duration_seconds,
            )
            return None
        adapter = self.registry.resolve(Capability.PHONE_OUTBOUND)
        usage = adapter.bill_call(duration_seconds)
        return await self.record_usage(
            tenant_id,
            Capability.PHONE_OUTBOUND,
            adapter.name,
            usage,
            reference_id=call_reference_id(call_sid),
            metadata={
                "call_sid": call_sid,
                "duration_seconds": duration_seconds,
                "billed_minutes": usage.result.minutes,
            },
        )

    async def run_monthly_number_billing(
        self,
        numbers: Iterable[BillableNumber],
        now: datetime,
    ) -> list[MeterEvent]:
        """Charge one month of rental per number; re-running within a month is a no-op."""
        events: list[MeterEvent] = []
        for number in numbers:
            adapter = self.registry.resolve(Capability.PHONE_NUMBER_MONTHLY, number.provider)
            event = await self.record_usage(
                number.tenant_id,
                Capability.PHONE_NUMBER_MONTHLY,
                adapter.name,
                adapter.bill_number_month(number.number_id),
                reference_id=number_billing_reference_id(number.number_id, now),
                metadata={"number_id": number.number_id, "phone_number": number.phone_number},
            )
            if event is not None:
                events.append(event)
        self._logger.info("Monthly number billing complete", numbers_billed=len(events))
        return events

    # =========================================================================
    # Stages
    # =========================================================================

    async def _preflight(
        self,
        tenant: GatewayTenant,
        capability: Capability,
        *,
        provider: str | None,
        estimated_cost: Credit | None,
    ) -> Any:
        if self._rate_limiter is not None:
            await self._rate_limiter.check(tenant.id, capability)

        if self._circuit_breaker is not None:
            self._circuit_breaker.check(tenant.id, tenant.instance_id)

        if self._budget_checker is not None:
            check = await self._budget_checker.check(tenant, estimated_cost or Credit.zero())
            if not check.allowed:
                self._logger.warning(
                    "Budget check rejected request",
                    tenant_id=tenant.id,
                    capability=capability.value,
                    reason=check.reason,
                    http_status=check.http_status,
                )
                context = ErrorContext(tenant_id=tenant.id, capability=capability.value)
                if check.http_status == 503:
                    raise ServiceUnavailableError(check.reason or "Budget service unavailable", context=context)
                raise BudgetExceededError(
                    check.reason or "Spending limit exceeded",
                    http_status=check.http_status or BudgetExceededError.http_status,
                    context=context,
                )

        if self._credit_gate is not None:
            try:
                await self._credit_gate.check(tenant.id, capability)
            except GatewayError as exc:
                self._logger.log_error(exc, "Credit check rejected request", tenant_id=tenant.id, capability=capability.value)
                raise

        return self.registry.resolve(capability, provider)

    async def _call_upstream(
        self,
        tenant_id: str,
        capability: Capability,
        provider: str,
        method: Callable[[Any], Any],
        payload: Any,
    ) -> AdapterResult[Any]:
        try:
            with timed() as timing:
                result = await method(payload)
        except UpstreamError as exc:
            self._logger.log_upstream(
                provider,
                capability.value,
                status=exc.upstream_status,
                duration_ms=timing["elapsed_ms"],
                tenant_id=tenant_id,
                error=str(exc),
            )
            raise
        self._logger.log_upstream(
            provider,
            capability.value,
            status=200,
            duration_ms=timing["elapsed_ms"],
            tenant_id=tenant_id,
            cost=result.cost,
            charge=result.charge,
        )
        return result

    async def _relay(
        self,
        tenant_id: str,
        capability: Capability,
        provider: str,
        stream: CompletionStream,
    ) -> AsyncIterator[bytes]:
        completed = False
        try:
            async for chunk in stream.iter_bytes():
                yield chunk
            completed = True
        finally:
            await stream.aclose()
            if not completed:
                self._logger.warning(
                    "Stream ended before completion; not billed",
                    tenant_id=tenant_id,
                    capability=capability.value,
                    provider=provider,
                )

        result = stream.result()
        if result.cost.is_zero():
            self._logger.warning(
                "Streamed call reported no cost",
                tenant_id=tenant_id,
                capability=capability.value,
                provider=provider,
            )
        await self._bill(tenant_id, capability, provider, result)

    async def _discounted(self, provider: str, charge: Credit) -> Credit:
        if self._override_cache is None:
            return charge
        override = await self._override_cache.get_active(provider)
        if override is None:
            return charge
        discounted = apply_discount(charge, override.discount_percent)
        self._logger.debug(
            "Rate override applied",
            provider=provider,
            override_id=override.id,
            discount_percent=str(override.discount_percent),
            charge=charge,
            discounted_charge=discounted,
        )
        return discounted

    async def _bill(
        self,
        tenant_id: str,
        capability: Capability,
        provider: str,
        result: AdapterResult[Any],
        *,
        reference_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AdapterResult[Any]:
        charge = await self._discounted(provider, result.charge)
        await self._meter_and_debit(
            tenant_id,
            capability,
            provider,
            result.cost,
            charge,
            reference_id=reference_id,
            metadata=metadata,
        )
        return replace(result, charge=charge)

    async def _meter_and_debit(
        self,
        tenant_id: str,
        capability: Capability,
        provider: str,
        cost: Credit,
        charge: Credit,
        *,
        reference_id: str | None,
        metadata: Mapping[str, Any] | None,
    ) -> MeterEvent:
        event = MeterEvent(
            tenant=tenant_id,
            capability=capability.value,
            provider=provider,
            cost=cost,
            charge=charge,
            timestamp=self._clock(),
            reference_id=reference_id,
            metadata=metadata or {},
        )
        await self._meter.emit(event)
        if self._budget_checker is not None:
            self._budget_checker.record_spend(tenant_id, charge)
        if self._credit_gate is not None:
            await self._credit_gate.debit(tenant_id, charge, capability, reference_id=reference_id)
        return event


__all__ = [
    "MeteredGateway",
    "BillableNumber",
    "call_reference_id",
    "number_billing_reference_id",
    "CALL_COMPLETED",
]
