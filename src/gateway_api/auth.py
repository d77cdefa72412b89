from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from provider_gateway.budget import GatewayTenant, SpendLimits
from provider_gateway.credit import Credit

BEARER_SCHEME = "bearer"


class ServiceKeyResolver(Protocol):
    async def resolve(self, key: str) -> GatewayTenant | None: ...


class WebhookTenantResolver(Protocol):
    async def resolve(self, tenant_id: str) -> GatewayTenant | None: ...


def _credit_or_none(value: Any) -> Credit | None:
    if value is None or value == "":
        return None
    return Credit.from_dollars(str(value))


def tenant_from_mapping(data: Mapping[str, Any]) -> GatewayTenant:
    return GatewayTenant(
        id=str(data["tenant_id"]),
        spend_limits=SpendLimits(
            max_spend_per_hour=_credit_or_none(data.get("max_spend_per_hour")),
            max_spend_per_month=_credit_or_none(data.get("max_spend_per_month")),
        ),
    )


def hash_service_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class StaticServiceKeyResolver:
    """
    Resolve service keys from a fixed table.

    Keys are stored as sha256 hex digests and compared in constant time.
    """

    tenants_by_key_hash: Mapping[str, GatewayTenant]

    @classmethod
    def from_keys(cls, tenants_by_key: Mapping[str, GatewayTenant]) -> StaticServiceKeyResolver:
        return cls({hash_service_key(key): tenant for key, tenant in tenants_by_key.items()})

    @classmethod
    def from_json(cls, raw: str | None) -> StaticServiceKeyResolver:
        data = json.loads(raw or "{}")
        if not isinstance(data, dict):
            raise ValueError("service key table must be a JSON object")
        return cls.from_keys({str(key): tenant_from_mapping(entry) for key, entry in data.items()})

    async def resolve(self, key: str) -> GatewayTenant | None:
        digest = hash_service_key(key)
        for candidate, tenant in self.tenants_by_key_hash.items():
            if hmac.compare_digest(candidate, digest):
                return tenant
        return None

    def tenants(self) -> list[GatewayTenant]:
        return list(self.tenants_by_key_hash.values())


@dataclass(frozen=True)
class StaticWebhookTenantResolver:
    tenants_by_id: Mapping[str, GatewayTenant]

    @classmethod
    def from_service_keys(cls, resolver: StaticServiceKeyResolver) -> StaticWebhookTenantResolver:
        return cls({tenant.id: tenant for tenant in resolver.tenants()})

    async def resolve(self, tenant_id: str) -> GatewayTenant | None:
        return self.tenants_by_id.get(tenant_id)


def parse_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    value = authorization.strip()
    scheme, _, rest = value.partition(" ")
    if scheme.lower() == BEARER_SCHEME:
        value = rest.strip()
    return value or None
