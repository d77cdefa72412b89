"""
Top-level package for the metered provider gateway.

Wire collaborators explicitly and hand them to ``MeteredGateway``; nothing is
registered globally.
"""

from .adapters import (
    AdapterRegistry,
    AdapterResult,
    Capability,
    DeepgramAdapter,
    ElevenLabsAdapter,
    OpenRouterAdapter,
    ReplicateAdapter,
    TwilioAdapter,
)
from .budget import (
    CreditGate,
    GatewayTenant,
    InMemoryCreditLedger,
    SpendLimitBudgetChecker,
    SpendLimits,
)
from .credit import Credit
from .errors import ErrorCode, GatewayError
from .gateway import BillableNumber, MeteredGateway
from .logging import StructuredLogger, configure_logging, get_logger
from .margin import MarginConfig, MarginRule
from .metering import InMemoryMeterSink, MeterEmitter, MeterEvent
from .overrides import RateOverrideCache, RateOverrideService
from .rate_limit import CapabilityRateLimiter
from .webhooks import InMemorySigPenaltyStore, PenaltyPolicy, WebhookVerifier

__all__ = [
    "AdapterRegistry",
    "AdapterResult",
    "BillableNumber",
    "Capability",
    "CapabilityRateLimiter",
    "Credit",
    "CreditGate",
    "DeepgramAdapter",
    "ElevenLabsAdapter",
    "ErrorCode",
    "GatewayError",
    "GatewayTenant",
    "InMemoryCreditLedger",
    "InMemoryMeterSink",
    "InMemorySigPenaltyStore",
    "MarginConfig",
    "MarginRule",
    "MeterEmitter",
    "MeterEvent",
    "MeteredGateway",
    "OpenRouterAdapter",
    "PenaltyPolicy",
    "RateOverrideCache",
    "RateOverrideService",
    "ReplicateAdapter",
    "SpendLimitBudgetChecker",
    "SpendLimits",
    "StructuredLogger",
    "TwilioAdapter",
    "WebhookVerifier",
    "configure_logging",
    "get_logger",
]
