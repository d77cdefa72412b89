"""
Margin resolution: (provider, model) -> multiplier applied to wholesale cost.

Rules are scanned in order and the first match wins. A rule's provider must
match exactly before its model pattern is tried. Model patterns are suffix
wildcards: everything before the first ``*`` is a literal prefix and anything
after it is ignored, so ``"*"`` alone matches every model of that provider.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .credit import Credit, Number

DEFAULT_MARGIN = Decimal("1.3")


@dataclass(frozen=True)
class MarginRule:
    provider: str
    model_pattern: str
    margin: Decimal


@dataclass(frozen=True)
class MarginConfig:
    default_margin: Decimal = DEFAULT_MARGIN
    rules: tuple[MarginRule, ...] = field(default_factory=tuple)


def model_matches(pattern: str, model: str) -> bool:
    star = pattern.find("*")
    if star < 0:
        return model == pattern
    return model.startswith(pattern[:star])


def find_rule(config: MarginConfig, provider: str, model: str) -> MarginRule | None:
    for rule in config.rules:
        if rule.provider != provider:
            continue
        if model_matches(rule.model_pattern, model):
            return rule
    return None


def get_margin(config: MarginConfig, provider: str, model: str) -> Decimal:
    rule = find_rule(config, provider, model)
    return rule.margin if rule is not None else config.default_margin


def with_margin(cost: Credit, margin: Number) -> Credit:
    return cost.multiply(margin)


def with_margin_config(cost: Credit, config: MarginConfig, provider: str, model: str) -> Credit:
    return with_margin(cost, get_margin(config, provider, model))


def apply_discount(charge: Credit, discount_percent: Number) -> Credit:
    """Reduce ``charge`` by a percentage clamped to [0, 100]."""
    percent = min(max(Decimal(str(discount_percent)), Decimal(0)), Decimal(100))
    return charge.multiply((Decimal(100) - percent) / Decimal(100))


def margin_config_from_json(raw: str | None, *, default_margin: Decimal = DEFAULT_MARGIN) -> MarginConfig:
    """
    Parse margin rules from a JSON list.

    Example:
        ``[{"provider": "openrouter", "model_pattern": "anthropic/*", "margin": "1.5"}]``
    """
    if not raw or not raw.strip():
        return MarginConfig(default_margin=default_margin)
    data: Any = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("margin rules must be a JSON list")
    rules = []
    for item in data:
        try:
            rules.append(
                MarginRule(
                    provider=str(item["provider"]),
                    model_pattern=str(item.get("model_pattern", item.get("modelPattern", "*"))),
                    margin=Decimal(str(item["margin"])),
                )
            )
        except (KeyError, TypeError, ArithmeticError) as exc:
            raise ValueError(f"invalid margin rule: {item!r}") from exc
    return MarginConfig(default_margin=default_margin, rules=tuple(rules))


__all__ = [
    "DEFAULT_MARGIN",
    "MarginRule",
    "MarginConfig",
    "model_matches",
    "find_rule",
    "get_margin",
    "with_margin",
    "with_margin_config",
    "apply_discount",
    "margin_config_from_json",
]
