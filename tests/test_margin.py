"""
Tests for margin resolution and discounts.
"""

from decimal import Decimal

import pytest

from provider_gateway.credit import Credit
from provider_gateway.margin import (
    DEFAULT_MARGIN,
    MarginConfig,
    MarginRule,
    apply_discount,
    get_margin,
    margin_config_from_json,
    model_matches,
    with_margin,
    with_margin_config,
)


@pytest.fixture
def config() -> MarginConfig:
    return MarginConfig(
        default_margin=Decimal("1.3"),
        rules=(
            MarginRule("openrouter", "anthropic/claude-3-opus", Decimal("2.0")),
            MarginRule("openrouter", "anthropic/*", Decimal("1.5")),
            MarginRule("openrouter", "*", Decimal("1.4")),
            MarginRule("replicate", "stability-ai/*", Decimal("1.8")),
        ),
    )


class TestModelMatches:
    """Test suffix-wildcard model patterns."""

    def test_exact(self):
        assert model_matches("gpt-4o", "gpt-4o")
        assert not model_matches("gpt-4o", "gpt-4o-mini")

    def test_prefix_wildcard(self):
        assert model_matches("anthropic/*", "anthropic/claude-3-haiku")
        assert not model_matches("anthropic/*", "openai/gpt-4o")

    def test_text_after_star_is_ignored(self):
        assert model_matches("meta/*-instruct", "meta/llama-3-70b")

    def test_star_matches_everything(self):
        assert model_matches("*", "anything")


class TestGetMargin:
    """Test first-match rule resolution."""

    def test_first_matching_rule_wins(self, config):
        assert get_margin(config, "openrouter", "anthropic/claude-3-opus") == Decimal("2.0")
        assert get_margin(config, "openrouter", "anthropic/claude-3-haiku") == Decimal("1.5")
        assert get_margin(config, "openrouter", "openai/gpt-4o") == Decimal("1.4")

    def test_provider_must_match(self, config):
        assert get_margin(config, "replicate", "anthropic/claude-3-opus") == Decimal("1.3")

    def test_default_when_no_rules(self):
        assert get_margin(MarginConfig(), "deepgram", "nova-2") == DEFAULT_MARGIN

    def test_with_margin_config(self, config):
        cost = Credit.from_dollars("0.01")
        assert with_margin_config(cost, config, "replicate", "stability-ai/sdxl") == Credit.from_dollars("0.018")


COSTS = [
    Credit.zero(),
    Credit.from_raw(1),
    Credit.from_raw(3),
    Credit.from_dollars("0.0000001"),
    Credit.from_dollars("0.00645"),
    Credit.from_dollars("0.013"),
    Credit.from_dollars(1),
    Credit.from_dollars("12345.678901"),
]
MARGINS = [Decimal("1"), Decimal("1.0001"), Decimal("1.3"), Decimal("1.5"), Decimal("2"), Decimal("10")]


class TestWithMargin:
    """Test that a margin of at least 1 never charges below cost."""

    @pytest.mark.parametrize("cost", COSTS)
    def test_charge_covers_cost(self, cost):
        for margin in MARGINS:
            assert with_margin(cost, margin) >= cost

    @pytest.mark.parametrize("cost", COSTS)
    def test_charge_grows_with_margin(self, cost):
        charges = [with_margin(cost, margin) for margin in MARGINS]
        assert charges == sorted(charges)

    def test_charge_grows_with_cost(self):
        for margin in MARGINS:
            charges = [with_margin(cost, margin) for cost in sorted(COSTS)]
            assert charges == sorted(charges)

    def test_unit_margin_is_identity(self):
        for cost in COSTS:
            assert with_margin(cost, 1) == cost


class TestApplyDiscount:
    """Test percentage discounts."""

    def test_discount(self):
        assert apply_discount(Credit.from_dollars(1), 25) == Credit.from_dollars("0.75")

    def test_clamped_to_range(self):
        charge = Credit.from_dollars(1)
        assert apply_discount(charge, 150) == Credit.zero()
        assert apply_discount(charge, -10) == charge


class TestMarginConfigFromJson:
    """Test parsing rule lists from configuration."""

    def test_parses_both_key_styles(self):
        config = margin_config_from_json(
            '[{"provider": "openrouter", "model_pattern": "a/*", "margin": "1.5"},'
            ' {"provider": "replicate", "modelPattern": "b", "margin": 2}]',
            default_margin=Decimal("1.2"),
        )
        assert config.default_margin == Decimal("1.2")
        assert config.rules[0] == MarginRule("openrouter", "a/*", Decimal("1.5"))
        assert config.rules[1].model_pattern == "b"
        assert config.rules[1].margin == Decimal("2")

    def test_empty(self):
        assert margin_config_from_json("").rules == ()

    def test_rejects_non_list(self):
        with pytest.raises(ValueError):
            margin_config_from_json('{"provider": "x"}')

    def test_rejects_bad_rule(self):
        with pytest.raises(ValueError):
            margin_config_from_json('[{"model_pattern": "x", "margin": "1"}]')
