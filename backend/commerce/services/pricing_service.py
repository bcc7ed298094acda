# Overview: Shipping/tax policy used by checkout to compute order totals (all amounts in cents).

from __future__ import annotations

from flask import current_app


SHIPPING_STANDARD = "standard"
SHIPPING_EXPRESS = "express"

VALID_SHIPPING_METHODS = [SHIPPING_STANDARD, SHIPPING_EXPRESS]


class PricingError(ValueError):
    pass


class PricingPolicy:
    """
    Store rules for shipping, tax and discount.

    Swap in a different policy by placing an instance in
    app.extensions["pricing_policy"].
    """

    def shipping_cents(self, subtotal_cents: int, shipping_method: str) -> int:
        raise NotImplementedError

    def tax_cents(self, subtotal_cents: int) -> int:
        raise NotImplementedError

    def discount_cents(self, subtotal_cents: int) -> int:
        return 0


class ConfiguredPricingPolicy(PricingPolicy):
    """Flat express fee, free standard shipping over a threshold, percentage tax on subtotal."""

    def __init__(
        self,
        *,
        standard_cents: int,
        express_cents: int,
        free_shipping_threshold_cents: int,
        tax_rate_bps: int,
    ):
        self.standard_cents = standard_cents
        self.express_cents = express_cents
        self.free_shipping_threshold_cents = free_shipping_threshold_cents
        self.tax_rate_bps = tax_rate_bps

    @classmethod
    def from_config(cls, config) -> "ConfiguredPricingPolicy":
        return cls(
            standard_cents=config["SHIPPING_STANDARD_CENTS"],
            express_cents=config["SHIPPING_EXPRESS_CENTS"],
            free_shipping_threshold_cents=config["FREE_SHIPPING_THRESHOLD_CENTS"],
            tax_rate_bps=config["TAX_RATE_BPS"],
        )

    def shipping_cents(self, subtotal_cents: int, shipping_method: str) -> int:
        if shipping_method == SHIPPING_EXPRESS:
            return self.express_cents
        if shipping_method == SHIPPING_STANDARD:
            if subtotal_cents >= self.free_shipping_threshold_cents:
                return 0
            return self.standard_cents
        raise PricingError(f"Invalid shipping method: {shipping_method}")

    def tax_cents(self, subtotal_cents: int) -> int:
        # Half-up to the nearest cent
        return (subtotal_cents * self.tax_rate_bps + 5000) // 10000


def get_pricing_policy() -> PricingPolicy:
    policy = current_app.extensions.get("pricing_policy")
    if policy is not None:
        return policy
    return ConfiguredPricingPolicy.from_config(current_app.config)


def calculate_totals(
    subtotal_cents: int,
    shipping_method: str,
    policy: PricingPolicy | None = None,
) -> dict:
    """total = subtotal + shipping + tax - discount (never below zero)."""
    policy = policy or get_pricing_policy()
    shipping = policy.shipping_cents(subtotal_cents, shipping_method)
    tax = policy.tax_cents(subtotal_cents)
    discount = policy.discount_cents(subtotal_cents)
    total = max(subtotal_cents + shipping + tax - discount, 0)
    return {
        "subtotal_cents": subtotal_cents,
        "shipping_cents": shipping,
        "tax_cents": tax,
        "discount_cents": discount,
        "total_cents": total,
    }


def format_cents(cents: int) -> str:
    """1234 -> "12.34" (gateway payloads take decimal strings)."""
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"
