from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any


# Loose shape check; deliverability is the mail provider's problem
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

SHIPPING_METHODS = ("standard", "express")
PAYMENT_METHODS = ("card", "bank_transfer", "cod")


class ValidationError(ValueError):
    """400-level input problem. errors lists every problem found."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__(self.errors[0] if self.errors else "Invalid input")


def parse_int(value: Any, field: str, *, minimum: int | None = None) -> int:
    """Strict integer coercion for request values (no floats, bools or scientific notation)."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not re.fullmatch(r"-?\d+", stripped):
            raise ValidationError(f"{field} must be an integer")
        result = int(stripped)
    else:
        raise ValidationError(f"{field} must be an integer")
    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    return result


@dataclass(frozen=True)
class ShippingAddress:
    recipient_name: str
    phone: str
    address_line1: str
    city: str
    postal_code: str
    country: str
    address_line2: str | None = None
    state: str | None = None
    instructions: str | None = None

    def snapshot(self) -> dict:
        """Plain dict stored on the order; independent of the address book."""
        return asdict(self)


@dataclass(frozen=True)
class CheckoutData:
    email: str
    shipping: ShippingAddress
    shipping_method: str
    payment_method: str
    phone: str | None = None
    notes: str | None = None
    save_address: bool = False
    address_id: int | None = None


def _text(source: dict, key: str) -> str | None:
    value = source.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def _require_min(errors: list[str], value: str | None, label: str, min_len: int) -> None:
    if value is None or len(value) < min_len:
        errors.append(f"{label} must be at least {min_len} characters")


def validate_checkout_data(payload: Any) -> CheckoutData:
    """
    Validate the checkout form.

    Expected shape:
        {
            "contact": {"email": str, "phone": str?},
            "shipping": {
                "recipient_name", "phone", "address_line1", "address_line2"?,
                "city", "state"?, "postal_code", "country", "instructions"?,
                "save_address"?, "address_id"?
            },
            "shipping_method": "standard" | "express",
            "payment_method": "card" | "bank_transfer" | "cod",
            "notes": str?
        }

    Raises:
        ValidationError listing every problem found.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Checkout data must be a JSON object")

    errors: list[str] = []
    contact = payload.get("contact") or {}
    shipping = payload.get("shipping") or {}
    if not isinstance(contact, dict):
        errors.append("contact must be an object")
        contact = {}
    if not isinstance(shipping, dict):
        errors.append("shipping must be an object")
        shipping = {}

    email = _text(contact, "email")
    if email is None or not _EMAIL_RE.match(email):
        errors.append("Invalid email address")

    recipient_name = _text(shipping, "recipient_name")
    phone = _text(shipping, "phone")
    address_line1 = _text(shipping, "address_line1")
    city = _text(shipping, "city")
    postal_code = _text(shipping, "postal_code")
    country = _text(shipping, "country")

    _require_min(errors, recipient_name, "Recipient name", 2)
    _require_min(errors, phone, "Phone number", 10)
    _require_min(errors, address_line1, "Address", 5)
    _require_min(errors, city, "City", 2)
    _require_min(errors, postal_code, "Postal code", 3)
    _require_min(errors, country, "Country", 2)

    shipping_method = payload.get("shipping_method")
    if shipping_method not in SHIPPING_METHODS:
        errors.append(f"Shipping method must be one of: {', '.join(SHIPPING_METHODS)}")

    payment_method = payload.get("payment_method")
    if payment_method not in PAYMENT_METHODS:
        errors.append(f"Payment method must be one of: {', '.join(PAYMENT_METHODS)}")

    address_id = shipping.get("address_id")
    if address_id is not None:
        try:
            address_id = parse_int(address_id, "address_id", minimum=1)
        except ValidationError as e:
            errors.extend(e.errors)

    if errors:
        raise ValidationError(errors)

    return CheckoutData(
        email=email,
        phone=_text(contact, "phone"),
        shipping=ShippingAddress(
            recipient_name=recipient_name,
            phone=phone,
            address_line1=address_line1,
            address_line2=_text(shipping, "address_line2"),
            city=city,
            state=_text(shipping, "state"),
            postal_code=postal_code,
            country=country,
            instructions=_text(shipping, "instructions"),
        ),
        shipping_method=shipping_method,
        payment_method=payment_method,
        notes=_text(payload, "notes"),
        save_address=bool(shipping.get("save_address")),
        address_id=address_id,
    )
