"""Form validation for the storefront and the back-office.

Every validator takes a mapping with a ``get`` method (a request form or a
plain dict) and returns ``(values, error)``. ``error`` is the first problem
found, ready to be flashed, or ``None`` when the form is valid.
"""
import math
import re

from pricing import COUPON_TYPES

PAYMENT_METHODS = {
    "credit-card": "Credit/Debit Card",
    "pix": "PIX",
    "cash": "Cash",
}

USER_ROLES = ("customer", "delivery", "admin")

PHONE_DIGITS = 11

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _text(form, key: str) -> str:
    return (form.get(key) or "").strip()


def digits_only(value) -> str:
    return re.sub(r"\D", "", value or "")


def normalize_phone(value) -> str:
    return digits_only(value)


def format_cep(value) -> str:
    digits = digits_only(value)
    if len(digits) != 8:
        return digits
    return f"{digits[:5]}-{digits[5:]}"


def parse_lines(value) -> list:
    seen = []
    for line in (value or "").splitlines():
        line = line.strip()
        if line and line not in seen:
            seen.append(line)
    return seen


def validate_product_form(form, categories=(), units=()):
    name = _text(form, "name")
    category = _text(form, "category")
    unit = _text(form, "unit")
    values = {
        "name": name,
        "category": category,
        "unit": unit,
        "description": _text(form, "description"),
    }
    if len(name) < 2:
        return values, "Name must have at least 2 characters."
    try:
        values["price"] = float(_text(form, "price"))
    except ValueError:
        return values, "Price must be a number."
    if not math.isfinite(values["price"]) or values["price"] <= 0:
        return values, "Price must be a positive number."
    if not category:
        return values, "Please select a category."
    if categories and category not in categories:
        return values, "Please select one of the configured categories."
    try:
        values["size"] = float(_text(form, "size"))
    except ValueError:
        return values, "Size must be a number."
    if not math.isfinite(values["size"]) or values["size"] <= 0:
        return values, "Size must be a positive number."
    if not unit:
        return values, "Unit is required."
    if units and unit not in units:
        return values, "Please select one of the configured units."
    try:
        values["stock"] = int(_text(form, "stock") or 0)
    except ValueError:
        return values, "Stock must be a whole number."
    if values["stock"] < 0:
        return values, "Stock cannot be negative."
    return values, None


def validate_coupon_form(form):
    code = _text(form, "code").upper()
    coupon_type = _text(form, "type") or "percentage"
    values = {
        "code": code,
        "type": coupon_type,
        "description": _text(form, "description") or None,
    }
    if len(code) < 3:
        return values, "Code must have at least 3 characters."
    if len(code) > 20:
        return values, "Code must have at most 20 characters."
    if coupon_type not in COUPON_TYPES:
        return values, "Select the discount type."
    try:
        values["value"] = float(_text(form, "value"))
    except ValueError:
        return values, "Discount value must be a number."
    if not math.isfinite(values["value"]) or values["value"] <= 0:
        return values, "Discount value must be positive."
    return values, None


def validate_address_form(form, prefix: str = ""):
    def field(key):
        return _text(form, prefix + key)

    cep_digits = digits_only(field("cep"))
    values = {
        "nickname": field("nickname"),
        "cep": format_cep(cep_digits),
        "street": field("street"),
        "number": field("number"),
        "complement": field("complement"),
        "neighborhood": field("neighborhood"),
        "city": field("city"),
        "state": field("state").upper(),
    }
    if len(cep_digits) != 8:
        return values, "CEP must have 8 digits."
    if len(values["street"]) < 3:
        return values, "Street is required."
    if len(values["number"]) < 1:
        return values, "Number is required."
    if len(values["neighborhood"]) < 3:
        return values, "Neighborhood is required."
    if len(values["city"]) < 3:
        return values, "City is required."
    if len(values["state"]) != 2 or not values["state"].isalpha():
        return values, "State must have 2 letters."
    if len(values["nickname"]) < 2:
        return values, "Give the address a nickname (e.g. Home, Work)."
    return values, None


def validate_checkout_form(form):
    phone = normalize_phone(form.get("phone"))
    payment_method = _text(form, "payment_method")
    adding_address = _text(form, "address_mode") == "new"
    values = {
        "phone": phone,
        "payment_method": payment_method,
        "payment_label": PAYMENT_METHODS.get(payment_method, ""),
        "observations": _text(form, "observations"),
        "address_id": None,
        "new_address": None,
    }
    if len(phone) != PHONE_DIGITS:
        return values, "Phone must have 11 digits."
    if payment_method not in PAYMENT_METHODS:
        return values, "Select a payment method."
    if adding_address:
        address, error = validate_address_form(form, prefix="new_")
        values["new_address"] = address
        if error:
            return values, error
        return values, None
    try:
        values["address_id"] = int(_text(form, "address_id"))
    except ValueError:
        return values, "Select or add a delivery address."
    return values, None


def validate_profile_form(form):
    values = {"name": _text(form, "name"), "phone": normalize_phone(form.get("phone"))}
    if not values["name"] or not values["phone"]:
        return values, "Name and phone are required."
    if len(values["phone"]) != PHONE_DIGITS:
        return values, "Phone must have 11 digits."
    return values, None


def validate_review_form(form):
    values = {"comment": _text(form, "comment")}
    try:
        values["rating"] = int(_text(form, "rating"))
    except ValueError:
        return values, "Choose a rating from 1 to 5."
    if not 1 <= values["rating"] <= 5:
        return values, "Choose a rating from 1 to 5."
    return values, None


def validate_registration_form(form):
    values = {
        "name": _text(form, "name"),
        "email": _text(form, "email").lower(),
        "phone": normalize_phone(form.get("phone")),
    }
    password = _text(form, "password")
    if not all([values["name"], values["email"], values["phone"], password]):
        return values, "All fields are required."
    if not EMAIL_PATTERN.match(values["email"]):
        return values, "Enter a valid email address."
    if len(password) < 6:
        return values, "Password must have at least 6 characters."
    values["password"] = password
    return values, None
