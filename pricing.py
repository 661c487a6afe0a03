import math

DEFAULT_CURRENCY = "R$"

COUPON_TYPES = ("percentage", "fixed")


def format_currency(amount: float, symbol: str = DEFAULT_CURRENCY) -> str:
    amount = float(amount or 0)
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol} {abs(amount):,.2f}"


def cart_count(cart) -> int:
    return sum(int(qty) for qty in (cart or {}).values())


def cart_lines(cart, products_by_id):
    lines = []
    for product_id, qty in (cart or {}).items():
        product = products_by_id.get(int(product_id))
        if not product:
            continue
        price = float(product["price"]) if product["price"] is not None else 0
        qty = int(qty)
        lines.append(
            {
                "id": product["id"],
                "name": product["name"],
                "price": price,
                "quantity": qty,
                "image_path": product["image_path"],
                "line_total": round(price * qty, 2),
            }
        )
    return lines


def cart_total(lines) -> float:
    return round(sum(line["line_total"] for line in lines), 2)


def calculate_discount(coupon, subtotal: float) -> float:
    """Discount granted by ``coupon``, never more than ``subtotal``."""
    if not coupon:
        return 0
    value = float(coupon["value"] or 0)
    if not math.isfinite(value) or value <= 0:
        return 0
    if coupon["type"] == "percentage":
        discount = subtotal * (value / 100)
    elif coupon["type"] == "fixed":
        discount = value
    else:
        return 0
    return round(min(discount, subtotal), 2)


def final_total(subtotal: float, discount: float) -> float:
    remaining = round(subtotal - discount, 2)
    return remaining if remaining > 0 else 0


def subtotal_before_discount(order) -> float:
    if "subtotal" in order.keys() and order["subtotal"] is not None:
        return round(float(order["subtotal"]), 2)
    discount = order["coupon_discount"] or 0
    return round(float(order["total"] or 0) + float(discount), 2)
