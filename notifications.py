from urllib.parse import quote

from pricing import DEFAULT_CURRENCY, format_currency
from validation import digits_only

PENDING = "Pending"
PREPARING = "Preparing"
OUT_FOR_DELIVERY = "Out for delivery"
COMPLETED = "Completed"
CANCELLED = "Cancelled"

ORDER_STATUSES = [PENDING, PREPARING, OUT_FOR_DELIVERY, COMPLETED, CANCELLED]

ORDER_ID_PLACEHOLDER = "#[ORDER_ID]"

STATUS_CONFIG = {
    PENDING: {"title": "Pending", "color": "#f97316", "badge": "default"},
    PREPARING: {
        "title": "Preparing",
        "color": "#3b82f6",
        "badge": "secondary",
        "notification": "Your order #[ORDER_ID] is being prepared! It will be on its way soon.",
    },
    OUT_FOR_DELIVERY: {
        "title": "On the way",
        "color": "#8b5cf6",
        "badge": "outline",
        "notification": "Good news! Your order #[ORDER_ID] is out for delivery and will arrive shortly!",
    },
    COMPLETED: {"title": "Completed", "color": "#22c55e", "badge": "default"},
    CANCELLED: {"title": "Cancelled", "color": "#ef4444", "badge": "destructive"},
}

WHATSAPP_URL = "https://wa.me/{phone}?text={text}"
MAPS_DIRECTIONS_URL = "https://www.google.com/maps/dir/?api=1&destination={destination}"


def whatsapp_link(phone, message: str) -> str:
    return WHATSAPP_URL.format(phone=digits_only(phone), text=quote(message, safe=""))


def maps_directions_link(address: str) -> str:
    return MAPS_DIRECTIONS_URL.format(destination=quote(address or "", safe=""))


def short_code(order) -> str:
    return f"#{order['order_reference']}"


def is_open(status: str) -> bool:
    return status not in (COMPLETED, CANCELLED)


def status_notification(order, status: str):
    """Return the WhatsApp link telling the customer about ``status``.

    ``None`` when the status does not notify or the order carries no phone.
    """
    template = STATUS_CONFIG.get(status, {}).get("notification")
    phone = digits_only(order["customer_phone"])
    if not template or not phone:
        return None
    body = template.replace(ORDER_ID_PLACEHOLDER, short_code(order))
    message = f"Hello, {order['customer_name']}! {body}"
    return whatsapp_link(phone, message)


def courier_message(order) -> str:
    return f"Hello, I'm the courier for your order {short_code(order)}. I'm on my way!"


def order_message(
    order_reference: str,
    customer_name: str,
    phone: str,
    items,
    subtotal: float,
    discount: float,
    coupon_code,
    total: float,
    address: str,
    payment_label: str,
    observations: str,
    currency: str = DEFAULT_CURRENCY,
) -> str:
    item_lines = "\n".join(f"- {item['quantity']}x {item['name']}" for item in items)
    discount_line = ""
    if discount > 0 and coupon_code:
        discount_line = (
            f"\n*Discount:* -{format_currency(discount, currency)} (Coupon: {coupon_code})"
        )
    return (
        f"*New order!* (No. {order_reference})\n"
        f"*Customer:* {customer_name}\n"
        f"*Phone:* {phone}\n"
        f"*Items:*\n{item_lines}\n"
        "-----------------------------------\n"
        f"*Subtotal:* {format_currency(subtotal, currency)}{discount_line}\n"
        f"*Total:* {format_currency(total, currency)}\n"
        "-----------------------------------\n"
        f"*Delivery address:*\n{address}\n"
        f"*Payment method:*\n{payment_label}\n"
        f"*Notes:*\n{observations}"
    )
