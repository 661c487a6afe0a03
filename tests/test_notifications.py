from urllib.parse import unquote

from notifications import (
    CANCELLED,
    COMPLETED,
    OUT_FOR_DELIVERY,
    PENDING,
    PREPARING,
    courier_message,
    is_open,
    maps_directions_link,
    order_message,
    status_notification,
    whatsapp_link,
)

ORDER = {
    "order_reference": "ORD-20240101-ABC123",
    "customer_name": "Maria",
    "customer_phone": "(11) 98888-7777",
}


def test_whatsapp_link_strips_phone_and_quotes_text():
    link = whatsapp_link("+55 (11) 98888-7777", "Hi there & bye")
    assert link == "https://wa.me/5511988887777?text=Hi%20there%20%26%20bye"


def test_maps_link_quotes_address():
    link = maps_directions_link("Rua A, 10")
    assert link == "https://www.google.com/maps/dir/?api=1&destination=Rua%20A%2C%2010"


def test_status_notification_for_notifying_statuses():
    link = status_notification(ORDER, PREPARING)
    assert link.startswith("https://wa.me/11988887777?text=")
    text = unquote(link.split("text=", 1)[1])
    assert text.startswith("Hello, Maria! Your order #ORD-20240101-ABC123 is being prepared")
    assert "#ORD-20240101-ABC123" in unquote(status_notification(ORDER, OUT_FOR_DELIVERY))


def test_status_notification_skips_other_statuses_and_missing_phone():
    assert status_notification(ORDER, PENDING) is None
    assert status_notification(ORDER, COMPLETED) is None
    assert status_notification(dict(ORDER, customer_phone=""), PREPARING) is None


def test_is_open():
    assert is_open(PENDING)
    assert is_open(OUT_FOR_DELIVERY)
    assert not is_open(COMPLETED)
    assert not is_open(CANCELLED)


def test_courier_message():
    assert courier_message(ORDER) == (
        "Hello, I'm the courier for your order #ORD-20240101-ABC123. I'm on my way!"
    )


def test_order_message_includes_discount_line_only_with_coupon():
    items = [{"name": "Craft IPA", "quantity": 2}]
    message = order_message(
        "ORD-1", "Maria", "11988887777", items, 37.8, 3.78, "BEMVINDO10", 34.02,
        "Rua A, 10", "PIX", "None",
    )
    assert "- 2x Craft IPA" in message
    assert "*Discount:* -R$ 3.78 (Coupon: BEMVINDO10)" in message
    assert "*Total:* R$ 34.02" in message

    plain = order_message(
        "ORD-1", "Maria", "11988887777", items, 37.8, 0, None, 37.8,
        "Rua A, 10", "PIX", "None",
    )
    assert "Discount" not in plain
