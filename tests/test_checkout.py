import re
from urllib.parse import unquote

import pytest

import app as store
import postal
from conftest import create_user, first_product, insert_order, login


def new_address_form(**overrides):
    form = {
        "phone": "(11) 98888-7777",
        "payment_method": "cash",
        "observations": "",
        "address_mode": "new",
        "new_cep": "01001-000",
        "new_street": "Praca da Se",
        "new_number": "10",
        "new_complement": "Apto 2",
        "new_neighborhood": "Centro",
        "new_city": "Sao Paulo",
        "new_state": "SP",
        "new_nickname": "Home",
    }
    form.update(overrides)
    return form


def fetch_one(sql, params=()):
    conn = store.get_db_connection()
    row = conn.execute(sql, params).fetchone()
    conn.close()
    return row


def test_checkout_requires_login(client):
    response = client.get("/checkout")
    assert response.status_code == 302
    assert "/login?next=" in response.headers["Location"]


def test_checkout_with_empty_cart_redirects_to_cart(customer_client):
    response = customer_client.get("/checkout")
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/cart")


def test_checkout_places_order_with_coupon(customer_client, customer):
    product = first_product()
    customer_client.post(f"/cart/add/{product['id']}", data={"quantity": "2"})
    customer_client.post("/cart/coupon", data={"code": "BEMVINDO10"})

    response = customer_client.post("/checkout", data=new_address_form())
    assert response.status_code == 302
    assert "/confirmation" in response.headers["Location"]

    order = fetch_one("SELECT * FROM orders WHERE user_id = ?", (customer["id"],))
    assert order["status"] == "Pending"
    assert order["total"] == pytest.approx(34.02)
    assert order["coupon_code"] == "BEMVINDO10"
    assert order["coupon_discount"] == pytest.approx(3.78)
    assert order["payment_method"] == "Cash"
    assert order["observations"] == "None"
    assert order["customer_phone"] == "11988887777"
    assert order["address"] == (
        "Praca da Se, 10, Apto 2 - Centro, Sao Paulo - SP, CEP: 01001-000"
    )
    assert order["order_reference"].startswith("ORD-")

    item = fetch_one("SELECT * FROM order_items WHERE order_id = ?", (order["id"],))
    assert item["quantity"] == 2
    assert item["name"] == "Craft IPA"
    event = fetch_one("SELECT * FROM order_events WHERE order_id = ?", (order["id"],))
    assert event["status"] == "Pending"
    assert event["actor_type"] == "customer"
    saved = fetch_one("SELECT * FROM user_addresses WHERE user_id = ?", (customer["id"],))
    assert saved["nickname"] == "Home"

    with customer_client.session_transaction() as sess:
        assert "cart" not in sess
        assert "coupon_code" not in sess

    page = customer_client.get(response.headers["Location"])
    assert page.status_code == 200
    assert b"https://wa.me/5511999990000?text=" in page.data
    assert order["order_reference"].encode() in page.data


def test_checkout_rejects_invalid_form(customer_client):
    product = first_product()
    customer_client.post(f"/cart/add/{product['id']}")
    response = customer_client.post(
        "/checkout", data=new_address_form(phone="123"), follow_redirects=True
    )
    assert b"Phone must have 11 digits." in response.data
    assert fetch_one("SELECT COUNT(*) FROM orders")[0] == 0


def test_checkout_rejects_address_of_other_user(customer_client):
    other_id = create_user("Other", "other@example.com")
    conn = store.get_db_connection()
    address_id = store.insert_address(
        conn,
        other_id,
        {
            "nickname": "Work",
            "cep": "01001-000",
            "street": "Rua B",
            "number": "5",
            "complement": "",
            "neighborhood": "Centro",
            "city": "Sao Paulo",
            "state": "SP",
        },
    )
    conn.commit()
    conn.close()

    product = first_product()
    customer_client.post(f"/cart/add/{product['id']}")
    response = customer_client.post(
        "/checkout",
        data={"phone": "11988887777", "payment_method": "pix", "address_id": str(address_id)},
        follow_redirects=True,
    )
    assert b"Could not determine the delivery address." in response.data
    assert fetch_one("SELECT COUNT(*) FROM orders")[0] == 0


def test_cep_lookup_endpoint(customer_client, monkeypatch):
    class FakeResponse:
        status_code = 200

        def json(self):
            return {"logradouro": "Praca da Se", "bairro": "Se", "localidade": "Sao Paulo", "uf": "SP"}

    monkeypatch.setattr(postal.requests, "get", lambda url, timeout: FakeResponse())
    payload = customer_client.get("/checkout/cep/01001000").get_json()
    assert payload["street"] == "Praca da Se"
    assert payload["cep"] == "01001-000"

    response = customer_client.get("/checkout/cep/123")
    assert response.status_code == 400
    assert "error" in response.get_json()


def test_my_orders_lists_only_own_orders(customer_client, customer):
    other_id = create_user("Other", "other@example.com")
    insert_order(user_id=customer["id"], total=12.5)
    insert_order(user_id=other_id, total=99.9)
    response = customer_client.get("/my-orders")
    assert b"R$ 12.50" in response.data
    assert b"R$ 99.90" not in response.data


def test_review_completed_order_item_once(customer_client, customer):
    product = first_product()
    order_id = insert_order(
        user_id=customer["id"],
        status="Completed",
        items=[(product["id"], product["name"], product["price"], 1)],
    )
    url = f"/my-orders/{order_id}/review/{product['id']}"

    response = customer_client.post(url, data={"rating": "5", "comment": "Great"}, follow_redirects=True)
    assert b"Thanks for your review!" in response.data
    review = fetch_one("SELECT * FROM product_reviews WHERE product_id = ?", (product["id"],))
    assert review["rating"] == 5
    assert review["user_name"] == "Maria Silva"
    item = fetch_one("SELECT * FROM order_items WHERE order_id = ?", (order_id,))
    assert item["review_rating"] == 5
    assert item["review_comment"] == "Great"

    response = customer_client.post(url, data={"rating": "4"}, follow_redirects=True)
    assert b"You already reviewed this product." in response.data
    assert fetch_one("SELECT COUNT(*) FROM product_reviews")[0] == 1

    detail = customer_client.get(f"/products/{product['id']}")
    assert b"Average rating: 5.0 / 5" in detail.data


def test_review_requires_completed_own_order(customer_client, customer):
    product = first_product()
    items = [(product["id"], product["name"], product["price"], 1)]
    pending_id = insert_order(user_id=customer["id"], status="Pending", items=items)
    response = customer_client.post(
        f"/my-orders/{pending_id}/review/{product['id']}", data={"rating": "5"}, follow_redirects=True
    )
    assert b"once the order is completed" in response.data

    other_id = create_user("Other", "other@example.com")
    foreign_id = insert_order(user_id=other_id, status="Completed", items=items)
    response = customer_client.post(
        f"/my-orders/{foreign_id}/review/{product['id']}", data={"rating": "5"}
    )
    assert response.status_code == 404


def test_register_login_and_profile(client):
    response = client.post(
        "/register",
        data={"name": "Ana", "email": "ana@example.com", "phone": "11977776666", "password": "secret1"},
    )
    assert response.status_code == 302
    duplicate = client.post(
        "/register",
        data={"name": "Ana", "email": "ana@example.com", "phone": "11977776666", "password": "secret1"},
    )
    assert b"This email is already registered." in duplicate.data

    assert b"Invalid email or password." in login(client, "ana@example.com", "wrong!!").data
    login(client, "ana@example.com", "secret1")
    client.post("/profile", data={"name": "Ana Paula", "phone": "(11) 97777-6666"})
    user = fetch_one("SELECT * FROM users WHERE email = ?", ("ana@example.com",))
    assert user["name"] == "Ana Paula"

    client.post(
        "/profile/addresses",
        data={
            "cep": "01001000",
            "street": "Rua C",
            "number": "1",
            "neighborhood": "Centro",
            "city": "Sao Paulo",
            "state": "SP",
            "nickname": "Home",
        },
    )
    address = fetch_one("SELECT * FROM user_addresses WHERE user_id = ?", (user["id"],))
    assert address["cep"] == "01001-000"
    client.post(f"/profile/addresses/{address['id']}/delete")
    assert fetch_one("SELECT COUNT(*) FROM user_addresses")[0] == 0


def test_coupon_larger_than_cart_keeps_real_subtotal(customer_client, customer):
    conn = store.get_db_connection()
    conn.execute(
        "INSERT INTO coupons (code, type, value, description) VALUES ('BIG50', 'fixed', 50, NULL)"
    )
    conn.commit()
    conn.close()

    product = first_product()
    customer_client.post(f"/cart/add/{product['id']}")
    customer_client.post("/cart/coupon", data={"code": "BIG50"})
    response = customer_client.post("/checkout", data=new_address_form())

    order = fetch_one("SELECT * FROM orders WHERE user_id = ?", (customer["id"],))
    assert order["subtotal"] == pytest.approx(18.9)
    assert order["coupon_discount"] == pytest.approx(18.9)
    assert order["total"] == 0

    page = customer_client.get(response.headers["Location"])
    assert b"Subtotal: R$ 18.90" in page.data
    link = re.search(r'href="(https://wa\.me/[^"]+)"', page.data.decode()).group(1)
    message = unquote(link.split("text=", 1)[1])
    assert "*Subtotal:* R$ 18.90" in message
    assert "*Discount:* -R$ 18.90 (Coupon: BIG50)" in message
    assert "*Total:* R$ 0.00" in message

    payload = customer_client.get(f"/api/orders/{order['id']}").get_json()
    assert payload["order"]["subtotal"] == pytest.approx(18.9)


def test_profile_rejects_short_phone(customer_client, customer):
    response = customer_client.post(
        "/profile", data={"name": "Maria", "phone": "1234"}, follow_redirects=True
    )
    assert b"Phone must have 11 digits." in response.data
    user = fetch_one("SELECT phone FROM users WHERE id = ?", (customer["id"],))
    assert user["phone"] == "11988887777"


def test_nav_cart_count_skips_deleted_products(client):
    product = first_product()
    client.post(f"/cart/add/{product['id']}", data={"quantity": "2"})
    assert b"Cart (2)" in client.get("/").data

    conn = store.get_db_connection()
    conn.execute("DELETE FROM products WHERE id = ?", (product["id"],))
    conn.commit()
    conn.close()
    assert b"Cart (0)" in client.get("/").data
