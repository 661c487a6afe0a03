import os
import tempfile

import pytest

_BOOT_DIR = tempfile.mkdtemp(prefix="storefront-")
os.environ.setdefault("STORE_DATABASE", os.path.join(_BOOT_DIR, "boot.db"))
os.environ.setdefault("STORE_UPLOAD_FOLDER", os.path.join(_BOOT_DIR, "uploads"))

import app as store  # noqa: E402

ADMIN_EMAIL = store.app.config["ADMIN_EMAIL"]
ADMIN_PASSWORD = store.app.config["ADMIN_PASSWORD"]


@pytest.fixture
def flask_app(tmp_path):
    store.app.config.update(
        TESTING=True,
        DATABASE=str(tmp_path / "store.db"),
        UPLOAD_FOLDER=str(tmp_path / "uploads"),
    )
    store.init_db()
    yield store.app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


def create_user(name, email, role="customer", phone="11988887777", password="secret1"):
    conn = store.get_db_connection()
    cursor = conn.execute(
        "INSERT INTO users (name, email, phone, role, password_hash) VALUES (?, ?, ?, ?, ?)",
        (name, email, phone, role, store.generate_password_hash(password)),
    )
    conn.commit()
    conn.close()
    return cursor.lastrowid


def login(client, email, password):
    return client.post("/login", data={"email": email, "password": password})


@pytest.fixture
def admin_client(client):
    login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    return client


@pytest.fixture
def customer(flask_app):
    user_id = create_user("Maria Silva", "maria@example.com")
    return {"id": user_id, "email": "maria@example.com", "password": "secret1"}


@pytest.fixture
def customer_client(client, customer):
    login(client, customer["email"], customer["password"])
    return client


@pytest.fixture
def courier_client(client):
    create_user("Joao Courier", "courier@example.com", role="delivery")
    login(client, "courier@example.com", "secret1")
    return client


def first_product():
    conn = store.get_db_connection()
    row = conn.execute("SELECT * FROM products ORDER BY id LIMIT 1").fetchone()
    conn.close()
    return row


def insert_order(
    user_id=None,
    status="Pending",
    total=50.0,
    payment_method="PIX",
    coupon_code=None,
    coupon_discount=None,
    created_at=None,
    completed_at=None,
    phone="11988887777",
    items=(),
):
    stamp = created_at or store.now_timestamp()
    conn = store.get_db_connection()
    cursor = conn.execute(
        """
        INSERT INTO orders (
            order_reference, user_id, customer_name, customer_email, customer_phone,
            address, payment_method, observations, total, status, coupon_code,
            coupon_discount, created_at, updated_at, completed_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            store.generate_order_reference(),
            user_id,
            "Maria Silva",
            "maria@example.com",
            phone,
            "Rua A, 10 - Centro, Sao Paulo - SP, CEP: 01001-000",
            payment_method,
            "None",
            total,
            status,
            coupon_code,
            coupon_discount,
            stamp,
            stamp,
            completed_at,
        ),
    )
    order_id = cursor.lastrowid
    for product_id, name, price, quantity in items:
        conn.execute(
            "INSERT INTO order_items (order_id, product_id, name, price, quantity) VALUES (?, ?, ?, ?, ?)",
            (order_id, product_id, name, price, quantity),
        )
    conn.commit()
    conn.close()
    return order_id
