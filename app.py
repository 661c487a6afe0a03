import csv
import io
import os
import sqlite3
from datetime import date, datetime, timedelta
from functools import wraps
from secrets import token_hex

from flask import (
    Flask,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    Response,
    send_from_directory,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

import analytics
from notifications import (
    CANCELLED,
    COMPLETED,
    ORDER_STATUSES,
    OUT_FOR_DELIVERY,
    PENDING,
    STATUS_CONFIG,
    courier_message,
    is_open,
    maps_directions_link,
    order_message,
    short_code,
    status_notification,
    whatsapp_link,
)
from postal import DEFAULT_LOOKUP_URL, PostalLookupError, lookup_cep
from pricing import (
    calculate_discount,
    cart_count,
    cart_lines,
    cart_total,
    final_total,
    format_currency,
    subtotal_before_discount,
)
from validation import (
    USER_ROLES,
    parse_lines,
    validate_address_form,
    validate_checkout_form,
    validate_coupon_form,
    validate_product_form,
    validate_profile_form,
    validate_registration_form,
    validate_review_form,
)

app = Flask(__name__)
app.config.update(
    SECRET_KEY=os.environ.get("SECRET_KEY", "change-this-secret-key"),
    DATABASE=os.environ.get("STORE_DATABASE", os.path.join(app.root_path, "store.db")),
    UPLOAD_FOLDER=os.environ.get("STORE_UPLOAD_FOLDER", os.path.join(app.root_path, "uploads")),
    MAX_CONTENT_LENGTH=5 * 1024 * 1024,
    CURRENCY=os.environ.get("STORE_CURRENCY", "R$"),
    WELCOME_COUPON=os.environ.get("STORE_WELCOME_COUPON", "BEMVINDO10"),
    ADMIN_EMAIL=os.environ.get("STORE_ADMIN_EMAIL", "admin@store.local"),
    ADMIN_PASSWORD=os.environ.get("STORE_ADMIN_PASSWORD", "admin123"),
    POSTAL_LOOKUP_URL=os.environ.get("POSTAL_LOOKUP_URL", DEFAULT_LOOKUP_URL),
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.environ.get("FLASK_SECURE_COOKIES", "0") == "1",
)
app.logger.setLevel(os.environ.get("STORE_LOG_LEVEL", "INFO"))


@app.after_request
def add_security_headers(response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "img-src 'self' data:; "
        "style-src 'self' 'unsafe-inline'; "
        "script-src 'self' 'unsafe-inline';"
    )
    return response


ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
UPLOAD_KINDS = {"products", "banners", "logos"}

DEFAULT_CATEGORIES = ["Drinks", "Beers", "Water", "Food", "Other"]
DEFAULT_UNITS = ["ml", "L", "g", "kg", "un"]


def get_db_connection():
    conn = sqlite3.connect(app.config["DATABASE"])
    conn.row_factory = sqlite3.Row
    return conn


def now_timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def generate_order_reference() -> str:
    stamp = date.today().strftime("%Y%m%d")
    token = token_hex(3).upper()
    return f"ORD-{stamp}-{token}"


def ensure_column(conn, table_name: str, column_name: str, column_type: str):
    cursor = conn.execute(f"PRAGMA table_info({table_name})")
    columns = {row[1] for row in cursor.fetchall()}
    if column_name not in columns:
        conn.execute(
            f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}"
        )


def log_order_event(
    conn,
    order_id: int,
    status: str,
    note: str,
    actor_type: str,
    actor_id,
):
    conn.execute(
        """
        INSERT INTO order_events (order_id, status, note, actor_type, actor_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (order_id, status, note, actor_type, actor_id, now_timestamp()),
    )


def init_db():
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.executescript(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            phone TEXT NOT NULL DEFAULT '',
            role TEXT NOT NULL DEFAULT 'customer',
            password_hash TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS user_addresses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            nickname TEXT NOT NULL,
            cep TEXT NOT NULL,
            street TEXT NOT NULL,
            number TEXT NOT NULL,
            complement TEXT,
            neighborhood TEXT NOT NULL,
            city TEXT NOT NULL,
            state TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            price REAL NOT NULL,
            category TEXT NOT NULL,
            size REAL NOT NULL DEFAULT 0,
            unit TEXT NOT NULL DEFAULT '',
            stock INTEGER NOT NULL DEFAULT 0,
            description TEXT,
            image_path TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS product_reviews (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            product_id INTEGER NOT NULL,
            order_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            user_name TEXT NOT NULL,
            rating INTEGER NOT NULL,
            comment TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_reference TEXT NOT NULL,
            user_id INTEGER,
            customer_name TEXT NOT NULL,
            customer_email TEXT,
            customer_phone TEXT NOT NULL,
            address TEXT NOT NULL,
            payment_method TEXT NOT NULL,
            observations TEXT,
            subtotal REAL,
            total REAL NOT NULL,
            status TEXT NOT NULL,
            coupon_code TEXT,
            coupon_discount REAL,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            completed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS order_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER NOT NULL,
            product_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            price REAL NOT NULL,
            quantity INTEGER NOT NULL,
            image_path TEXT,
            review_rating INTEGER,
            review_comment TEXT
        );

        CREATE TABLE IF NOT EXISTS order_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER NOT NULL,
            status TEXT NOT NULL,
            note TEXT,
            actor_type TEXT NOT NULL,
            actor_id INTEGER,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS coupons (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT NOT NULL UNIQUE,
            type TEXT NOT NULL,
            value REAL NOT NULL,
            description TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS store_settings (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            company_name TEXT NOT NULL,
            company_phone TEXT NOT NULL,
            company_email TEXT NOT NULL,
            company_address TEXT NOT NULL,
            logo_path TEXT,
            banner_headline TEXT,
            banner_description TEXT,
            banner_image_path TEXT,
            categories TEXT NOT NULL DEFAULT '',
            units TEXT NOT NULL DEFAULT ''
        );
        """
    )

    ensure_column(conn, "orders", "completed_at", "TEXT")
    ensure_column(conn, "orders", "coupon_discount", "REAL")
    ensure_column(conn, "orders", "subtotal", "REAL")
    ensure_column(conn, "order_items", "review_rating", "INTEGER")
    ensure_column(conn, "order_items", "review_comment", "TEXT")

    cursor.execute("SELECT COUNT(*) FROM store_settings")
    if cursor.fetchone()[0] == 0:
        cursor.execute(
            """
            INSERT INTO store_settings (
                id, company_name, company_phone, company_email, company_address,
                banner_headline, banner_description, categories, units
            )
            VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                "Digital Menu",
                "+55 (11) 99999-0000",
                "contact@store.local",
                "123 Example Street - Sao Paulo, SP",
                "Fresh from the kitchen",
                "Order online and get it delivered at your door.",
                "\n".join(DEFAULT_CATEGORIES),
                "\n".join(DEFAULT_UNITS),
            ),
        )

    cursor.execute("SELECT COUNT(*) FROM products")
    if cursor.fetchone()[0] == 0:
        cursor.executemany(
            """
            INSERT INTO products (name, price, category, size, unit, stock, description)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                ("Craft IPA", 18.9, "Beers", 473, "ml", 48, "Hoppy craft beer with citrus notes."),
                ("Pilsen Lager", 7.5, "Beers", 350, "ml", 120, "Light and crisp lager."),
                ("Sparkling Water", 4.0, "Water", 500, "ml", 60, "Mineral water with gas."),
                ("Orange Juice", 9.9, "Drinks", 300, "ml", 30, "Freshly squeezed."),
                ("Cheese Burger", 32.0, "Food", 250, "g", 25, "Beef patty, cheddar and brioche bun."),
                ("Fries Basket", 19.5, "Food", 300, "g", 40, "Crispy fries with house sauce."),
            ],
        )

    cursor.execute("SELECT COUNT(*) FROM coupons")
    if cursor.fetchone()[0] == 0:
        cursor.execute(
            "INSERT INTO coupons (code, type, value, description) VALUES (?, ?, ?, ?)",
            (app.config["WELCOME_COUPON"], "percentage", 10, "Welcome discount on the first order"),
        )

    cursor.execute("SELECT COUNT(*) FROM users WHERE role = 'admin'")
    if cursor.fetchone()[0] == 0:
        cursor.execute(
            """
            INSERT INTO users (name, email, phone, role, password_hash)
            VALUES (?, ?, ?, 'admin', ?)
            """,
            (
                "Admin",
                app.config["ADMIN_EMAIL"],
                "",
                generate_password_hash(app.config["ADMIN_PASSWORD"]),
            ),
        )

    conn.commit()
    conn.close()


def get_settings():
    if "store_settings" not in g:
        conn = get_db_connection()
        row = conn.execute("SELECT * FROM store_settings WHERE id = 1").fetchone()
        conn.close()
        settings = dict(row) if row else {}
        settings["category_list"] = parse_lines(settings.get("categories"))
        settings["unit_list"] = parse_lines(settings.get("units"))
        g.store_settings = settings
    return g.store_settings


def fetch_orders(conn, where: str = "", params=()):
    rows = conn.execute(
        f"SELECT * FROM orders {where} ORDER BY created_at DESC, id DESC",
        params,
    ).fetchall()
    return attach_order_items(conn, [dict(row) for row in rows])


def attach_order_items(conn, orders):
    order_ids = [order["id"] for order in orders]
    items_by_order = {}
    if order_ids:
        placeholders = ",".join("?" for _ in order_ids)
        items = conn.execute(
            f"SELECT * FROM order_items WHERE order_id IN ({placeholders}) ORDER BY id",
            order_ids,
        ).fetchall()
        for item in items:
            items_by_order.setdefault(item["order_id"], []).append(dict(item))
    for order in orders:
        order["items"] = items_by_order.get(order["id"], [])
    return orders


def update_order_status(conn, order_id: int, status: str, note: str, actor_type: str, actor_id):
    order = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
    if not order:
        return None
    stamp = now_timestamp()
    completed_at = order["completed_at"]
    if status == COMPLETED and order["status"] != COMPLETED:
        completed_at = stamp
    conn.execute(
        "UPDATE orders SET status = ?, updated_at = ?, completed_at = ? WHERE id = ?",
        (status, stamp, completed_at, order_id),
    )
    if order["status"] != status:
        log_order_event(conn, order_id, status, note, actor_type, actor_id)
    return conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()


def allowed_file(filename: str) -> bool:
    _, ext = os.path.splitext(filename.lower())
    return ext in ALLOWED_EXTENSIONS


def save_uploaded_file(file, kind: str):
    if not file or not file.filename:
        return None
    if kind not in UPLOAD_KINDS:
        raise ValueError(f"Unknown upload kind: {kind}")
    if not allowed_file(file.filename):
        raise ValueError("Only JPG, PNG, GIF or WEBP images are allowed.")
    folder = os.path.join(app.config["UPLOAD_FOLDER"], kind)
    os.makedirs(folder, exist_ok=True)
    safe_name = secure_filename(file.filename)
    _, ext = os.path.splitext(safe_name)
    new_name = f"{token_hex(8)}{ext.lower()}"
    file.save(os.path.join(folder, new_name))
    app.logger.info("Stored upload %s/%s", kind, new_name)
    return f"{kind}/{new_name}"


def remove_uploaded_file(relative_path):
    if not relative_path:
        return
    try:
        os.remove(os.path.join(app.config["UPLOAD_FOLDER"], relative_path))
    except OSError:
        app.logger.warning("Could not remove upload %s", relative_path)


def get_current_user():
    if "current_user" not in g:
        g.current_user = None
        user_id = session.get("user_id")
        if user_id:
            conn = get_db_connection()
            g.current_user = conn.execute(
                "SELECT * FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            conn.close()
    return g.current_user


def login_required(view):
    @wraps(view)
    def wrapped_view(**kwargs):
        if not get_current_user():
            return redirect(url_for("login", next=request.path))
        return view(**kwargs)

    return wrapped_view


def role_required(*roles):
    def decorator(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            user = get_current_user()
            if not user:
                return redirect(url_for("login", next=request.path))
            if user["role"] not in roles:
                flash("You do not have permission to access this page.", "error")
                return redirect(url_for("home"))
            return view(**kwargs)

        return wrapped_view

    return decorator


admin_required = role_required("admin")
delivery_required = role_required("delivery", "admin")


@app.template_filter("currency")
def currency_filter(amount):
    return format_currency(amount, app.config["CURRENCY"])


@app.template_filter("timestamp")
def timestamp_filter(value, fmt: str = "%d/%m/%Y %H:%M"):
    stamp = analytics.parse_timestamp(value)
    return stamp.strftime(fmt) if stamp else ""


@app.template_filter("upload_url")
def upload_url_filter(relative_path):
    if not relative_path:
        return ""
    return url_for("uploaded_file", filename=relative_path)


@app.context_processor
def inject_store_context():
    return {
        "settings": get_settings(),
        "current_user": get_current_user(),
        "cart_count": cart_item_count(),
        "status_config": STATUS_CONFIG,
        "order_statuses": ORDER_STATUSES,
        "short_code": short_code,
        "is_open": is_open,
    }


@app.errorhandler(404)
def not_found(error):
    return render_template("404.html"), 404


@app.errorhandler(500)
def server_error(error):
    return render_template("500.html"), 500


@app.route("/uploads/<path:filename>")
def uploaded_file(filename: str):
    return send_from_directory(app.config["UPLOAD_FOLDER"], filename)


def load_products(conn):
    return conn.execute("SELECT * FROM products ORDER BY name, id").fetchall()


@app.route("/")
@app.route("/products")
def home():
    category = request.args.get("category") or None
    search = request.args.get("q", "").strip()
    conn = get_db_connection()
    products = load_products(conn)
    conn.close()
    filtered = analytics.filter_products(products, category, search)
    sections = [
        (name, [product for product in filtered if product["category"] == name])
        for name in analytics.display_categories(products, filtered, category)
    ]
    show_welcome = not session.get("welcome_seen")
    session["welcome_seen"] = True
    return render_template(
        "storefront.html",
        categories=analytics.catalog_categories(products),
        selected_category=category,
        search=search,
        sections=sections,
        show_welcome=show_welcome,
        welcome_coupon=app.config["WELCOME_COUPON"],
    )


@app.route("/products/<int:product_id>")
def product_detail(product_id: int):
    conn = get_db_connection()
    product = conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
    if not product:
        conn.close()
        abort(404)
    reviews = conn.execute(
        "SELECT * FROM product_reviews WHERE product_id = ?", (product_id,)
    ).fetchall()
    conn.close()
    return render_template(
        "product_detail.html",
        product=product,
        reviews=analytics.sorted_reviews(reviews),
        average_rating=analytics.average_rating(reviews),
    )


@app.route("/products/list")
def product_list():
    conn = get_db_connection()
    products = load_products(conn)
    conn.close()
    return render_template("product_list.html", products=products)


def product_to_dict(row):
    return {
        "id": row["id"],
        "name": row["name"],
        "price": row["price"],
        "category": row["category"],
        "size": row["size"],
        "unit": row["unit"],
        "stock": row["stock"],
        "description": row["description"],
        "image_url": upload_url_filter(row["image_path"]) or None,
    }


@app.route("/api/products", methods=["GET"])
def api_products():
    conn = get_db_connection()
    products = load_products(conn)
    conn.close()
    filtered = analytics.filter_products(
        products, request.args.get("category") or None, request.args.get("q")
    )
    return jsonify({"products": [product_to_dict(row) for row in filtered]})


def get_cart():
    return session.get("cart", {})


def cart_item_count():
    cart = get_cart()
    if not cart:
        return 0
    ids = [int(product_id) for product_id in cart.keys()]
    placeholders = ",".join("?" for _ in ids)
    conn = get_db_connection()
    rows = conn.execute(
        f"SELECT id FROM products WHERE id IN ({placeholders})", ids
    ).fetchall()
    conn.close()
    known = {str(row["id"]) for row in rows}
    return cart_count({key: qty for key, qty in cart.items() if key in known})


def get_coupon(conn, code):
    if not code:
        return None
    return conn.execute(
        "SELECT * FROM coupons WHERE code = ?", (code.strip().upper(),)
    ).fetchone()


def get_cart_summary(conn):
    cart = get_cart()
    products_by_id = {}
    if cart:
        ids = [int(product_id) for product_id in cart.keys()]
        placeholders = ",".join("?" for _ in ids)
        rows = conn.execute(
            f"SELECT * FROM products WHERE id IN ({placeholders})", ids
        ).fetchall()
        products_by_id = {row["id"]: row for row in rows}
    lines = cart_lines(cart, products_by_id)
    subtotal = cart_total(lines)
    coupon = get_coupon(conn, session.get("coupon_code"))
    discount = calculate_discount(coupon, subtotal) if lines else 0
    return {
        "lines": lines,
        "count": sum(line["quantity"] for line in lines),
        "subtotal": subtotal,
        "coupon": coupon,
        "discount": discount,
        "total": final_total(subtotal, discount),
    }


def read_quantity(default: int = 1) -> int:
    try:
        return int(request.form.get("quantity", default))
    except (TypeError, ValueError):
        return default


@app.route("/cart")
def cart_page():
    conn = get_db_connection()
    summary = get_cart_summary(conn)
    conn.close()
    return render_template("cart.html", **summary)


@app.route("/cart/add/<int:product_id>", methods=["POST"])
def cart_add(product_id: int):
    conn = get_db_connection()
    product = conn.execute("SELECT id, name FROM products WHERE id = ?", (product_id,)).fetchone()
    conn.close()
    if not product:
        abort(404)
    quantity = max(read_quantity(), 1)
    cart = get_cart()
    cart[str(product_id)] = cart.get(str(product_id), 0) + quantity
    session["cart"] = cart
    flash(f"{quantity}x {product['name']} added to your cart.", "success")
    return redirect(request.form.get("next") or url_for("cart_page"))


@app.route("/cart/update/<int:product_id>", methods=["POST"])
def cart_update(product_id: int):
    cart = get_cart()
    key = str(product_id)
    quantity = read_quantity(default=0)
    if quantity <= 0:
        cart.pop(key, None)
    elif key in cart:
        cart[key] = quantity
    session["cart"] = cart
    return redirect(url_for("cart_page"))


@app.route("/cart/remove/<int:product_id>", methods=["POST"])
def cart_remove(product_id: int):
    cart = get_cart()
    cart.pop(str(product_id), None)
    session["cart"] = cart
    return redirect(url_for("cart_page"))


@app.route("/cart/clear", methods=["POST"])
def cart_clear():
    session.pop("cart", None)
    session.pop("coupon_code", None)
    return redirect(url_for("cart_page"))


@app.route("/cart/coupon", methods=["POST"])
def cart_coupon():
    code = request.form.get("code", "").strip().upper()
    if not code:
        session.pop("coupon_code", None)
        flash("Coupon removed.", "success")
        return redirect(url_for("cart_page"))
    conn = get_db_connection()
    coupon = get_coupon(conn, code)
    if not coupon:
        conn.close()
        session.pop("coupon_code", None)
        flash("Invalid coupon: the code you entered is not valid.", "error")
        return redirect(url_for("cart_page"))
    session["coupon_code"] = coupon["code"]
    summary = get_cart_summary(conn)
    conn.close()
    flash(
        f"Coupon applied! You got a discount of {currency_filter(summary['discount'])}.",
        "success",
    )
    return redirect(url_for("cart_page"))


def format_address(address) -> str:
    complement = f", {address['complement']}" if address["complement"] else ""
    return (
        f"{address['street']}, {address['number']}{complement} - "
        f"{address['neighborhood']}, {address['city']} - {address['state']}, "
        f"CEP: {address['cep']}"
    )


def insert_address(conn, user_id: int, address) -> int:
    cursor = conn.execute(
        """
        INSERT INTO user_addresses (
            user_id, nickname, cep, street, number, complement, neighborhood, city, state
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            address["nickname"],
            address["cep"],
            address["street"],
            address["number"],
            address["complement"],
            address["neighborhood"],
            address["city"],
            address["state"],
        ),
    )
    return cursor.lastrowid


def load_addresses(conn, user_id: int):
    return conn.execute(
        "SELECT * FROM user_addresses WHERE user_id = ? ORDER BY id", (user_id,)
    ).fetchall()


@app.route("/checkout", methods=["GET", "POST"])
@login_required
def checkout():
    user = get_current_user()
    conn = get_db_connection()
    summary = get_cart_summary(conn)
    if not summary["lines"]:
        conn.close()
        flash("Your cart is empty.", "error")
        return redirect(url_for("cart_page"))
    addresses = load_addresses(conn, user["id"])
    if request.method == "GET":
        conn.close()
        selected = addresses[0]["id"] if len(addresses) == 1 else None
        return render_template(
            "checkout.html",
            addresses=addresses,
            selected_address_id=selected,
            phone=user["phone"],
            **summary,
        )

    values, error = validate_checkout_form(request.form)
    if error:
        conn.close()
        flash(error, "error")
        return redirect(url_for("checkout"))

    try:
        if values["new_address"]:
            insert_address(conn, user["id"], values["new_address"])
            address = values["new_address"]
        else:
            address = conn.execute(
                "SELECT * FROM user_addresses WHERE id = ? AND user_id = ?",
                (values["address_id"], user["id"]),
            ).fetchone()
        if not address:
            conn.close()
            flash("Could not determine the delivery address.", "error")
            return redirect(url_for("checkout"))

        coupon = summary["coupon"]
        order_reference = generate_order_reference()
        stamp = now_timestamp()
        cursor = conn.execute(
            """
            INSERT INTO orders (
                order_reference,
                user_id,
                customer_name,
                customer_email,
                customer_phone,
                address,
                payment_method,
                observations,
                subtotal,
                total,
                status,
                coupon_code,
                coupon_discount,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order_reference,
                user["id"],
                user["name"] or user["email"],
                user["email"],
                values["phone"],
                format_address(address),
                values["payment_label"],
                values["observations"] or "None",
                summary["subtotal"],
                summary["total"],
                PENDING,
                coupon["code"] if coupon else None,
                summary["discount"] if coupon else None,
                stamp,
                stamp,
            ),
        )
        order_id = cursor.lastrowid
        conn.executemany(
            """
            INSERT INTO order_items (order_id, product_id, name, price, quantity, image_path)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    order_id,
                    line["id"],
                    line["name"],
                    line["price"],
                    line["quantity"],
                    line["image_path"],
                )
                for line in summary["lines"]
            ],
        )
        log_order_event(conn, order_id, PENDING, "Order placed", "customer", user["id"])
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not save order for user %s", user["id"])
        conn.close()
        flash("We could not save your order. Please try again.", "error")
        return redirect(url_for("checkout"))
    conn.close()

    app.logger.info("Order %s placed by user %s", order_reference, user["id"])
    session.pop("cart", None)
    session.pop("coupon_code", None)
    flash("Order sent! Finish the conversation on WhatsApp.", "success")
    return redirect(url_for("order_confirmation", order_id=order_id))


@app.route("/my-orders/<int:order_id>/confirmation")
@login_required
def order_confirmation(order_id: int):
    user = get_current_user()
    conn = get_db_connection()
    orders = fetch_orders(conn, "WHERE id = ? AND user_id = ?", (order_id, user["id"]))
    conn.close()
    if not orders:
        abort(404)
    order = orders[0]
    settings = get_settings()
    subtotal = subtotal_before_discount(order)
    message = order_message(
        order["order_reference"],
        order["customer_name"],
        order["customer_phone"],
        order["items"],
        subtotal,
        order["coupon_discount"] or 0,
        order["coupon_code"],
        order["total"],
        order["address"],
        order["payment_method"],
        order["observations"],
        currency=app.config["CURRENCY"],
    )
    return render_template(
        "order_confirmation.html",
        order=order,
        subtotal=subtotal,
        whatsapp_url=whatsapp_link(settings.get("company_phone"), message),
    )


@app.route("/checkout/cep/<string:cep>")
@login_required
def checkout_cep_lookup(cep: str):
    try:
        address = lookup_cep(cep, app.config["POSTAL_LOOKUP_URL"])
    except PostalLookupError as exc:
        app.logger.warning("CEP lookup failed for %s: %s", cep, exc)
        return jsonify({"error": str(exc)}), 400
    return jsonify(address)


def safe_next(target):
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return None


def landing_for(user):
    if user["role"] == "admin":
        return url_for("admin_dashboard")
    if user["role"] == "delivery":
        return url_for("delivery_dashboard")
    return url_for("home")


@app.route("/login", methods=["GET", "POST"])
def login():
    user = get_current_user()
    if user:
        return redirect(landing_for(user))
    error = None
    if request.method == "POST":
        email = request.form.get("email", "").strip().lower()
        password = request.form.get("password", "").strip()
        conn = get_db_connection()
        user = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        conn.close()
        if user and check_password_hash(user["password_hash"], password):
            session["user_id"] = user["id"]
            return redirect(safe_next(request.args.get("next")) or landing_for(user))
        error = "Invalid email or password."
    return render_template("login.html", error=error)


@app.route("/logout")
def logout():
    session.pop("user_id", None)
    return redirect(url_for("home"))


@app.route("/register", methods=["GET", "POST"])
def register():
    error = None
    if request.method == "POST":
        values, error = validate_registration_form(request.form)
        if not error:
            conn = get_db_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO users (name, email, phone, role, password_hash)
                    VALUES (?, ?, ?, 'customer', ?)
                    """,
                    (
                        values["name"],
                        values["email"],
                        values["phone"],
                        generate_password_hash(values["password"]),
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                error = "This email is already registered."
            except sqlite3.Error:
                app.logger.exception("Could not register %s", values["email"])
                error = "Could not create your account. Please try again."
            conn.close()
            if not error:
                flash("Account created. Please log in.", "success")
                return redirect(url_for("login"))
    return render_template("register.html", error=error)


@app.route("/profile", methods=["GET", "POST"])
@login_required
def profile():
    user = get_current_user()
    if request.method == "POST":
        values, error = validate_profile_form(request.form)
        if error:
            flash(error, "error")
            return redirect(url_for("profile"))
        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE users SET name = ?, phone = ? WHERE id = ?",
                (values["name"], values["phone"], user["id"]),
            )
            conn.commit()
        except sqlite3.Error:
            app.logger.exception("Could not update profile of user %s", user["id"])
            flash("Could not update your profile. Please try again.", "error")
            return redirect(url_for("profile"))
        finally:
            conn.close()
        flash("Profile updated.", "success")
        return redirect(url_for("profile"))
    conn = get_db_connection()
    addresses = load_addresses(conn, user["id"])
    conn.close()
    return render_template("profile.html", user=user, addresses=addresses)


@app.route("/profile/addresses", methods=["POST"])
@login_required
def profile_address_add():
    values, error = validate_address_form(request.form)
    if error:
        flash(error, "error")
        return redirect(url_for("profile"))
    user_id = get_current_user()["id"]
    conn = get_db_connection()
    try:
        insert_address(conn, user_id, values)
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not save address for user %s", user_id)
        flash("Could not save the address. Please try again.", "error")
        return redirect(url_for("profile"))
    finally:
        conn.close()
    flash("Address saved.", "success")
    return redirect(url_for("profile"))


@app.route("/profile/addresses/<int:address_id>/delete", methods=["POST"])
@login_required
def profile_address_delete(address_id: int):
    user_id = get_current_user()["id"]
    conn = get_db_connection()
    try:
        conn.execute(
            "DELETE FROM user_addresses WHERE id = ? AND user_id = ?",
            (address_id, user_id),
        )
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not remove address %s", address_id)
        flash("Could not remove the address. Please try again.", "error")
        return redirect(url_for("profile"))
    finally:
        conn.close()
    flash("Address removed.", "success")
    return redirect(url_for("profile"))



@app.route("/my-orders")
@login_required
def my_orders():
    conn = get_db_connection()
    orders = fetch_orders(conn, "WHERE user_id = ?", (get_current_user()["id"],))
    conn.close()
    return render_template("my_orders.html", orders=orders)


@app.route("/my-orders/<int:order_id>/review/<int:product_id>", methods=["POST"])
@login_required
def review_order_item(order_id: int, product_id: int):
    user = get_current_user()
    values, error = validate_review_form(request.form)
    if error:
        flash(error, "error")
        return redirect(url_for("my_orders"))
    conn = get_db_connection()
    order = conn.execute(
        "SELECT * FROM orders WHERE id = ? AND user_id = ?", (order_id, user["id"])
    ).fetchone()
    if not order:
        conn.close()
        abort(404)
    if order["status"] != COMPLETED:
        conn.close()
        flash("You can review products once the order is completed.", "error")
        return redirect(url_for("my_orders"))
    item = conn.execute(
        "SELECT * FROM order_items WHERE order_id = ? AND product_id = ?",
        (order_id, product_id),
    ).fetchone()
    if not item:
        conn.close()
        abort(404)
    if item["review_rating"] is not None:
        conn.close()
        flash("You already reviewed this product.", "error")
        return redirect(url_for("my_orders"))
    product = conn.execute("SELECT id FROM products WHERE id = ?", (product_id,)).fetchone()
    if not product:
        conn.close()
        flash("This product is no longer available for review.", "error")
        return redirect(url_for("my_orders"))
    try:
        conn.execute(
            """
            INSERT INTO product_reviews (
                product_id, order_id, user_id, user_name, rating, comment, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                product_id,
                order_id,
                user["id"],
                user["name"],
                values["rating"],
                values["comment"],
                now_timestamp(),
            ),
        )
        conn.execute(
            "UPDATE order_items SET review_rating = ?, review_comment = ? WHERE id = ?",
            (values["rating"], values["comment"], item["id"]),
        )
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not save review for order %s", order_id)
        flash("We could not save your review. Please try again.", "error")
        return redirect(url_for("my_orders"))
    finally:
        conn.close()
    flash("Thanks for your review!", "success")
    return redirect(url_for("my_orders"))


def get_admin_dashboard_context():
    today = date.today()
    conn = get_db_connection()
    orders = fetch_orders(conn)
    products = load_products(conn)
    trend_rows = conn.execute(
        """
        SELECT date(created_at) AS day,
               COUNT(*) AS orders,
               COALESCE(SUM(total), 0) AS revenue
        FROM orders
        WHERE status != ? AND date(created_at) >= ?
        GROUP BY date(created_at)
        """,
        (CANCELLED, (today - timedelta(days=6)).isoformat()),
    ).fetchall()
    conn.close()

    billable = [order for order in orders if order["status"] != CANCELLED]
    todays = [
        order
        for order in billable
        if analytics.parse_timestamp(order["created_at"]).date() == today
    ]
    total_revenue = sum(order["total"] for order in billable)
    revenue_today = sum(order["total"] for order in todays)
    avg_order_value = (total_revenue / len(billable)) if billable else 0
    stats = analytics.order_stats(orders)

    return {
        "kpis": {
            "today_revenue": currency_filter(revenue_today),
            "orders_today": len(todays),
            "avg_order_value": currency_filter(avg_order_value),
            "completion_rate": f"{analytics.completion_rate(orders):.0f}%",
            "pending_orders": stats["pending_orders"],
            "products": len(products),
            "total_orders": len(orders),
            "total_revenue": currency_filter(total_revenue),
        },
        "revenue_trend": analytics.build_trend_series(trend_rows, 7, "revenue", today),
        "orders_trend": analytics.build_trend_series(trend_rows, 7, "orders", today),
        "category_mix": analytics.category_mix(analytics.category_counts(products)),
    }


@app.route("/admin")
@admin_required
def admin_dashboard():
    context = get_admin_dashboard_context()
    return render_template("admin_dashboard.html", **context)


@app.route("/admin/products", methods=["GET", "POST"])
@admin_required
def admin_products():
    settings = get_settings()
    conn = get_db_connection()
    if request.method == "POST":
        values, error = validate_product_form(
            request.form, settings["category_list"], settings["unit_list"]
        )
        if error:
            conn.close()
            flash(error, "error")
            return redirect(url_for("admin_products"))
        try:
            image_path = save_uploaded_file(request.files.get("image"), "products")
        except ValueError as exc:
            conn.close()
            flash(str(exc), "error")
            return redirect(url_for("admin_products"))
        try:
            conn.execute(
                """
                INSERT INTO products (name, price, category, size, unit, stock, description, image_path)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    values["name"],
                    values["price"],
                    values["category"],
                    values["size"],
                    values["unit"],
                    values["stock"],
                    values["description"],
                    image_path,
                ),
            )
            conn.commit()
        except sqlite3.Error:
            app.logger.exception("Could not add product %s", values["name"])
            remove_uploaded_file(image_path)
            flash("Could not add the product. Please try again.", "error")
            return redirect(url_for("admin_products"))
        finally:
            conn.close()
        flash(f'"{values["name"]}" was added to the catalog.', "success")
        return redirect(url_for("admin_products"))
    products = load_products(conn)
    conn.close()
    return render_template(
        "admin_products.html",
        products=products,
        category_chart=analytics.category_mix(analytics.category_counts(products)),
    )


@app.route("/admin/products/<int:product_id>/edit", methods=["GET", "POST"])
@admin_required
def admin_product_edit(product_id: int):
    settings = get_settings()
    conn = get_db_connection()
    product = conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
    if not product:
        conn.close()
        abort(404)
    if request.method == "POST":
        values, error = validate_product_form(
            request.form, settings["category_list"], settings["unit_list"]
        )
        if error:
            conn.close()
            flash(error, "error")
            return redirect(url_for("admin_product_edit", product_id=product_id))
        try:
            image_path = save_uploaded_file(request.files.get("image"), "products")
        except ValueError as exc:
            conn.close()
            flash(str(exc), "error")
            return redirect(url_for("admin_product_edit", product_id=product_id))
        try:
            conn.execute(
                """
                UPDATE products
                SET name = ?, price = ?, category = ?, size = ?, unit = ?, stock = ?,
                    description = ?, image_path = ?
                WHERE id = ?
                """,
                (
                    values["name"],
                    values["price"],
                    values["category"],
                    values["size"],
                    values["unit"],
                    values["stock"],
                    values["description"],
                    image_path or product["image_path"],
                    product_id,
                ),
            )
            conn.commit()
        except sqlite3.Error:
            app.logger.exception("Could not update product %s", product_id)
            remove_uploaded_file(image_path)
            flash("Could not update the product. Please try again.", "error")
            return redirect(url_for("admin_product_edit", product_id=product_id))
        finally:
            conn.close()
        if image_path and product["image_path"]:
            remove_uploaded_file(product["image_path"])
        flash("Product updated.", "success")
        return redirect(url_for("admin_products"))
    conn.close()
    return render_template("admin_product_edit.html", product=product)


@app.route("/admin/products/<int:product_id>/image/delete", methods=["POST"])
@admin_required
def admin_product_image_delete(product_id: int):
    conn = get_db_connection()
    existing = conn.execute(
        "SELECT image_path FROM products WHERE id = ?", (product_id,)
    ).fetchone()
    try:
        conn.execute("UPDATE products SET image_path = NULL WHERE id = ?", (product_id,))
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not remove image of product %s", product_id)
        flash("Could not remove the product image.", "error")
        return redirect(url_for("admin_product_edit", product_id=product_id))
    finally:
        conn.close()
    if existing:
        remove_uploaded_file(existing["image_path"])
    flash("Product image removed.", "success")
    return redirect(url_for("admin_product_edit", product_id=product_id))


@app.route("/admin/products/<int:product_id>/delete", methods=["POST"])
@admin_required
def admin_product_delete(product_id: int):
    conn = get_db_connection()
    existing = conn.execute(
        "SELECT name, image_path FROM products WHERE id = ?", (product_id,)
    ).fetchone()
    try:
        conn.execute("DELETE FROM products WHERE id = ?", (product_id,))
        conn.execute("DELETE FROM product_reviews WHERE product_id = ?", (product_id,))
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not delete product %s", product_id)
        flash("Could not delete the product. Please try again.", "error")
        return redirect(url_for("admin_products"))
    finally:
        conn.close()
    if existing:
        remove_uploaded_file(existing["image_path"])
        flash(f'"{existing["name"]}" was removed from the catalog.', "success")
    return redirect(url_for("admin_products"))


@app.route("/admin/orders")
@admin_required
def admin_orders():
    conn = get_db_connection()
    orders = fetch_orders(conn)
    conn.close()
    return render_template(
        "admin_orders.html",
        orders=orders,
        stats=analytics.order_stats(orders),
        distribution=analytics.status_distribution(orders),
        grouped=analytics.orders_by_status(orders),
        notification=session.pop("notification", None),
    )


@app.route("/admin/orders/<int:order_id>/status", methods=["POST"])
@admin_required
def admin_order_status(order_id: int):
    status = request.form.get("status", "").strip()
    if status not in ORDER_STATUSES:
        flash("Unknown order status.", "error")
        return redirect(url_for("admin_orders"))
    admin = get_current_user()
    conn = get_db_connection()
    try:
        order = update_order_status(
            conn, order_id, status, f"Moved to {status}", "admin", admin["id"]
        )
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not update order %s", order_id)
        flash("Could not update the order status.", "error")
        return redirect(url_for("admin_orders"))
    finally:
        conn.close()
    if not order:
        abort(404)
    app.logger.info("Order %s moved to %s by admin %s", order_id, status, admin["id"])
    flash(f'Order moved to "{status}".', "success")
    notification_url = status_notification(order, status)
    if notification_url:
        session["notification"] = {
            "url": notification_url,
            "customer": order["customer_name"],
        }
    return redirect(url_for("admin_orders"))


@app.route("/admin/orders/<int:order_id>/delete", methods=["POST"])
@admin_required
def admin_order_delete(order_id: int):
    conn = get_db_connection()
    order = conn.execute("SELECT status FROM orders WHERE id = ?", (order_id,)).fetchone()
    if not order:
        conn.close()
        abort(404)
    if is_open(order["status"]):
        conn.close()
        flash("Only completed or cancelled orders can be deleted.", "error")
        return redirect(url_for("admin_orders"))
    try:
        conn.execute("DELETE FROM order_items WHERE order_id = ?", (order_id,))
        conn.execute("DELETE FROM order_events WHERE order_id = ?", (order_id,))
        conn.execute("DELETE FROM orders WHERE id = ?", (order_id,))
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not delete order %s", order_id)
        flash("Could not delete the order. Please try again.", "error")
        return redirect(url_for("admin_orders"))
    finally:
        conn.close()
    app.logger.info("Order %s deleted by admin %s", order_id, get_current_user()["id"])
    flash("Order deleted permanently.", "success")
    return redirect(url_for("admin_orders"))


@app.route("/admin/orders/export")
@admin_required
def admin_orders_export():
    conn = get_db_connection()
    orders = fetch_orders(conn)
    conn.close()
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "id",
            "order_reference",
            "customer_name",
            "customer_email",
            "customer_phone",
            "address",
            "items",
            "total",
            "coupon_code",
            "coupon_discount",
            "status",
            "payment_method",
            "observations",
            "created_at",
            "completed_at",
        ]
    )
    for order in orders:
        writer.writerow(
            [
                order["id"],
                order["order_reference"],
                order["customer_name"],
                order["customer_email"],
                order["customer_phone"],
                order["address"],
                ", ".join(f"{item['name']} x{item['quantity']}" for item in order["items"]),
                order["total"],
                order["coupon_code"],
                order["coupon_discount"],
                order["status"],
                order["payment_method"],
                order["observations"],
                order["created_at"],
                order["completed_at"],
            ]
        )
    response = Response(output.getvalue(), mimetype="text/csv")
    response.headers["Content-Disposition"] = "attachment; filename=orders.csv"
    return response


def order_to_dict(order):
    return {
        "id": order["id"],
        "order_reference": order["order_reference"],
        "user_id": order["user_id"],
        "customer_name": order["customer_name"],
        "customer_email": order["customer_email"],
        "customer_phone": order["customer_phone"],
        "address": order["address"],
        "items": [
            {
                "product_id": item["product_id"],
                "name": item["name"],
                "price": item["price"],
                "quantity": item["quantity"],
                "review_rating": item["review_rating"],
            }
            for item in order.get("items", [])
        ],
        "subtotal": subtotal_before_discount(order),
        "total": order["total"],
        "coupon": (
            {"code": order["coupon_code"], "discount": order["coupon_discount"]}
            if order["coupon_code"]
            else None
        ),
        "status": order["status"],
        "payment_method": order["payment_method"],
        "observations": order["observations"],
        "created_at": order["created_at"],
        "completed_at": order["completed_at"],
    }


@app.route("/api/orders", methods=["GET"])
@admin_required
def api_orders():
    conn = get_db_connection()
    status = request.args.get("status")
    if status:
        orders = fetch_orders(conn, "WHERE status = ?", (status,))
    else:
        orders = fetch_orders(conn)
    conn.close()
    return jsonify({"orders": [order_to_dict(order) for order in orders]})


@app.route("/api/orders/<int:order_id>", methods=["GET"])
def api_order_detail(order_id: int):
    user = get_current_user()
    if not user:
        return jsonify({"error": "Unauthorized"}), 403
    conn = get_db_connection()
    orders = fetch_orders(conn, "WHERE id = ?", (order_id,))
    if not orders:
        conn.close()
        return jsonify({"error": "Order not found"}), 404
    order = orders[0]
    is_staff = user["role"] in ("admin", "delivery")
    if not is_staff and order["user_id"] != user["id"]:
        conn.close()
        return jsonify({"error": "Unauthorized"}), 403
    events = conn.execute(
        "SELECT * FROM order_events WHERE order_id = ? ORDER BY created_at DESC, id DESC",
        (order_id,),
    ).fetchall()
    conn.close()
    return jsonify(
        {
            "order": order_to_dict(order),
            "events": [
                {
                    "status": row["status"],
                    "note": row["note"],
                    "actor_type": row["actor_type"],
                    "actor_id": row["actor_id"],
                    "created_at": row["created_at"],
                }
                for row in events
            ],
        }
    )


@app.route("/api/my-orders", methods=["GET"])
@login_required
def api_my_orders():
    conn = get_db_connection()
    orders = fetch_orders(conn, "WHERE user_id = ?", (get_current_user()["id"],))
    conn.close()
    return jsonify({"orders": [order_to_dict(order) for order in orders]})


@app.route("/api/orders/<int:order_id>/status", methods=["POST"])
@admin_required
def api_order_status_update(order_id: int):
    payload = request.get_json(silent=True) or {}
    status = (payload.get("status") or "").strip()
    note = (payload.get("note") or "Status updated via API").strip()
    if not status:
        return jsonify({"error": "Status is required"}), 400
    if status not in ORDER_STATUSES:
        return jsonify({"error": f"Unknown status: {status}"}), 400
    conn = get_db_connection()
    try:
        order = update_order_status(
            conn, order_id, status, note, "admin", get_current_user()["id"]
        )
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not update order %s via API", order_id)
        return jsonify({"error": "Could not update the order status"}), 500
    finally:
        conn.close()
    if not order:
        return jsonify({"error": "Order not found"}), 404
    app.logger.info("Order %s moved to %s via API", order_id, status)
    return jsonify(
        {
            "status": "ok",
            "order_id": order_id,
            "new_status": status,
            "notification_url": status_notification(order, status),
        }
    )


@app.route("/admin/coupons", methods=["GET", "POST"])
@admin_required
def admin_coupons():
    conn = get_db_connection()
    if request.method == "POST":
        values, error = validate_coupon_form(request.form)
        if not error and get_coupon(conn, values["code"]):
            error = "A coupon with this code already exists."
        if error:
            conn.close()
            flash(error, "error")
            return redirect(url_for("admin_coupons"))
        try:
            conn.execute(
                "INSERT INTO coupons (code, type, value, description) VALUES (?, ?, ?, ?)",
                (values["code"], values["type"], values["value"], values["description"]),
            )
            conn.commit()
        except sqlite3.IntegrityError:
            flash("A coupon with this code already exists.", "error")
            return redirect(url_for("admin_coupons"))
        except sqlite3.Error:
            app.logger.exception("Could not create coupon %s", values["code"])
            flash("Could not create the coupon. Please try again.", "error")
            return redirect(url_for("admin_coupons"))
        finally:
            conn.close()
        app.logger.info("Coupon %s created", values["code"])
        flash(f'Coupon "{values["code"]}" was created.', "success")
        return redirect(url_for("admin_coupons"))
    coupons = conn.execute("SELECT * FROM coupons ORDER BY created_at DESC, id DESC").fetchall()
    orders = fetch_orders(conn, "WHERE coupon_code IS NOT NULL")
    conn.close()
    usage = analytics.coupon_usage(orders)
    max_uses = max((entry["count"] for entry in usage), default=0)
    for entry in usage:
        entry["width"] = int(entry["count"] / max_uses * 100) if max_uses else 0
    return render_template(
        "admin_coupons.html",
        coupons=coupons,
        usage=usage,
        coupon_orders=analytics.orders_with_coupon(orders),
    )


@app.route("/admin/coupons/<int:coupon_id>/delete", methods=["POST"])
@admin_required
def admin_coupon_delete(coupon_id: int):
    conn = get_db_connection()
    try:
        conn.execute("DELETE FROM coupons WHERE id = ?", (coupon_id,))
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not delete coupon %s", coupon_id)
        flash("Could not delete the coupon. Please try again.", "error")
        return redirect(url_for("admin_coupons"))
    finally:
        conn.close()
    flash("Coupon deleted.", "success")
    return redirect(url_for("admin_coupons"))


@app.route("/admin/users", methods=["GET", "POST"])
@admin_required
def admin_users():
    conn = get_db_connection()
    error = None
    if request.method == "POST":
        values, error = validate_registration_form(request.form)
        role = request.form.get("role", "customer")
        if not error and role not in USER_ROLES:
            error = "Unknown role."
        if not error:
            try:
                conn.execute(
                    """
                    INSERT INTO users (name, email, phone, role, password_hash)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        values["name"],
                        values["email"],
                        values["phone"],
                        role,
                        generate_password_hash(values["password"]),
                    ),
                )
                conn.commit()
                conn.close()
                flash("User added.", "success")
                return redirect(url_for("admin_users"))
            except sqlite3.IntegrityError:
                error = "Email already exists."
            except sqlite3.Error:
                app.logger.exception("Could not add user %s", values["email"])
                error = "Could not add the user. Please try again."
    users = conn.execute("SELECT * FROM users ORDER BY created_at DESC, id DESC").fetchall()
    conn.close()
    return render_template("admin_users.html", users=users, roles=USER_ROLES, error=error)


@app.route("/admin/users/<int:user_id>/role", methods=["POST"])
@admin_required
def admin_user_role(user_id: int):
    role = request.form.get("role", "")
    if role not in USER_ROLES:
        flash("Unknown role.", "error")
        return redirect(url_for("admin_users"))
    if get_current_user()["id"] == user_id and role != "admin":
        flash("You cannot remove your own admin access.", "error")
        return redirect(url_for("admin_users"))
    conn = get_db_connection()
    try:
        conn.execute("UPDATE users SET role = ? WHERE id = ?", (role, user_id))
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not change role of user %s", user_id)
        flash("Could not update the role. Please try again.", "error")
        return redirect(url_for("admin_users"))
    finally:
        conn.close()
    flash("Role updated.", "success")
    return redirect(url_for("admin_users"))


@app.route("/admin/users/<int:user_id>/password", methods=["POST"])
@admin_required
def admin_user_password(user_id: int):
    new_password = request.form.get("password", "").strip()
    if len(new_password) < 6:
        flash("Enter a new password with at least 6 characters.", "error")
        return redirect(url_for("admin_users"))
    conn = get_db_connection()
    try:
        conn.execute(
            "UPDATE users SET password_hash = ? WHERE id = ?",
            (generate_password_hash(new_password), user_id),
        )
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not reset password of user %s", user_id)
        flash("Could not reset the password. Please try again.", "error")
        return redirect(url_for("admin_users"))
    finally:
        conn.close()
    flash("Password reset successful.", "success")
    return redirect(url_for("admin_users"))


@app.route("/admin/users/<int:user_id>/delete", methods=["POST"])
@admin_required
def admin_user_delete(user_id: int):
    if get_current_user()["id"] == user_id:
        flash("You cannot delete the signed-in admin.", "error")
        return redirect(url_for("admin_users"))
    conn = get_db_connection()
    try:
        conn.execute("DELETE FROM user_addresses WHERE user_id = ?", (user_id,))
        conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not delete user %s", user_id)
        flash("Could not delete the user. Please try again.", "error")
        return redirect(url_for("admin_users"))
    finally:
        conn.close()
    flash("User deleted.", "success")
    return redirect(url_for("admin_users"))


@app.route("/admin/settings", methods=["GET", "POST"])
@admin_required
def admin_settings():
    if request.method == "POST":
        form_type = request.form.get("form_type")
        conn = get_db_connection()
        current = conn.execute("SELECT * FROM store_settings WHERE id = 1").fetchone()
        new_upload = None
        replaced_upload = None
        message = None
        try:
            if form_type == "company":
                name = request.form.get("company_name", "").strip()
                phone = request.form.get("company_phone", "").strip()
                email = request.form.get("company_email", "").strip()
                address = request.form.get("company_address", "").strip()
                if not name or not phone:
                    flash("Company name and phone are required.", "error")
                    return redirect(url_for("admin_settings"))
                new_upload = save_uploaded_file(request.files.get("logo"), "logos")
                conn.execute(
                    """
                    UPDATE store_settings
                    SET company_name = ?, company_phone = ?, company_email = ?,
                        company_address = ?, logo_path = ?
                    WHERE id = 1
                    """,
                    (name, phone, email, address, new_upload or current["logo_path"]),
                )
                replaced_upload = current["logo_path"]
                message = "Company details updated."
            elif form_type == "banner":
                new_upload = save_uploaded_file(request.files.get("banner_image"), "banners")
                conn.execute(
                    """
                    UPDATE store_settings
                    SET banner_headline = ?, banner_description = ?, banner_image_path = ?
                    WHERE id = 1
                    """,
                    (
                        request.form.get("banner_headline", "").strip(),
                        request.form.get("banner_description", "").strip(),
                        new_upload or current["banner_image_path"],
                    ),
                )
                replaced_upload = current["banner_image_path"]
                message = "Banner updated."
            elif form_type == "catalog":
                categories = parse_lines(request.form.get("categories"))
                units = parse_lines(request.form.get("units"))
                if not categories or not units:
                    flash("Keep at least one category and one unit.", "error")
                    return redirect(url_for("admin_settings"))
                conn.execute(
                    "UPDATE store_settings SET categories = ?, units = ? WHERE id = 1",
                    ("\n".join(categories), "\n".join(units)),
                )
                message = "Categories and units updated."
            conn.commit()
        except ValueError as exc:
            flash(str(exc), "error")
            return redirect(url_for("admin_settings"))
        except sqlite3.Error:
            app.logger.exception("Could not update %s settings", form_type)
            remove_uploaded_file(new_upload)
            flash("Could not save the settings. Please try again.", "error")
            return redirect(url_for("admin_settings"))
        finally:
            conn.close()
        if new_upload:
            remove_uploaded_file(replaced_upload)
        if message:
            flash(message, "success")
        return redirect(url_for("admin_settings"))
    return render_template("admin_settings.html")



@app.route("/delivery")
@delivery_required
def delivery_dashboard():
    conn = get_db_connection()
    orders = analytics.recent_orders(fetch_orders(conn))
    conn.close()
    buckets = analytics.delivery_buckets(orders)
    for order in buckets["to_deliver"]:
        order["whatsapp_url"] = whatsapp_link(order["customer_phone"], courier_message(order))
        order["maps_url"] = maps_directions_link(order["address"])
    return render_template(
        "delivery_dashboard.html",
        stats=analytics.delivery_stats(buckets["to_deliver"], buckets["completed_today"]),
        to_deliver=buckets["to_deliver"],
        weekly=analytics.weekly_completed(orders),
        today_groups=analytics.group_by_day(buckets["completed_today"]),
        past_groups=analytics.group_by_day(buckets["completed_past"]),
        tab=request.args.get("tab", "pending"),
    )


@app.route("/delivery/orders/<int:order_id>/complete", methods=["POST"])
@delivery_required
def delivery_complete(order_id: int):
    courier = get_current_user()
    conn = get_db_connection()
    order = conn.execute(
        "SELECT order_reference, status FROM orders WHERE id = ?", (order_id,)
    ).fetchone()
    if not order:
        conn.close()
        abort(404)
    if order["status"] != OUT_FOR_DELIVERY:
        conn.close()
        flash("This order is not out for delivery.", "error")
        return redirect(url_for("delivery_dashboard"))
    try:
        update_order_status(
            conn, order_id, COMPLETED, "Delivered by courier", "delivery", courier["id"]
        )
        conn.commit()
    except sqlite3.Error:
        app.logger.exception("Could not complete delivery of order %s", order_id)
        flash("Could not complete the delivery.", "error")
        return redirect(url_for("delivery_dashboard"))
    finally:
        conn.close()
    flash(f"Delivery of order #{order['order_reference']} completed.", "success")
    return redirect(url_for("delivery_dashboard"))


init_db()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
