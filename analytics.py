"""Aggregations behind the dashboards, charts and catalog filters.

All functions work on plain sequences of rows (``sqlite3.Row`` or dicts)
already loaded from the database, so they can be exercised without one.
"""
from datetime import date, datetime, timedelta

from notifications import (
    COMPLETED,
    ORDER_STATUSES,
    OUT_FOR_DELIVERY,
    PENDING,
    STATUS_CONFIG,
)

CASH_LABEL = "Cash"


def parse_timestamp(value):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value))


def order_stats(orders):
    completed = [order for order in orders if order["status"] == COMPLETED]
    pending = [order for order in orders if order["status"] == PENDING]
    total_revenue = round(sum(float(order["total"] or 0) for order in completed), 2)
    average_ticket = round(total_revenue / len(completed), 2) if completed else 0
    return {
        "total_revenue": total_revenue,
        "completed_orders": len(completed),
        "pending_orders": len(pending),
        "average_ticket": average_ticket,
    }


def orders_by_status(orders):
    grouped = {status: [] for status in ORDER_STATUSES}
    for order in orders:
        grouped.setdefault(order["status"], []).append(order)
    return grouped


def status_distribution(orders):
    grouped = orders_by_status(orders)
    total = len(orders)
    distribution = []
    for status in ORDER_STATUSES:
        count = len(grouped[status])
        if count == 0:
            continue
        distribution.append(
            {
                "status": status,
                "count": count,
                "color": STATUS_CONFIG[status]["color"],
                "percent": round(count / total * 100, 1),
            }
        )
    return distribution


def category_counts(products):
    counts = {}
    for product in products:
        counts[product["category"]] = counts.get(product["category"], 0) + 1
    return [{"label": category, "count": count} for category, count in counts.items()]


def category_mix(rows):
    category_total = sum(row["count"] for row in rows) or 1
    return [
        {
            "label": row["label"],
            "count": row["count"],
            "width": int((row["count"] / category_total) * 100),
        }
        for row in rows
    ]


def orders_with_coupon(orders):
    used = [order for order in orders if order["coupon_code"]]
    return sorted(used, key=lambda order: parse_timestamp(order["created_at"]), reverse=True)


def coupon_usage(orders):
    counts = {}
    for order in orders:
        code = order["coupon_code"]
        if code:
            counts[code] = counts.get(code, 0) + 1
    return [{"code": code, "count": count} for code, count in counts.items()]


def recent_orders(orders, now=None, days: int = 30):
    now = now or datetime.now()
    since = datetime.combine((now - timedelta(days=days)).date(), datetime.min.time())
    return [order for order in orders if parse_timestamp(order["created_at"]) > since]


def delivery_buckets(orders, now=None):
    today = (now or datetime.now()).date()
    to_deliver = []
    completed_today = []
    completed_past = []
    for order in orders:
        if order["status"] == OUT_FOR_DELIVERY:
            to_deliver.append(order)
            continue
        completed_at = parse_timestamp(order["completed_at"])
        if order["status"] != COMPLETED or completed_at is None:
            continue
        if completed_at.date() == today:
            completed_today.append(order)
        else:
            completed_past.append(order)
    return {
        "to_deliver": to_deliver,
        "completed_today": completed_today,
        "completed_past": completed_past,
    }


def delivery_stats(to_deliver, completed_today):
    cash_to_receive = sum(
        float(order["total"] or 0)
        for order in to_deliver
        if order["payment_method"] == CASH_LABEL
    )
    return {
        "pending_deliveries": len(to_deliver),
        "completed_today": len(completed_today),
        "cash_to_receive": round(cash_to_receive, 2),
    }


def weekly_completed(orders, now=None):
    today = (now or datetime.now()).date()
    counts = {}
    for order in orders:
        if order["status"] != COMPLETED:
            continue
        day = parse_timestamp(order["created_at"]).date()
        counts[day] = counts.get(day, 0) + 1
    series = []
    for offset in range(6, -1, -1):
        day = today - timedelta(days=offset)
        series.append(
            {"label": day.strftime("%d %b"), "day": day.isoformat(), "value": counts.get(day, 0)}
        )
    return _with_widths(series)


def group_by_day(orders, key: str = "completed_at"):
    groups = {}
    for order in orders:
        stamp = parse_timestamp(order[key]) or datetime.now()
        groups.setdefault(stamp.strftime("%B %d, %Y"), []).append(order)
    return list(groups.items())


def build_trend_series(rows, days: int, value_key: str, today=None):
    today = today or date.today()
    lookup = {row["day"]: dict(row) for row in rows}
    series = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        key = day.isoformat()
        value = float(lookup.get(key, {}).get(value_key, 0) or 0)
        series.append({"label": day.strftime("%a"), "value": value, "day": key})
    return _with_widths(series)


def _with_widths(series):
    max_value = max((item["value"] for item in series), default=0)
    for item in series:
        item["width"] = int((item["value"] / max_value) * 100) if max_value > 0 else 0
    return series


def completion_rate(orders) -> float:
    if not orders:
        return 0
    completed = [order for order in orders if order["status"] == COMPLETED]
    return round(len(completed) / len(orders) * 100, 1)


def average_rating(reviews) -> float:
    if not reviews:
        return 0
    return round(sum(int(review["rating"]) for review in reviews) / len(reviews), 1)


def sorted_reviews(reviews):
    return sorted(reviews, key=lambda review: parse_timestamp(review["created_at"]), reverse=True)


def catalog_categories(products):
    categories = []
    for product in products:
        if product["category"] not in categories:
            categories.append(product["category"])
    return categories


def filter_products(products, category=None, search=None):
    needle = (search or "").strip().lower()
    matches = []
    for product in products:
        if category and product["category"] != category:
            continue
        if needle and needle not in product["name"].lower():
            continue
        matches.append(product)
    return matches


def display_categories(products, filtered, category=None):
    if category:
        return [category]
    return [
        name
        for name in catalog_categories(products)
        if any(product["category"] == name for product in filtered)
    ]
