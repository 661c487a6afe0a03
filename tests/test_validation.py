from validation import (
    format_cep,
    normalize_phone,
    parse_lines,
    validate_address_form,
    validate_checkout_form,
    validate_coupon_form,
    validate_product_form,
    validate_profile_form,
    validate_registration_form,
    validate_review_form,
)

ADDRESS = {
    "cep": "01001000",
    "street": "Praca da Se",
    "number": "10",
    "complement": "",
    "neighborhood": "Centro",
    "city": "Sao Paulo",
    "state": "sp",
    "nickname": "Home",
}


def product_form(**overrides):
    form = {
        "name": "Craft IPA",
        "price": "18.90",
        "category": "Beers",
        "size": "473",
        "unit": "ml",
        "stock": "10",
        "description": "",
    }
    form.update(overrides)
    return form


def test_valid_product_form():
    values, error = validate_product_form(product_form(), ["Beers"], ["ml"])
    assert error is None
    assert values["price"] == 18.9
    assert values["stock"] == 10


def test_product_form_errors():
    assert validate_product_form(product_form(name="X"))[1]
    assert validate_product_form(product_form(price="0"))[1]
    assert validate_product_form(product_form(price="abc"))[1]
    assert validate_product_form(product_form(size="-1"))[1]
    assert validate_product_form(product_form(unit=""))[1]
    assert validate_product_form(product_form(stock="-2"))[1]
    _, error = validate_product_form(product_form(category="Wine"), ["Beers"], ["ml"])
    assert error == "Please select one of the configured categories."


def test_coupon_form_uppercases_code():
    values, error = validate_coupon_form({"code": "promo5", "type": "fixed", "value": "5"})
    assert error is None
    assert values["code"] == "PROMO5"
    assert values["description"] is None


def test_coupon_form_errors():
    assert validate_coupon_form({"code": "AB", "type": "fixed", "value": "5"})[1]
    assert validate_coupon_form({"code": "A" * 21, "type": "fixed", "value": "5"})[1]
    assert validate_coupon_form({"code": "PROMO", "type": "other", "value": "5"})[1]
    assert validate_coupon_form({"code": "PROMO", "type": "fixed", "value": "0"})[1]


def test_address_form_formats_cep_and_state():
    values, error = validate_address_form(ADDRESS)
    assert error is None
    assert values["cep"] == "01001-000"
    assert values["state"] == "SP"


def test_address_form_rejects_short_cep():
    _, error = validate_address_form(dict(ADDRESS, cep="123"))
    assert error == "CEP must have 8 digits."


def test_checkout_form_with_saved_address():
    values, error = validate_checkout_form(
        {"phone": "(11) 98888-7777", "payment_method": "pix", "address_id": "3"}
    )
    assert error is None
    assert values["phone"] == "11988887777"
    assert values["payment_label"] == "PIX"
    assert values["address_id"] == 3


def test_checkout_form_with_new_address():
    form = {"phone": "11988887777", "payment_method": "cash", "address_mode": "new"}
    form.update({f"new_{key}": value for key, value in ADDRESS.items()})
    values, error = validate_checkout_form(form)
    assert error is None
    assert values["new_address"]["city"] == "Sao Paulo"


def test_checkout_form_errors():
    assert validate_checkout_form({"phone": "123", "payment_method": "pix"})[1]
    assert validate_checkout_form({"phone": "11988887777", "payment_method": "bitcoin"})[1]
    _, error = validate_checkout_form({"phone": "11988887777", "payment_method": "pix"})
    assert error == "Select or add a delivery address."


def test_review_form_bounds():
    assert validate_review_form({"rating": "5"})[1] is None
    assert validate_review_form({"rating": "0"})[1]
    assert validate_review_form({"rating": "six"})[1]


def test_registration_form():
    values, error = validate_registration_form(
        {"name": "Ana", "email": "ANA@Example.com", "phone": "11 9999", "password": "secret1"}
    )
    assert error is None
    assert values["email"] == "ana@example.com"
    assert validate_registration_form({"name": "Ana"})[1] == "All fields are required."
    assert validate_registration_form(
        {"name": "Ana", "email": "nope", "phone": "1", "password": "secret1"}
    )[1]


def test_small_helpers():
    assert normalize_phone("+55 (11) 9") == "55119"
    assert format_cep("01001000") == "01001-000"
    assert parse_lines("Beers\n\n Food \nBeers") == ["Beers", "Food"]


def test_product_form_rejects_non_finite_numbers():
    for bad in ("nan", "inf", "-inf", "NaN"):
        assert validate_product_form(product_form(price=bad))[1] == "Price must be a positive number."
        assert validate_product_form(product_form(size=bad))[1] == "Size must be a positive number."


def test_coupon_form_rejects_non_finite_value():
    for bad in ("nan", "inf"):
        _, error = validate_coupon_form({"code": "FREE", "type": "percentage", "value": bad})
        assert error == "Discount value must be positive."


def test_profile_form_requires_full_phone():
    values, error = validate_profile_form({"name": "Ana", "phone": "(11) 97777-6666"})
    assert error is None
    assert values["phone"] == "11977776666"
    assert validate_profile_form({"name": "Ana", "phone": "123"})[1] == "Phone must have 11 digits."
    assert validate_profile_form({"name": "", "phone": "11977776666"})[1]
