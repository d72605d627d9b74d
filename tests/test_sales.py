from datetime import datetime, timezone

import pytest
import requests

from conftest import FakeResponse
from pos_admin.inventory import NOT_FOUND
from pos_admin.sales import (
    FAILED,
    OK,
    RECORDED,
    REJECTED,
    SKIPPED,
    apply_suggestion,
    compose_sale,
    last_customer_name,
    load_sales,
    new_line,
    record_sale,
    rename_line,
    subtotal_of,
    validate_sale_form,
)


NOW = datetime(2024, 5, 15, 9, 30, tzinfo=timezone.utc)


def make_form(**overrides):
    form = {
        "customer_name": "Asha",
        "customer_phone": "9876543210",
        "products": [{"name": "Soap", "price": 40, "quantity": 2}],
        "discount": 10,
        "payment_method": "Cash",
    }
    form.update(overrides)
    return form


@pytest.fixture
def token(store):
    store.set("config/whatsapp/token", "tok-123")
    return "tok-123"


# -------------------------------
# Form helpers & validation
# -------------------------------
def test_line_helpers():
    line = new_line()
    assert line == {"name": "", "price": 0, "quantity": 1}

    picked = apply_suggestion(line, {"name": "Soap", "price": 40})
    assert picked["price"] == 40
    assert rename_line(picked, "Soap bar") == {"name": "Soap bar", "price": 0, "quantity": 1}
    assert subtotal_of([{"price": 40, "quantity": 2}, {"price": 12.5, "quantity": 1}]) == 92.5


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"customer_name": "  "}, "Please fill in all customer details."),
        ({"customer_phone": "98765"}, "Please enter a valid 10-digit phone number."),
        ({"customer_phone": "98765432100"}, "Please enter a valid 10-digit phone number."),
        ({"products": []}, "Please add at least one product."),
        ({"products": [{"name": "", "price": 40, "quantity": 1}]}, "Please enter the name for product 1."),
        ({"products": [{"name": "Soap", "price": 0, "quantity": 1}]}, "Please enter a valid price for product 1."),
        ({"products": [{"name": "Soap", "price": 40, "quantity": 0}]}, "Quantity for product 1 cannot be 0."),
        ({"products": [{"name": "Soap", "price": 40, "quantity": 1.5}]},
         "Quantity for product 1 must be a whole number."),
        ({"discount": -1}, "Discount cannot be negative."),
        ({"discount": 80.01}, "Discount cannot exceed the subtotal."),
        ({"payment_method": "Card"}, "Please select a payment method (Online or Cash)."),
    ],
)
def test_validate_sale_form_messages(overrides, message):
    assert validate_sale_form(make_form(**overrides)) == message


def test_valid_form_passes():
    assert validate_sale_form(make_form()) is None
    assert validate_sale_form(make_form(discount=80)) is None


def test_compose_sale_builds_record():
    form = make_form(products=[
        {"name": " Soap ", "price": 40, "quantity": 2},
        {"name": "Rice", "price": 33.5, "quantity": 3},
    ])
    sale = compose_sale(form, timestamp="2024-05-15T09:30:00.000Z")

    assert sale["customerName"] == "Asha"
    assert sale["products"][0] == {"name": "Soap", "price": 40.0, "quantity": 2, "lineTotal": 80.0}
    assert sale["products"][1]["lineTotal"] == 100.5
    assert sale["total"] == 170.5
    assert sale["paymentMethod"] == "Cash"
    assert sale["timestamp"] == "2024-05-15T09:30:00.000Z"


# -------------------------------
# Rejections do no I/O
# -------------------------------
def test_bad_phone_does_no_io(db, seed, store, blobs, bucket, gateway, session, token):
    product_id = seed("Soap", 40, 20)
    outcome = record_sale(store, make_form(customer_phone="987654321"), blobs=blobs, gateway=gateway)

    assert outcome.status == REJECTED
    assert outcome.message == "Please enter a valid 10-digit phone number."
    assert store.get("sales") == {}
    assert store.get(f"products/{product_id}/quantity") == 20
    assert bucket.files == {}
    assert session.posts == []


def test_discount_over_subtotal_is_rejected(seed, store, blobs, bucket, gateway, session, token):
    product_id = seed("Soap", 40, 20)
    outcome = record_sale(store, make_form(discount=100), blobs=blobs, gateway=gateway)

    assert outcome.status == REJECTED
    assert store.get("sales") == {}
    assert store.get(f"products/{product_id}/quantity") == 20
    assert bucket.files == {}
    assert session.posts == []


def test_discount_equal_to_subtotal_gives_zero_total(seed, store, blobs, gateway, token):
    seed("Soap", 40, 20)
    outcome = record_sale(store, make_form(discount=80), blobs=blobs, gateway=gateway, now=NOW)
    assert outcome.status == RECORDED
    assert outcome.sale["total"] == 0


# -------------------------------
# Full workflow
# -------------------------------
def test_record_sale_end_to_end(seed, store, blobs, bucket, gateway, session, token):
    product_id = seed("Soap", 40, 20)
    outcome = record_sale(store, make_form(), blobs=blobs, gateway=gateway, user="meera", now=NOW)

    assert outcome.status == RECORDED
    assert outcome.message == "Sale recorded successfully!"
    assert outcome.warnings == []
    assert outcome.inventory_ok

    assert store.get(f"products/{product_id}/quantity") == 18

    logged = store.get(f"sales/{outcome.sale_id}")
    assert logged["customerName"] == "Asha"
    assert logged["customerPhone"] == "9876543210"
    assert logged["products"] == [{"name": "Soap", "price": 40.0, "quantity": 2, "lineTotal": 80.0}]
    assert logged["discount"] == 10.0
    assert logged["total"] == 70.0
    assert logged["paymentMethod"] == "Cash"
    assert logged["timestamp"] == "2024-05-15T09:30:00.000Z"

    filename = outcome.invoice.detail["filename"]
    assert outcome.invoice.status == OK
    data, meta = bucket.files[filename]
    assert data.startswith(b"%PDF")
    assert meta == {"contentType": "application/pdf"}
    assert outcome.invoice.detail["url"] == f"http://pos.test/invoices/{filename}"

    assert outcome.notification.status == OK
    assert len(session.posts) == 1
    sent = session.posts[0]
    assert sent["url"] == "https://wa.test/send-image-url"
    assert sent["json"] == {
        "token": "tok-123",
        "number": "919876543210",
        "imageUrl": f"http://pos.test/invoices/{filename}",
        "caption": f"Hello Asha, here is your invoice: {filename}",
    }


def test_unknown_product_still_records_sale(seed, store, blobs, gateway, token):
    seed("Soap", 40, 20)
    form = make_form(products=[{"name": "Shampoo", "price": 120, "quantity": 1}])
    outcome = record_sale(store, form, blobs=blobs, gateway=gateway)

    assert outcome.status == RECORDED
    assert [a.status for a in outcome.inventory] == [NOT_FOUND]
    assert outcome.warnings == ["Product Shampoo not found. Quantity not updated."]
    assert len(load_sales(store)) == 1


def test_append_failure_fails_sale_but_keeps_decrement(db, seed, store, blobs, bucket, gateway, session, token):
    product_id = seed("Soap", 40, 20)
    db["sales"].fail_on.add("insert_one")
    outcome = record_sale(store, make_form(), blobs=blobs, gateway=gateway)

    assert outcome.status == FAILED
    assert outcome.message == "Failed to record sale. Please try again."
    assert outcome.sale_id is None
    assert store.get(f"products/{product_id}/quantity") == 18
    assert outcome.invoice.status == SKIPPED
    assert bucket.files == {}
    assert session.posts == []


def test_catalog_read_failure_marks_every_line(db, seed, store, blobs, gateway, token):
    seed("Soap", 40, 20)
    db["products"].fail_on.add("find")
    outcome = record_sale(store, make_form(), blobs=blobs, gateway=gateway)

    assert outcome.status == RECORDED
    assert not outcome.inventory_ok
    assert outcome.warnings[0] == "Error updating quantity for product Soap."


def test_upload_failure_skips_notification(seed, store, blobs, bucket, gateway, session, token):
    seed("Soap", 40, 20)
    bucket.fail = True
    outcome = record_sale(store, make_form(), blobs=blobs, gateway=gateway)

    assert outcome.status == RECORDED
    assert outcome.invoice.status == FAILED
    assert outcome.notification.status == SKIPPED
    assert session.posts == []
    assert len(load_sales(store)) == 1


def test_missing_token_fails_notification_only(seed, store, blobs, gateway, session):
    seed("Soap", 40, 20)
    outcome = record_sale(store, make_form(), blobs=blobs, gateway=gateway)

    assert outcome.status == RECORDED
    assert outcome.invoice.status == OK
    assert outcome.notification.status == FAILED
    assert outcome.notification.message == "WhatsApp token not loaded. Cannot send message."
    assert session.posts == []


def test_gateway_error_is_reported(seed, store, blobs, gateway, session, token):
    seed("Soap", 40, 20)
    session.post_response = FakeResponse(500, {"message": "Session expired"})
    outcome = record_sale(store, make_form(), blobs=blobs, gateway=gateway)

    assert outcome.status == RECORDED
    assert outcome.notification.status == FAILED
    assert "Session expired" in outcome.notification.message
    assert "Session expired" in outcome.to_dict()["warnings"][0]


def test_gateway_unreachable_is_reported(seed, store, blobs, gateway, session, token):
    seed("Soap", 40, 20)
    session.error = requests.ConnectionError("connection refused")
    outcome = record_sale(store, make_form(), blobs=blobs, gateway=gateway)
    assert outcome.status == RECORDED
    assert outcome.notification.status == FAILED


def test_no_blob_store_skips_invoice(seed, store):
    seed("Soap", 40, 20)
    outcome = record_sale(store, make_form())
    assert outcome.status == RECORDED
    assert outcome.invoice.status == SKIPPED
    assert outcome.notification.status == SKIPPED


def test_sale_is_audited(seed, store):
    seed("Soap", 40, 20)
    outcome = record_sale(store, make_form(), user="meera")
    rows = store.query("audit_log", order_by="timestamp")
    assert rows[-1]["module"] == "sales"
    assert rows[-1]["reference"] == outcome.sale_id
    assert rows[-1]["after"]["total"] == 70.0


def test_last_customer_name_uses_latest_sale(store):
    store.push("sales", {"customerPhone": "9876543210", "customerName": "Asha"})
    store.push("sales", {"customerPhone": "9876543210", "customerName": "Asha K"})
    assert last_customer_name(store, "9876543210") == "Asha K"
    assert last_customer_name(store, "9000000000") is None
    assert last_customer_name(store, "123") is None


NAN = float("nan")
INF = float("inf")


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"products": [{"name": "Soap", "price": NAN, "quantity": 1}]}, "Please enter a valid price for product 1."),
        ({"products": [{"name": "Soap", "price": INF, "quantity": 1}]}, "Please enter a valid price for product 1."),
        ({"products": [{"name": "Soap", "price": 40, "quantity": NAN}]}, "Please enter a valid quantity for product 1."),
        ({"products": [{"name": "Soap", "price": 40, "quantity": INF}]}, "Please enter a valid quantity for product 1."),
        ({"discount": NAN}, "Please enter a valid discount."),
        ({"discount": INF}, "Please enter a valid discount."),
        ({"discount": -INF}, "Please enter a valid discount."),
        ({"products": [{"name": "Soap", "price": 1e308, "quantity": 10}]}, "Sale total is out of range."),
    ],
)
def test_non_finite_amounts_are_rejected(overrides, message):
    assert validate_sale_form(make_form(**overrides)) == message


def test_nan_discount_writes_nothing(seed, store, blobs, bucket, gateway, session, token):
    product_id = seed("Soap", 40, 20)
    outcome = record_sale(store, make_form(discount=NAN), blobs=blobs, gateway=gateway)

    assert outcome.status == REJECTED
    assert store.get("sales") == {}
    assert store.get(f"products/{product_id}/quantity") == 20
    assert bucket.files == {}
    assert session.posts == []
