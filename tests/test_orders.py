import re

import pytest

import catalog
import orders
from conftest import customer
from errors import InsufficientStock, InvalidInput, InvalidTransition, InvalidVariant, NotFound
from schemas import OrderItemRequest


def make_product(db, stock=10, price=100.0, variants=None, **extra):
    fields = {"name": "Green Tea", "price": price, "stock": stock, "variants": variants or []}
    fields.update(extra)
    return catalog.create_product(db, fields)


def item(product, quantity=1, selected_quantity=1, discount=0):
    return OrderItemRequest(product_id=product["id"], quantity=quantity, selected_quantity=selected_quantity, discount=discount)


def stored(db, product):
    return catalog.get_product(db, product["id"], count_view=False)


def test_variant_order_prices_and_reserves_units(db):
    product = make_product(db, stock=10, variants=[{"quantity": 3, "discount": 10}])

    order = orders.create_order(db, customer(), [item(product, quantity=2, selected_quantity=3, discount=10)])

    line = order["items"][0]
    assert line["total_items"] == 6
    assert line["variant"] == {"quantity": 3, "discount": 10.0}
    assert line["final_price"] == pytest.approx(90.0)
    assert line["subtotal"] == pytest.approx(180.0)
    assert order["subtotal"] == pytest.approx(180.0)
    assert stored(db, product)["stock"] == 4


def test_unknown_variant_is_rejected(db):
    product = make_product(db, stock=10, variants=[{"quantity": 3, "discount": 10}])

    with pytest.raises(InvalidVariant) as exc:
        orders.create_order(db, customer(), [item(product, quantity=1, selected_quantity=3, discount=15)])
    assert "Single unit orders are always allowed" in exc.value.detail
    assert stored(db, product)["stock"] == 10


def test_single_units_always_allowed_without_discount(db):
    product = make_product(db, stock=10, variants=[{"quantity": 3, "discount": 10}])

    order = orders.create_order(db, customer(), [item(product, quantity=2, selected_quantity=1, discount=50)])

    line = order["items"][0]
    assert line["variant"]["discount"] == 0
    assert line["subtotal"] == pytest.approx(200.0)


def test_price_comes_from_the_catalog(db):
    product = make_product(db, price=12.5)
    order = orders.create_order(db, customer(), [item(product, quantity=4)], total=1.0)

    assert order["items"][0]["price"] == 12.5
    assert order["subtotal"] == pytest.approx(50.0)
    assert order["total"] == 1.0


def test_subtotal_is_sum_of_lines(db):
    tea = make_product(db, price=10, stock=20)
    mug = make_product(db, name="Mug", price=7.5, stock=20, variants=[{"quantity": 2, "discount": 20}])

    order = orders.create_order(db, customer(), [item(tea, quantity=3), item(mug, quantity=2, selected_quantity=2, discount=20)])

    assert order["subtotal"] == pytest.approx(sum(line["subtotal"] for line in order["items"]))
    assert order["total"] == pytest.approx(order["subtotal"])
    assert order["shipping_address"]["name"] == "Alice Smith"
    assert order["status"] == "pending"
    assert order["payment"]["status"] == "pending"


def test_insufficient_stock_leaves_inventory_untouched(db):
    plenty = make_product(db, stock=10)
    scarce = make_product(db, name="Rare Tea", stock=2)

    with pytest.raises(InsufficientStock) as exc:
        orders.create_order(db, customer(), [item(plenty, quantity=3), item(scarce, quantity=3)])
    assert exc.value.detail == "Insufficient stock for Rare Tea. Available: 2, Requested: 3"
    assert stored(db, plenty)["stock"] == 10
    assert stored(db, scarce)["stock"] == 2
    assert db["order"].count_documents({}) == 0


def test_incomplete_and_unknown_products(db):
    with pytest.raises(InvalidInput):
        orders.create_order(db, customer(), [])
    with pytest.raises(NotFound):
        orders.create_order(db, customer(), [OrderItemRequest(product_id="5f1d7f5e9b1e8a3c4d2b1a00", quantity=1)])


def test_order_numbers_are_sequential(db):
    product = make_product(db, stock=10)
    first = orders.create_order(db, customer(), [item(product)])
    second = orders.create_order(db, customer(), [item(product)])

    assert re.match(r"^ORD-\d{4}-000001$", first["order_number"])
    assert re.match(r"^ORD-\d{4}-000002$", second["order_number"])
    assert orders.get_order(db, second["order_number"])["id"] == second["id"]


def test_selling_out_and_cancelling_restores_stock(db):
    product = make_product(db, stock=5)

    order = orders.create_order(db, customer(), [item(product, quantity=5)])
    after = stored(db, product)
    assert after["stock"] == 0
    assert after["status"] == "out-of-stock"
    assert after["availability"] == "Out of Stock"

    cancelled = orders.update_order_status(db, order["id"], "cancelled", cancel_reason="Changed my mind")
    assert cancelled["cancel_reason"] == "Changed my mind"
    assert cancelled["cancelled_at"] is not None
    restored = stored(db, product)
    assert restored["stock"] == 5
    assert restored["status"] == "active"


def test_cancel_restores_variant_units(db):
    product = make_product(db, stock=10, variants=[{"quantity": 3, "discount": 10}])
    order = orders.create_order(db, customer(), [item(product, quantity=2, selected_quantity=3, discount=10)])

    orders.update_order_status(db, order["id"], "cancelled")
    assert stored(db, product)["stock"] == 10


def test_terminal_states(db):
    product = make_product(db, stock=10)
    delivered = orders.create_order(db, customer(), [item(product)])
    cancelled = orders.create_order(db, customer(), [item(product)])

    done = orders.update_order_status(db, delivered["id"], "delivered")
    assert done["payment"]["status"] == "completed"
    assert done["tracking"]["delivered_at"] is not None
    orders.update_order_status(db, cancelled["id"], "cancelled")

    for order_id in (delivered["id"], cancelled["id"]):
        for status in ("pending", "processing", "shipped", "delivered", "cancelled"):
            with pytest.raises(InvalidTransition):
                orders.update_order_status(db, order_id, status)
    # a second cancel must not give the stock back twice
    assert stored(db, product)["stock"] == 9


def test_status_moves_forward_only(db):
    product = make_product(db, stock=10)
    order = orders.create_order(db, customer(), [item(product)])

    shipped = orders.update_order_status(db, order["id"], "shipped", tracking={"carrier": "DHL", "tracking_number": "123"})
    assert shipped["tracking"]["carrier"] == "DHL"
    assert shipped["tracking"]["shipped_at"] is not None

    with pytest.raises(InvalidTransition):
        orders.update_order_status(db, order["id"], "processing")
    with pytest.raises(InvalidInput):
        orders.update_order_status(db, order["id"], "lost")


def test_payment_status(db):
    product = make_product(db)
    order = orders.create_order(db, customer(), [item(product)], payment_method="paypal")

    paid = orders.update_payment_status(db, order["id"], "completed", transaction_id="tx-1")
    assert paid["payment"]["method"] == "paypal"
    assert paid["payment"]["transaction_id"] == "tx-1"
    assert paid["payment"]["paid_at"] is not None
    with pytest.raises(InvalidInput):
        orders.update_payment_status(db, order["id"], "bounced")


def test_delete_restores_stock_unless_cancelled(db):
    product = make_product(db, stock=10)
    open_order = orders.create_order(db, customer(), [item(product, quantity=4)])
    cancelled = orders.create_order(db, customer(), [item(product, quantity=2)])
    orders.update_order_status(db, cancelled["id"], "cancelled")
    assert stored(db, product)["stock"] == 6

    orders.delete_order(db, open_order["id"])
    assert stored(db, product)["stock"] == 10
    orders.delete_order(db, cancelled["id"])
    assert stored(db, product)["stock"] == 10

    with pytest.raises(NotFound):
        orders.get_order(db, open_order["id"])


def test_listing_and_stats(db):
    product = make_product(db, price=10, stock=50)
    a = orders.create_order(db, customer(), [item(product, quantity=1)], user_id="u1")
    orders.create_order(db, customer(), [item(product, quantity=3)], user_id="u1")
    orders.create_order(db, customer(), [item(product, quantity=2)], user_id="u2")
    orders.update_order_status(db, a["id"], "processing")

    mine = orders.get_user_orders(db, "u1")
    assert mine["total"] == 2
    assert {o["user"] for o in mine["orders"]} == {"u1"}
    assert orders.list_orders(db, status="processing")["total"] == 1

    stats = orders.order_stats(db)
    assert stats["total_orders"] == 3
    assert stats["total_revenue"] == pytest.approx(60.0)
    assert stats["average_order_value"] == pytest.approx(20.0)
    assert stats["pending_orders"] == 2
    assert stats["processing_orders"] == 1
    assert orders.order_stats(db, user_id="u2")["total_orders"] == 1
