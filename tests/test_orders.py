import pytest

from conftest import cart_entry, listing_quantity
from localcoin.errors import (
    AlreadyProcessedError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from localcoin.models import AddToCartRequest, Caller, OrderStatus, Role


def add(orders, marketplace, quantity=1, order_id=None):
    return orders.add_to_cart(
        AddToCartRequest(
            user_id=marketplace.user_id,
            merchant_id=marketplace.merchant_id,
            listing_id=marketplace.listing_id,
            quantity=quantity,
            order_id=order_id,
        )
    )


def test_add_to_cart_reserves_inventory(orders, store, marketplace):
    order = add(orders, marketplace, quantity=3)

    assert order.status == OrderStatus.PENDING_APPROVAL
    assert order.unit_price == 5.0
    assert order.price == 15.0
    assert listing_quantity(store) == 7
    assert cart_entry(store, order.order_id)["price"] == 15.0
    pending = store.get("merchants", marketplace.merchant_id)["pendingOrders"]
    assert [entry["orderId"] for entry in pending] == [order.order_id]


def test_add_to_cart_refuses_overselling(orders, store, marketplace):
    with pytest.raises(ValidationError):
        add(orders, marketplace, quantity=11)
    assert listing_quantity(store) == 10
    assert store.get("users", marketplace.user_id)["cart"] == []


def test_add_to_cart_refuses_inactive_listing(orders, store, marketplace):
    merchant = store.get("merchants", marketplace.merchant_id)
    merchant["listings"][0]["active"] = False
    store.update("merchants", marketplace.merchant_id, {"listings": merchant["listings"]})

    with pytest.raises(ValidationError):
        add(orders, marketplace)


def test_add_to_cart_unknown_listing(orders, marketplace):
    with pytest.raises(NotFoundError):
        orders.add_to_cart(
            AddToCartRequest(user_id=marketplace.user_id, merchant_id=marketplace.merchant_id, listing_id="cake")
        )


def test_duplicate_order_id_is_a_conflict(orders, store, marketplace):
    add(orders, marketplace, order_id="o-1")
    with pytest.raises(ConflictError):
        add(orders, marketplace, order_id="o-1")
    assert listing_quantity(store) == 9


def test_add_to_cart_for_another_user_is_forbidden(orders, marketplace):
    with pytest.raises(AuthorizationError):
        orders.add_to_cart(
            AddToCartRequest(user_id=marketplace.user_id, merchant_id=marketplace.merchant_id, listing_id="bread"),
            Caller(account_id="intruder", role=Role.USER),
        )


def test_approve_assigns_redeem_code(orders, store, marketplace):
    order = add(orders, marketplace)
    merchant = Caller(account_id=marketplace.merchant_id, role=Role.MERCHANT)

    approved = orders.approve(marketplace.user_id, marketplace.merchant_id, order.order_id, merchant)

    assert approved.status == OrderStatus.APPROVED
    assert len(approved.redeem_code) == 8
    assert cart_entry(store, order.order_id)["redeemCode"] == approved.redeem_code
    pending = store.get("merchants", marketplace.merchant_id)["pendingOrders"]
    assert pending[0]["status"] == "approved"


def test_only_the_merchant_may_approve(orders, marketplace):
    order = add(orders, marketplace)
    with pytest.raises(AuthorizationError):
        orders.approve(
            marketplace.user_id,
            marketplace.merchant_id,
            order.order_id,
            Caller(account_id=marketplace.user_id, role=Role.USER),
        )


def test_reject_restores_inventory(orders, store, marketplace):
    order = add(orders, marketplace, quantity=4)

    rejected = orders.reject(marketplace.user_id, marketplace.merchant_id, order.order_id)

    assert rejected.status == OrderStatus.REJECTED
    assert listing_quantity(store) == 10
    merchant = store.get("merchants", marketplace.merchant_id)
    assert merchant["pendingOrders"] == []
    assert merchant["recentTransactions"][0]["status"] == "rejected"


def test_reject_twice_is_already_processed(orders, marketplace):
    order = add(orders, marketplace)
    orders.reject(marketplace.user_id, marketplace.merchant_id, order.order_id)
    with pytest.raises(AlreadyProcessedError):
        orders.reject(marketplace.user_id, marketplace.merchant_id, order.order_id)


def test_ready_requires_approval(orders, marketplace):
    order = add(orders, marketplace)
    with pytest.raises(ValidationError):
        orders.mark_ready(marketplace.user_id, marketplace.merchant_id, order.order_id)

    orders.approve(marketplace.user_id, marketplace.merchant_id, order.order_id)
    ready = orders.mark_ready(marketplace.user_id, marketplace.merchant_id, order.order_id)
    assert ready.status == OrderStatus.READY_TO_REDEEM


def test_cancel_restores_inventory(orders, store, marketplace, approved_order):
    order = approved_order(quantity=2)
    assert listing_quantity(store) == 8

    cancelled = orders.cancel(marketplace.user_id, marketplace.merchant_id, order.order_id)

    assert cancelled.status == OrderStatus.CANCELLED
    assert listing_quantity(store) == 10
    assert cart_entry(store, order.order_id)["status"] == "cancelled"


def test_cannot_change_an_order_being_settled(orders, store, marketplace, approved_order):
    order = approved_order()
    cart = store.get("users", marketplace.user_id)["cart"]
    cart[0]["settlementClaim"] = "claim"
    store.update("users", marketplace.user_id, {"cart": cart})

    with pytest.raises(ConflictError):
        orders.cancel(marketplace.user_id, marketplace.merchant_id, order.order_id)
    assert listing_quantity(store) == 9
