from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4
import logging
import secrets

from .access import require_merchant, require_account_access
from .config import utcnow
from .errors import AlreadyProcessedError, ConflictError, NotFoundError, ValidationError
from .models import (
    AddToCartRequest,
    Caller,
    CartOrder,
    Listing,
    OrderStatus,
    TERMINAL_ORDER_STATUSES,
    find_order,
)
from .state import ArrayUnion


logger = logging.getLogger(__name__)


def reserve_inventory(listings: List[Dict[str, Any]], listing_id: str, quantity: int) -> List[Dict[str, Any]]:
    updated = [dict(item) for item in listings]
    for item in updated:
        if item.get("id") != listing_id:
            continue
        if not item.get("active", True):
            raise ValidationError("Listing is not active")
        on_hand = item.get("quantity") or 0
        if on_hand < quantity:
            raise ValidationError(f"Only {on_hand} left in stock")
        item["quantity"] = on_hand - quantity
        return updated
    raise NotFoundError("listing", listing_id)


def restore_inventory(listings: List[Dict[str, Any]], listing_id: str, quantity: int) -> List[Dict[str, Any]]:
    updated = [dict(item) for item in listings]
    for item in updated:
        if item.get("id") == listing_id:
            item["quantity"] = (item.get("quantity") or 0) + quantity
            return updated
    logger.warning("Listing %s not found while restoring %s units", listing_id, quantity)
    return updated


def replace_order(orders: Optional[List[Dict[str, Any]]], order_id: str, updated: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [updated if entry.get("orderId") == order_id else entry for entry in orders or []]


def remove_order(orders: Optional[List[Dict[str, Any]]], order_id: str) -> List[Dict[str, Any]]:
    return [entry for entry in orders or [] if entry.get("orderId") != order_id]


def load_parties(transaction, user_id: str, merchant_id: str):
    buyer = transaction.get("users", user_id)
    if buyer is None:
        raise NotFoundError("user", user_id, "User not found")
    merchant = transaction.get("merchants", merchant_id)
    if merchant is None:
        raise NotFoundError("merchant", merchant_id, "Merchant not found")
    return buyer, merchant


class OrderService:
    """Cart lifecycle before settlement: reserve, approve, reject, ready, cancel."""

    def __init__(self, store) -> None:
        self.store = store

    def add_to_cart(self, request: AddToCartRequest, caller: Optional[Caller] = None) -> CartOrder:
        require_account_access(caller, request.user_id)
        order_id = request.order_id or uuid4().hex

        def write(transaction) -> CartOrder:
            buyer, merchant = load_parties(transaction, request.user_id, request.merchant_id)
            if find_order(buyer.get("cart"), order_id) or find_order(
                merchant.get("pendingOrders"), order_id
            ):
                raise ConflictError(f"Order {order_id} already exists")
            listings = merchant.get("listings") or []
            listing = next((item for item in listings if item.get("id") == request.listing_id), None)
            if listing is None:
                raise NotFoundError("listing", request.listing_id)
            updated_listings = reserve_inventory(listings, request.listing_id, request.quantity)

            item = Listing.model_validate(listing)
            order = CartOrder(
                order_id=order_id,
                user_id=request.user_id,
                user_name=buyer.get("name"),
                merchant_id=request.merchant_id,
                merchant_name=merchant.get("companyName") or merchant.get("name"),
                listing_id=request.listing_id,
                title=item.name,
                unit_price=item.price,
                price=round(item.price * request.quantity, 6),
                quantity=request.quantity,
                timestamp=utcnow(),
            )
            document = order.to_document()
            transaction.update("users", request.user_id, {"cart": ArrayUnion(document)})
            transaction.update(
                "merchants",
                request.merchant_id,
                {
                    "listings": updated_listings,
                    "pendingOrders": ArrayUnion(document),
                },
            )
            return order

        order = self.store.run_transaction(write)
        logger.info(
            "Order %s reserved %s x %s from merchant %s",
            order.order_id,
            order.quantity,
            order.listing_id,
            order.merchant_id,
        )
        return order

    def approve(self, user_id: str, merchant_id: str, order_id: str, caller: Optional[Caller] = None) -> CartOrder:
        require_merchant(caller, merchant_id)
        redeem_code = secrets.token_hex(4).upper()

        def change(entry: Dict[str, Any]) -> Dict[str, Any]:
            self._require_status(entry, {OrderStatus.PENDING_APPROVAL})
            return {**entry, "status": OrderStatus.APPROVED.value, "redeemCode": redeem_code}

        return self._transition(user_id, merchant_id, order_id, change, keep_pending=True)

    def mark_ready(self, user_id: str, merchant_id: str, order_id: str, caller: Optional[Caller] = None) -> CartOrder:
        require_account_access(caller, user_id)

        def change(entry: Dict[str, Any]) -> Dict[str, Any]:
            self._require_status(entry, {OrderStatus.APPROVED})
            return {**entry, "status": OrderStatus.READY_TO_REDEEM.value}

        return self._transition(user_id, merchant_id, order_id, change, keep_pending=True)

    def reject(self, user_id: str, merchant_id: str, order_id: str, caller: Optional[Caller] = None) -> CartOrder:
        require_merchant(caller, merchant_id)

        def change(entry: Dict[str, Any]) -> Dict[str, Any]:
            self._require_status(entry, {OrderStatus.PENDING_APPROVAL})
            return {**entry, "status": OrderStatus.REJECTED.value}

        return self._transition(user_id, merchant_id, order_id, change, keep_pending=False)

    def cancel(self, user_id: str, merchant_id: str, order_id: str, caller: Optional[Caller] = None) -> CartOrder:
        require_account_access(caller, user_id)

        def change(entry: Dict[str, Any]) -> Dict[str, Any]:
            self._require_status(
                entry,
                {OrderStatus.PENDING_APPROVAL, OrderStatus.APPROVED, OrderStatus.READY_TO_REDEEM},
            )
            return {**entry, "status": OrderStatus.CANCELLED.value}

        return self._transition(user_id, merchant_id, order_id, change, keep_pending=False)

    def _transition(
        self,
        user_id: str,
        merchant_id: str,
        order_id: str,
        change: Callable[[Dict[str, Any]], Dict[str, Any]],
        keep_pending: bool,
    ) -> CartOrder:
        def write(transaction) -> CartOrder:
            buyer, merchant = load_parties(transaction, user_id, merchant_id)
            entry = find_order(buyer.get("cart"), order_id)
            if entry is None:
                raise NotFoundError("order", order_id, "Order not found in cart")
            if entry.get("settlementClaim"):
                raise ConflictError("Order is being settled")
            updated = change(entry)
            transaction.update("users", user_id, {"cart": replace_order(buyer.get("cart"), order_id, updated)})

            if keep_pending:
                pending = merchant.get("pendingOrders") or []
                if find_order(pending, order_id) is None:
                    raise NotFoundError("order", order_id, "Order not found in pending orders")
                transaction.update(
                    "merchants", merchant_id, {"pendingOrders": replace_order(pending, order_id, updated)}
                )
            else:
                transaction.update(
                    "merchants",
                    merchant_id,
                    {
                        "pendingOrders": remove_order(merchant.get("pendingOrders"), order_id),
                        "recentTransactions": remove_order(merchant.get("recentTransactions"), order_id)
                        + [updated],
                        "listings": restore_inventory(
                            merchant.get("listings") or [], entry["listingId"], entry["quantity"]
                        ),
                    },
                )
            return CartOrder.model_validate(updated)

        order = self.store.run_transaction(write)
        logger.info("Order %s is now %s", order_id, order.status.value)
        return order

    def _require_status(self, entry: Dict[str, Any], allowed) -> None:
        status = OrderStatus(entry.get("status", OrderStatus.PENDING_APPROVAL.value))
        if status in TERMINAL_ORDER_STATUSES:
            raise AlreadyProcessedError(f"Order already {status.value}")
        if status not in allowed:
            raise ValidationError(f"Order cannot move from {status.value}")
