import pytest

from conftest import cart_entry, listing_quantity
from localcoin.errors import (
    AlreadyProcessedError,
    AuthorizationError,
    BookkeepingError,
    ChainServiceError,
    ChainTimeoutError,
    ConflictError,
    InsufficientFundsError,
    ValidationError,
)
from localcoin.models import Caller, OrderStatus, ReconcileRequest, Role


def land(ledger, signature, source, destination, amount):
    """Book a token transfer that confirmed after its sender gave up waiting."""
    ledger.token_accounts[source] -= amount
    ledger.token_accounts[destination] = ledger.token_accounts.get(destination, 0) + amount
    ledger.signatures.add(signature)
    ledger.transfers.append(
        {"kind": "token", "source": source, "destination": destination, "amount": amount, "signature": signature}
    )


def reconcile_request(marketplace, order, signature):
    return ReconcileRequest(
        user_id=marketplace.user_id,
        merchant_id=marketplace.merchant_id,
        order_id=order.order_id,
        transaction_signature=signature,
    )


def test_redeem_moves_tokens_and_completes_order(redemption, store, ledger, marketplace, approved_order):
    order = approved_order()

    signature = redemption.redeem(order, Caller(account_id=marketplace.merchant_id, role=Role.MERCHANT))

    assert ledger.token_balance(marketplace.buyer_address) == 500
    assert ledger.token_balance(marketplace.merchant_address) == 500
    assert ledger.account_payers[marketplace.merchant_address] == marketplace.buyer_address

    cart = store.get("users", marketplace.user_id)["cart"]
    matching = [entry for entry in cart if entry["orderId"] == order.order_id]
    assert len(matching) == 1
    assert matching[0]["status"] == "completed"
    assert matching[0]["transactionSignature"] == signature
    assert "settlementClaim" not in matching[0]

    merchant = store.get("merchants", marketplace.merchant_id)
    assert merchant["pendingOrders"] == []
    assert merchant["recentTransactions"][-1]["orderId"] == order.order_id
    assert merchant["walletBalance"] == 5.0
    assert store.get("users", marketplace.user_id)["walletBalance"] == 5.0


def test_ready_to_redeem_orders_are_redeemable(redemption, orders, marketplace, approved_order):
    order = approved_order()
    ready = orders.mark_ready(marketplace.user_id, marketplace.merchant_id, order.order_id)

    assert redemption.redeem(ready)


def test_insufficient_tokens_leave_order_untouched(redemption, store, ledger, marketplace, approved_order):
    order = approved_order(quantity=3)

    with pytest.raises(InsufficientFundsError) as excinfo:
        redemption.redeem(order)

    assert "User has 10.0, but requires 15.0" in excinfo.value.message
    assert ledger.transfers == []
    entry = cart_entry(store, order.order_id)
    assert entry["status"] == "approved"
    assert "transactionSignature" not in entry
    assert "settlementClaim" not in entry
    assert listing_quantity(store) == 7


def test_insufficient_sol_for_fees(redemption, ledger, marketplace, approved_order):
    ledger.lamports[marketplace.buyer_address] = 4_999
    order = approved_order()

    with pytest.raises(InsufficientFundsError):
        redemption.redeem(order)
    assert ledger.transfers == []


def test_chain_failure_marks_order_failed_and_restores_inventory(
    redemption, store, ledger, marketplace, approved_order
):
    before = listing_quantity(store)
    order = approved_order(quantity=2)
    assert listing_quantity(store) == before - 2
    ledger.fail_next = "Blockhash not found"

    with pytest.raises(ChainServiceError):
        redemption.redeem(order)

    assert listing_quantity(store) == before
    entry = cart_entry(store, order.order_id)
    assert entry["status"] == "failed"
    assert entry["error"] == "Blockhash not found"
    assert ledger.token_balance(marketplace.buyer_address) == 1000


def test_unconfirmed_transfer_keeps_claim(redemption, store, ledger, marketplace, approved_order):
    order = approved_order()
    ledger.timeout_next = True

    with pytest.raises(ChainTimeoutError) as excinfo:
        redemption.redeem(order)

    entry = cart_entry(store, order.order_id)
    assert entry["status"] == "approved"
    assert entry["transactionSignature"] == excinfo.value.signature
    assert entry["lastValidBlockHeight"] == excinfo.value.last_valid_block_height
    assert entry["settlementClaim"]
    assert listing_quantity(store) == 9

    with pytest.raises(ConflictError):
        redemption.redeem(order)


def test_concurrent_redemption_is_refused(redemption, chain, ledger, monkeypatch, approved_order):
    order = approved_order()
    transfer = chain.transfer_tokens
    second_attempt = []

    def transfer_while_another_request_arrives(*args, **kwargs):
        with pytest.raises(ConflictError):
            redemption.redeem(order)
        second_attempt.append(True)
        return transfer(*args, **kwargs)

    monkeypatch.setattr(chain, "transfer_tokens", transfer_while_another_request_arrives)
    redemption.redeem(order)

    assert second_attempt == [True]
    assert len(ledger.transfers) == 1


def test_completed_order_cannot_be_redeemed_again(redemption, ledger, approved_order):
    order = approved_order()
    redemption.redeem(order)

    with pytest.raises(AlreadyProcessedError):
        redemption.redeem(order)
    assert len(ledger.transfers) == 1


def test_unapproved_order_is_not_redeemable(redemption, orders, marketplace):
    from localcoin.models import AddToCartRequest

    order = orders.add_to_cart(
        AddToCartRequest(user_id=marketplace.user_id, merchant_id=marketplace.merchant_id, listing_id="bread")
    )
    with pytest.raises(ValidationError):
        redemption.redeem(order)


def test_caller_supplied_price_must_match(redemption, ledger, approved_order):
    order = approved_order()
    tampered = order.model_copy(update={"price": 0.01})

    with pytest.raises(ValidationError):
        redemption.redeem(tampered)
    assert ledger.transfers == []


def test_stranger_cannot_redeem(redemption, approved_order):
    order = approved_order()
    with pytest.raises(AuthorizationError):
        redemption.redeem(order, Caller(account_id="someone-else", role=Role.MERCHANT))


def test_bookkeeping_failure_is_reconciled(redemption, store, ledger, monkeypatch, marketplace, approved_order):
    order = approved_order()
    run_transaction = store.run_transaction
    calls = []

    def flaky(fn):
        calls.append(fn)
        if len(calls) == 2:
            raise RuntimeError("deadline exceeded")
        return run_transaction(fn)

    monkeypatch.setattr(store, "run_transaction", flaky)
    with pytest.raises(BookkeepingError):
        redemption.redeem(order)
    monkeypatch.setattr(store, "run_transaction", run_transaction)

    assert len(ledger.transfers) == 1
    assert cart_entry(store, order.order_id)["status"] == "approved"

    request = ReconcileRequest(
        user_id=marketplace.user_id,
        merchant_id=marketplace.merchant_id,
        order_id=order.order_id,
        transaction_signature=ledger.transfers[0]["signature"],
    )
    assert redemption.reconcile(request) == request.transaction_signature
    assert cart_entry(store, order.order_id)["status"] == "completed"
    # replaying is a no-op
    assert redemption.reconcile(request) == request.transaction_signature
    assert store.get("merchants", marketplace.merchant_id)["walletBalance"] == 5.0


def test_reconcile_requires_confirmed_signature(redemption, marketplace, approved_order):
    order = approved_order()
    request = ReconcileRequest(
        user_id=marketplace.user_id,
        merchant_id=marketplace.merchant_id,
        order_id=order.order_id,
        transaction_signature="unknown-signature",
    )
    with pytest.raises(ValidationError):
        redemption.reconcile(request)


def test_reconcile_is_admin_only(redemption, marketplace, approved_order):
    order = approved_order()
    request = ReconcileRequest(
        user_id=marketplace.user_id,
        merchant_id=marketplace.merchant_id,
        order_id=order.order_id,
        transaction_signature="sig",
    )
    with pytest.raises(AuthorizationError):
        redemption.reconcile(request, Caller(account_id=marketplace.merchant_id, role=Role.MERCHANT))


def test_timed_out_transfer_that_landed_can_be_reconciled(
    redemption, store, ledger, marketplace, approved_order
):
    order = approved_order()
    ledger.timeout_next = True
    with pytest.raises(ChainTimeoutError) as excinfo:
        redemption.redeem(order)
    land(ledger, excinfo.value.signature, marketplace.buyer_address, marketplace.merchant_address, 500)

    redemption.reconcile(
        ReconcileRequest(
            user_id=marketplace.user_id,
            merchant_id=marketplace.merchant_id,
            order_id=order.order_id,
            transaction_signature=excinfo.value.signature,
        )
    )

    entry = cart_entry(store, order.order_id)
    assert entry["status"] == OrderStatus.COMPLETED.value
    assert "settlementClaim" not in entry


def test_reconcile_rejects_confirmed_transaction_that_is_not_the_payment(
    redemption, store, ledger, marketplace, approved_order
):
    order = approved_order()
    fee_topup = ledger.transfer_lamports(marketplace.buyer_address, marketplace.merchant_address, 5_000)

    with pytest.raises(ValidationError):
        redemption.reconcile(reconcile_request(marketplace, order, fee_topup))

    assert cart_entry(store, order.order_id)["status"] == "approved"
    assert store.get("merchants", marketplace.merchant_id)["walletBalance"] == 0.0


def test_reconcile_rejects_token_transfer_of_another_amount(redemption, store, ledger, marketplace, approved_order):
    order = approved_order()
    ledger.create_token_account(marketplace.buyer_address, marketplace.merchant_address)
    partial = ledger.transfer_tokens(marketplace.buyer_address, marketplace.merchant_address, 100)

    with pytest.raises(ValidationError):
        redemption.reconcile(reconcile_request(marketplace, order, partial))
    assert cart_entry(store, order.order_id)["status"] == "approved"


def test_token_account_setup_timeout_frees_the_order(redemption, store, ledger, marketplace, approved_order):
    order = approved_order()
    ledger.timeout_account_creation = True

    with pytest.raises(ChainTimeoutError):
        redemption.redeem(order)

    entry = cart_entry(store, order.order_id)
    assert entry["status"] == "approved"
    assert entry["error"]
    assert "transactionSignature" not in entry
    assert "settlementClaim" not in entry
    assert ledger.transfers == []

    assert redemption.redeem(order)
    assert cart_entry(store, order.order_id)["status"] == "completed"


def test_release_waits_for_blockhash_expiry_then_allows_retry(
    redemption, store, ledger, marketplace, approved_order
):
    order = approved_order()
    ledger.timeout_next = True
    with pytest.raises(ChainTimeoutError) as excinfo:
        redemption.redeem(order)

    with pytest.raises(ConflictError):
        redemption.release(marketplace.user_id, marketplace.merchant_id, order.order_id)

    ledger.advance_blocks(excinfo.value.last_valid_block_height + 1)
    released = redemption.release(marketplace.user_id, marketplace.merchant_id, order.order_id)

    assert released.settlement_claim is None
    assert released.transaction_signature is None
    assert released.status == OrderStatus.APPROVED
    assert excinfo.value.signature in released.error

    signature = redemption.redeem(order)
    entry = cart_entry(store, order.order_id)
    assert entry["status"] == "completed"
    assert entry["transactionSignature"] == signature
    assert "lastValidBlockHeight" not in entry


def test_released_order_can_be_cancelled(redemption, orders, store, ledger, marketplace, approved_order):
    order = approved_order()
    ledger.timeout_next = True
    with pytest.raises(ChainTimeoutError):
        redemption.redeem(order)
    ledger.advance_blocks(1_000)

    redemption.release(marketplace.user_id, marketplace.merchant_id, order.order_id)
    cancelled = orders.cancel(marketplace.user_id, marketplace.merchant_id, order.order_id)

    assert cancelled.status == OrderStatus.CANCELLED
    assert listing_quantity(store) == 10


def test_release_refuses_a_transfer_that_landed(redemption, store, ledger, marketplace, approved_order):
    order = approved_order()
    ledger.timeout_next = True
    with pytest.raises(ChainTimeoutError) as excinfo:
        redemption.redeem(order)
    land(ledger, excinfo.value.signature, marketplace.buyer_address, marketplace.merchant_address, 500)
    ledger.advance_blocks(1_000)

    with pytest.raises(ConflictError):
        redemption.release(marketplace.user_id, marketplace.merchant_id, order.order_id)
    assert cart_entry(store, order.order_id)["settlementClaim"]


def test_release_needs_a_stuck_settlement(redemption, marketplace, approved_order):
    order = approved_order()
    with pytest.raises(ValidationError):
        redemption.release(marketplace.user_id, marketplace.merchant_id, order.order_id)
    with pytest.raises(AuthorizationError):
        redemption.release(
            marketplace.user_id,
            marketplace.merchant_id,
            order.order_id,
            Caller(account_id=marketplace.merchant_id, role=Role.MERCHANT),
        )
