from typing import Any, Dict, Optional, Tuple
from uuid import uuid4
import logging

from solders.keypair import Keypair

from .access import require_admin, require_order_party
from .config import Settings, utcnow
from .errors import (
    AlreadyProcessedError,
    BookkeepingError,
    ChainTimeoutError,
    ConflictError,
    InsufficientFundsError,
    MarketplaceError,
    NotFoundError,
    ValidationError,
)
from .models import (
    Caller,
    CartOrder,
    OrderStatus,
    REDEEMABLE_ORDER_STATUSES,
    ReconcileRequest,
    TERMINAL_ORDER_STATUSES,
    find_order,
)
from .orders import load_parties, remove_order, replace_order, restore_inventory
from .solana_service import SolanaService, from_raw_amount, to_raw_amount
from .wallets import WalletService


logger = logging.getLogger(__name__)


class RedemptionService:
    def __init__(
        self,
        settings: Settings,
        store,
        chain: SolanaService,
        wallets: WalletService,
    ) -> None:
        self.settings = settings
        self.store = store
        self.chain = chain
        self.wallets = wallets

    def redeem(self, order: CartOrder, caller: Optional[Caller] = None) -> str:
        require_order_party(caller, order)
        buyer, merchant, stored = self._load_and_validate(order)

        buyer_keypair = self.wallets.signing_keypair(buyer)
        merchant_address = merchant["walletAddress"]
        decimals = self.chain.get_mint_decimals()
        raw_amount = to_raw_amount(stored.price, decimals)
        self._check_balances(buyer_keypair, raw_amount, decimals, stored.price)

        claim = self._claim(stored)
        transferring = False
        try:
            self.chain.ensure_token_account(buyer_keypair, merchant_address)
            transferring = True
            result = self.chain.transfer_tokens(buyer_keypair, merchant_address, raw_amount, decimals)
        except ChainTimeoutError as exc:
            if not transferring:
                # Only the token account setup is in doubt; no tokens were sent.
                logger.error("Token account setup for order %s unconfirmed: %s", stored.order_id, exc)
                self._release_after_error(stored, claim, exc.message)
                raise
            logger.error(
                "Redemption transfer for order %s unconfirmed (signature %s): %s",
                stored.order_id,
                exc.signature,
                exc,
            )
            self._record_unconfirmed(stored, claim, exc)
            raise
        except MarketplaceError as exc:
            logger.warning("Redemption transfer for order %s failed: %s", stored.order_id, exc)
            self._compensate(stored, claim, exc.message)
            raise

        logger.info("Redemption transfer for order %s confirmed: %s", stored.order_id, result.signature)
        self._commit(stored, result.signature)
        return result.signature

    def reconcile(self, request: ReconcileRequest, caller: Optional[Caller] = None) -> str:
        require_admin(caller)
        buyer, merchant, stored = self._load_stored(request.user_id, request.merchant_id, request.order_id)
        signature = request.transaction_signature
        if stored.status == OrderStatus.COMPLETED:
            if stored.transaction_signature == signature:
                return signature
            raise AlreadyProcessedError("Order already completed with another transaction")
        if stored.status in TERMINAL_ORDER_STATUSES:
            raise AlreadyProcessedError(f"Order already {stored.status.value}")
        if not buyer.get("walletAddress") or not merchant.get("walletAddress"):
            raise ValidationError("Order parties have no wallet addresses")
        if not self.chain.is_confirmed(signature):
            raise ValidationError("Transaction is not confirmed on-chain")
        raw_amount = to_raw_amount(stored.price, self.chain.get_mint_decimals())
        if not self.chain.verify_token_transfer(
            signature, buyer["walletAddress"], merchant["walletAddress"], raw_amount
        ):
            raise ValidationError("Transaction is not the token transfer for this order")

        self._commit(stored, signature)
        logger.info("Reconciled order %s with transaction %s", stored.order_id, signature)
        return signature

    def release(self, user_id: str, merchant_id: str, order_id: str, caller: Optional[Caller] = None) -> CartOrder:
        require_admin(caller)
        _, _, stored = self._load_stored(user_id, merchant_id, order_id)
        if stored.status in TERMINAL_ORDER_STATUSES:
            raise AlreadyProcessedError(f"Order already {stored.status.value}")
        if not stored.settlement_claim:
            raise ValidationError("Order is not being settled")
        if not stored.transaction_signature and not stored.error:
            raise ConflictError("Order settlement is still in progress")
        self.chain.require_abandoned(stored.transaction_signature, stored.last_valid_block_height)

        if stored.transaction_signature:
            error = f"Transfer {stored.transaction_signature} expired unconfirmed"
        else:
            error = stored.error
        released = self._clear_claim(stored, stored.settlement_claim, error)
        if released is None:
            raise ConflictError("Order settlement changed while releasing")
        logger.warning("Released settlement claim on order %s: %s", order_id, error)
        return CartOrder.model_validate(released)

    def _load_stored(
        self, user_id: str, merchant_id: str, order_id: str
    ) -> Tuple[Dict[str, Any], Dict[str, Any], CartOrder]:
        buyer = self.store.get("users", user_id)
        if buyer is None:
            raise NotFoundError("user", user_id, "User not found")
        entry = find_order(buyer.get("cart"), order_id)
        if entry is None:
            raise NotFoundError("order", order_id, "Order not found in cart")
        stored = CartOrder.model_validate(entry)
        if stored.merchant_id != merchant_id:
            raise ValidationError("Order belongs to a different merchant")
        merchant = self.store.get("merchants", merchant_id)
        if merchant is None:
            raise NotFoundError("merchant", merchant_id, "Merchant not found")
        return buyer, merchant, stored

    def _load_and_validate(self, order: CartOrder) -> Tuple[Dict[str, Any], Dict[str, Any], CartOrder]:
        buyer = self.store.get("users", order.user_id)
        if buyer is None:
            raise NotFoundError("user", order.user_id, "User not found")
        merchant = self.store.get("merchants", order.merchant_id)
        if merchant is None:
            raise NotFoundError("merchant", order.merchant_id, "Merchant not found")
        if not buyer.get("seedPhrase"):
            raise ValidationError("User seed phrase not found")
        if not merchant.get("walletAddress"):
            raise ValidationError("Merchant wallet address not found")
        if order.price <= 0:
            raise ValidationError("Invalid order price")

        entry = find_order(buyer.get("cart"), order.order_id)
        if entry is None:
            raise NotFoundError("order", order.order_id, "Order not found in cart")
        stored = CartOrder.model_validate(entry)
        self._check_redeemable(stored)
        if (
            stored.merchant_id != order.merchant_id
            or stored.listing_id != order.listing_id
            or stored.quantity != order.quantity
            or abs(stored.price - order.price) > 1e-9
        ):
            raise ValidationError("Order details do not match the stored order")
        return buyer, merchant, stored

    def _check_redeemable(self, stored: CartOrder) -> None:
        if stored.status in TERMINAL_ORDER_STATUSES:
            raise AlreadyProcessedError(f"Order already {stored.status.value}")
        if stored.settlement_claim:
            raise ConflictError("Order is already being settled")
        if stored.status not in REDEEMABLE_ORDER_STATUSES:
            raise ValidationError("Order has not been approved by the merchant")

    def _check_balances(self, keypair: Keypair, raw_amount: int, decimals: int, price: float) -> None:
        address = str(keypair.pubkey())
        lamports = self.chain.get_sol_balance(address)
        if lamports < self.settings.min_fee_lamports:
            raise InsufficientFundsError(
                f"Insufficient SOL for transaction fees. Wallet has {lamports} lamports, "
                f"requires {self.settings.min_fee_lamports}."
            )
        balance = self.chain.get_token_balance(address)
        if balance < raw_amount:
            raise InsufficientFundsError(
                f"Insufficient funds. User has {from_raw_amount(balance, decimals)}, "
                f"but requires {price}."
            )

    def _claim(self, stored: CartOrder) -> str:
        claim = uuid4().hex

        def write(transaction) -> None:
            buyer = transaction.get("users", stored.user_id)
            if buyer is None:
                raise NotFoundError("user", stored.user_id, "User not found")
            entry = find_order(buyer.get("cart"), stored.order_id)
            if entry is None:
                raise NotFoundError("order", stored.order_id, "Order not found in cart")
            self._check_redeemable(CartOrder.model_validate(entry))
            claimed = {**entry, "settlementClaim": claim}
            transaction.update(
                "users", stored.user_id, {"cart": replace_order(buyer.get("cart"), stored.order_id, claimed)}
            )

        self.store.run_transaction(write)
        return claim

    def _commit(self, stored: CartOrder, signature: str) -> None:
        def write(transaction) -> None:
            buyer, merchant = load_parties(transaction, stored.user_id, stored.merchant_id)
            entry = find_order(buyer.get("cart"), stored.order_id)
            if entry is None:
                raise NotFoundError("order", stored.order_id, "Order vanished from cart")
            if entry.get("status") == OrderStatus.COMPLETED.value:
                if entry.get("transactionSignature") == signature:
                    return
                raise AlreadyProcessedError("Order already completed with another transaction")

            completed = {
                **entry,
                "status": OrderStatus.COMPLETED.value,
                "transactionSignature": signature,
                "redeemedAt": utcnow().isoformat(),
            }
            for key in ("settlementClaim", "lastValidBlockHeight", "error"):
                completed.pop(key, None)

            transaction.update(
                "users",
                stored.user_id,
                {
                    "cart": replace_order(buyer.get("cart"), stored.order_id, completed),
                    "walletBalance": round((buyer.get("walletBalance") or 0) - stored.price, 6),
                },
            )
            transaction.update(
                "merchants",
                stored.merchant_id,
                {
                    "pendingOrders": remove_order(merchant.get("pendingOrders"), stored.order_id),
                    "recentTransactions": remove_order(
                        merchant.get("recentTransactions"), stored.order_id
                    )
                    + [completed],
                    "walletBalance": round((merchant.get("walletBalance") or 0) + stored.price, 6),
                },
            )

        try:
            self.store.run_transaction(write)
        except Exception as exc:
            logger.critical(
                "Transfer %s for order %s confirmed but bookkeeping failed; reconcile required",
                signature,
                stored.order_id,
                exc_info=True,
            )
            raise BookkeepingError(
                f"Transfer {signature} confirmed but order records were not updated",
                details=str(exc),
            ) from exc

    def _compensate(self, stored: CartOrder, claim: str, error: str) -> None:
        def write(transaction) -> None:
            buyer = transaction.get("users", stored.user_id)
            merchant = transaction.get("merchants", stored.merchant_id)
            if buyer is None or merchant is None:
                return
            entry = find_order(buyer.get("cart"), stored.order_id)
            if entry is None or entry.get("settlementClaim") != claim:
                return
            failed = {**entry, "status": OrderStatus.FAILED.value, "error": error}
            failed.pop("settlementClaim", None)
            transaction.update(
                "users", stored.user_id, {"cart": replace_order(buyer.get("cart"), stored.order_id, failed)}
            )
            transaction.update(
                "merchants",
                stored.merchant_id,
                {
                    "pendingOrders": remove_order(merchant.get("pendingOrders"), stored.order_id),
                    "recentTransactions": remove_order(
                        merchant.get("recentTransactions"), stored.order_id
                    )
                    + [failed],
                    "listings": restore_inventory(
                        merchant.get("listings") or [], entry["listingId"], entry["quantity"]
                    ),
                },
            )

        try:
            self.store.run_transaction(write)
            logger.info("Order %s marked failed and inventory restored", stored.order_id)
        except Exception:
            logger.error(
                "Failed to update order %s after redemption error", stored.order_id, exc_info=True
            )

    def _clear_claim(self, stored: CartOrder, claim: str, error: Optional[str]) -> Optional[Dict[str, Any]]:
        def write(transaction) -> Optional[Dict[str, Any]]:
            buyer = transaction.get("users", stored.user_id)
            if buyer is None:
                return None
            entry = find_order(buyer.get("cart"), stored.order_id)
            if entry is None or entry.get("settlementClaim") != claim:
                return None
            released = {**entry, "error": error}
            for key in ("settlementClaim", "transactionSignature", "lastValidBlockHeight"):
                released.pop(key, None)
            transaction.update(
                "users", stored.user_id, {"cart": replace_order(buyer.get("cart"), stored.order_id, released)}
            )
            return released

        return self.store.run_transaction(write)

    def _release_after_error(self, stored: CartOrder, claim: str, error: str) -> None:
        try:
            self._clear_claim(stored, claim, error)
        except Exception:
            logger.error("Failed to release claim on order %s", stored.order_id, exc_info=True)

    def _record_unconfirmed(self, stored: CartOrder, claim: str, exc: ChainTimeoutError) -> None:
        def write(transaction) -> None:
            buyer = transaction.get("users", stored.user_id)
            if buyer is None:
                return
            entry = find_order(buyer.get("cart"), stored.order_id)
            if entry is None or entry.get("settlementClaim") != claim:
                return
            noted = {
                **entry,
                "transactionSignature": exc.signature,
                "lastValidBlockHeight": exc.last_valid_block_height,
                "error": exc.message,
            }
            transaction.update(
                "users", stored.user_id, {"cart": replace_order(buyer.get("cart"), stored.order_id, noted)}
            )

        try:
            self.store.run_transaction(write)
        except Exception:
            logger.error(
                "Failed to record unconfirmed transfer for order %s", stored.order_id, exc_info=True
            )
