from typing import Any, Dict, Optional
from uuid import uuid4
import hashlib
import hmac
import json
import logging

from .access import require_account_access, require_admin
from .config import Settings, utcnow
from .errors import (
    AlreadyProcessedError,
    AuthorizationError,
    BookkeepingError,
    ChainTimeoutError,
    ConfigurationError,
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from .models import (
    Caller,
    CardPaymentEvent,
    CreatePurchaseRequest,
    PurchaseStatus,
    SignatureResponse,
    TokenPurchaseRequest,
)
from .notifications import EmailSender, purchase_invoice
from .solana_service import SolanaService, from_raw_amount, to_raw_amount
from .wallets import issuer_keypair, platform_keypair


logger = logging.getLogger(__name__)

COLLECTION = "tokenPurchaseRequests"

CARD_PAYMENT_SUCCEEDED = "succeeded"
CARD_PAYMENT_FAILED = "failed"


def sign_card_payload(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class IssuanceService:
    def __init__(
        self,
        settings: Settings,
        store,
        chain: SolanaService,
        mailer: EmailSender,
    ) -> None:
        self.settings = settings
        self.store = store
        self.chain = chain
        self.mailer = mailer

    def create_purchase_request(
        self, request: CreatePurchaseRequest, caller: Optional[Caller] = None
    ) -> TokenPurchaseRequest:
        require_account_access(caller, request.user_id)
        user = self.store.get("users", request.user_id)
        if user is None:
            raise NotFoundError("user", request.user_id, "User not found")
        if not user.get("walletAddress"):
            raise ValidationError("Create a wallet before buying tokens")

        request_id = self.store.add(
            COLLECTION,
            {
                "userId": request.user_id,
                "userName": user.get("name"),
                "userWalletAddress": user["walletAddress"],
                "amount": float(request.amount),
                "currency": request.currency,
                "paymentMethod": request.payment_method.value,
                "status": PurchaseStatus.PENDING.value,
                "createdAt": utcnow().isoformat(),
            },
        )
        logger.info(
            "Token purchase %s created for user %s: %s %s via %s",
            request_id,
            request.user_id,
            request.amount,
            request.currency,
            request.payment_method.value,
        )
        return self.get_request(request_id)

    def get_request(self, request_id: str) -> TokenPurchaseRequest:
        data = self.store.get(COLLECTION, request_id)
        if data is None:
            raise NotFoundError("token purchase", request_id, "Request not found")
        return TokenPurchaseRequest.model_validate({**data, "id": request_id})

    def process_bank_transfer(self, request_id: str, caller: Optional[Caller] = None) -> SignatureResponse:
        require_admin(caller)
        return SignatureResponse(transaction_signature=self.issue(request_id))

    def confirm_card_payment(self, payload: bytes, signature: Optional[str]) -> Optional[str]:
        secret = self.settings.card_webhook_secret
        if not secret:
            raise ConfigurationError("Card payments are not configured on the server.")
        expected = sign_card_payload(secret, payload)
        if not signature or not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            raise AuthorizationError("Invalid card payment signature")

        try:
            event = CardPaymentEvent.model_validate(json.loads(payload))
        except ValueError as exc:
            raise ValidationError("Malformed card payment event", details=str(exc)) from exc

        request = self.get_request(event.request_id)
        if request.status != PurchaseStatus.PENDING:
            raise AlreadyProcessedError(f"Request already {request.status.value}")
        self.store.update(COLLECTION, event.request_id, {"paymentReference": event.payment_reference})
        if event.status == CARD_PAYMENT_FAILED:
            self.store.update(
                COLLECTION,
                event.request_id,
                {"status": PurchaseStatus.FAILED.value, "error": "Card payment failed"},
            )
            logger.info("Card payment for purchase %s failed", event.request_id)
            return None
        if event.status != CARD_PAYMENT_SUCCEEDED:
            logger.info("Ignoring card event %s for purchase %s", event.status, event.request_id)
            return None
        return self.issue(event.request_id)

    def issue(self, request_id: str) -> str:
        request = self.get_request(request_id)
        if request.status != PurchaseStatus.PENDING:
            raise AlreadyProcessedError(f"Request already {request.status.value}")
        if request.amount <= 0:
            raise ValidationError("Purchase amount must be positive")
        if not request.user_wallet_address:
            raise ValidationError("Purchase request has no destination wallet")

        issuer = issuer_keypair(self.settings)
        issuer_address = str(issuer.pubkey())
        decimals = self.settings.issuance_decimals
        raw_amount = to_raw_amount(request.amount, decimals)

        balance = self.chain.get_token_balance(issuer_address)
        if balance < raw_amount:
            raise InsufficientFundsError(
                f"Insufficient issuer token balance. On-chain balance is "
                f"{from_raw_amount(balance, decimals)}, requested amount is {request.amount}."
            )

        self._claim(request_id)
        transferring = False
        try:
            self.chain.ensure_token_account(issuer, issuer_address)
            self.chain.ensure_token_account(issuer, request.user_wallet_address)
            transferring = True
            result = self.chain.transfer_tokens(issuer, request.user_wallet_address, raw_amount, decimals)
        except ChainTimeoutError as exc:
            if not transferring:
                logger.error("Issuance %s token account setup unconfirmed: %s", request_id, exc)
                self._mark(request_id, {"error": exc.message, "settlementClaim": None})
                raise
            logger.error("Issuance %s unconfirmed (signature %s)", request_id, exc.signature)
            self._mark(
                request_id,
                {
                    "error": exc.message,
                    "transactionSignature": exc.signature,
                    "lastValidBlockHeight": exc.last_valid_block_height,
                },
            )
            raise
        except Exception as exc:
            logger.warning("Issuance %s failed: %s", request_id, exc)
            self._mark(
                request_id,
                {
                    "status": PurchaseStatus.FAILED.value,
                    "processedAt": utcnow().isoformat(),
                    "error": str(exc),
                    "settlementClaim": None,
                },
            )
            raise

        signature = result.signature
        try:
            self.store.update(
                COLLECTION,
                request_id,
                {
                    "status": PurchaseStatus.COMPLETED.value,
                    "processedAt": utcnow().isoformat(),
                    "transactionSignature": signature,
                    "settlementClaim": None,
                    "lastValidBlockHeight": None,
                    "error": None,
                },
            )
        except Exception as exc:
            logger.critical(
                "Issuance %s transferred (%s) but request was not updated", request_id, signature, exc_info=True
            )
            raise BookkeepingError(
                f"Transfer {signature} confirmed but purchase request was not updated", details=str(exc)
            ) from exc

        logger.info(
            "Issued %s tokens to %s for purchase %s: %s",
            request.amount,
            request.user_wallet_address,
            request_id,
            signature,
        )
        self._send_invoice(request)
        return signature

    def release(self, request_id: str, caller: Optional[Caller] = None) -> TokenPurchaseRequest:
        require_admin(caller)
        request = self.get_request(request_id)
        if request.status != PurchaseStatus.PENDING:
            raise AlreadyProcessedError(f"Request already {request.status.value}")
        if not request.settlement_claim:
            raise ValidationError("Request is not being processed")
        if not request.transaction_signature and not request.error:
            raise ConflictError("Issuance is still in progress")
        self.chain.require_abandoned(request.transaction_signature, request.last_valid_block_height)

        claim = request.settlement_claim
        signature = request.transaction_signature

        def write(transaction) -> None:
            data = transaction.get(COLLECTION, request_id)
            if data is None or data.get("settlementClaim") != claim:
                raise ConflictError("Purchase request changed while releasing")
            transaction.update(
                COLLECTION,
                request_id,
                {
                    "settlementClaim": None,
                    "transactionSignature": None,
                    "lastValidBlockHeight": None,
                    "error": f"Transfer {signature} expired unconfirmed" if signature else request.error,
                },
            )

        self.store.run_transaction(write)
        logger.warning("Released purchase %s for retry (abandoned signature %s)", request_id, signature)
        return self.get_request(request_id)

    def issue_fee_sol(self, wallet_address: str, caller: Optional[Caller] = None) -> SignatureResponse:
        require_admin(caller)
        platform = platform_keypair(self.settings)
        result = self.chain.transfer_sol(platform, wallet_address, self.settings.fee_topup_lamports)
        logger.info("Sent %s lamports to %s: %s", self.settings.fee_topup_lamports, wallet_address, result.signature)
        return SignatureResponse(transaction_signature=result.signature)

    def _claim(self, request_id: str) -> None:
        def write(transaction) -> None:
            data = transaction.get(COLLECTION, request_id)
            if data is None:
                raise NotFoundError("token purchase", request_id, "Request not found")
            status = data.get("status", PurchaseStatus.PENDING.value)
            if status != PurchaseStatus.PENDING.value:
                raise AlreadyProcessedError(f"Request already {status}")
            if data.get("settlementClaim"):
                raise ConflictError("Request is already being processed")
            transaction.update(COLLECTION, request_id, {"settlementClaim": uuid4().hex})

        self.store.run_transaction(write)

    def _mark(self, request_id: str, fields: Dict[str, Any]) -> None:
        try:
            self.store.update(COLLECTION, request_id, fields)
        except Exception:
            logger.error("Failed to update purchase request %s after error", request_id, exc_info=True)

    def _send_invoice(self, request: TokenPurchaseRequest) -> None:
        user = self.store.get("users", request.user_id) or {}
        email = user.get("email")
        if not email:
            logger.warning("No email on file for user %s; invoice for %s not sent", request.user_id, request.id)
            return
        subject, html = purchase_invoice(
            self.settings, user.get("name") or request.user_name, request.id, request.amount
        )
        try:
            self.mailer.send(email, subject, html)
        except Exception:
            logger.error("Invoice email for purchase %s failed", request.id, exc_info=True)
