from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4
import logging

from solders.keypair import Keypair

from .access import require_admin, require_merchant
from .config import Settings, utcnow
from .errors import (
    AlreadyProcessedError,
    BookkeepingError,
    ChainTimeoutError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from .models import Caller, CashoutRequest, CashoutResult, CashoutStatus
from .notifications import EmailSender, payout_statement
from .solana_service import SolanaService, to_raw_amount
from .wallets import WalletService, platform_keypair


logger = logging.getLogger(__name__)

COLLECTION = "merchantCashoutRequests"


def split_commission(amount: float, rate: float) -> Tuple[float, float]:
    gross = Decimal(str(amount))
    commission = gross * Decimal(str(rate))
    return float(commission), float(gross - commission)


class CashoutService:
    def __init__(
        self,
        settings: Settings,
        store,
        chain: SolanaService,
        wallets: WalletService,
        mailer: EmailSender,
    ) -> None:
        self.settings = settings
        self.store = store
        self.chain = chain
        self.wallets = wallets
        self.mailer = mailer

    def create_request(self, merchant_id: str, amount: float, caller: Optional[Caller] = None) -> CashoutRequest:
        require_merchant(caller, merchant_id)
        if amount <= 0:
            raise ValidationError("Cash-out amount must be positive")
        merchant = self.store.get("merchants", merchant_id)
        if merchant is None:
            raise NotFoundError("merchant", merchant_id, "Merchant not found")
        if not merchant.get("walletAddress"):
            raise ValidationError("Merchant wallet address not found")
        request_id = self.store.add(
            COLLECTION,
            {
                "merchantId": merchant_id,
                "merchantName": merchant.get("companyName"),
                "merchantWalletAddress": merchant["walletAddress"],
                "amount": float(amount),
                "status": CashoutStatus.PENDING.value,
                "createdAt": utcnow().isoformat(),
            },
        )
        logger.info("Cash-out request %s created for merchant %s (%s)", request_id, merchant_id, amount)
        return self.get_request(request_id)

    def get_request(self, request_id: str) -> CashoutRequest:
        data = self.store.get(COLLECTION, request_id)
        if data is None:
            raise NotFoundError("cashout request", request_id, "Request not found")
        return CashoutRequest.model_validate({**data, "id": request_id})

    def process(self, request_id: str, caller: Optional[Caller] = None) -> CashoutResult:
        require_admin(caller)
        request = self.get_request(request_id)
        if request.status != CashoutStatus.PENDING:
            raise AlreadyProcessedError(f"Request already {request.status.value}")
        platform = platform_keypair(self.settings)
        self._claim(request_id)

        transferring = False
        try:
            merchant, merchant_keypair, raw_amount, decimals = self._prepare(request, platform)
            transferring = True
            result = self.chain.transfer_tokens(merchant_keypair, str(platform.pubkey()), raw_amount, decimals)
        except ChainTimeoutError as exc:
            if not transferring:
                logger.error("Cash-out %s token account setup unconfirmed: %s", request_id, exc)
                self._mark(request_id, {"error": exc.message, "settlementClaim": None})
                raise
            logger.error("Cash-out %s transfer unconfirmed (signature %s)", request_id, exc.signature)
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
            logger.warning("Cash-out %s failed: %s", request_id, exc)
            self._mark(
                request_id,
                {
                    "status": CashoutStatus.DENIED.value,
                    "processedAt": utcnow().isoformat(),
                    "error": str(exc),
                    "settlementClaim": None,
                },
            )
            raise

        signature = result.signature
        logger.info("Cash-out transfer signature: %s", signature)
        commission, net_payout = split_commission(request.amount, self.settings.commission_rate)
        try:
            self.store.update(
                COLLECTION,
                request_id,
                {
                    "status": CashoutStatus.APPROVED.value,
                    "processedAt": utcnow().isoformat(),
                    "transactionSignature": signature,
                    "commission": commission,
                    "netPayout": net_payout,
                    "settlementClaim": None,
                    "lastValidBlockHeight": None,
                    "error": None,
                },
            )
        except Exception as exc:
            logger.critical(
                "Cash-out %s transferred (%s) but request was not updated", request_id, signature, exc_info=True
            )
            raise BookkeepingError(
                f"Transfer {signature} confirmed but cash-out request was not updated", details=str(exc)
            ) from exc

        logger.info(
            "Cash-out %s approved: gross=%s commission=%s net=%s sig=%s",
            request_id,
            request.amount,
            commission,
            net_payout,
            signature,
        )
        self._notify(merchant, request, commission, net_payout)
        return CashoutResult(
            transaction_signature=signature,
            amount=request.amount,
            commission=commission,
            net_payout=net_payout,
        )

    def _claim(self, request_id: str) -> None:
        def write(transaction) -> None:
            data = transaction.get(COLLECTION, request_id)
            if data is None:
                raise NotFoundError("cashout request", request_id, "Request not found")
            status = data.get("status", CashoutStatus.PENDING.value)
            if status != CashoutStatus.PENDING.value:
                raise AlreadyProcessedError(f"Request already {status}")
            if data.get("settlementClaim"):
                raise ConflictError("Request is already being processed")
            transaction.update(COLLECTION, request_id, {"settlementClaim": uuid4().hex})

        self.store.run_transaction(write)

    def _prepare(self, request: CashoutRequest, platform: Keypair) -> Tuple[Dict[str, Any], Keypair, int, int]:
        if request.amount <= 0:
            raise ValidationError("Cash-out amount must be positive")
        merchant = self.store.get("merchants", request.merchant_id)
        if merchant is None:
            raise NotFoundError("merchant", request.merchant_id, "Merchant document not found")
        if not merchant.get("seedPhrase"):
            raise ValidationError("Merchant seed phrase not found. Cannot authorize transfer.")
        if not (merchant.get("contactEmail") or merchant.get("email")):
            raise ValidationError("Merchant contact email not found, cannot send notification.")

        merchant_keypair = self.wallets.signing_keypair(merchant)
        decimals = self.chain.get_mint_decimals()
        raw_amount = to_raw_amount(request.amount, decimals)
        self.chain.ensure_token_account(merchant_keypair, str(merchant_keypair.pubkey()))
        self.chain.ensure_token_account(platform, str(platform.pubkey()))
        return merchant, merchant_keypair, raw_amount, decimals

    def release(self, request_id: str, caller: Optional[Caller] = None) -> CashoutRequest:
        require_admin(caller)
        request = self.get_request(request_id)
        if request.status != CashoutStatus.PENDING:
            raise AlreadyProcessedError(f"Request already {request.status.value}")
        if not request.settlement_claim:
            raise ValidationError("Request is not being processed")
        if not request.transaction_signature and not request.error:
            raise ConflictError("Cash-out is still in progress")
        self.chain.require_abandoned(request.transaction_signature, request.last_valid_block_height)

        claim = request.settlement_claim
        signature = request.transaction_signature

        def write(transaction) -> None:
            data = transaction.get(COLLECTION, request_id)
            if data is None or data.get("settlementClaim") != claim:
                raise ConflictError("Cash-out changed while releasing")
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
        logger.warning("Released cash-out %s for retry (abandoned signature %s)", request_id, signature)
        return self.get_request(request_id)

    def _mark(self, request_id: str, fields: Dict[str, Any]) -> None:
        try:
            self.store.update(COLLECTION, request_id, fields)
        except Exception:
            logger.error("Failed to update cash-out request %s after error", request_id, exc_info=True)

    def _notify(self, merchant: Dict[str, Any], request: CashoutRequest, commission: float, net_payout: float) -> None:
        subject, html = payout_statement(
            self.settings,
            merchant.get("companyName") or merchant.get("name") or "Merchant",
            request.id,
            request.amount,
            commission,
            net_payout,
        )
        try:
            self.mailer.send(merchant.get("contactEmail") or merchant["email"], subject, html)
        except Exception:
            logger.error("Payout notification for cash-out %s failed", request.id, exc_info=True)
