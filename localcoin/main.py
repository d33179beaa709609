from typing import Optional
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .access import require_account_access
from .cashout import CashoutService
from .config import Settings, settings
from .encryption import SeedCipher
from .errors import MarketplaceError, NotFoundError, ValidationError
from .firestore_store import create_store
from .issuance import IssuanceService
from .models import (
    AccountKind,
    AddToCartRequest,
    AppInfo,
    Caller,
    CartOrder,
    CashoutRequest,
    CashoutResult,
    CreateCashoutRequest,
    CreatePurchaseRequest,
    ErrorResponse,
    IssueSolRequest,
    OrderActionRequest,
    ProcessRequest,
    ReconcileRequest,
    RedeemOrderRequest,
    Role,
    SeedPhrase,
    SignatureResponse,
    TokenPurchaseRequest,
    WalletBalance,
    WalletCreated,
    WalletRequest,
)
from .notifications import EmailSender, create_email_sender
from .orders import OrderService
from .redemption import RedemptionService
from .solana_service import SolanaService, from_raw_amount
from .wallets import WalletService


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str, category: str, details: str) -> JSONResponse:
    body = ErrorResponse(error=message, category=category, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(
    app_settings: Settings = settings,
    store=None,
    chain: Optional[SolanaService] = None,
    mailer: Optional[EmailSender] = None,
) -> FastAPI:
    store = store if store is not None else create_store(app_settings)
    chain = chain or SolanaService(app_settings)
    mailer = mailer or create_email_sender(app_settings)

    wallets = WalletService(app_settings, store, SeedCipher(app_settings.encryption_secret))
    orders = OrderService(store)
    redemption = RedemptionService(app_settings, store, chain, wallets)
    cashout = CashoutService(app_settings, store, chain, wallets, mailer)
    issuance = IssuanceService(app_settings, store, chain, mailer)

    app = FastAPI(title=app_settings.app_name)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_api_key(x_api_key: str = Header(default="")) -> None:
        if app_settings.api_key and x_api_key != app_settings.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    def get_caller(
        x_caller_id: str = Header(default=""),
        x_caller_role: str = Header(default=""),
    ) -> Optional[Caller]:
        # No caller headers: the API-key holder is acting for the platform itself.
        if not x_caller_id and not x_caller_role:
            return None
        if not x_caller_id:
            raise HTTPException(status_code=400, detail="X-Caller-Id is required with X-Caller-Role")
        try:
            role = Role(x_caller_role or Role.USER.value)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Unknown caller role") from exc
        return Caller(account_id=x_caller_id, role=role)

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed [%s]: %s", request.method, request.url.path, exc.category, exc.message)
        else:
            logger.info("%s %s rejected [%s]: %s", request.method, request.url.path, exc.category, exc.message)
        return error_response(exc.status_code, exc.message, exc.category, exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return error_response(400, "Invalid request", ValidationError.category, problems)

    @app.get("/api/info", response_model=AppInfo)
    async def info() -> AppInfo:
        return AppInfo(
            chain_mode=app_settings.chain_mode,
            store_mode=app_settings.store_mode,
            token_mint_address=app_settings.token_mint_address,
            token_symbol=app_settings.token_symbol,
            commission_rate=app_settings.commission_rate,
            issuance_decimals=app_settings.issuance_decimals,
        )

    @app.get("/api/wallet/balance/{kind}/{account_id}", response_model=WalletBalance)
    def wallet_balance(
        kind: AccountKind,
        account_id: str,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> WalletBalance:
        require_account_access(caller, account_id)
        account = store.get(kind.collection, account_id)
        if account is None:
            raise NotFoundError(kind.value, account_id, f"{kind.value} not found")
        address = account.get("walletAddress")
        if not address:
            raise NotFoundError("wallet", account_id, "Wallet not found for this account.")
        raw = chain.get_token_balance(address)
        return WalletBalance(
            account_id=account_id,
            wallet_address=address,
            sol_lamports=chain.get_sol_balance(address),
            token_balance=from_raw_amount(raw, chain.get_mint_decimals()),
        )

    @app.post("/api/wallet/create", response_model=WalletCreated)
    def create_wallet(
        payload: WalletRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> WalletCreated:
        return wallets.provision(payload.account_id, payload.account_kind, caller)

    @app.post("/api/wallet/view-seed", response_model=SeedPhrase)
    def view_seed(
        payload: WalletRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> SeedPhrase:
        return wallets.retrieve_seed(payload.account_id, payload.account_kind, caller)

    @app.post("/api/cart/add", response_model=CartOrder)
    def add_to_cart(
        payload: AddToCartRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> CartOrder:
        return orders.add_to_cart(payload, caller)

    @app.post("/api/cart/ready", response_model=CartOrder)
    def mark_ready(
        payload: OrderActionRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> CartOrder:
        return orders.mark_ready(payload.user_id, payload.merchant_id, payload.order_id, caller)

    @app.post("/api/cart/cancel", response_model=CartOrder)
    def cancel_order(
        payload: OrderActionRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> CartOrder:
        return orders.cancel(payload.user_id, payload.merchant_id, payload.order_id, caller)

    @app.post("/api/merchant/orders/approve", response_model=CartOrder)
    def approve_order(
        payload: OrderActionRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> CartOrder:
        return orders.approve(payload.user_id, payload.merchant_id, payload.order_id, caller)

    @app.post("/api/merchant/orders/reject", response_model=CartOrder)
    def reject_order(
        payload: OrderActionRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> CartOrder:
        return orders.reject(payload.user_id, payload.merchant_id, payload.order_id, caller)

    @app.post("/api/merchant/redeem-order", response_model=SignatureResponse)
    def redeem_order(
        payload: RedeemOrderRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> SignatureResponse:
        signature = redemption.redeem(payload.order, caller)
        return SignatureResponse(transaction_signature=signature)

    @app.post("/api/merchant/cashout-requests", response_model=CashoutRequest)
    def create_cashout_request(
        payload: CreateCashoutRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> CashoutRequest:
        return cashout.create_request(payload.merchant_id, payload.amount, caller)

    @app.post("/api/admin/process-cashout-request", response_model=CashoutResult)
    def process_cashout_request(
        payload: ProcessRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> CashoutResult:
        return cashout.process(payload.request_id, caller)

    @app.post("/api/token-purchases", response_model=TokenPurchaseRequest)
    def create_token_purchase(
        payload: CreatePurchaseRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> TokenPurchaseRequest:
        return issuance.create_purchase_request(payload, caller)

    @app.post("/api/payments/card-webhook")
    async def card_webhook(request: Request, x_card_signature: str = Header(default="")):
        payload = await request.body()
        # Issuance blocks on chain confirmation.
        signature = await run_in_threadpool(
            issuance.confirm_card_payment, payload, x_card_signature or None
        )
        return {"received": True, "transactionSignature": signature}

    @app.post("/api/admin/process-token-request", response_model=SignatureResponse)
    def process_token_request(
        payload: ProcessRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> SignatureResponse:
        return issuance.process_bank_transfer(payload.request_id, caller)

    @app.post("/api/admin/reconcile-order", response_model=SignatureResponse)
    def reconcile_order(
        payload: ReconcileRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> SignatureResponse:
        signature = redemption.reconcile(payload, caller)
        return SignatureResponse(transaction_signature=signature)

    @app.post("/api/admin/release-order", response_model=CartOrder)
    def release_order(
        payload: OrderActionRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> CartOrder:
        return redemption.release(payload.user_id, payload.merchant_id, payload.order_id, caller)

    @app.post("/api/admin/release-cashout-request", response_model=CashoutRequest)
    def release_cashout_request(
        payload: ProcessRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> CashoutRequest:
        return cashout.release(payload.request_id, caller)

    @app.post("/api/admin/release-token-request", response_model=TokenPurchaseRequest)
    def release_token_request(
        payload: ProcessRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> TokenPurchaseRequest:
        return issuance.release(payload.request_id, caller)

    @app.post("/api/admin/issue-sol", response_model=SignatureResponse)
    def issue_sol(
        payload: IssueSolRequest,
        caller: Optional[Caller] = Depends(get_caller),
        _: None = Depends(require_api_key),
    ) -> SignatureResponse:
        return issuance.issue_fee_sol(payload.wallet_address, caller)

    return app


app = create_app()
