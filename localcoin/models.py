from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class AccountKind(str, Enum):
    USER = "user"
    MERCHANT = "merchant"

    @property
    def collection(self) -> str:
        return "users" if self is AccountKind.USER else "merchants"


class Role(str, Enum):
    USER = "user"
    MERCHANT = "merchant"
    ADMIN = "admin"


class OrderStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    READY_TO_REDEEM = "ready_to_redeem"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_ORDER_STATUSES = {
    OrderStatus.COMPLETED,
    OrderStatus.REJECTED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
}
REDEEMABLE_ORDER_STATUSES = {OrderStatus.APPROVED, OrderStatus.READY_TO_REDEEM}


class CashoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class Caller(BaseModel):
    """Identity of whoever invokes a service, checked against the resource it touches."""

    account_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Listing(CamelModel):
    id: str
    name: str
    price: float
    category: str = ""
    quantity: int = 0
    active: bool = True
    description: Optional[str] = None


class CartOrder(CamelModel):
    order_id: str
    user_id: str
    user_name: Optional[str] = None
    merchant_id: str
    merchant_name: Optional[str] = None
    listing_id: str
    title: Optional[str] = None
    unit_price: Optional[float] = None
    price: float
    quantity: int = Field(default=1, ge=1)
    status: OrderStatus = OrderStatus.PENDING_APPROVAL
    redeem_code: Optional[str] = None
    transaction_signature: Optional[str] = None
    error: Optional[str] = None
    redeemed_at: Optional[datetime] = None
    timestamp: Optional[datetime] = None
    settlement_claim: Optional[str] = None
    last_valid_block_height: Optional[int] = None


class CashoutRequest(CamelModel):
    id: str
    merchant_id: str
    merchant_name: Optional[str] = None
    merchant_wallet_address: Optional[str] = None
    amount: float
    status: CashoutStatus = CashoutStatus.PENDING
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    transaction_signature: Optional[str] = None
    commission: Optional[float] = None
    net_payout: Optional[float] = None
    error: Optional[str] = None
    settlement_claim: Optional[str] = None
    last_valid_block_height: Optional[int] = None


class TokenPurchaseRequest(CamelModel):
    id: str
    user_id: str
    user_name: Optional[str] = None
    user_wallet_address: str
    amount: float
    status: PurchaseStatus = PurchaseStatus.PENDING
    currency: str = "EUR"
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    payment_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    transaction_signature: Optional[str] = None
    error: Optional[str] = None
    settlement_claim: Optional[str] = None
    last_valid_block_height: Optional[int] = None


class WalletRequest(CamelModel):
    account_id: str = Field(min_length=1)
    account_kind: AccountKind


class WalletCreated(CamelModel):
    wallet_address: str
    mnemonic: str


class SeedPhrase(CamelModel):
    mnemonic: str


class WalletBalance(CamelModel):
    account_id: str
    wallet_address: str
    sol_lamports: int
    token_balance: float


class RedeemOrderRequest(CamelModel):
    order: CartOrder


class ProcessRequest(CamelModel):
    request_id: str = Field(min_length=1)


class SignatureResponse(CamelModel):
    transaction_signature: str


class CashoutResult(CamelModel):
    transaction_signature: str
    amount: float
    commission: float
    net_payout: float


class AddToCartRequest(CamelModel):
    user_id: str = Field(min_length=1)
    merchant_id: str = Field(min_length=1)
    listing_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    order_id: Optional[str] = None


class OrderActionRequest(CamelModel):
    user_id: str
    merchant_id: str
    order_id: str


class CreateCashoutRequest(CamelModel):
    merchant_id: str = Field(min_length=1)
    amount: float = Field(gt=0)


class CreatePurchaseRequest(CamelModel):
    user_id: str = Field(min_length=1)
    amount: float = Field(gt=0)
    currency: str = "EUR"
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER


class CardPaymentEvent(CamelModel):
    request_id: str
    payment_reference: str
    status: str


class ReconcileRequest(CamelModel):
    user_id: str
    merchant_id: str
    order_id: str
    transaction_signature: str = Field(min_length=1)


class IssueSolRequest(CamelModel):
    wallet_address: str = Field(min_length=1)


class ErrorResponse(BaseModel):
    error: str
    category: str
    details: str


class AppInfo(CamelModel):
    chain_mode: str
    store_mode: str
    token_mint_address: str
    token_symbol: str
    commission_rate: float
    issuance_decimals: int


def find_order(orders: Optional[List[Dict[str, Any]]], order_id: str) -> Optional[Dict[str, Any]]:
    for entry in orders or []:
        if entry.get("orderId") == order_id:
            return entry
    return None
