import json
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from solders.keypair import Keypair

from localcoin.cashout import CashoutService
from localcoin.config import LAMPORTS_PER_SOL, Settings
from localcoin.encryption import SeedCipher
from localcoin.issuance import IssuanceService
from localcoin.main import create_app
from localcoin.models import AccountKind, AddToCartRequest
from localcoin.notifications import ConsoleEmailSender
from localcoin.orders import OrderService
from localcoin.redemption import RedemptionService
from localcoin.solana_service import SolanaService, generate_mnemonic, keypair_from_mnemonic
from localcoin.state import MockLedger, StateStore
from localcoin.wallets import WalletService


USER_ID = "user-1"
MERCHANT_ID = "merchant-1"
LISTING_ID = "bread"


@pytest.fixture
def settings():
    return Settings(
        chain_mode="mock",
        store_mode="memory",
        email_mode="console",
        commission_rate=0.05,
        encryption_secret="test-encryption-secret",
        platform_mnemonic=generate_mnemonic(),
        platform_passphrase="",
        issuer_private_key=json.dumps(list(bytes(Keypair()))),
        issuance_decimals=9,
        card_webhook_secret="whsec-test",
        api_key="",
    )


@pytest.fixture
def ledger():
    return MockLedger(decimals=2)


@pytest.fixture
def chain(settings, ledger):
    return SolanaService(settings, ledger)


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def cipher(settings):
    return SeedCipher(settings.encryption_secret)


@pytest.fixture
def mailer():
    return ConsoleEmailSender()


@pytest.fixture
def wallets(settings, store, cipher):
    return WalletService(settings, store, cipher)


@pytest.fixture
def orders(store):
    return OrderService(store)


@pytest.fixture
def redemption(settings, store, chain, wallets):
    return RedemptionService(settings, store, chain, wallets)


@pytest.fixture
def cashout(settings, store, chain, wallets, mailer):
    return CashoutService(settings, store, chain, wallets, mailer)


@pytest.fixture
def issuance(settings, store, chain, mailer):
    return IssuanceService(settings, store, chain, mailer)


@pytest.fixture
def platform_address(settings):
    return str(keypair_from_mnemonic(settings.platform_mnemonic).pubkey())


@pytest.fixture
def marketplace(store, wallets, ledger):
    """One buyer holding 10.00 tokens and one merchant selling bread at 5.00."""
    store.set(
        "users",
        USER_ID,
        {"name": "Ada", "email": "ada@example.com", "walletBalance": 10.0, "cart": []},
    )
    store.set(
        "merchants",
        MERCHANT_ID,
        {
            "companyName": "Corner Bakery",
            "contactEmail": "shop@example.com",
            "walletBalance": 0.0,
            "listings": [
                {"id": LISTING_ID, "name": "Bread", "price": 5.0, "quantity": 10, "active": True}
            ],
            "pendingOrders": [],
            "recentTransactions": [],
        },
    )
    buyer = wallets.provision(USER_ID, AccountKind.USER)
    merchant = wallets.provision(MERCHANT_ID, AccountKind.MERCHANT)
    ledger.fund(buyer.wallet_address, lamports=LAMPORTS_PER_SOL, tokens_raw=1000)
    ledger.fund(merchant.wallet_address, lamports=LAMPORTS_PER_SOL)
    return SimpleNamespace(
        user_id=USER_ID,
        merchant_id=MERCHANT_ID,
        listing_id=LISTING_ID,
        buyer_address=buyer.wallet_address,
        merchant_address=merchant.wallet_address,
    )


@pytest.fixture
def approved_order(orders, marketplace):
    def place(quantity=1):
        order = orders.add_to_cart(
            AddToCartRequest(
                user_id=marketplace.user_id,
                merchant_id=marketplace.merchant_id,
                listing_id=marketplace.listing_id,
                quantity=quantity,
            )
        )
        return orders.approve(marketplace.user_id, marketplace.merchant_id, order.order_id)

    return place


def listing_quantity(store, listing_id=LISTING_ID):
    merchant = store.get("merchants", MERCHANT_ID)
    return next(item["quantity"] for item in merchant["listings"] if item["id"] == listing_id)


def cart_entry(store, order_id):
    return next(entry for entry in store.get("users", USER_ID)["cart"] if entry["orderId"] == order_id)


@pytest.fixture
def client(settings, store, chain, mailer):
    return TestClient(create_app(settings, store=store, chain=chain, mailer=mailer))
