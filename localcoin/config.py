from dataclasses import dataclass
from datetime import datetime, timezone
import os

from dotenv import load_dotenv


load_dotenv()


DEVNET_RPC_URL = "https://api.devnet.solana.com"
LAMPORTS_PER_SOL = 1_000_000_000


@dataclass(frozen=True)
class Settings:
    app_name: str = "LocalCoin Marketplace"
    chain_mode: str = os.getenv("CHAIN_MODE", "mock")
    solana_rpc_url: str = os.getenv("SOLANA_RPC_URL", DEVNET_RPC_URL)
    token_mint_address: str = os.getenv(
        "TOKEN_MINT_ADDRESS", "5hfFxuvUvjLzmzpRha2MtpCsTZnGSzqrjAbG7faHvL6u"
    )
    token_name: str = os.getenv("TOKEN_NAME", "LocalCoin")
    token_symbol: str = os.getenv("TOKEN_SYMBOL", "LCL")
    fiat_symbol: str = os.getenv("FIAT_SYMBOL", "EUR")
    commission_rate: float = float(os.getenv("COMMISSION_RATE", "0.20"))
    platform_mnemonic: str = os.getenv("LOCALCOIN_MNEMONIC", "")
    platform_passphrase: str = os.getenv("LOCALCOIN_PASSPHRASE", "")
    issuer_private_key: str = os.getenv("ISSUER_PRIVATE_KEY", "")
    issuance_decimals: int = int(os.getenv("ISSUANCE_DECIMALS", "9"))
    encryption_secret: str = os.getenv("ENCRYPTION_SECRET", "")
    min_fee_lamports: int = int(os.getenv("MIN_FEE_LAMPORTS", "5000"))
    fee_topup_lamports: int = int(os.getenv("FEE_TOPUP_LAMPORTS", "2500000"))
    rpc_timeout_seconds: float = float(os.getenv("RPC_TIMEOUT_SECONDS", "10"))
    confirm_timeout_seconds: float = float(os.getenv("CONFIRM_TIMEOUT_SECONDS", "60"))
    confirm_poll_seconds: float = float(os.getenv("CONFIRM_POLL_SECONDS", "0.5"))
    store_mode: str = os.getenv("STORE_MODE", "memory")
    firestore_project: str = os.getenv("FIRESTORE_PROJECT", "")
    email_mode: str = os.getenv("EMAIL_MODE", "console")
    smtp_host: str = os.getenv("SMTP_HOST", "")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_user: str = os.getenv("SMTP_USER", "")
    smtp_pass: str = os.getenv("SMTP_PASS", "")
    smtp_from: str = os.getenv("SMTP_FROM", "")
    smtp_from_name: str = os.getenv("SMTP_FROM_NAME", "LocalCoin Marketplace")
    api_key: str = os.getenv("API_KEY", "")
    card_webhook_secret: str = os.getenv("CARD_WEBHOOK_SECRET", "")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
