from typing import Any, Dict, List, Optional, Tuple
import logging

from solders.keypair import Keypair

from .access import require_account_access
from .config import Settings
from .encryption import SeedCipher
from .errors import ConfigurationError, ConflictError, NotFoundError, ValidationError
from .models import AccountKind, Caller, SeedPhrase, WalletCreated
from .solana_service import generate_mnemonic, keypair_from_mnemonic, keypair_from_secret


logger = logging.getLogger(__name__)


def platform_keypair(settings: Settings) -> Keypair:
    if not settings.platform_mnemonic:
        raise ConfigurationError("The platform wallet is not configured.")
    try:
        return keypair_from_mnemonic(settings.platform_mnemonic, settings.platform_passphrase)
    except ValidationError as exc:
        raise ConfigurationError("LOCALCOIN_MNEMONIC is not a valid mnemonic.") from exc


def issuer_keypair(settings: Settings) -> Keypair:
    if not settings.issuer_private_key:
        raise ConfigurationError("Issuer private key is not configured on the server.")
    return keypair_from_secret(settings.issuer_private_key)


class WalletService:
    def __init__(self, settings: Settings, store, cipher: SeedCipher) -> None:
        self.settings = settings
        self.store = store
        self.cipher = cipher

    def provision(
        self, account_id: str, kind: AccountKind, caller: Optional[Caller] = None
    ) -> WalletCreated:
        require_account_access(caller, account_id)
        account = self.store.get(kind.collection, account_id)
        self._check_provisionable(account, account_id, kind)

        mnemonic = generate_mnemonic()
        wallet_address = str(keypair_from_mnemonic(mnemonic).pubkey())
        encrypted = self.cipher.encrypt(mnemonic)

        def write(transaction) -> None:
            fresh = transaction.get(kind.collection, account_id)
            self._check_provisionable(fresh, account_id, kind)
            transaction.update(
                kind.collection,
                account_id,
                {"walletAddress": wallet_address, "seedPhrase": encrypted},
            )

        self.store.run_transaction(write)
        logger.info("Provisioned wallet %s for %s %s", wallet_address, kind.value, account_id)
        return WalletCreated(wallet_address=wallet_address, mnemonic=mnemonic)

    def retrieve_seed(
        self, account_id: str, kind: AccountKind, caller: Optional[Caller] = None
    ) -> SeedPhrase:
        require_account_access(caller, account_id)
        account = self.store.get(kind.collection, account_id)
        if account is None:
            raise NotFoundError(kind.value, account_id, f"{kind.value} not found")
        encrypted = account.get("seedPhrase")
        if not encrypted:
            raise NotFoundError(
                "seed phrase", account_id, "Seed phrase not found for this account."
            )
        logger.info("Seed phrase viewed for %s %s", kind.value, account_id)
        return SeedPhrase(mnemonic=self.cipher.decrypt(encrypted))

    def signing_keypair(self, account: Dict[str, Any]) -> Keypair:
        """Decrypt an account's stored mnemonic and derive its keypair for one request."""
        return keypair_from_mnemonic(self.cipher.decrypt(account["seedPhrase"]))

    def provision_missing(self, kind: AccountKind) -> List[Tuple[str, str]]:
        created = []
        for account in self.store.list(kind.collection):
            if account.get("walletAddress"):
                continue
            try:
                wallet = self.provision(account["id"], kind)
            except ConflictError:
                continue
            created.append((account["id"], wallet.wallet_address))
        return created

    def _check_provisionable(
        self, account: Optional[Dict[str, Any]], account_id: str, kind: AccountKind
    ) -> None:
        if account is None:
            raise NotFoundError(kind.value, account_id, f"{kind.value} not found")
        if account.get("walletAddress"):
            raise ConflictError("Wallet already exists")
