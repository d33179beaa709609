"""Provision wallets for accounts that have none, then top them up with fee SOL.

Run against the configured store and chain, e.g.::

    STORE_MODE=firestore CHAIN_MODE=rpc python scripts/populate_wallets.py --top-up
"""
import argparse
import logging

from localcoin.config import settings
from localcoin.encryption import SeedCipher
from localcoin.errors import MarketplaceError
from localcoin.firestore_store import create_store
from localcoin.models import AccountKind
from localcoin.solana_service import SolanaService
from localcoin.wallets import WalletService, platform_keypair


logger = logging.getLogger("populate_wallets")


def populate(wallets: WalletService, chain: SolanaService, top_up: bool):
    platform = platform_keypair(wallets.settings) if top_up else None
    created = []
    for kind in AccountKind:
        for account_id, address in wallets.provision_missing(kind):
            print(f"{kind.value} {account_id}: {address}")
            created.append(address)
            if platform is None:
                continue
            try:
                result = chain.transfer_sol(platform, address, wallets.settings.fee_topup_lamports)
            except MarketplaceError as exc:
                logger.error("Fee top-up for %s failed: %s", address, exc.message)
                continue
            print(f"  topped up: {result.signature}")
    return created


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--top-up", action="store_true", help="send FEE_TOPUP_LAMPORTS to each new wallet")
    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level.upper())

    service = WalletService(settings, create_store(settings), SeedCipher(settings.encryption_secret))
    created = populate(service, SolanaService(settings), args.top_up)
    print(f"Provisioned {len(created)} wallet(s).")
