from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional, TypeVar
import json
import logging
import time

from bip_utils import (
    Bip39MnemonicGenerator,
    Bip39SeedGenerator,
    Bip39WordsNum,
    MnemonicChecksumError,
)
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from .config import Settings
from .errors import (
    ChainServiceError,
    ChainTimeoutError,
    ConfigurationError,
    ConflictError,
    ValidationError,
)
from .state import MockLedger


logger = logging.getLogger(__name__)

T = TypeVar("T")

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
SYSVAR_RENT_PUBKEY = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

TRANSFER_CHECKED_INSTRUCTION = 12


def generate_mnemonic() -> str:
    return Bip39MnemonicGenerator().FromWordsNumber(Bip39WordsNum.WORDS_NUM_12).ToStr()


def keypair_from_mnemonic(mnemonic: str, passphrase: str = "") -> Keypair:
    # First 32 bytes of the BIP-39 seed are the ed25519 seed; no HD path.
    try:
        seed = Bip39SeedGenerator(mnemonic).Generate(passphrase)
    except (MnemonicChecksumError, ValueError) as exc:
        raise ValidationError("Mnemonic is not a valid BIP-39 phrase.") from exc
    return Keypair.from_seed(bytes(seed[:32]))


def keypair_from_secret(raw: str) -> Keypair:
    """Parse a ``[1,2,3,...]`` secret key array as exported by solana-keygen."""
    try:
        data = json.loads(raw)
        return Keypair.from_bytes(bytes(data))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("Issuer private key is not a valid key array.") from exc


def to_raw_amount(amount: float, decimals: int) -> int:
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_raw_amount(raw_amount: int, decimals: int) -> float:
    return float(Decimal(raw_amount) / (Decimal(10) ** decimals))


def derive_ata(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]


def build_create_ata_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey, ata: Pubkey) -> Instruction:
    metas = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSVAR_RENT_PUBKEY, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=ASSOCIATED_TOKEN_PROGRAM_ID, data=bytes([0]), accounts=metas)


def build_transfer_checked_ix(
    source: Pubkey,
    mint: Pubkey,
    destination: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
) -> Instruction:
    data = bytes([TRANSFER_CHECKED_INSTRUCTION]) + amount.to_bytes(8, "little") + bytes([decimals])
    metas = [
        AccountMeta(pubkey=source, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


@dataclass
class TxSubmitResult:
    signature: str
    confirmed: bool


class SolanaService:
    """Token and SOL transfers against an RPC node, or a MockLedger in mock mode."""

    def __init__(self, settings: Settings, ledger: Optional[MockLedger] = None) -> None:
        self.settings = settings
        self.mode = settings.chain_mode.lower()
        self.mint = Pubkey.from_string(settings.token_mint_address)
        self.ledger: Optional[MockLedger] = None
        self._client = None
        if self.mode == "mock":
            self.ledger = ledger or MockLedger()
        else:
            self._init_client()

    def _init_client(self) -> None:
        try:
            from solana.rpc.api import Client
        except ImportError as exc:
            raise ChainServiceError(
                "solana is required for CHAIN_MODE 'rpc'. Install the project dependencies"
            ) from exc
        self._client = Client(
            self.settings.solana_rpc_url, timeout=self.settings.rpc_timeout_seconds
        )

    def _rpc(self, call: Callable[[], T]) -> T:
        from solana.exceptions import SolanaRpcException
        from solana.rpc.core import RPCException

        try:
            return call()
        except (RPCException, SolanaRpcException) as exc:
            raise ChainServiceError(f"Solana RPC error: {exc}") from exc

    def get_mint_decimals(self) -> int:
        if self.mode == "mock":
            return self.ledger.decimals
        return self._rpc(lambda: self._client.get_token_supply(self.mint).value.decimals)

    def get_sol_balance(self, address: str) -> int:
        if self.mode == "mock":
            return self.ledger.lamports.get(address, 0)
        owner = Pubkey.from_string(address)
        return self._rpc(lambda: self._client.get_balance(owner).value)

    def get_token_balance(self, address: str) -> int:
        if self.mode == "mock":
            return self.ledger.token_balance(address)
        ata = derive_ata(Pubkey.from_string(address), self.mint)
        if not self._account_exists(ata):
            return 0
        return self._rpc(lambda: int(self._client.get_token_account_balance(ata).value.amount))

    def ensure_token_account(self, payer: Keypair, owner_address: str) -> str:
        """Return the owner's associated token account, creating it at the payer's expense."""
        owner = Pubkey.from_string(owner_address)
        ata = derive_ata(owner, self.mint)
        if self.mode == "mock":
            self.ledger.create_token_account(str(payer.pubkey()), owner_address)
            return str(ata)
        if self._account_exists(ata):
            return str(ata)
        logger.info("Creating token account %s for %s (payer %s)", ata, owner, payer.pubkey())
        ix = build_create_ata_ix(payer.pubkey(), owner, self.mint, ata)
        self._send_and_confirm(payer, [ix], [payer])
        return str(ata)

    def transfer_tokens(
        self,
        owner: Keypair,
        destination_address: str,
        raw_amount: int,
        decimals: int,
    ) -> TxSubmitResult:
        if raw_amount <= 0:
            raise ChainServiceError("Transfer amount must be positive")
        if self.mode == "mock":
            signature = self.ledger.transfer_tokens(
                str(owner.pubkey()), destination_address, raw_amount
            )
            return TxSubmitResult(signature=signature, confirmed=True)
        source = derive_ata(owner.pubkey(), self.mint)
        destination = derive_ata(Pubkey.from_string(destination_address), self.mint)
        ix = build_transfer_checked_ix(
            source, self.mint, destination, owner.pubkey(), raw_amount, decimals
        )
        signature = self._send_and_confirm(owner, [ix], [owner])
        return TxSubmitResult(signature=signature, confirmed=True)

    def transfer_sol(self, sender: Keypair, destination_address: str, lamports: int) -> TxSubmitResult:
        if self.mode == "mock":
            signature = self.ledger.transfer_lamports(
                str(sender.pubkey()), destination_address, lamports
            )
            return TxSubmitResult(signature=signature, confirmed=True)
        ix = transfer(
            TransferParams(
                from_pubkey=sender.pubkey(),
                to_pubkey=Pubkey.from_string(destination_address),
                lamports=lamports,
            )
        )
        signature = self._send_and_confirm(sender, [ix], [sender])
        return TxSubmitResult(signature=signature, confirmed=True)

    def is_confirmed(self, signature: str) -> bool:
        if self.mode == "mock":
            return signature in self.ledger.signatures
        try:
            sig = Signature.from_string(signature)
        except ValueError:
            return False
        status = self._rpc(
            lambda: self._client.get_signature_statuses(
                [sig], search_transaction_history=True
            ).value[0]
        )
        return self._status_confirmed(status)

    def verify_token_transfer(
        self, signature: str, source_owner: str, destination_owner: str, raw_amount: int
    ) -> bool:
        """True only if the transaction moved exactly raw_amount between the two owners' token accounts."""
        if self.mode == "mock":
            return any(
                record["kind"] == "token"
                and record["signature"] == signature
                and record["source"] == source_owner
                and record["destination"] == destination_owner
                and record["amount"] == raw_amount
                for record in self.ledger.transfers
            )
        from solana.rpc.commitment import Confirmed

        try:
            sig = Signature.from_string(signature)
        except ValueError:
            return False
        found = self._rpc(
            lambda: self._client.get_transaction(
                sig, encoding="base64", commitment=Confirmed, max_supported_transaction_version=0
            ).value
        )
        if found is None:
            return False
        meta = found.transaction.meta
        tx = found.transaction.transaction
        if meta is None or meta.err is not None or not isinstance(tx, VersionedTransaction):
            return False

        owner = Pubkey.from_string(source_owner)
        expected = (
            derive_ata(owner, self.mint),
            self.mint,
            derive_ata(Pubkey.from_string(destination_owner), self.mint),
            owner,
        )
        keys = list(tx.message.account_keys)
        for ix in tx.message.instructions:
            data = bytes(ix.data)
            accounts = list(ix.accounts)
            if keys[ix.program_id_index] != TOKEN_PROGRAM_ID:
                continue
            if len(data) != 10 or data[0] != TRANSFER_CHECKED_INSTRUCTION:
                continue
            # Lookup-table accounts are never used by our own transfers.
            if len(accounts) < 4 or max(accounts[:4]) >= len(keys):
                continue
            if tuple(keys[i] for i in accounts[:4]) != expected:
                continue
            if int.from_bytes(data[1:9], "little") == raw_amount:
                return True
        return False

    def is_blockhash_expired(self, last_valid_block_height: int) -> bool:
        if self.mode == "mock":
            return self.ledger.block_height > last_valid_block_height
        return self._rpc(lambda: self._client.get_block_height().value) > last_valid_block_height

    def require_abandoned(self, signature: Optional[str], last_valid_block_height: Optional[int]) -> None:
        """Raise ConflictError unless a recorded transaction can no longer land."""
        if not signature:
            return
        if last_valid_block_height is None:
            raise ConflictError(f"Cannot tell whether transaction {signature} has expired")
        # Expiry first: once the blockhash is past, the status below cannot change.
        if not self.is_blockhash_expired(last_valid_block_height):
            raise ConflictError(f"Transaction {signature} may still land; wait for its blockhash to expire")
        if self.is_confirmed(signature):
            raise ConflictError(f"Transaction {signature} is confirmed; reconcile it instead")

    def _account_exists(self, address: Pubkey) -> bool:
        return self._rpc(lambda: self._client.get_account_info(address).value) is not None

    def _status_confirmed(self, status) -> bool:
        from solders.transaction_status import TransactionConfirmationStatus

        if status is None or status.err is not None:
            return False
        return status.confirmation_status in {
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        }

    def _send_and_confirm(
        self, payer: Keypair, instructions: List[Instruction], signers: List[Keypair]
    ) -> str:
        import httpx
        from solana.exceptions import SolanaRpcException
        from solana.rpc.core import RPCException
        from solana.rpc.types import TxOpts

        latest = self._rpc(lambda: self._client.get_latest_blockhash().value)
        blockhash: Hash = latest.blockhash
        last_valid = latest.last_valid_block_height
        message = MessageV0.try_compile(payer.pubkey(), instructions, [], blockhash)
        tx = VersionedTransaction(message, signers)
        signature = tx.signatures[0]
        try:
            self._client.send_raw_transaction(bytes(tx), opts=TxOpts(skip_preflight=False))
        except RPCException as exc:
            raise ChainServiceError(f"Transaction rejected: {exc}") from exc
        except SolanaRpcException as exc:
            if isinstance(exc.__cause__, httpx.TimeoutException):
                raise ChainTimeoutError(
                    f"Timed out submitting transaction {signature}", str(signature), last_valid
                ) from exc
            raise ChainServiceError(f"Solana RPC error: {exc}") from exc
        logger.info("Submitted transaction %s", signature)
        self._wait_for_confirmation(signature, last_valid)
        return str(signature)

    def _wait_for_confirmation(self, signature: Signature, last_valid_block_height: int) -> None:
        from solana.exceptions import SolanaRpcException
        from solana.rpc.core import RPCException

        deadline = time.monotonic() + self.settings.confirm_timeout_seconds
        while time.monotonic() < deadline:
            try:
                status = self._client.get_signature_statuses([signature]).value[0]
            except (RPCException, SolanaRpcException) as exc:
                logger.warning("Status poll for %s failed: %s", signature, exc)
                status = None
            if status is not None and status.err is not None:
                raise ChainServiceError(f"Transaction {signature} failed: {status.err}")
            if self._status_confirmed(status):
                return
            time.sleep(self.settings.confirm_poll_seconds)
        raise ChainTimeoutError(
            f"Transaction {signature} was not confirmed within "
            f"{self.settings.confirm_timeout_seconds:.0f}s",
            str(signature),
            last_valid_block_height,
        )
