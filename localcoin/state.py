from copy import deepcopy
from threading import Lock, RLock
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeVar
from uuid import uuid4

from .errors import ChainServiceError, ChainTimeoutError, NotFoundError


T = TypeVar("T")


class ArrayUnion:
    def __init__(self, *values: Any) -> None:
        self.values = list(values)


def apply_fields(document: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in fields.items():
        if isinstance(value, ArrayUnion):
            current = list(document.get(key) or [])
            for item in value.values:
                if item not in current:
                    current.append(deepcopy(item))
            document[key] = current
        else:
            document[key] = deepcopy(value)
    return document


class StoreTransaction:
    """Reads see committed state; writes are staged and applied on commit."""

    def __init__(self, store: "StateStore") -> None:
        self._store = store
        self._writes: List[Tuple[str, str, str, Dict[str, Any]]] = []

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self._store.get(collection, doc_id)

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._writes.append(("set", collection, doc_id, data))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._writes.append(("update", collection, doc_id, fields))

    def commit(self) -> None:
        for kind, collection, doc_id, data in self._writes:
            if kind == "update" and self._store.get(collection, doc_id) is None:
                raise NotFoundError(collection, doc_id)
        for kind, collection, doc_id, data in self._writes:
            if kind == "set":
                self._store.set(collection, doc_id, data)
            else:
                self._store.update(collection, doc_id, data)


class StateStore:
    """In-memory document store with serialized multi-document transactions."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            return deepcopy(document) if document is not None else None

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = deepcopy(data)

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid4().hex
        self.set(collection, doc_id, {**data, "id": doc_id})
        return doc_id

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            if document is None:
                raise NotFoundError(collection, doc_id)
            apply_fields(document, fields)

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {**deepcopy(doc), "id": doc_id}
                for doc_id, doc in self._collections.get(collection, {}).items()
            ]

    def run_transaction(self, fn: Callable[[StoreTransaction], T]) -> T:
        with self._lock:
            transaction = StoreTransaction(self)
            result = fn(transaction)
            transaction.commit()
            return result


BLOCKHASH_VALIDITY_BLOCKS = 150


class MockLedger:
    """Token and SOL balances used when CHAIN_MODE=mock."""

    def __init__(self, decimals: int = 2) -> None:
        self._lock = Lock()
        self.decimals = decimals
        self.block_height = 0
        self.lamports: Dict[str, int] = {}
        self.token_accounts: Dict[str, int] = {}
        self.account_payers: Dict[str, str] = {}
        self.transfers: List[Dict[str, Any]] = []
        self.signatures: Set[str] = set()
        self.fail_next: Optional[str] = None
        self.timeout_next = False
        self.timeout_account_creation = False

    def advance_blocks(self, count: int) -> None:
        with self._lock:
            self.block_height += count

    def fund(self, owner: str, lamports: int = 0, tokens_raw: int = 0) -> None:
        with self._lock:
            self.lamports[owner] = self.lamports.get(owner, 0) + lamports
            if tokens_raw or owner in self.token_accounts:
                self.token_accounts[owner] = self.token_accounts.get(owner, 0) + tokens_raw

    def token_balance(self, owner: str) -> int:
        return self.token_accounts.get(owner, 0)

    def create_token_account(self, payer: str, owner: str) -> None:
        with self._lock:
            if owner in self.token_accounts:
                return
            if self.timeout_account_creation:
                self.timeout_account_creation = False
                raise self._timeout()
            self.token_accounts[owner] = 0
            self.account_payers[owner] = payer

    def transfer_tokens(self, source: str, destination: str, raw_amount: int) -> str:
        with self._lock:
            self._maybe_fail()
            if source not in self.token_accounts or destination not in self.token_accounts:
                raise ChainServiceError("Token account not found")
            if self.token_accounts[source] < raw_amount:
                raise ChainServiceError("Transaction simulation failed: insufficient funds")
            self.token_accounts[source] -= raw_amount
            self.token_accounts[destination] += raw_amount
            return self._record("token", source, destination, raw_amount)

    def transfer_lamports(self, source: str, destination: str, lamports: int) -> str:
        with self._lock:
            self._maybe_fail()
            if self.lamports.get(source, 0) < lamports:
                raise ChainServiceError("Transaction simulation failed: insufficient lamports")
            self.lamports[source] -= lamports
            self.lamports[destination] = self.lamports.get(destination, 0) + lamports
            return self._record("sol", source, destination, lamports)

    def _maybe_fail(self) -> None:
        if self.fail_next:
            message, self.fail_next = self.fail_next, None
            raise ChainServiceError(message)
        if self.timeout_next:
            self.timeout_next = False
            raise self._timeout()

    def _timeout(self) -> ChainTimeoutError:
        return ChainTimeoutError(
            "Transaction was not confirmed in time",
            uuid4().hex,
            self.block_height + BLOCKHASH_VALIDITY_BLOCKS,
        )

    def _record(self, kind: str, source: str, destination: str, amount: int) -> str:
        signature = uuid4().hex + uuid4().hex
        self.signatures.add(signature)
        self.transfers.append(
            {
                "kind": kind,
                "source": source,
                "destination": destination,
                "amount": amount,
                "signature": signature,
            }
        )
        return signature
