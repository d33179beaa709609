from typing import Any, Callable, Dict, List, Optional, TypeVar

from .config import Settings
from .errors import ConfigurationError, NotFoundError
from .state import ArrayUnion, StateStore


T = TypeVar("T")


def _convert_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    from google.cloud import firestore

    converted: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, ArrayUnion):
            converted[key] = firestore.ArrayUnion(value.values)
        else:
            converted[key] = value
    return converted


class FirestoreTransaction:
    def __init__(self, client, transaction) -> None:
        self._client = client
        self._transaction = transaction

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self._client.collection(collection).document(doc_id).get(
            transaction=self._transaction
        )
        return snapshot.to_dict() if snapshot.exists else None

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        ref = self._client.collection(collection).document(doc_id)
        self._transaction.set(ref, _convert_fields(data))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        ref = self._client.collection(collection).document(doc_id)
        self._transaction.update(ref, _convert_fields(fields))


class FirestoreStore:
    """Document store backed by Cloud Firestore, same surface as StateStore."""

    def __init__(self, settings: Settings) -> None:
        try:
            from google.cloud import firestore
        except ImportError as exc:
            raise ConfigurationError(
                "google-cloud-firestore is required for STORE_MODE 'firestore'"
            ) from exc
        self._firestore = firestore
        self._client = firestore.Client(project=settings.firestore_project or None)

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self._client.collection(collection).document(doc_id).get()
        return snapshot.to_dict() if snapshot.exists else None

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._client.collection(collection).document(doc_id).set(_convert_fields(data))

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        ref = self._client.collection(collection).document()
        ref.set({**_convert_fields(data), "id": ref.id})
        return ref.id

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        from google.api_core.exceptions import NotFound

        try:
            self._client.collection(collection).document(doc_id).update(_convert_fields(fields))
        except NotFound as exc:
            raise NotFoundError(collection, doc_id) from exc

    def list(self, collection: str) -> List[Dict[str, Any]]:
        return [
            {**snapshot.to_dict(), "id": snapshot.id}
            for snapshot in self._client.collection(collection).stream()
        ]

    def run_transaction(self, fn: Callable[[FirestoreTransaction], T]) -> T:
        client = self._client

        @self._firestore.transactional
        def run(transaction) -> T:
            return fn(FirestoreTransaction(client, transaction))

        return run(client.transaction())


def create_store(settings: Settings):
    mode = settings.store_mode.lower()
    if mode == "memory":
        return StateStore()
    if mode == "firestore":
        return FirestoreStore(settings)
    raise ConfigurationError(f"Unknown STORE_MODE: {settings.store_mode}")
