"""Local record store: documents and verifier credentials on the key-value substrate.

Documents are keyed by a canonical string id with a secondary index on
content id. Ids that arrive as ints (ledger-assigned) are normalized with
``str()`` at the boundary, so there is exactly one key type internally.

Every read hands out a copy; the only way to change a stored document is
through :meth:`RecordStore.upsert`, :meth:`RecordStore.mutate` or
:meth:`RecordStore.replace_id`, each of which runs under the namespace lock
and persists before returning.
"""

import json
import threading
from collections.abc import Callable, Iterable
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from cblock.admin.models import VerifierCredential
from cblock.documents.models import Document
from cblock.errors import ConflictError, LoadError, NotFoundError, StorageError
from cblock.storage.backend import CREDENTIALS_KEY, DOCUMENTS_KEY, KeyValueBackend

log = structlog.get_logger()

Pairs = list[tuple[str, dict[str, Any]]]


def _dump_pairs(pairs: Pairs) -> str:
    return json.dumps([[k, v] for k, v in pairs], sort_keys=False)


def _load_pairs(raw: str | None, key: str) -> list[tuple[str, Any]]:
    if raw is None:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise LoadError(f"{key}: not valid JSON ({e})") from e
    if not isinstance(data, list):
        raise LoadError(f"{key}: expected a list of [key, value] pairs")
    pairs = []
    for item in data:
        if not isinstance(item, list | tuple) or len(item) != 2:
            raise LoadError(f"{key}: malformed pair {item!r}")
        pairs.append((str(item[0]), item[1]))
    return pairs


class RecordStore:
    def __init__(self, backend: KeyValueBackend) -> None:
        self.backend = backend
        self._documents: dict[str, Document] = {}
        self._by_content_id: dict[str, str] = {}
        self._credentials: dict[str, VerifierCredential] = {}
        self._documents_lock = threading.RLock()
        self._credentials_lock = threading.RLock()

    @classmethod
    def open(cls, backend: KeyValueBackend) -> "RecordStore":
        """Load a store, falling back to empty if the persisted data is unreadable."""
        store = cls(backend)
        try:
            store.load()
        except LoadError as e:
            log.warning("record_store_load_failed", reason=e.reason)
        return store

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Replace in-memory state with the persisted snapshot.

        Raises LoadError on corrupt data; the store is left empty in that case.
        """
        with self._documents_lock, self._credentials_lock:
            self._documents, self._by_content_id, self._credentials = {}, {}, {}
            documents = self.parse_document_pairs(
                _load_pairs(self.backend.get(DOCUMENTS_KEY), DOCUMENTS_KEY)
            )
            credentials = self.parse_credential_pairs(
                _load_pairs(self.backend.get(CREDENTIALS_KEY), CREDENTIALS_KEY)
            )
            self._documents, self._by_content_id = documents
            self._credentials = credentials

    def persist(self) -> None:
        with self._documents_lock, self._credentials_lock:
            self._commit_documents(self._documents, self._by_content_id)
            self._commit_credentials(self._credentials)

    def _commit_documents(self, documents: dict[str, Document], index: dict[str, str]) -> None:
        """Write a candidate document map, then make it current.

        A StorageError from the backend leaves the in-memory maps untouched.
        """
        pairs = [(k, d.model_dump(mode="json")) for k, d in documents.items()]
        self.backend.set(DOCUMENTS_KEY, _dump_pairs(pairs))
        self._documents, self._by_content_id = documents, index

    def _commit_credentials(self, credentials: dict[str, VerifierCredential]) -> None:
        pairs = [(k, c.model_dump(mode="json")) for k, c in credentials.items()]
        self.backend.set(CREDENTIALS_KEY, _dump_pairs(pairs))
        self._credentials = credentials

    @staticmethod
    def parse_document_pairs(
        pairs: Iterable[tuple[str, Any]],
    ) -> tuple[dict[str, Document], dict[str, str]]:
        documents: dict[str, Document] = {}
        index: dict[str, str] = {}
        for key, value in pairs:
            try:
                doc = Document.model_validate(value)
            except PydanticValidationError as e:
                raise LoadError(f"document {key}: {e.errors()[0]['msg']}") from e
            if doc.id != key:
                raise LoadError(f"document {key}: stored under mismatched id {doc.id}")
            if doc.content_id in index:
                raise LoadError(
                    f"document {key}: content id {doc.content_id} already used by "
                    f"{index[doc.content_id]}"
                )
            documents[key] = doc
            index[doc.content_id] = key
        return documents, index

    @staticmethod
    def parse_credential_pairs(pairs: Iterable[tuple[str, Any]]) -> dict[str, VerifierCredential]:
        credentials = {}
        for key, value in pairs:
            try:
                credentials[key] = VerifierCredential.model_validate(value)
            except PydanticValidationError as e:
                raise LoadError(f"credential {key}: {e.errors()[0]['msg']}") from e
        return credentials

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get(self, document_id: str | int) -> Document | None:
        """Look up by id, falling back to the content-id index."""
        key = str(document_id)
        with self._documents_lock:
            doc = self._documents.get(key)
            if doc is None and key in self._by_content_id:
                doc = self._documents[self._by_content_id[key]]
            return doc.model_copy(deep=True) if doc else None

    def get_by_content_id(self, content_id: str) -> Document | None:
        with self._documents_lock:
            key = self._by_content_id.get(content_id)
            return self._documents[key].model_copy(deep=True) if key else None

    def list_all(self) -> list[Document]:
        """All documents in insertion order."""
        with self._documents_lock:
            return [doc.model_copy(deep=True) for doc in self._documents.values()]

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, document_id: object) -> bool:
        return str(document_id) in self._documents

    def upsert(self, document: Document) -> Document:
        with self._documents_lock:
            owner = self._by_content_id.get(document.content_id)
            if owner is not None and owner != document.id:
                raise ConflictError(
                    f"Content {document.content_id} is already registered as document {owner}"
                )
            documents, index = dict(self._documents), dict(self._by_content_id)
            previous = documents.get(document.id)
            if previous is not None and previous.content_id != document.content_id:
                del index[previous.content_id]
            stored = document.model_copy(deep=True)
            documents[document.id] = stored
            index[document.content_id] = document.id
            self._commit_documents(documents, index)
            return stored.model_copy(deep=True)

    def mutate(self, document_id: str | int, fn: Callable[[Document], Document]) -> Document:
        """Atomically read, transform and write back one document.

        ``fn`` receives a copy and may raise to abort; nothing is written then.
        """
        with self._documents_lock:
            current = self.get(document_id)
            if current is None:
                raise NotFoundError(f"Document {document_id} not found")
            updated = fn(current)
            if updated.id != current.id:
                raise ConflictError("Use replace_id to change a document id")
            return self.upsert(updated)

    def replace_id(self, old_id: str, document: Document) -> Document:
        """Re-key a document (local fallback id -> ledger id) in one step."""
        with self._documents_lock:
            old = self._documents.get(str(old_id))
            if old is None:
                raise NotFoundError(f"Document {old_id} not found")
            if document.id != old.id and document.id in self._documents:
                raise ConflictError(f"Document {document.id} already exists")
            documents, index = dict(self._documents), dict(self._by_content_id)
            del documents[old.id]
            del index[old.content_id]
            owner = index.get(document.content_id)
            if owner is not None:
                raise ConflictError(
                    f"Content {document.content_id} is already registered as document {owner}"
                )
            stored = document.model_copy(deep=True)
            documents[document.id] = stored
            index[document.content_id] = document.id
            self._commit_documents(documents, index)
            return stored.model_copy(deep=True)

    def delete(self, document_id: str | int) -> bool:
        with self._documents_lock:
            documents, index = dict(self._documents), dict(self._by_content_id)
            doc = documents.pop(str(document_id), None)
            if doc is None:
                return False
            index.pop(doc.content_id, None)
            self._commit_documents(documents, index)
            return True

    def export_documents(self) -> Pairs:
        with self._documents_lock:
            return [(k, d.model_dump(mode="json")) for k, d in self._documents.items()]

    def replace_documents(self, pairs: Iterable[tuple[str, Any]]) -> None:
        """Swap in a whole document set; validated fully before anything changes."""
        try:
            documents, index = self.parse_document_pairs(pairs)
        except LoadError as e:
            raise StorageError(f"Invalid document snapshot: {e.reason}") from e
        with self._documents_lock:
            self._commit_documents(documents, index)

    def clear(self) -> None:
        with self._documents_lock, self._credentials_lock:
            self._commit_documents({}, {})
            self._commit_credentials({})

    # ------------------------------------------------------------------
    # Verifier credentials
    # ------------------------------------------------------------------

    def get_credential(self, user_id: str) -> VerifierCredential | None:
        with self._credentials_lock:
            cred = self._credentials.get(user_id)
            return cred.model_copy() if cred else None

    def put_credential(self, user_id: str, credential: VerifierCredential) -> None:
        with self._credentials_lock:
            self._commit_credentials({**self._credentials, user_id: credential.model_copy()})

    def delete_credential(self, user_id: str) -> VerifierCredential | None:
        with self._credentials_lock:
            credentials = dict(self._credentials)
            cred = credentials.pop(user_id, None)
            if cred is not None:
                self._commit_credentials(credentials)
            return cred

    def list_credentials(self) -> dict[str, VerifierCredential]:
        with self._credentials_lock:
            return {k: v.model_copy() for k, v in self._credentials.items()}

    def export_credentials(self) -> Pairs:
        with self._credentials_lock:
            return [(k, c.model_dump(mode="json")) for k, c in self._credentials.items()]

    def replace_credentials(self, pairs: Iterable[tuple[str, Any]]) -> None:
        try:
            credentials = self.parse_credential_pairs(pairs)
        except LoadError as e:
            raise StorageError(f"Invalid credential snapshot: {e.reason}") from e
        with self._credentials_lock:
            self._commit_credentials(credentials)
