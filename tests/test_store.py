"""Tests for the local record store."""

import json

import pytest

from cblock.admin.models import CredentialStatus, VerifierCredential
from cblock.documents.models import Document, DocumentMetadata, DocumentStatus
from cblock.documents.store import RecordStore
from cblock.errors import ConflictError, LoadError, NotFoundError, StorageError
from cblock.storage.backend import CREDENTIALS_KEY, DOCUMENTS_KEY, MemoryBackend

WALLET = "0x" + "a" * 40


def make_document(doc_id: str = "1", content_id: str = "QmAAA", **overrides) -> Document:
    data = {
        "id": doc_id,
        "content_id": content_id,
        "uploader": WALLET,
        "metadata": DocumentMetadata(project_name="Mangrove restoration"),
    }
    data.update(overrides)
    return Document(**data)


def test_upsert_and_lookup(store: RecordStore):
    store.upsert(make_document("1", "QmAAA"))
    assert store.get("1").content_id == "QmAAA"
    assert store.get(1).id == "1"
    assert store.get("QmAAA").id == "1"
    assert store.get_by_content_id("QmAAA").id == "1"
    assert store.get("2") is None
    assert "1" in store
    assert len(store) == 1


def test_reads_return_copies(store: RecordStore):
    store.upsert(make_document())
    doc = store.get("1")
    doc.metadata.project_name = "changed"
    doc.status = DocumentStatus.MINTED
    assert store.get("1").metadata.project_name == "Mangrove restoration"
    assert store.get("1").status == DocumentStatus.PENDING


def test_content_id_owned_by_one_document(store: RecordStore):
    store.upsert(make_document("1", "QmAAA"))
    with pytest.raises(ConflictError):
        store.upsert(make_document("2", "QmAAA"))
    assert len(store) == 1


def test_upsert_moves_content_index(store: RecordStore):
    store.upsert(make_document("1", "QmAAA"))
    store.upsert(make_document("1", "QmBBB"))
    assert store.get_by_content_id("QmAAA") is None
    assert store.get_by_content_id("QmBBB").id == "1"
    store.upsert(make_document("2", "QmAAA"))


def test_mutate(store: RecordStore):
    store.upsert(make_document())
    updated = store.mutate("1", lambda d: d.model_copy(update={"status": DocumentStatus.ATTESTED}))
    assert updated.status == DocumentStatus.ATTESTED
    assert store.get("1").status == DocumentStatus.ATTESTED


def test_mutate_aborts_without_writing(store: RecordStore, backend: MemoryBackend):
    store.upsert(make_document())
    before = backend.get(DOCUMENTS_KEY)

    def fail(doc: Document) -> Document:
        raise ConflictError("nope")

    with pytest.raises(ConflictError):
        store.mutate("1", fail)
    assert backend.get(DOCUMENTS_KEY) == before
    assert store.get("1").status == DocumentStatus.PENDING


def test_mutate_missing_and_id_change(store: RecordStore):
    with pytest.raises(NotFoundError):
        store.mutate("404", lambda d: d)
    store.upsert(make_document())
    with pytest.raises(ConflictError):
        store.mutate("1", lambda d: d.model_copy(update={"id": "2"}))


def test_replace_id(store: RecordStore):
    store.upsert(make_document("local_1_abc", "QmAAA"))
    rekeyed = store.replace_id(
        "local_1_abc", make_document("5", "QmAAA", registered_remotely=True)
    )
    assert rekeyed.id == "5"
    assert store.get("local_1_abc") is None
    assert store.get_by_content_id("QmAAA").id == "5"
    assert len(store) == 1


def test_replace_id_conflict_rolls_back(store: RecordStore):
    store.upsert(make_document("local_1_abc", "QmAAA"))
    store.upsert(make_document("5", "QmBBB"))
    with pytest.raises(ConflictError):
        store.replace_id("local_1_abc", make_document("5", "QmAAA"))
    assert store.get("local_1_abc").content_id == "QmAAA"
    assert store.get("5").content_id == "QmBBB"


def test_persisted_in_insertion_order(store: RecordStore, backend: MemoryBackend):
    store.upsert(make_document("2", "QmBBB"))
    store.upsert(make_document("1", "QmAAA"))
    store.put_credential("user_1", VerifierCredential(certification_id="C-1"))

    reloaded = RecordStore(backend)
    reloaded.load()
    assert [d.id for d in reloaded.list_all()] == ["2", "1"]
    assert reloaded.get_credential("user_1").certification_id == "C-1"


def test_corrupt_data_loads_empty(backend: MemoryBackend):
    backend.set(DOCUMENTS_KEY, "{not json")
    with pytest.raises(LoadError):
        RecordStore(backend).load()

    store = RecordStore.open(backend)
    assert len(store) == 0


def test_mismatched_pair_key_is_corrupt(backend: MemoryBackend):
    doc = make_document("1").model_dump(mode="json")
    backend.set(DOCUMENTS_KEY, json.dumps([["2", doc]]))
    with pytest.raises(LoadError):
        RecordStore(backend).load()


def test_replace_documents_validates_first(store: RecordStore):
    store.upsert(make_document("1", "QmAAA"))
    good = make_document("9", "QmZZZ").model_dump(mode="json")
    with pytest.raises(StorageError):
        store.replace_documents([("9", good), ("10", {"id": "10"})])
    assert [d.id for d in store.list_all()] == ["1"]

    store.replace_documents([("9", good)])
    assert [d.id for d in store.list_all()] == ["9"]
    assert store.get("QmAAA") is None


def test_credentials(store: RecordStore, backend: MemoryBackend):
    assert store.get_credential("user_1") is None
    store.put_credential("user_1", VerifierCredential())
    assert store.get_credential("user_1").status == CredentialStatus.PENDING
    assert list(store.list_credentials()) == ["user_1"]
    assert backend.get(CREDENTIALS_KEY) is not None

    removed = store.delete_credential("user_1")
    assert removed is not None
    assert store.delete_credential("user_1") is None
    assert store.export_credentials() == []


def test_delete_and_clear(store: RecordStore):
    store.upsert(make_document("1", "QmAAA"))
    store.upsert(make_document("2", "QmBBB"))
    assert store.delete("1") is True
    assert store.delete("1") is False
    assert store.get("QmAAA") is None
    store.clear()
    assert len(store) == 0


class FlakyBackend(MemoryBackend):
    """Memory backend whose writes can be switched off."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise StorageError(f"Failed to write {key}: disk full")
        super().set(key, value)


def test_failed_write_is_not_applied():
    backend = FlakyBackend()
    store = RecordStore(backend)
    store.upsert(make_document("1", "QmAAA"))

    backend.fail_writes = True
    with pytest.raises(StorageError):
        store.mutate("1", lambda d: d.model_copy(update={"status": DocumentStatus.REJECTED}))
    with pytest.raises(StorageError):
        store.upsert(make_document("3", "QmCCC"))
    with pytest.raises(StorageError):
        store.delete("1")
    assert store.get("1").status == DocumentStatus.PENDING
    assert store.get("QmCCC") is None
    assert len(store) == 1

    # A later successful write must not carry the failed ones to disk.
    backend.fail_writes = False
    store.upsert(make_document("2", "QmBBB"))
    reloaded = RecordStore(backend)
    reloaded.load()
    assert reloaded.get("1").status == DocumentStatus.PENDING
    assert [d.id for d in reloaded.list_all()] == ["1", "2"]


def test_failed_replace_id_keeps_old_key():
    backend = FlakyBackend()
    store = RecordStore(backend)
    store.upsert(make_document("local_1_abc", "QmAAA"))

    backend.fail_writes = True
    with pytest.raises(StorageError):
        store.replace_id("local_1_abc", make_document("5", "QmAAA"))
    assert store.get("local_1_abc").content_id == "QmAAA"
    assert store.get("5") is None
    assert store.get_by_content_id("QmAAA").id == "local_1_abc"


def test_failed_credential_writes_are_not_applied():
    backend = FlakyBackend()
    store = RecordStore(backend)
    store.put_credential("user_1", VerifierCredential(certification_id="C-1"))

    backend.fail_writes = True
    with pytest.raises(StorageError):
        store.put_credential("user_2", VerifierCredential())
    with pytest.raises(StorageError):
        store.delete_credential("user_1")
    with pytest.raises(StorageError):
        store.replace_credentials([])
    assert list(store.list_credentials()) == ["user_1"]
