"""Shared fixtures: in-memory backend, reference ledger, recording sleep."""

from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from cblock.attestation.signer import Ed25519CredentialSigner
from cblock.documents.store import RecordStore
from cblock.ledger.memory import InMemoryLedger, LocalContentStore
from cblock.retry import RetryExecutor
from cblock.storage.backend import MemoryBackend


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def store(backend: MemoryBackend) -> RecordStore:
    return RecordStore(backend)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def retry(sleeps: list[float]) -> RetryExecutor:
    """Executor whose backoff sleeps are recorded instead of awaited."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return RetryExecutor(base_delay=1.0, max_delay=10.0, sleep=fake_sleep)


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def content_store(tmp_path: Path) -> LocalContentStore:
    return LocalContentStore(tmp_path / "content")


@pytest.fixture
def signer() -> Ed25519CredentialSigner:
    return Ed25519CredentialSigner(Ed25519PrivateKey.generate())
