"""Wire the stores, collaborators and services into one object."""

import asyncio
from collections.abc import Awaitable, Callable

from cblock import config as cblock_config
from cblock.admin.audit_log import AuditLog
from cblock.admin.models import User
from cblock.admin.service import AdminAuditService
from cblock.admin.users import UserDirectory
from cblock.attestation.codec import SigningDomain
from cblock.attestation.signer import CredentialSigner
from cblock.config import CBlockConfig
from cblock.documents.lifecycle import LifecycleManager
from cblock.documents.models import Uploader
from cblock.documents.reconcile import ReconciliationEngine
from cblock.documents.store import RecordStore
from cblock.errors import NotFoundError
from cblock.ledger.base import ContentStore, LedgerClient
from cblock.ledger.memory import InMemoryLedger, LocalContentStore
from cblock.retry import RetryExecutor
from cblock.storage.backend import JsonFileBackend, KeyValueBackend
from cblock.sync.poller import SyncPoller


def signing_domain(config: CBlockConfig) -> SigningDomain:
    return SigningDomain(
        name=config.signing_domain_name,
        version=config.signing_domain_version,
        chain_id=config.chain_id,
        verifying_contract=config.verifying_contract,
    )


class CBlockService:
    def __init__(
        self,
        backend: KeyValueBackend,
        ledger: LedgerClient,
        content_store: ContentStore,
        signer: CredentialSigner,
        config: CBlockConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or CBlockConfig()
        self.backend = backend
        self.ledger = ledger
        self.content_store = content_store
        self.signer = signer

        self.store = RecordStore.open(backend)
        self.users = UserDirectory.open(backend)
        self.audit_log = AuditLog(backend)
        self.retry = RetryExecutor(
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            sleep=sleep,
        )
        self.engine = ReconciliationEngine(
            self.store, ledger, self.retry, role_resolver=self.users.role_for
        )
        self.lifecycle = LifecycleManager(
            self.store,
            content_store,
            ledger,
            signer,
            self.retry,
            lenient_minting=self.config.lenient_minting,
        )
        self.admin = AdminAuditService(self.store, self.users, self.audit_log)

    def poller(self, owner: str | None = None) -> SyncPoller:
        return SyncPoller(self.engine, interval=self.config.poll_interval_seconds, owner=owner)

    def resolve_actor(self, ref: str) -> User:
        """Find a user by id, email or wallet address."""
        user = self.users.get(ref) or self.users.find_by_identity(ref)
        if user is None:
            raise NotFoundError(f"User not found: {ref}")
        return user

    @staticmethod
    def uploader_for(user: User) -> Uploader:
        return Uploader(
            identity=user.identity,
            role=user.role,
            name=user.name or user.email,
            email=user.email,
        )


def build_service(config: CBlockConfig | None = None) -> CBlockService:
    """Service backed by ~/.cblock/: JSON files, local content and ledger state."""
    from cblock.identity.keys import SigningKeyStore

    config = config or cblock_config.load_config()
    cblock_config.ensure_dirs()

    return CBlockService(
        backend=JsonFileBackend(cblock_config.DATA_DIR),
        ledger=InMemoryLedger(
            state_path=cblock_config.LEDGER_DIR / "state.json",
            configured=config.ledger_enabled,
        ),
        content_store=LocalContentStore(cblock_config.CONTENT_DIR),
        signer=SigningKeyStore(cblock_config.KEYS_DIR).signer(signing_domain(config)),
        config=config,
    )
