"""Document lifecycle: upload, attestation, rejection and minting.

State machine::

    Pending --attest--> Attested --mint--> Minted
    Pending --reject--> Rejected
    Attested --reject--> Rejected

Illegal transitions raise ConflictError and leave the stored document
untouched. Remote calls go through the RetryExecutor; ledger failures degrade
to local-only state with an explicit flag on the result, content-store
failures do not (there is no content id to record).
"""

import asyncio
import secrets
import string
import time
from collections import defaultdict

import structlog

from cblock.admin.models import User
from cblock.attestation.codec import build_attestation_payload
from cblock.attestation.signer import CredentialSigner
from cblock.documents.models import (
    AttestationInput,
    AttestResult,
    Attestation,
    Document,
    DocumentMetadata,
    DocumentSource,
    DocumentStatus,
    FileUpload,
    MintEligibility,
    MintingInput,
    MintingResult,
    Uploader,
    UploadResult,
    UserRole,
    utcnow,
)
from cblock.documents.reconcile import FETCH_MAX_RETRIES, FETCH_RETRYABLE, merge
from cblock.documents.store import RecordStore
from cblock.documents.validation import validate_file, validate_metadata
from cblock.errors import (
    CBlockError,
    ConflictError,
    ErrorClass,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from cblock.ledger.base import ContentStore, LedgerClient, RegistrationReceipt, RegistrationRequest
from cblock.retry import RetryExecutor

log = structlog.get_logger()

REGISTER_RETRYABLE = frozenset(
    {ErrorClass.NETWORK, ErrorClass.TIMEOUT, ErrorClass.STORE_UNAVAILABLE}
)
REGISTER_MAX_RETRIES = 2
ATTEST_RETRYABLE = frozenset({ErrorClass.NETWORK, ErrorClass.CONGESTION})
ATTEST_MAX_RETRIES = 1

_BASE36 = string.digits + string.ascii_lowercase

# Failures a ledger call may end with once retries are spent.
LEDGER_FAILURES = (CBlockError, OSError, TimeoutError)


def generate_local_id() -> str:
    """``local_<epoch millis>_<6 base36 chars>``, used when the ledger is unreachable."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"local_{int(time.time() * 1000)}_{suffix}"


_ATTEST_CONFLICTS = {
    DocumentStatus.ATTESTED: "Document has already been attested",
    DocumentStatus.MINTED: "Document has already been minted",
    DocumentStatus.REJECTED: "Document has been rejected and cannot be attested",
}

_REJECT_CONFLICTS = {
    DocumentStatus.MINTED: "Document has already been minted and cannot be rejected",
    DocumentStatus.REJECTED: "Document has already been rejected",
}


class LifecycleManager:
    def __init__(
        self,
        store: RecordStore,
        content_store: ContentStore,
        ledger: LedgerClient,
        signer: CredentialSigner,
        retry: RetryExecutor,
        lenient_minting: bool = False,
    ) -> None:
        self.store = store
        self.content_store = content_store
        self.ledger = ledger
        self.signer = signer
        self.retry = retry
        self.lenient_minting = lenient_minting
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock_for(self, document_id: str | int) -> asyncio.Lock:
        doc = self.store.get(document_id)
        return self._locks[doc.id if doc else str(document_id)]

    async def _register_on_ledger(self, request: RegistrationRequest) -> RegistrationReceipt:
        return await self.retry.execute_with_retry(
            lambda: self.ledger.register_record(request),
            self.retry.policy(REGISTER_MAX_RETRIES, REGISTER_RETRYABLE),
            name="register_record",
        )

    async def _resolve(self, document_id: str | int, import_remote: bool = True) -> Document:
        """Local copy, else the ledger's record (imported into the local store if asked)."""
        doc = self.store.get(document_id)
        if doc is not None:
            return doc
        if self.ledger.is_configured():
            record = await self.retry.execute_with_retry(
                lambda: self.ledger.get_record(str(document_id)),
                self.retry.policy(FETCH_MAX_RETRIES, FETCH_RETRYABLE),
                name="get_record",
            )
            if record is not None:
                remote = merge(None, record)
                if not import_remote:
                    return remote
                imported = remote.model_copy(update={"source": DocumentSource.LOCAL})
                log.info("document_imported_from_ledger", document_id=imported.id)
                return self.store.upsert(imported)
        raise NotFoundError(f"Document {document_id} not found")

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def register_upload(
        self, file: FileUpload, metadata: DocumentMetadata, uploader: Uploader
    ) -> UploadResult:
        validate_file(file)
        validate_metadata(metadata)

        content_id = await self.retry.execute_with_retry(
            lambda: self.content_store.put(file.content, file.filename),
            self.retry.policy(REGISTER_MAX_RETRIES, REGISTER_RETRYABLE),
            name="content_put",
        )
        existing = self.store.get_by_content_id(content_id)
        if existing is not None:
            raise ConflictError(f"This file was already uploaded as document {existing.id}")

        receipt: RegistrationReceipt | None = None
        if self.ledger.is_configured():
            request = RegistrationRequest(
                content_id=content_id,
                uploader=uploader.identity,
                project_name=metadata.project_name,
                project_type=metadata.project_type,
                description=metadata.description,
                location=metadata.location,
                estimated_credits=metadata.estimated_credits,
            )
            try:
                receipt = await self._register_on_ledger(request)
            except LEDGER_FAILURES as e:
                log.warning("ledger_registration_failed", content_id=content_id, error=str(e))
            if receipt is not None and receipt.document_id in self.store:
                log.warning(
                    "ledger_id_already_used_locally",
                    document_id=receipt.document_id,
                    content_id=content_id,
                )
                receipt = None

        now = utcnow()
        document = Document(
            id=receipt.document_id if receipt else generate_local_id(),
            content_id=content_id,
            uploader=uploader.identity,
            uploader_role=uploader.role,
            uploader_name=uploader.name,
            uploader_email=uploader.email,
            filename=file.filename,
            file_size=file.size,
            mime_type=file.mime_type,
            metadata=metadata,
            registered_remotely=receipt is not None,
            remote_transaction_ref=receipt.transaction_ref if receipt else None,
            created_at=now,
            updated_at=now,
        )
        stored = self.store.upsert(document)
        log.info(
            "document_uploaded",
            document_id=stored.id,
            content_id=content_id,
            registered_remotely=stored.registered_remotely,
        )

        if receipt is not None:
            message = "Document uploaded and registered on the ledger"
        elif self.ledger.is_configured():
            message = "Document stored locally (ledger registration pending)"
        else:
            message = "Document stored locally (ledger not configured)"
        return UploadResult(
            document=stored, registered_remotely=stored.registered_remotely, message=message
        )

    async def retry_registration(self, document_id: str | int) -> Document:
        """Register a local-only document on the ledger and re-key it to the ledger id."""
        async with self._lock_for(document_id):
            doc = self.store.get(document_id)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found")
            if doc.registered_remotely:
                raise ConflictError("Document is already registered on the ledger")
            if not self.ledger.is_configured():
                raise ConflictError("Ledger is not configured")

            receipt = await self._register_on_ledger(
                RegistrationRequest(
                    content_id=doc.content_id,
                    uploader=doc.uploader,
                    **doc.metadata.model_dump(),
                )
            )
            registered = doc.model_copy(
                update={
                    "id": receipt.document_id,
                    "registered_remotely": True,
                    "remote_transaction_ref": receipt.transaction_ref,
                    "updated_at": utcnow(),
                }
            )
            stored = self.store.replace_id(doc.id, registered)
            self._locks.pop(doc.id, None)
            log.info("document_rekeyed", old_id=doc.id, document_id=stored.id)
            return stored

    # ------------------------------------------------------------------
    # Attestation and rejection
    # ------------------------------------------------------------------

    async def attest(
        self, document_id: str | int, attestation_input: AttestationInput, actor: User
    ) -> AttestResult:
        if actor.role != UserRole.VERIFIER:
            raise PermissionDeniedError("Only verifiers can attest documents")

        async with self._lock_for(document_id):
            doc = await self._resolve(document_id)
            if doc.status in _ATTEST_CONFLICTS:
                raise ConflictError(_ATTEST_CONFLICTS[doc.status])

            payload = build_attestation_payload(attestation_input, doc)
            signature = await self.signer.sign(payload)

            remote_ref: str | None = None
            if doc.registered_remotely and self.ledger.is_configured():
                try:
                    receipt = await self.retry.execute_with_retry(
                        lambda: self.ledger.attest_record(doc.id, actor.identity, signature),
                        self.retry.policy(ATTEST_MAX_RETRIES, ATTEST_RETRYABLE),
                        name="attest_record",
                    )
                    remote_ref = receipt.transaction_ref
                except LEDGER_FAILURES as e:
                    log.warning("ledger_attestation_failed", document_id=doc.id, error=str(e))

            attestation = Attestation(
                verifier=actor.identity,
                attested_at=utcnow(),
                signature=signature,
                external_project_id=payload.external_project_id,
                external_serial=payload.external_serial,
                amount=payload.amount,
                nonce=payload.nonce,
                remote_attested=remote_ref is not None,
                remote_transaction_ref=remote_ref,
            )

            def apply(current: Document) -> Document:
                if current.status != DocumentStatus.PENDING:
                    raise ConflictError(_ATTEST_CONFLICTS[current.status])
                return current.model_copy(
                    update={
                        "status": DocumentStatus.ATTESTED,
                        "attestation": attestation,
                        "updated_at": utcnow(),
                    }
                )

            updated = self.store.mutate(doc.id, apply)

        log.info(
            "document_attested",
            document_id=updated.id,
            verifier=actor.identity,
            remote_attested=attestation.remote_attested,
        )
        message = (
            "Document attested successfully on the ledger"
            if attestation.remote_attested
            else "Document attested locally (ledger attestation pending)"
        )
        return AttestResult(
            document=updated, remote_attested=attestation.remote_attested, message=message
        )

    async def reject(self, document_id: str | int, reason: str, actor: User) -> Document:
        if actor.role != UserRole.VERIFIER:
            raise PermissionDeniedError("Only verifiers can reject documents")
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required", field="reason")

        async with self._lock_for(document_id):
            doc = await self._resolve(document_id)

            def apply(current: Document) -> Document:
                if current.status in _REJECT_CONFLICTS:
                    raise ConflictError(_REJECT_CONFLICTS[current.status])
                return current.model_copy(
                    update={
                        "status": DocumentStatus.REJECTED,
                        "rejection_reason": reason.strip(),
                        "updated_at": utcnow(),
                    }
                )

            updated = self.store.mutate(doc.id, apply)

        log.info("document_rejected", document_id=updated.id, verifier=actor.identity)
        return updated

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    async def record_minting(self, document_id: str | int, minting_input: MintingInput) -> Document:
        """Record a completed mint. Recording the same document twice is a no-op."""
        if not minting_input.transaction_ref.strip():
            raise ValidationError("Transaction reference is required", field="transaction_ref")
        if minting_input.amount <= 0:
            raise ValidationError("Minted amount must be positive", field="amount")

        async with self._lock_for(document_id):
            doc = self.store.get(document_id)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found")
            if doc.status == DocumentStatus.MINTED:
                log.info("minting_already_recorded", document_id=doc.id)
                return doc
            if doc.status == DocumentStatus.REJECTED:
                raise ConflictError("Document has been rejected and cannot be minted")
            if doc.status == DocumentStatus.PENDING:
                if not self.lenient_minting:
                    raise ConflictError("Document must be attested before minting")
                log.warning("minting_without_attestation", document_id=doc.id)

            result = MintingResult(
                transaction_ref=minting_input.transaction_ref,
                minted_at=minting_input.minted_at or utcnow(),
                amount=minting_input.amount,
                recipient=minting_input.recipient,
                token_ref=minting_input.token_ref,
                minted_by=minting_input.minted_by,
            )

            def apply(current: Document) -> Document:
                return current.model_copy(
                    update={
                        "status": DocumentStatus.MINTED,
                        "minting_result": result,
                        "updated_at": utcnow(),
                    }
                )

            updated = self.store.mutate(doc.id, apply)

        log.info("document_minted", document_id=updated.id, amount=result.amount)
        return updated

    async def check_mint_eligibility(self, document_id: str | int) -> MintEligibility:
        try:
            doc = await self._resolve(document_id, import_remote=False)
        except NotFoundError:
            return MintEligibility(eligible=False, reason="Document not found")
        except LEDGER_FAILURES as e:
            return MintEligibility(eligible=False, reason=f"Error checking eligibility: {e}")

        if doc.status == DocumentStatus.MINTED:
            return MintEligibility(eligible=False, reason="Document has already been minted")
        if doc.status != DocumentStatus.ATTESTED:
            return MintEligibility(
                eligible=False, reason="Document must be attested before minting"
            )
        if doc.attestation is None or not doc.attestation.signature:
            return MintEligibility(
                eligible=False, reason="Document attestation data is incomplete"
            )
        return MintEligibility(eligible=True, reason="Document is eligible for minting")
