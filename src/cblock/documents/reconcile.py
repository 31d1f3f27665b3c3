"""Merge the local cache with the ledger into one consistent document view."""

from collections.abc import Callable

import structlog

from cblock.documents.models import (
    DEFAULT_MIME_TYPE,
    UNKNOWN,
    Attestation,
    Document,
    DocumentFilters,
    DocumentMetadata,
    DocumentSource,
    DocumentStats,
    DocumentStatus,
    UserRole,
)
from cblock.documents.store import RecordStore
from cblock.errors import ErrorClass, NotFoundError, TransientInfraError
from cblock.ledger.base import LedgerClient, LedgerRecord
from cblock.retry import RetryExecutor

log = structlog.get_logger()

FETCH_RETRYABLE = frozenset({ErrorClass.NETWORK, ErrorClass.TIMEOUT, ErrorClass.CONGESTION})
FETCH_MAX_RETRIES = 2

RoleResolver = Callable[[str], UserRole | None]

_STICKY_STATUSES = (DocumentStatus.MINTED, DocumentStatus.REJECTED)


def merge(
    local: Document | None,
    remote: LedgerRecord,
    role_resolver: RoleResolver | None = None,
) -> Document:
    """Combine a ledger record with its local copy, if any.

    The ledger supplies identity, ownership and project fields; the local copy
    supplies file info and uploader display fields. A local Minted or Rejected
    status wins, otherwise the ledger's attestation flag decides.
    """
    if local is not None and local.status in _STICKY_STATUSES:
        status = local.status
    elif remote.is_attested:
        status = DocumentStatus.ATTESTED
    else:
        status = DocumentStatus.PENDING

    attestation = local.attestation if local is not None else None
    if attestation is None and remote.is_attested:
        attestation = Attestation(
            verifier=remote.verifier or UNKNOWN,
            attested_at=remote.attested_at or remote.created_at,
            remote_attested=True,
        )
    if status == DocumentStatus.PENDING:
        attestation = None

    uploader = remote.uploader or (local.uploader if local else UNKNOWN)
    role = role_resolver(uploader) if role_resolver else None
    if role is None:
        role = local.uploader_role if local else UserRole.INDIVIDUAL

    return Document(
        id=str(remote.id),
        content_id=remote.content_id,
        status=status,
        uploader=uploader,
        uploader_role=role,
        uploader_name=local.uploader_name if local else UNKNOWN,
        uploader_email=local.uploader_email if local else UNKNOWN,
        filename=local.filename if local else UNKNOWN,
        file_size=local.file_size if local else 0,
        mime_type=local.mime_type if local else DEFAULT_MIME_TYPE,
        metadata=DocumentMetadata(
            project_name=remote.project_name,
            project_type=remote.project_type,
            description=remote.description,
            location=remote.location,
            estimated_credits=remote.estimated_credits,
        ),
        attestation=attestation,
        minting_result=local.minting_result if status == DocumentStatus.MINTED and local else None,
        registered_remotely=True,
        remote_transaction_ref=local.remote_transaction_ref if local else None,
        source=DocumentSource.REMOTE,
        created_at=remote.created_at,
        updated_at=local.updated_at if local else remote.created_at,
    )


def _matches_text(doc: Document, needle: str) -> bool:
    haystacks = (
        doc.metadata.project_name,
        doc.metadata.description,
        doc.uploader_name,
        doc.uploader,
    )
    return any(needle in h.lower() for h in haystacks)


def apply_filters(documents: list[Document], filters: DocumentFilters | None) -> list[Document]:
    if filters is None:
        return list(documents)
    result = []
    for doc in documents:
        if filters.status is not None and doc.status != filters.status:
            continue
        if filters.uploader_role is not None and doc.uploader_role != filters.uploader_role:
            continue
        if filters.uploader is not None and doc.uploader.lower() != filters.uploader.lower():
            continue
        if filters.project_type and (
            filters.project_type.lower() not in doc.metadata.project_type.lower()
        ):
            continue
        if filters.search and not _matches_text(doc, filters.search.lower()):
            continue
        result.append(doc)
    return result


def sort_and_dedupe(documents: list[Document]) -> list[Document]:
    """Newest first (stable), keeping the first document per content id."""
    ordered = sorted(documents, key=lambda d: d.created_at, reverse=True)
    seen: set[str] = set()
    result = []
    for doc in ordered:
        if doc.content_id in seen:
            continue
        seen.add(doc.content_id)
        result.append(doc)
    return result


def _tagged(documents: list[Document], source: DocumentSource) -> list[Document]:
    return [doc.model_copy(update={"source": source}) for doc in documents]


class ReconciliationEngine:
    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerClient,
        retry: RetryExecutor,
        role_resolver: RoleResolver | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.retry = retry
        self.role_resolver = role_resolver

    async def list_documents(
        self, filters: DocumentFilters | None = None, prefer_local: bool = True
    ) -> list[Document]:
        local = self.store.list_all()
        if local and prefer_local:
            documents = _tagged(local, DocumentSource.LOCAL)
        else:
            documents = await self._reconciled(local)
        return sort_and_dedupe(apply_filters(documents, filters))

    async def _reconciled(self, local: list[Document]) -> list[Document]:
        if not self.ledger.is_configured():
            return _tagged(local, DocumentSource.LOCAL)
        try:
            records = await self.retry.execute_with_retry(
                self.ledger.get_all_records,
                self.retry.policy(FETCH_MAX_RETRIES, FETCH_RETRYABLE),
                name="get_all_records",
            )
        except (TransientInfraError, TimeoutError, ConnectionError) as e:
            log.warning("ledger_fetch_failed_using_local", error=str(e), local_count=len(local))
            return _tagged(local, DocumentSource.LOCAL)

        by_id = {doc.id: doc for doc in local}
        by_content_id = {doc.content_id: doc for doc in local}
        matched: set[str] = set()
        documents = []
        for record in records:
            match = by_id.get(str(record.id)) or by_content_id.get(record.content_id)
            if match is not None:
                matched.add(match.id)
            documents.append(merge(match, record, self.role_resolver))

        local_only = [doc for doc in local if doc.id not in matched]
        documents.extend(_tagged(local_only, DocumentSource.LOCAL_ONLY))
        log.debug(
            "documents_reconciled",
            remote=len(records),
            matched=len(matched),
            local_only=len(local_only),
        )
        return documents

    async def get_document(self, document_id: str | int) -> Document:
        local = self.store.get(document_id)
        if local is not None:
            return local.model_copy(update={"source": DocumentSource.LOCAL})
        if self.ledger.is_configured():
            try:
                record = await self.retry.execute_with_retry(
                    lambda: self.ledger.get_record(str(document_id)),
                    self.retry.policy(FETCH_MAX_RETRIES, FETCH_RETRYABLE),
                    name="get_record",
                )
            except (TransientInfraError, TimeoutError, ConnectionError) as e:
                log.warning("ledger_get_record_failed", document_id=str(document_id), error=str(e))
                record = None
            if record is not None:
                return merge(None, record, self.role_resolver)
        raise NotFoundError(f"Document {document_id} not found")

    async def document_stats(self) -> DocumentStats:
        documents = await self.list_documents()
        stats = DocumentStats(total=len(documents))
        for doc in documents:
            field = doc.status.value
            setattr(stats, field, getattr(stats, field) + 1)
        return stats

    async def user_documents(self, identity: str) -> list[Document]:
        return await self.list_documents(DocumentFilters(uploader=identity))
