"""Typed change events raised by the sync poller, and the snapshot diff that produces them."""

from datetime import datetime

from pydantic import BaseModel, Field

from cblock.documents.models import Document, DocumentStatus, utcnow


class Snapshot(BaseModel):
    documents: list[Document]
    balance: int = 0
    taken_at: datetime = Field(default_factory=utcnow)


class SyncEvent(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)


class SnapshotLoaded(SyncEvent):
    documents: list[Document]
    balance: int


class DocumentAdded(SyncEvent):
    document: Document


class DocumentStatusChanged(SyncEvent):
    document: Document
    old_status: DocumentStatus
    new_status: DocumentStatus


class BalanceChanged(SyncEvent):
    old_balance: int
    new_balance: int

    @property
    def delta(self) -> int:
        return self.new_balance - self.old_balance


def minted_balance(documents: list[Document], identity: str | None) -> int:
    """Sum of minted amounts credited to ``identity`` (all recipients if None)."""
    total = 0
    for doc in documents:
        result = doc.minting_result
        if doc.status != DocumentStatus.MINTED or result is None:
            continue
        if identity is None or result.recipient.lower() == identity.lower():
            total += result.amount
    return total


def diff_snapshots(old: Snapshot | None, new: Snapshot) -> list[SyncEvent]:
    if old is None:
        return [SnapshotLoaded(documents=new.documents, balance=new.balance)]

    events: list[SyncEvent] = []
    previous = {doc.id: doc for doc in old.documents}
    for doc in new.documents:
        before = previous.get(doc.id)
        if before is None:
            events.append(DocumentAdded(document=doc))
        elif before.status != doc.status:
            events.append(
                DocumentStatusChanged(document=doc, old_status=before.status, new_status=doc.status)
            )
    if new.balance != old.balance:
        events.append(BalanceChanged(old_balance=old.balance, new_balance=new.balance))
    return events
