"""Attestation payload: field order, validation and the typed-data envelope that gets signed."""

import re
from typing import Any

from pydantic import BaseModel

from cblock.documents.models import AttestationInput, Document
from cblock.errors import ValidationError

RECIPIENT_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
CONTENT_ID_PREFIXES = ("Qm", "bafy", "bafk")
CONTENT_ID_LENGTHS = (46, 59)
MIN_EXTERNAL_ID = 3
MAX_EXTERNAL_ID = 50
MAX_AMOUNT = 1_000_000

ATTESTATION_TYPES: dict[str, list[dict[str, str]]] = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Attestation": [
        {"name": "external_project_id", "type": "string"},
        {"name": "external_serial", "type": "string"},
        {"name": "content_id", "type": "string"},
        {"name": "amount", "type": "uint256"},
        {"name": "recipient", "type": "address"},
        {"name": "nonce", "type": "uint256"},
    ],
}


class AttestationPayload(BaseModel):
    external_project_id: str
    external_serial: str
    content_id: str
    amount: int
    recipient: str
    nonce: int


class SigningDomain(BaseModel):
    name: str = "CarbonCredit"
    version: str = "1"
    chain_id: int = 1337
    verifying_contract: str = "0x0000000000000000000000000000000000000000"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_external_id(value: Any, field: str, label: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required", field=field)
    if not MIN_EXTERNAL_ID <= len(value) <= MAX_EXTERNAL_ID:
        raise ValidationError(
            f"{label} must be between {MIN_EXTERNAL_ID} and {MAX_EXTERNAL_ID} characters",
            field=field,
        )


def _is_content_id(value: str) -> bool:
    if value.startswith(CONTENT_ID_PREFIXES):
        return True
    return len(value) in CONTENT_ID_LENGTHS and value.isalnum()


def validate_attestation_payload(fields: AttestationPayload | dict[str, Any]) -> None:
    """Check every payload field; the first failure raises naming its field."""
    if isinstance(fields, AttestationPayload):
        fields = fields.model_dump()

    _check_external_id(fields.get("external_project_id"), "external_project_id", "Project ID")
    _check_external_id(fields.get("external_serial"), "external_serial", "Serial number")

    content_id = fields.get("content_id")
    if not isinstance(content_id, str) or not content_id.strip():
        raise ValidationError("Content ID is required", field="content_id")
    if not _is_content_id(content_id):
        raise ValidationError("Invalid content ID format", field="content_id")

    recipient = fields.get("recipient")
    if not isinstance(recipient, str) or not recipient.strip():
        raise ValidationError("Recipient address is required", field="recipient")
    if not RECIPIENT_PATTERN.match(recipient):
        raise ValidationError("Invalid recipient address format", field="recipient")

    amount = fields.get("amount")
    if not _is_int(amount) or amount <= 0 or amount > MAX_AMOUNT:
        raise ValidationError(
            "Amount must be a positive number between 1 and 1,000,000", field="amount"
        )

    nonce = fields.get("nonce")
    if not _is_int(nonce) or nonce < 0:
        raise ValidationError("Nonce must be a non-negative number", field="nonce")


def build_attestation_payload(
    attestation_input: AttestationInput, document: Document
) -> AttestationPayload:
    """Assemble and validate the payload for attesting ``document``.

    An omitted amount falls back to the document's estimated credits and an
    omitted recipient to its uploader.
    """
    fields = {
        "external_project_id": attestation_input.external_project_id.strip(),
        "external_serial": attestation_input.external_serial.strip(),
        "content_id": document.content_id,
        "amount": (
            int(document.metadata.estimated_credits)
            if attestation_input.amount is None
            else attestation_input.amount
        ),
        "recipient": attestation_input.recipient or document.uploader,
        "nonce": attestation_input.nonce,
    }
    validate_attestation_payload(fields)
    return AttestationPayload(**fields)


def typed_data(payload: AttestationPayload, domain: SigningDomain) -> dict[str, Any]:
    return {
        "types": ATTESTATION_TYPES,
        "primaryType": "Attestation",
        "domain": {
            "name": domain.name,
            "version": domain.version,
            "chainId": domain.chain_id,
            "verifyingContract": domain.verifying_contract,
        },
        "message": payload.model_dump(),
    }
