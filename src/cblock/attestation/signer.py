"""Credential signers: produce a domain-separated signature over attestation typed data."""

import json
from abc import ABC, abstractmethod

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from cblock.attestation.codec import AttestationPayload, SigningDomain, typed_data

SIGNATURE_PREFIX = "ed25519:"


def _typed_data_bytes(payload: AttestationPayload, domain: SigningDomain) -> bytes:
    """Canonical JSON serialization for deterministic signing."""
    return json.dumps(typed_data(payload, domain), sort_keys=True, default=str).encode()


class CredentialSigner(ABC):
    """Signs attestation payloads. The signer owns its domain parameters."""

    @property
    @abstractmethod
    def domain(self) -> SigningDomain: ...

    @abstractmethod
    async def sign(self, payload: AttestationPayload) -> str: ...


class Ed25519CredentialSigner(CredentialSigner):
    def __init__(self, private_key: Ed25519PrivateKey, domain: SigningDomain | None = None) -> None:
        self._private_key = private_key
        self._domain = domain or SigningDomain()

    @property
    def domain(self) -> SigningDomain:
        return self._domain

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self._private_key.public_key()

    async def sign(self, payload: AttestationPayload) -> str:
        signature = self._private_key.sign(_typed_data_bytes(payload, self._domain))
        return SIGNATURE_PREFIX + signature.hex()


def verify_attestation_signature(
    payload: AttestationPayload,
    signature: str,
    public_key: Ed25519PublicKey,
    domain: SigningDomain,
) -> bool:
    if not signature.startswith(SIGNATURE_PREFIX):
        return False
    try:
        raw = bytes.fromhex(signature.removeprefix(SIGNATURE_PREFIX))
    except ValueError:
        return False
    try:
        public_key.verify(raw, _typed_data_bytes(payload, domain))
        return True
    except InvalidSignature:
        return False
