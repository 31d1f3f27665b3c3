"""The attestation signing key kept under ``~/.cblock/keys/``."""

import hashlib
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
    load_pem_public_key,
)

from cblock.attestation.codec import SigningDomain
from cblock.attestation.signer import Ed25519CredentialSigner
from cblock.config import KEYS_DIR

PRIVATE_KEY_FILE = "signer.pem"
PUBLIC_KEY_FILE = "signer.pub.pem"


def key_fingerprint(public_key: Ed25519PublicKey) -> str:
    """``ed25519:<sha256 hex>`` of the raw public key bytes."""
    return "ed25519:" + hashlib.sha256(public_key.public_bytes_raw()).hexdigest()


class SigningKeyStore:
    """One Ed25519 keypair on disk.

    The private key is written owner-read-only (0o400). The public half is
    kept beside it so the fingerprint can be shown without reading the
    private key.
    """

    def __init__(self, keys_dir: Path | None = None) -> None:
        self.keys_dir = keys_dir or KEYS_DIR

    @property
    def private_path(self) -> Path:
        return self.keys_dir / PRIVATE_KEY_FILE

    @property
    def public_path(self) -> Path:
        return self.keys_dir / PUBLIC_KEY_FILE

    def exists(self) -> bool:
        return self.private_path.exists()

    def load_or_create(self) -> tuple[Ed25519PrivateKey, bool]:
        """Return the private key and whether it was created by this call."""
        if self.exists():
            private_key = self._load_private()
            if not self.public_path.exists():
                self._write_public(private_key.public_key())
            return private_key, False

        private_key = Ed25519PrivateKey.generate()
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        self.private_path.write_bytes(
            private_key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
        )
        self.private_path.chmod(0o400)
        self._write_public(private_key.public_key())
        return private_key, True

    def public_key(self) -> Ed25519PublicKey:
        if not self.public_path.exists():
            raise FileNotFoundError(f"Signing public key not found: {self.public_path}")
        key = load_pem_public_key(self.public_path.read_bytes())
        if not isinstance(key, Ed25519PublicKey):
            raise TypeError(f"Expected Ed25519 public key, got {type(key).__name__}")
        return key

    def fingerprint(self) -> str:
        return key_fingerprint(self.public_key())

    def signer(self, domain: SigningDomain | None = None) -> Ed25519CredentialSigner:
        private_key, _ = self.load_or_create()
        return Ed25519CredentialSigner(private_key, domain)

    def _load_private(self) -> Ed25519PrivateKey:
        key = load_pem_private_key(self.private_path.read_bytes(), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise TypeError(f"Expected Ed25519 private key, got {type(key).__name__}")
        return key

    def _write_public(self, public_key: Ed25519PublicKey) -> None:
        self.public_path.write_bytes(
            public_key.public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)
        )
