"""
Identity Vault
==============

Client-side encrypted identity documents, registered on a ledger by
content fingerprint and attested with W3C Verifiable Credentials.

Components:
- crypto_primitives: AES-256-GCM, X25519 key wrapping, keccak fingerprints
- CredentialsRegistry / LedgerClient: issue, revoke and validity of fingerprints
- CredentialIssuer: build and sign Verifiable Credentials
- CredentialVerifier: signature checks and combined trust decisions
- KeyManager: signing accounts and recipient keys
- DocumentLifecycle: service sequencing the whole flow

Standards:
- W3C Verifiable Credentials: https://www.w3.org/TR/vc-data-model/
- did:ethr: https://github.com/decentralized-identity/ethr-did-resolver
"""

from .credential_issuer import (
    CredentialIssuer,
    CredentialProof,
    CredentialSubject,
    SelectiveDisclosureProof,
    VerifiableCredential,
    canonicalize,
)
from .credential_verifier import (
    CredentialVerifier,
    TrustDecision,
    TrustStatus,
    VerificationResult,
    VerificationStatus,
)
from .crypto_primitives import (
    ContentFingerprint,
    EncryptedPayload,
    compute_fingerprint,
    decrypt,
    encrypt,
    generate_key,
    generate_nonce,
    unwrap_key,
    wrap_key,
)
from .key_manager import KeyManager, KeyPair, LocalAccountSigner, SigningCapability
from .lifecycle import DocumentLifecycle
from .records import DocumentRecord, DocumentStatus, InMemoryRecordStore, JsonFileRecordStore
from .registry import CredentialsRegistry, LedgerClient, RevocationPolicy, ValidityStatus
from .storage import InMemoryContentStore

__version__ = "1.0.0"
__all__ = [
    # Crypto
    "ContentFingerprint",
    "EncryptedPayload",
    "compute_fingerprint",
    "encrypt",
    "decrypt",
    "generate_key",
    "generate_nonce",
    "wrap_key",
    "unwrap_key",

    # Keys
    "KeyManager",
    "KeyPair",
    "LocalAccountSigner",
    "SigningCapability",

    # Registry
    "CredentialsRegistry",
    "LedgerClient",
    "RevocationPolicy",
    "ValidityStatus",

    # Credentials
    "CredentialIssuer",
    "CredentialProof",
    "CredentialSubject",
    "CredentialVerifier",
    "SelectiveDisclosureProof",
    "TrustDecision",
    "TrustStatus",
    "VerifiableCredential",
    "VerificationResult",
    "VerificationStatus",
    "canonicalize",

    # Records and service
    "DocumentLifecycle",
    "DocumentRecord",
    "DocumentStatus",
    "InMemoryContentStore",
    "InMemoryRecordStore",
    "JsonFileRecordStore",
]
