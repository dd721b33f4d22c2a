"""
Identity Vault Exceptions
=========================

Every failure raised by the lifecycle engine derives from VaultError.
``retryable`` tells the caller whether re-initiating the same operation
can change the outcome.
"""


class VaultError(Exception):
    """Base exception for the identity vault."""

    retryable = False


# ==================== CRYPTO ====================

class IntegrityError(VaultError):
    """Authenticated decryption or key unwrapping failed."""


# ==================== REGISTRY ====================

class RegistryError(VaultError):
    """A registry state-machine precondition was violated."""

    def __init__(self, message: str, fingerprint: str = ""):
        super().__init__(message)
        self.fingerprint = fingerprint


class AlreadyRegisteredError(RegistryError):
    """Fingerprint is already Valid or Revoked."""


class NotRegisteredError(RegistryError):
    """Fingerprint has never been issued."""


class AlreadyRevokedError(RegistryError):
    """Fingerprint was already revoked."""


class UnauthorizedRevocationError(RegistryError):
    """Sender is not allowed to revoke under the active policy."""


class LedgerUnavailableError(VaultError):
    """The ledger could not be reached; the write may be resubmitted."""

    retryable = True


# ==================== SIGNING ====================

class SigningError(VaultError):
    """Base class for signing capability failures."""


class SigningRejectedError(SigningError):
    """The signer declined or was unavailable."""

    retryable = True


class SignerMismatchError(SigningError):
    """The signer's account does not control the issuer DID."""


# ==================== VERIFICATION ====================

class VerificationError(VaultError):
    """The credential is invalid."""


class MissingProofError(VerificationError):
    """Credential carries no proof."""


class HashMismatchError(VerificationError):
    """Recomputed message hash differs from proof.messageHash."""


class SignatureError(VerificationError):
    """Signature bytes are malformed or unrecoverable."""


# ==================== LOOKUPS ====================

class InvalidDIDError(VaultError, ValueError):
    """DID string is not a did:ethr identifier."""


class DocumentNotFoundError(VaultError, KeyError):
    """No document record with the given id."""

    def __str__(self):
        return str(self.args[0]) if self.args else "document not found"
