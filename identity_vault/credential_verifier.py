"""
Verifiable Credentials Verifier
================================

Checks a signed credential without contacting its issuer.

Signature validity:
1. Proof present
2. Recomputed canonical hash equals proof.messageHash
3. Signer recovered from proof.signature over messageHash
4. Recovered account equals the account in the issuer DID

Trust decision additionally requires the ledger to report the fingerprint
Valid, owned by the subject's account and attested by the same issuer DID.
Signature validity and ledger validity are both required.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import decode_hex, keccak, to_checksum_address, to_hex

from .credential_issuer import (
    SelectiveDisclosureProof,
    VerifiableCredential,
    credential_digest,
    message_hash,
)
from .crypto_primitives import compute_fingerprint
from .did_manager import did_to_address
from .exceptions import (
    HashMismatchError,
    InvalidDIDError,
    LedgerUnavailableError,
    MissingProofError,
    SignatureError,
)
from .registry import LedgerClient, ValidityStatus

log = logging.getLogger(__name__)


class VerificationStatus(Enum):
    """Signature check outcome"""
    VALID = "valid"
    MISSING_PROOF = "missing_proof"
    HASH_MISMATCH = "hash_mismatch"
    INVALID_SIGNATURE = "invalid_signature"
    SIGNER_MISMATCH = "signer_mismatch"
    MALFORMED = "malformed"


class TrustStatus(Enum):
    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"
    INDETERMINATE = "indeterminate"  # the ledger could not be consulted


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class VerificationResult:
    """Result of a credential signature check"""
    status: VerificationStatus
    recovered_signer: Optional[str] = None
    expected_signer: Optional[str] = None
    reason: Optional[str] = None
    verified_at: str = field(default_factory=_now)

    @property
    def valid(self) -> bool:
        return self.status is VerificationStatus.VALID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "status": self.status.value,
            "recoveredSigner": self.recovered_signer,
            "expectedSigner": self.expected_signer,
            "reason": self.reason,
            "verifiedAt": self.verified_at
        }


@dataclass
class TrustDecision:
    """Combined signature and ledger outcome"""
    status: TrustStatus
    signature: VerificationResult
    ledger: Optional[ValidityStatus] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def trusted(self) -> bool:
        return self.status is TrustStatus.TRUSTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trusted": self.trusted,
            "status": self.status.value,
            "signature": self.signature.to_dict(),
            "ledger": self.ledger.to_dict() if self.ledger else None,
            "reasons": list(self.reasons)
        }


_ERROR_STATUS = {
    MissingProofError: VerificationStatus.MISSING_PROOF,
    HashMismatchError: VerificationStatus.HASH_MISMATCH,
    SignatureError: VerificationStatus.INVALID_SIGNATURE,
    InvalidDIDError: VerificationStatus.MALFORMED,
}


def recover_signer(digest: bytes, signature: str) -> str:
    """
    Recover the account that personal-signed ``digest``

    Raises:
        SignatureError: signature is not a valid recoverable secp256k1 signature
    """
    try:
        return Account.recover_message(encode_defunct(primitive=digest), signature=decode_hex(signature))
    except Exception as e:
        raise SignatureError(f"Signature could not be recovered: {e}") from e


def _cid_hash_matches(cid, cid_hash) -> bool:
    if not isinstance(cid, str) or not isinstance(cid_hash, str):
        return False
    try:
        return compute_fingerprint(cid).to_hex() == cid_hash.lower()
    except ValueError:
        # empty content identifier
        return False


class CredentialVerifier:
    """
    Verifies identity document credentials

    Stateless per call; the ledger client is only read.
    """

    def __init__(self, ledger: Optional[LedgerClient] = None):
        self.ledger = ledger

    # ==================== SIGNATURE ====================

    def verify_signature(self, credential: VerifiableCredential) -> str:
        """
        Run steps 1-3 and return the recovered signer

        Raises:
            MissingProofError: no proof attached
            HashMismatchError: a signed field was altered after signing
            SignatureError: signature bytes are unusable
        """
        proof = credential.proof
        if proof is None or not proof.signature:
            raise MissingProofError("Credential has no proof")
        if not isinstance(proof.signature, str):
            raise SignatureError("Signature must be a hex string")

        digest = message_hash(credential)
        if not isinstance(proof.message_hash, str) or to_hex(digest) != proof.message_hash.lower():
            raise HashMismatchError("Message hash mismatch")

        return recover_signer(digest, proof.signature)

    def verify(self, credential: VerifiableCredential) -> VerificationResult:
        """
        Verify the credential signature

        Invalid credentials are reported in the result, never raised.
        """
        try:
            recovered = self.verify_signature(credential)
            expected = did_to_address(credential.issuer)
        except tuple(_ERROR_STATUS) as e:
            log.info("Credential rejected: %s", e)
            return VerificationResult(status=_ERROR_STATUS[type(e)], reason=str(e))

        if to_checksum_address(recovered) != expected:
            return VerificationResult(
                status=VerificationStatus.SIGNER_MISMATCH,
                recovered_signer=recovered,
                expected_signer=expected,
                reason="Recovered signer does not control the issuer DID"
            )

        return VerificationResult(
            status=VerificationStatus.VALID,
            recovered_signer=recovered,
            expected_signer=expected
        )

    # ==================== TRUST DECISION ====================

    async def assess_trust(self, credential: VerifiableCredential) -> TrustDecision:
        """
        Combine signature validity with on-chain validity

        Returns INDETERMINATE instead of UNTRUSTED when the ledger cannot be read.
        """
        if self.ledger is None:
            raise RuntimeError("A ledger client is required for trust decisions")

        signature = self.verify(credential)
        reasons = []
        if not signature.valid:
            reasons.append(f"signature: {signature.status.value}")

        subject = credential.credential_subject
        if not _cid_hash_matches(subject.cid, subject.cid_hash):
            reasons.append("cidHash does not match cid")
            return TrustDecision(TrustStatus.UNTRUSTED, signature, reasons=reasons)

        try:
            ledger = await self.ledger.is_valid(subject.cid_hash)
        except LedgerUnavailableError as e:
            reasons.append(f"ledger: {e}")
            return TrustDecision(TrustStatus.INDETERMINATE, signature, reasons=reasons)

        if not ledger.valid:
            reasons.append("ledger: fingerprint not valid")
        else:
            try:
                subject_account = did_to_address(subject.id)
            except InvalidDIDError:
                subject_account = None
            if ledger.owner != subject_account:
                reasons.append("ledger: owner does not match credential subject")
            if ledger.issuer_did.lower() != credential.issuer.lower():
                reasons.append("ledger: issuer does not match credential issuer")

        status = TrustStatus.TRUSTED if not reasons else TrustStatus.UNTRUSTED
        return TrustDecision(status, signature, ledger=ledger, reasons=reasons)

    # ==================== SELECTIVE DISCLOSURE ====================

    @staticmethod
    def verify_disclosure_proof(proof: SelectiveDisclosureProof, original: VerifiableCredential) -> bool:
        """
        Check a disclosure proof against its source credential

        Only hash equality and signature presence are checked. This does not
        establish that the claim follows from the credential.
        """
        if credential_digest(original) != proof.original_vc_hash:
            return False
        return bool(proof.signature)

    @staticmethod
    def disclosure_signer(proof: SelectiveDisclosureProof) -> str:
        """Account that signed a disclosure proof"""
        return recover_signer(keccak(proof.body()), proof.signature)
