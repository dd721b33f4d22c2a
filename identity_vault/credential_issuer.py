"""
Verifiable Credentials Issuer
=============================

Builds and signs Verifiable Credentials that bind a registered content
fingerprint to a subject DID, following the W3C VC Data Model 1.1.

Canonical form (what the issuer signs and every verifier recomputes):
compact JSON, UTF-8, no whitespace, non-ASCII kept verbatim, with exactly
these top-level members in this order:

    @context, type, issuer, issuanceDate, credentialSubject

credentialSubject members are ordered id, cid, cidHash, then the extra
claims sorted by key (nested objects sorted recursively). The proof is
never part of the canonical form.

messageHash = keccak256(canonical bytes); the signature is an EIP-191
personal_sign over the 32 hash bytes.

Reference: https://www.w3.org/TR/vc-data-model/
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from eth_utils import keccak, to_checksum_address, to_hex

from .config import settings
from .crypto_primitives import ContentFingerprint, compute_fingerprint
from .did_manager import did_to_address, parse_did
from .exceptions import SignerMismatchError, SigningRejectedError
from .key_manager import SigningCapability

log = logging.getLogger(__name__)

PROOF_TYPE = "EcdsaSecp256k1Signature2019"
RESERVED_SUBJECT_KEYS = ("id", "cid", "cidHash")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sorted(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _sorted(value[k]) for k in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [_sorted(v) for v in value]
    return value


def _compact(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True)
class CredentialSubject:
    """The subject of a Verifiable Credential"""
    id: str  # Subject's DID
    cid: str
    cid_hash: str
    claims: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {"id": self.id, "cid": self.cid, "cidHash": self.cid_hash}
        result.update(_sorted(self.claims))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialSubject":
        return cls(
            id=data["id"],
            cid=data["cid"],
            cid_hash=data["cidHash"],
            claims={k: v for k, v in data.items() if k not in RESERVED_SUBJECT_KEYS}
        )


@dataclass(frozen=True)
class CredentialProof:
    """Proof attached to a Verifiable Credential"""
    signature: str  # 0x-hex, 65 bytes
    message_hash: str  # 0x-hex, 32 bytes
    verification_method: str
    created: str
    type: str = PROOF_TYPE
    proof_purpose: str = "assertionMethod"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "created": self.created,
            "proofPurpose": self.proof_purpose,
            "verificationMethod": self.verification_method,
            "signature": self.signature,
            "messageHash": self.message_hash
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialProof":
        return cls(
            signature=data.get("signature", ""),
            message_hash=data.get("messageHash", ""),
            verification_method=data.get("verificationMethod", ""),
            created=data.get("created", ""),
            type=data.get("type", PROOF_TYPE),
            proof_purpose=data.get("proofPurpose", "assertionMethod")
        )


@dataclass(frozen=True)
class VerifiableCredential:
    """
    W3C Verifiable Credential

    Immutable: signing returns a new credential carrying the proof.
    """
    issuer: str
    issuance_date: str
    credential_subject: CredentialSubject
    context: List[str] = field(default_factory=lambda: list(settings.VC_CONTEXT))
    type: List[str] = field(default_factory=lambda: ["VerifiableCredential", settings.CREDENTIAL_TYPE])
    proof: Optional[CredentialProof] = None

    @property
    def fingerprint(self) -> ContentFingerprint:
        return ContentFingerprint.from_hex(self.credential_subject.cid_hash)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to W3C VC JSON format"""
        return {
            "@context": list(self.context),
            "type": list(self.type),
            "issuer": self.issuer,
            "issuanceDate": self.issuance_date,
            "credentialSubject": self.credential_subject.to_dict(),
            "proof": self.proof.to_dict() if self.proof else None
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerifiableCredential":
        """
        Raises:
            KeyError: a required member is missing
        """
        proof = data.get("proof")
        return cls(
            context=list(data["@context"]),
            type=list(data["type"]),
            issuer=data["issuer"],
            issuance_date=data["issuanceDate"],
            credential_subject=CredentialSubject.from_dict(data["credentialSubject"]),
            proof=CredentialProof.from_dict(proof) if proof else None
        )


# ==================== CANONICAL FORM ====================

def canonicalize(vc: VerifiableCredential) -> bytes:
    """Deterministic bytes over the signed members; the proof is excluded"""
    return _compact({
        "@context": list(vc.context),
        "type": list(vc.type),
        "issuer": vc.issuer,
        "issuanceDate": vc.issuance_date,
        "credentialSubject": vc.credential_subject.to_dict()
    })


def message_hash(vc: VerifiableCredential) -> bytes:
    return keccak(canonicalize(vc))


def credential_digest(vc: VerifiableCredential) -> str:
    """Hash of the complete credential, proof included, for disclosure binding"""
    return to_hex(keccak(_compact(_sorted(vc.to_dict()))))


# ==================== SELECTIVE DISCLOSURE ====================

def _age_over(threshold: int) -> Callable[[Dict[str, Any], date], Optional[Dict[str, Any]]]:
    def rule(claims: Dict[str, Any], today: date) -> Optional[Dict[str, Any]]:
        birth_date = claims.get("birthDate")
        if not birth_date:
            return None
        try:
            born = date.fromisoformat(birth_date)
        except (TypeError, ValueError):
            log.warning("Unparseable birthDate claim %r", birth_date)
            return None
        age = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
        return {"type": "AgeVerification", "ageOver": threshold, "verified": age >= threshold}
    return rule


DISCLOSURE_RULES = {
    "age_over_18": _age_over(18),
    "age_over_21": _age_over(21),
}


@dataclass(frozen=True)
class SelectiveDisclosureProof:
    """
    Signed statement derived from one credential.

    NOTE: not a zero-knowledge proof. It binds to the source credential by
    hash only and nothing proves the claim follows from the hidden data.
    """
    disclosure: str
    original_vc_hash: str
    claim: Optional[Dict[str, Any]]
    created: str
    signature: str = ""
    type: str = "SelectiveDisclosureProof"

    def body(self) -> bytes:
        return _compact({
            "type": self.type,
            "disclosure": self.disclosure,
            "originalVCHash": self.original_vc_hash,
            "claim": _sorted(self.claim)
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "created": self.created,
            "disclosure": self.disclosure,
            "originalVCHash": self.original_vc_hash,
            "claim": self.claim,
            "signature": self.signature
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SelectiveDisclosureProof":
        return cls(
            disclosure=data["disclosure"],
            original_vc_hash=data["originalVCHash"],
            claim=data.get("claim"),
            created=data.get("created", ""),
            signature=data.get("signature", ""),
            type=data.get("type", "SelectiveDisclosureProof")
        )


class CredentialIssuer:
    """
    Issues identity document credentials

    Features:
    - Build unsigned credentials referencing a content fingerprint
    - Canonicalise and sign through an external signing capability
    - Produce placeholder selective disclosure proofs
    """

    canonicalize = staticmethod(canonicalize)

    def __init__(self, credential_type: Optional[str] = None, context: Optional[List[str]] = None):
        self.credential_type = credential_type or settings.CREDENTIAL_TYPE
        self.context = list(context or settings.VC_CONTEXT)

    # ==================== CREDENTIAL CONSTRUCTION ====================

    def build_credential(
        self,
        issuer_did: str,
        subject_did: str,
        cid: str,
        fingerprint: Optional[ContentFingerprint] = None,
        claims: Optional[Dict[str, Any]] = None
    ) -> VerifiableCredential:
        """
        Assemble an unsigned credential

        Args:
            issuer_did: did:ethr of the issuing account
            subject_did: did:ethr of the document owner
            cid: Content identifier of the encrypted document
            fingerprint: Registry key; derived from the cid when omitted
            claims: Extra subject claims

        Raises:
            InvalidDIDError: either DID is not a did:ethr
            ValueError: fingerprint does not match the cid, or claims use reserved keys
        """
        parse_did(issuer_did)
        parse_did(subject_did)

        expected = compute_fingerprint(cid)
        if fingerprint is not None and bytes(fingerprint) != bytes(expected):
            raise ValueError(f"Fingerprint does not match content identifier {cid!r}")

        claims = dict(claims or {})
        reserved = [k for k in RESERVED_SUBJECT_KEYS if k in claims]
        if reserved:
            raise ValueError(f"Claims may not override subject fields: {reserved}")

        return VerifiableCredential(
            context=list(self.context),
            type=["VerifiableCredential", self.credential_type],
            issuer=issuer_did,
            issuance_date=_timestamp(),
            credential_subject=CredentialSubject(
                id=subject_did,
                cid=cid,
                cid_hash=expected.to_hex(),
                claims=claims
            )
        )

    # ==================== SIGNING ====================

    async def sign(self, vc: VerifiableCredential, signer: SigningCapability) -> VerifiableCredential:
        """
        Sign a credential and return the signed copy

        Raises:
            SignerMismatchError: signer's account does not control vc.issuer
            SigningRejectedError: signer declined or was unavailable
        """
        expected = did_to_address(vc.issuer)
        try:
            address = to_checksum_address(signer.address)
        except Exception as e:
            raise SigningRejectedError(f"Signer unavailable: {e}") from e
        if address != expected:
            raise SignerMismatchError(f"Signer {address} does not control {vc.issuer}")

        digest = message_hash(vc)
        signature = await self._request_signature(signer, digest)

        proof = CredentialProof(
            signature=to_hex(signature),
            message_hash=to_hex(digest),
            verification_method=f"{vc.issuer}#controller",
            created=_timestamp()
        )
        log.info("Signed credential for %s (messageHash=%s)", vc.credential_subject.id, proof.message_hash)
        return replace(vc, proof=proof)

    async def issue(
        self,
        issuer_did: str,
        subject_did: str,
        cid: str,
        signer: SigningCapability,
        claims: Optional[Dict[str, Any]] = None
    ) -> VerifiableCredential:
        """Build and sign in one step"""
        vc = self.build_credential(issuer_did, subject_did, cid, claims=claims)
        return await self.sign(vc, signer)

    @staticmethod
    async def _request_signature(signer: SigningCapability, message: bytes) -> bytes:
        try:
            return await signer.sign_message(message)
        except SigningRejectedError:
            raise
        except Exception as e:
            raise SigningRejectedError(f"Signer unavailable: {e}") from e

    # ==================== SELECTIVE DISCLOSURE ====================

    async def create_disclosure_proof(
        self,
        vc: VerifiableCredential,
        disclosure: str,
        signer: SigningCapability,
        today: Optional[date] = None
    ) -> SelectiveDisclosureProof:
        """
        Derive a single fact from a signed credential and sign it

        Unknown disclosure tags yield a proof with ``claim=None``.
        """
        rule = DISCLOSURE_RULES.get(disclosure)
        claim = rule(vc.credential_subject.claims, today or date.today()) if rule else None
        log.warning("Creating placeholder disclosure proof %r; not a zero-knowledge proof", disclosure)

        unsigned = SelectiveDisclosureProof(
            disclosure=disclosure,
            original_vc_hash=credential_digest(vc),
            claim=claim,
            created=_timestamp()
        )
        signature = await self._request_signature(signer, keccak(unsigned.body()))
        return replace(unsigned, signature=to_hex(signature))
