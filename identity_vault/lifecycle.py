"""
Document Lifecycle Service
==========================

Sequences the credential lifecycle across the vault's components:

- upload:   encrypt -> store -> fingerprint -> record (uploaded)
- register: ledger issue -> receipt -> record (registered)
- revoke:   ledger revoke -> receipt -> record (revoked)
- issue / verify / disclose credentials

The local record only changes after the ledger confirms a write.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives.asymmetric import x25519

from .config import settings
from .credential_issuer import CredentialIssuer, SelectiveDisclosureProof, VerifiableCredential
from .credential_verifier import CredentialVerifier, TrustDecision
from .crypto_primitives import (
    EncryptedPayload,
    compute_fingerprint,
    decrypt_document,
    encrypt_document,
)
from .did_manager import did_to_address
from .key_manager import SigningCapability
from .records import AuditAction, AuditLogEntry, DocumentRecord, DocumentStatus, RecordStore
from .registry import LedgerClient, ValidityStatus
from .storage import ContentStore

log = logging.getLogger(__name__)


class DocumentLifecycle:
    """
    Main service class for the identity vault

    Collaborators are passed in explicitly; the service holds no other state.
    """

    def __init__(
        self,
        store: ContentStore,
        records: RecordStore,
        ledger: LedgerClient,
        issuer: Optional[CredentialIssuer] = None,
        verifier: Optional[CredentialVerifier] = None,
        max_document_size: Optional[int] = None
    ):
        self.store = store
        self.records = records
        self.ledger = ledger
        self.issuer = issuer or CredentialIssuer()
        self.verifier = verifier or CredentialVerifier(ledger)
        self.max_document_size = max_document_size or settings.MAX_DOCUMENT_SIZE

    def _audit(self, action: AuditAction, details: str, **kwargs):
        self.records.add_audit_entry(AuditLogEntry(action=action, details=details, **kwargs))

    # ==================== DOCUMENTS ====================

    async def upload_document(
        self,
        owner_did: str,
        name: str,
        doc_type: str,
        plaintext: bytes,
        recipient_public_key: x25519.X25519PublicKey
    ) -> DocumentRecord:
        """
        Encrypt a document client-side and store the ciphertext

        Args:
            owner_did: did:ethr of the document owner
            name: Original file name
            doc_type: Document category (passport, license, ...)
            plaintext: Document bytes
            recipient_public_key: X25519 key that may later open the document

        Returns:
            DocumentRecord in ``uploaded`` status
        """
        did_to_address(owner_did)
        if len(plaintext) > self.max_document_size:
            raise ValueError(f"Document exceeds {self.max_document_size} bytes")

        payload = encrypt_document(plaintext, recipient_public_key)
        cid = await self.store.put(payload.ciphertext)

        record = DocumentRecord(
            doc_id=uuid.uuid4().hex,
            name=name,
            doc_type=doc_type,
            owner_did=owner_did,
            cid=cid,
            cid_hash=compute_fingerprint(cid).to_hex(),
            nonce=payload.nonce.hex(),
            wrapped_key=payload.wrapped_key.hex()
        )
        self.records.save_document(record)
        self._audit(AuditAction.UPLOAD, f"Uploaded {name}", doc_id=record.doc_id, cid=cid)
        log.info("Uploaded document %s as %s", record.doc_id, cid)
        return record

    async def retrieve_document(self, doc_id: str, recipient_private_key: x25519.X25519PrivateKey) -> bytes:
        """
        Fetch and decrypt a stored document

        Raises:
            IntegrityError: ciphertext or wrapped key fails authentication
        """
        record = self.records.get_document(doc_id)
        ciphertext = await self.store.get(record.cid)
        payload = EncryptedPayload(
            ciphertext=ciphertext,
            nonce=bytes.fromhex(record.nonce),
            wrapped_key=bytes.fromhex(record.wrapped_key)
        )
        return decrypt_document(payload, recipient_private_key)

    async def register_document(self, doc_id: str, issuer_did: str, *, sender: str) -> DocumentRecord:
        """
        Register the document fingerprint on the ledger

        The record moves to ``registered`` only once the receipt is in.
        Registry and ledger errors propagate with the record unchanged.
        """
        record = self.records.get_document(doc_id)
        owner = did_to_address(record.owner_did)

        receipt = await self.ledger.issue(record.cid_hash, owner, issuer_did, sender=sender)

        updated = record.with_status(DocumentStatus.REGISTERED, receipt.tx_hash)
        self.records.save_document(updated)
        self._audit(
            AuditAction.REGISTER, "Registered on-chain",
            doc_id=doc_id, cid=record.cid, tx_hash=receipt.tx_hash
        )
        return updated

    async def revoke_document(self, doc_id: str, *, sender: str) -> DocumentRecord:
        record = self.records.get_document(doc_id)
        receipt = await self.ledger.revoke(record.cid_hash, sender=sender)

        updated = record.with_status(DocumentStatus.REVOKED, receipt.tx_hash)
        self.records.save_document(updated)
        self._audit(
            AuditAction.REVOKE, "Revoked credential",
            doc_id=doc_id, cid=record.cid, tx_hash=receipt.tx_hash
        )
        return updated

    async def refresh_status(self, doc_id: str) -> DocumentRecord:
        """Re-sync a cached record with the ledger"""
        record = self.records.get_document(doc_id)
        validity = await self.ledger.is_valid(record.cid_hash)
        events = self.ledger.events(record.cid_hash)

        if validity.valid:
            status = DocumentStatus.REGISTERED
        elif any(e.name == "Revoked" for e in events):
            status = DocumentStatus.REVOKED
        else:
            status = DocumentStatus.UPLOADED

        if status is not record.status:
            log.info("Document %s status %s -> %s", doc_id, record.status.value, status.value)
            record = record.with_status(status)
            self.records.save_document(record)
        return record

    async def check_validity(self, cid: str) -> ValidityStatus:
        """Look up a content identifier on the ledger"""
        return await self.ledger.is_valid(compute_fingerprint(cid))

    # ==================== CREDENTIALS ====================

    async def issue_credential(
        self,
        issuer_did: str,
        subject_did: str,
        cid: str,
        signer: SigningCapability,
        claims: Optional[Dict[str, Any]] = None
    ) -> VerifiableCredential:
        """
        Build, sign and cache a credential for a stored document

        Raises:
            SigningRejectedError: the issuer declined; nothing is cached
        """
        vc = await self.issuer.issue(issuer_did, subject_did, cid, signer, claims=claims)
        self.records.save_credential(vc)
        self._audit(AuditAction.ISSUE_VC, f"Issued VC to {subject_did}", cid=cid)
        return vc

    async def verify_credential(self, vc: VerifiableCredential) -> TrustDecision:
        decision = await self.verifier.assess_trust(vc)
        self._audit(
            AuditAction.VERIFY, f"Trust decision: {decision.status.value}",
            cid=vc.credential_subject.cid
        )
        return decision

    async def disclose(
        self,
        vc: VerifiableCredential,
        disclosure: str,
        signer: SigningCapability
    ) -> SelectiveDisclosureProof:
        proof = await self.issuer.create_disclosure_proof(vc, disclosure, signer)
        self._audit(AuditAction.DISCLOSE, f"Disclosed {disclosure}", cid=vc.credential_subject.cid)
        return proof
