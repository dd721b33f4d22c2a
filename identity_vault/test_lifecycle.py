"""
Lifecycle Tests
===============

Upload -> register -> issue -> verify -> revoke through DocumentLifecycle.
"""

import json

import pytest

from identity_vault.credential_verifier import TrustStatus, VerificationStatus
from identity_vault.crypto_primitives import compute_fingerprint
from identity_vault.exceptions import (
    AlreadyRegisteredError,
    DocumentNotFoundError,
    IntegrityError,
    InvalidDIDError,
    LedgerUnavailableError,
    SigningRejectedError,
    UnauthorizedRevocationError,
)
from identity_vault.key_manager import KeyManager
from identity_vault.lifecycle import DocumentLifecycle
from identity_vault.records import (
    AuditAction,
    DocumentStatus,
    InMemoryRecordStore,
    JsonFileRecordStore,
)
from identity_vault.registry import CredentialsRegistry, LedgerClient, RevocationPolicy
from identity_vault.storage import InMemoryContentStore, content_identifier

DOCUMENT = b"%PDF-1.7 national identity card"


class LifecycleFixture:

    def setup_method(self):
        self.key_manager = KeyManager()
        self.issuer_key = self.key_manager.generate_secp256k1_keypair()
        self.owner_key = self.key_manager.generate_secp256k1_keypair()
        self.recipient = self.key_manager.generate_recipient_keypair("owner-recipient")

        self.issuer_did = self.issuer_key.controller
        self.owner_did = self.owner_key.controller
        self.owner = self.owner_key.public_key
        self.issuer_signer = self.key_manager.signer(self.issuer_key.key_id)

        self.store = InMemoryContentStore()
        self.records = InMemoryRecordStore()
        self.ledger = LedgerClient(CredentialsRegistry())
        self.lifecycle = DocumentLifecycle(self.store, self.records, self.ledger)

    async def _upload(self):
        return await self.lifecycle.upload_document(
            self.owner_did, "passport.pdf", "passport", DOCUMENT, self.recipient.public_key
        )


class TestDocumentLifecycle(LifecycleFixture):

    @pytest.mark.asyncio
    async def test_upload(self):
        record = await self._upload()

        assert record.status is DocumentStatus.UPLOADED
        assert record.cid.startswith("bafkrei")
        assert record.cid_hash == compute_fingerprint(record.cid).to_hex()
        assert await self.store.get(record.cid) != DOCUMENT
        assert self.records.get_document(record.doc_id) == record
        assert self.records.list_audit_entries()[0].action is AuditAction.UPLOAD

    @pytest.mark.asyncio
    async def test_upload_rejects_oversized(self):
        lifecycle = DocumentLifecycle(self.store, self.records, self.ledger, max_document_size=8)
        with pytest.raises(ValueError):
            await lifecycle.upload_document(self.owner_did, "big", "passport", DOCUMENT, self.recipient.public_key)

    @pytest.mark.asyncio
    async def test_upload_rejects_bad_owner(self):
        with pytest.raises(InvalidDIDError):
            await self.lifecycle.upload_document("did:web:x", "a", "b", DOCUMENT, self.recipient.public_key)

    @pytest.mark.asyncio
    async def test_retrieve(self):
        record = await self._upload()
        assert await self.lifecycle.retrieve_document(record.doc_id, self.recipient.private_key) == DOCUMENT

    @pytest.mark.asyncio
    async def test_retrieve_wrong_recipient(self):
        record = await self._upload()
        stranger = self.key_manager.generate_recipient_keypair("stranger")

        with pytest.raises(IntegrityError):
            await self.lifecycle.retrieve_document(record.doc_id, stranger.private_key)

    @pytest.mark.asyncio
    async def test_register_and_revoke(self):
        record = await self._upload()

        registered = await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)
        assert registered.status is DocumentStatus.REGISTERED
        assert registered.tx_hash.startswith("0x")
        validity = await self.lifecycle.check_validity(record.cid)
        assert validity.valid is True
        assert validity.owner == self.owner

        revoked = await self.lifecycle.revoke_document(record.doc_id, sender=self.owner)
        assert revoked.status is DocumentStatus.REVOKED
        assert (await self.lifecycle.check_validity(record.cid)).valid is False

        actions = [e.action for e in self.records.list_audit_entries()]
        assert actions == [AuditAction.REVOKE, AuditAction.REGISTER, AuditAction.UPLOAD]

    @pytest.mark.asyncio
    async def test_register_twice(self):
        record = await self._upload()
        await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)

        with pytest.raises(AlreadyRegisteredError):
            await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)

    @pytest.mark.asyncio
    async def test_record_unchanged_until_ledger_confirms(self):
        record = await self._upload()
        self.ledger.simulate_outage()

        with pytest.raises(LedgerUnavailableError):
            await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)
        assert self.records.get_document(record.doc_id).status is DocumentStatus.UPLOADED

        # caller-driven retry
        registered = await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)
        assert registered.status is DocumentStatus.REGISTERED

    @pytest.mark.asyncio
    async def test_unauthorised_revoke_keeps_record(self):
        record = await self._upload()
        await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)

        with pytest.raises(UnauthorizedRevocationError):
            await self.lifecycle.revoke_document(record.doc_id, sender=self.issuer_key.public_key)
        assert self.records.get_document(record.doc_id).status is DocumentStatus.REGISTERED

    @pytest.mark.asyncio
    async def test_issuer_revocation_policy(self):
        ledger = LedgerClient(CredentialsRegistry(policy=RevocationPolicy.ISSUER))
        lifecycle = DocumentLifecycle(self.store, self.records, ledger)
        record = await lifecycle.upload_document(
            self.owner_did, "id.png", "id", DOCUMENT, self.recipient.public_key
        )
        await lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)

        revoked = await lifecycle.revoke_document(record.doc_id, sender=self.issuer_key.public_key)
        assert revoked.status is DocumentStatus.REVOKED

    @pytest.mark.asyncio
    async def test_refresh_status_catches_up_with_ledger(self):
        record = await self._upload()
        # registered out-of-band, e.g. from another device
        await self.ledger.issue(record.cid_hash, self.owner, self.issuer_did, sender=self.owner)
        assert self.records.get_document(record.doc_id).status is DocumentStatus.UPLOADED

        refreshed = await self.lifecycle.refresh_status(record.doc_id)
        assert refreshed.status is DocumentStatus.REGISTERED

        await self.ledger.revoke(record.cid_hash, sender=self.owner)
        assert (await self.lifecycle.refresh_status(record.doc_id)).status is DocumentStatus.REVOKED

    @pytest.mark.asyncio
    async def test_unknown_document(self):
        with pytest.raises(DocumentNotFoundError):
            await self.lifecycle.register_document("missing", self.issuer_did, sender=self.owner)


class TestCredentialFlow(LifecycleFixture):

    @pytest.mark.asyncio
    async def test_end_to_end(self):
        """Issue, verify, revoke: signature stays valid, trust is withdrawn"""
        record = await self._upload()
        fingerprint = compute_fingerprint(record.cid)

        await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)
        validity = await self.ledger.is_valid(fingerprint)
        assert (validity.valid, validity.owner, validity.issuer_did) == (True, self.owner, self.issuer_did)
        assert validity.issued_at > 0

        vc = await self.lifecycle.issue_credential(
            self.issuer_did, self.owner_did, record.cid, self.issuer_signer, {"docType": "passport"}
        )
        assert vc.credential_subject.cid_hash == fingerprint.to_hex()
        assert self.records.get_credential_by_cid(record.cid) == vc

        decision = await self.lifecycle.verify_credential(vc)
        assert decision.trusted is True
        assert decision.signature.recovered_signer == self.issuer_key.public_key

        await self.lifecycle.revoke_document(record.doc_id, sender=self.owner)
        assert (await self.ledger.is_valid(fingerprint)).valid is False

        decision = await self.lifecycle.verify_credential(vc)
        assert decision.signature.valid is True
        assert decision.trusted is False
        assert decision.status is TrustStatus.UNTRUSTED
        print(f"✅ Revoked credential untrusted: {decision.reasons}")

    @pytest.mark.asyncio
    async def test_unregistered_fingerprint_untrusted(self):
        record = await self._upload()
        vc = await self.lifecycle.issue_credential(self.issuer_did, self.owner_did, record.cid, self.issuer_signer)

        decision = await self.lifecycle.verify_credential(vc)
        assert decision.signature.valid is True
        assert decision.status is TrustStatus.UNTRUSTED

    @pytest.mark.asyncio
    async def test_ledger_owner_must_match_subject(self):
        record = await self._upload()
        await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)
        other_subject = self.key_manager.generate_secp256k1_keypair().controller

        vc = await self.lifecycle.issue_credential(self.issuer_did, other_subject, record.cid, self.issuer_signer)
        decision = await self.lifecycle.verify_credential(vc)

        assert decision.status is TrustStatus.UNTRUSTED
        assert any("owner" in r for r in decision.reasons)

    @pytest.mark.asyncio
    async def test_ledger_issuer_must_match(self):
        record = await self._upload()
        other_issuer = self.key_manager.generate_secp256k1_keypair()
        await self.lifecycle.register_document(record.doc_id, other_issuer.controller, sender=self.owner)

        vc = await self.lifecycle.issue_credential(self.issuer_did, self.owner_did, record.cid, self.issuer_signer)
        decision = await self.lifecycle.verify_credential(vc)
        assert any("issuer" in r for r in decision.reasons)
        assert decision.trusted is False

    @pytest.mark.asyncio
    async def test_ledger_outage_is_indeterminate(self):
        record = await self._upload()
        await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)
        vc = await self.lifecycle.issue_credential(self.issuer_did, self.owner_did, record.cid, self.issuer_signer)

        self.ledger.simulate_outage()
        decision = await self.lifecycle.verify_credential(vc)

        assert decision.status is TrustStatus.INDETERMINATE
        assert decision.ledger is None

    @pytest.mark.asyncio
    async def test_tampered_credential_untrusted(self):
        record = await self._upload()
        await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)
        vc = await self.lifecycle.issue_credential(self.issuer_did, self.owner_did, record.cid, self.issuer_signer)

        data = vc.to_dict()
        data["credentialSubject"]["docType"] = "diplomatic-passport"
        decision = await self.lifecycle.verify_credential(type(vc).from_dict(data))

        assert decision.signature.status is VerificationStatus.HASH_MISMATCH
        assert decision.trusted is False

    @pytest.mark.asyncio
    async def test_empty_cid_untrusted(self):
        record = await self._upload()
        await self.lifecycle.register_document(record.doc_id, self.issuer_did, sender=self.owner)
        vc = await self.lifecycle.issue_credential(self.issuer_did, self.owner_did, record.cid, self.issuer_signer)

        data = vc.to_dict()
        data["credentialSubject"]["cid"] = ""
        decision = await self.lifecycle.verify_credential(type(vc).from_dict(data))

        assert decision.status is TrustStatus.UNTRUSTED
        assert "cidHash does not match cid" in decision.reasons

    @pytest.mark.asyncio
    async def test_rejected_signing_caches_nothing(self):
        record = await self._upload()
        signer = self.key_manager.signer(self.issuer_key.key_id, approve=lambda message: False)

        with pytest.raises(SigningRejectedError):
            await self.lifecycle.issue_credential(self.issuer_did, self.owner_did, record.cid, signer)
        assert self.records.list_credentials() == []

    @pytest.mark.asyncio
    async def test_disclose(self):
        record = await self._upload()
        vc = await self.lifecycle.issue_credential(
            self.issuer_did, self.owner_did, record.cid, self.issuer_signer, {"birthDate": "1990-01-01"}
        )
        holder = self.key_manager.signer(self.owner_key.key_id)

        proof = await self.lifecycle.disclose(vc, "age_over_18", holder)
        assert proof.claim["verified"] is True
        assert self.records.list_audit_entries()[0].action is AuditAction.DISCLOSE


class TestRecordStores:

    def test_content_identifier_is_stable(self):
        assert content_identifier(b"abc") == content_identifier(b"abc")
        assert content_identifier(b"abc") != content_identifier(b"abd")

    @pytest.mark.asyncio
    async def test_missing_content(self):
        with pytest.raises(KeyError):
            await InMemoryContentStore().get("bafkreimissing")

    @pytest.mark.asyncio
    async def test_json_store_persists(self, tmp_path):
        path = tmp_path / "records.json"
        key_manager = KeyManager()
        owner = key_manager.generate_secp256k1_keypair()
        issuer = key_manager.generate_secp256k1_keypair()
        recipient = key_manager.generate_recipient_keypair("r")

        records = JsonFileRecordStore(path)
        lifecycle = DocumentLifecycle(InMemoryContentStore(), records, LedgerClient())
        record = await lifecycle.upload_document(owner.controller, "a.pdf", "passport", DOCUMENT, recipient.public_key)
        await lifecycle.register_document(record.doc_id, issuer.controller, sender=owner.public_key)
        vc = await lifecycle.issue_credential(
            issuer.controller, owner.controller, record.cid, key_manager.signer(issuer.key_id)
        )
        records.save_user_did(owner.controller)

        reloaded = JsonFileRecordStore(path)
        assert reloaded.get_document(record.doc_id).status is DocumentStatus.REGISTERED
        assert reloaded.get_credential_by_cid(record.cid) == vc
        assert [e.action for e in reloaded.list_audit_entries()] == [
            AuditAction.ISSUE_VC, AuditAction.REGISTER, AuditAction.UPLOAD
        ]
        assert reloaded.get_user_did() == owner.controller
        assert json.loads(path.read_text())["documents"][0]["status"] == "registered"

    def test_delete_document(self):
        records = InMemoryRecordStore()
        records.delete_document("nope")
        with pytest.raises(DocumentNotFoundError):
            records.get_document("nope")
