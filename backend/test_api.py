"""
API Tests
=========

Exercises the HTTP surface end to end with an in-memory vault.
"""

import json

import pytest
from fastapi.testclient import TestClient

from backend.api import app
from identity_vault.key_manager import KeyManager


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def owner():
    key_manager = KeyManager()
    key = key_manager.generate_secp256k1_keypair()
    recipient = key_manager.generate_recipient_keypair("owner")
    return key, recipient


def upload(client, owner, content=b"%PDF-1.7 driving licence"):
    key, recipient = owner
    response = client.post(
        "/api/documents",
        files={"file": ("licence.pdf", content, "application/pdf")},
        data={
            "owner_did": key.controller,
            "recipient_public_key": recipient.public_key_b64(),
            "doc_type": "license"
        }
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_info(client):
    info = client.get("/api/info").json()

    assert info["issuer_did"].startswith("did:ethr:0x")
    assert info["revocation_policy"] == "owner"
    assert info["public_keys"][info["issuer_did"] + "#controller"]["controller"] == info["issuer_did"]


def test_upload_and_list(client, owner):
    record = upload(client, owner)

    assert record["status"] == "uploaded"
    assert record["cid"].startswith("bafkrei")
    assert record["doc_id"] in [d["doc_id"] for d in client.get("/api/documents").json()]


def test_upload_rejects_bad_recipient_key(client, owner):
    key, _ = owner
    response = client.post(
        "/api/documents",
        files={"file": ("a.pdf", b"data", "application/pdf")},
        data={"owner_did": key.controller, "recipient_public_key": "not-a-key"}
    )
    assert response.status_code == 400


def test_register_revoke_cycle(client, owner):
    key, _ = owner
    issuer_did = client.get("/api/info").json()["issuer_did"]
    record = upload(client, owner)

    response = client.post(
        f"/api/documents/{record['doc_id']}/register",
        data={"issuer_did": issuer_did, "sender": key.public_key}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "registered"

    validity = client.get(f"/api/registry/{record['cid']}").json()
    assert validity["valid"] is True
    assert validity["owner"] == key.public_key

    # second registration conflicts
    response = client.post(
        f"/api/documents/{record['doc_id']}/register",
        data={"issuer_did": issuer_did, "sender": key.public_key}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "AlreadyRegisteredError"

    # only the owner may revoke under the default policy
    stranger = KeyManager().generate_secp256k1_keypair().public_key
    response = client.post(f"/api/documents/{record['doc_id']}/revoke", data={"sender": stranger})
    assert response.status_code == 403

    response = client.post(f"/api/documents/{record['doc_id']}/revoke", data={"sender": key.public_key})
    assert response.json()["status"] == "revoked"
    assert client.get(f"/api/registry/{record['cid']}").json()["valid"] is False


def test_revoke_unregistered(client, owner):
    key, _ = owner
    record = upload(client, owner)

    response = client.post(f"/api/documents/{record['doc_id']}/revoke", data={"sender": key.public_key})
    assert response.status_code == 404
    assert response.json()["retryable"] is False


def test_unknown_document(client, owner):
    key, _ = owner
    response = client.post("/api/documents/missing/revoke", data={"sender": key.public_key})
    assert response.status_code == 404


def test_issue_and_verify_credential(client, owner):
    key, _ = owner
    issuer_did = client.get("/api/info").json()["issuer_did"]
    record = upload(client, owner)
    client.post(
        f"/api/documents/{record['doc_id']}/register",
        data={"issuer_did": issuer_did, "sender": key.public_key}
    )

    response = client.post(
        "/api/credential/issue",
        data={"subject_did": key.controller, "cid": record["cid"], "claims_json": '{"docType": "license"}'}
    )
    assert response.status_code == 200
    credential = response.json()["credential"]
    assert credential["proof"]["verificationMethod"] == issuer_did + "#controller"
    assert credential["credentialSubject"]["cidHash"] == record["cid_hash"]

    decision = client.post("/api/credential/verify", data={"credential_json": json.dumps(credential)}).json()
    assert decision["trusted"] is True
    assert decision["signature"]["valid"] is True

    client.post(f"/api/documents/{record['doc_id']}/revoke", data={"sender": key.public_key})
    decision = client.post("/api/credential/verify", data={"credential_json": json.dumps(credential)}).json()
    assert decision["signature"]["valid"] is True
    assert decision["status"] == "untrusted"

    actions = [e["action"] for e in client.get("/api/audit").json()]
    assert actions[:2] == ["VERIFY", "REVOKE"]
    assert "ISSUE_VC" in actions


@pytest.mark.parametrize("section, member, value", [
    ("credentialSubject", "cid", ""),
    ("proof", "messageHash", None),
    ("proof", "signature", 7),
])
def test_verify_reports_malformed_credential_as_untrusted(client, owner, section, member, value):
    key, _ = owner
    record = upload(client, owner)
    credential = client.post(
        "/api/credential/issue",
        data={"subject_did": key.controller, "cid": record["cid"]}
    ).json()["credential"]
    credential[section][member] = value

    response = client.post("/api/credential/verify", data={"credential_json": json.dumps(credential)})

    assert response.status_code == 200
    assert response.json()["trusted"] is False
    assert response.json()["signature"]["valid"] is False


def test_issue_rejects_bad_input(client, owner):
    key, _ = owner
    response = client.post(
        "/api/credential/issue",
        data={"subject_did": key.controller, "cid": "bafkreiabc", "claims_json": "[1, 2]"}
    )
    assert response.status_code == 400

    response = client.post(
        "/api/credential/issue",
        data={"subject_did": "did:web:example.com", "cid": "bafkreiabc"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidDIDError"


def test_verify_rejects_malformed(client):
    assert client.post("/api/credential/verify", data={"credential_json": "{"}).status_code == 400
    assert client.post("/api/credential/verify", data={"credential_json": "{}"}).status_code == 400


def test_resolve_did(client, owner):
    key, _ = owner
    body = client.get(f"/api/did/resolve/{key.controller}").json()

    assert body["document"]["id"] == key.controller
    assert body["document"]["verificationMethod"][0]["id"] == key.controller + "#controller"
    assert client.get("/api/did/resolve/did:web:example.com").status_code == 400
