import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from identity_vault import (
    CredentialsRegistry,
    DocumentLifecycle,
    InMemoryContentStore,
    InMemoryRecordStore,
    JsonFileRecordStore,
    KeyManager,
    LedgerClient,
    RevocationPolicy,
    VerifiableCredential,
)
from identity_vault import did_manager
from identity_vault.config import settings
from identity_vault.exceptions import (
    DocumentNotFoundError,
    IntegrityError,
    InvalidDIDError,
    LedgerUnavailableError,
    NotRegisteredError,
    RegistryError,
    SigningError,
    UnauthorizedRevocationError,
    VaultError,
    VerificationError,
)
from identity_vault.key_manager import decode_recipient_public_key

logging.basicConfig(level=settings.LOG_LEVEL)
log = logging.getLogger(__name__)

lifecycle: Optional[DocumentLifecycle] = None
key_manager: Optional[KeyManager] = None
issuer_key = None

# Order matters: the first matching class wins
_STATUS_CODES = [
    (DocumentNotFoundError, 404),
    (NotRegisteredError, 404),
    (UnauthorizedRevocationError, 403),
    (RegistryError, 409),
    (LedgerUnavailableError, 503),
    (SigningError, 400),
    (InvalidDIDError, 400),
    (IntegrityError, 422),
    (VerificationError, 422),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    global lifecycle, key_manager, issuer_key
    log.info("Starting Identity Vault API...")

    registry = CredentialsRegistry(policy=RevocationPolicy(settings.REVOCATION_POLICY))
    if settings.RECORDS_PATH:
        records = JsonFileRecordStore(settings.RECORDS_PATH)
    else:
        records = InMemoryRecordStore()

    lifecycle = DocumentLifecycle(
        store=InMemoryContentStore(),
        records=records,
        ledger=LedgerClient(registry)
    )

    key_manager = KeyManager(chain_id=settings.CHAIN_ID)
    issuer_key = key_manager.generate_from_ethereum_key(settings.ISSUER_PRIVATE_KEY)
    log.info("Issuer initialized (DID: %s, policy: %s)", issuer_key.controller, registry.policy.value)

    yield
    log.info("Shutting down...")


app = FastAPI(title="Identity Vault API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(VaultError)
async def vault_error_handler(request: Request, exc: VaultError):
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__, "retryable": exc.retryable}
    )


# ============================================================
# DOCUMENTS
# ============================================================

@app.post("/api/documents")
async def upload_document(
    file: UploadFile = File(...),
    owner_did: str = Form(...),
    recipient_public_key: str = Form(...),
    doc_type: str = Form("identity")
):
    """
    Encrypt a document, store the ciphertext and record it as uploaded

    recipient_public_key is the base64url X25519 key able to open the document.
    """
    try:
        public_key = decode_recipient_public_key(recipient_public_key)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid recipient public key")

    content = await file.read()
    if len(content) > settings.MAX_DOCUMENT_SIZE:
        raise HTTPException(status_code=400, detail="File too large")

    record = await lifecycle.upload_document(
        owner_did=owner_did,
        name=file.filename or "document",
        doc_type=doc_type,
        plaintext=content,
        recipient_public_key=public_key
    )
    return record.to_dict()


@app.get("/api/documents")
async def list_documents():
    return [d.to_dict() for d in lifecycle.records.list_documents()]


@app.post("/api/documents/{doc_id}/register")
async def register_document(doc_id: str, issuer_did: str = Form(...), sender: str = Form(...)):
    """Register a document fingerprint on the ledger"""
    record = await lifecycle.register_document(doc_id, issuer_did, sender=sender)
    return record.to_dict()


@app.post("/api/documents/{doc_id}/revoke")
async def revoke_document(doc_id: str, sender: str = Form(...)):
    record = await lifecycle.revoke_document(doc_id, sender=sender)
    return record.to_dict()


@app.get("/api/registry/{cid}")
async def check_registry(cid: str):
    """Check on-chain validity of a content identifier"""
    validity = await lifecycle.check_validity(cid)
    return {"cid": cid, **validity.to_dict()}


# ============================================================
# CREDENTIALS
# ============================================================

@app.post("/api/credential/issue")
async def issue_credential(
    subject_did: str = Form(...),
    cid: str = Form(...),
    claims_json: str = Form("{}")
):
    """
    Issue a Verifiable Credential signed by the server's issuer key

    Returns:
        Verifiable Credential in W3C format
    """
    try:
        claims = json.loads(claims_json)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid claims JSON")
    if not isinstance(claims, dict):
        raise HTTPException(status_code=400, detail="Claims must be a JSON object")

    try:
        credential = await lifecycle.issue_credential(
            issuer_did=issuer_key.controller,
            subject_did=subject_did,
            cid=cid,
            signer=key_manager.signer(issuer_key.key_id),
            claims=claims
        )
    except InvalidDIDError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"credential": credential.to_dict()}


@app.post("/api/credential/verify")
async def verify_credential(credential_json: str = Form(...)):
    """
    Verify a Verifiable Credential

    Combines the signature check with the ledger state of its fingerprint.
    """
    try:
        credential = VerifiableCredential.from_dict(json.loads(credential_json))
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON format")
    except (KeyError, TypeError, AttributeError) as e:
        raise HTTPException(status_code=400, detail=f"Malformed credential: {e}")

    decision = await lifecycle.verify_credential(credential)
    return decision.to_dict()


# ============================================================
# DID / AUDIT
# ============================================================

@app.get("/api/did/resolve/{did}")
async def resolve_did(did: str):
    """Resolve a did:ethr to its DID Document"""
    doc = did_manager.resolve(did)
    return {"did": did, "document": doc.to_dict()}


@app.get("/api/audit")
async def list_audit_entries():
    return [e.to_dict() for e in lifecycle.records.list_audit_entries()]


@app.get("/api/info")
async def get_info():
    return {
        "issuer_did": issuer_key.controller,
        "chain_id": settings.CHAIN_ID,
        "revocation_policy": lifecycle.ledger.registry.policy.value,
        "public_keys": key_manager.export_public_keys()
    }


if __name__ == "__main__":
    uvicorn.run("backend.api:app", host="0.0.0.0", port=8000)
