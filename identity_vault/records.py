"""
Local record persistence

Document records, the audit log and cached credentials live behind the
RecordStore interface. Records are an advisory cache of ledger state and
may lag it.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from .credential_issuer import VerifiableCredential
from .exceptions import DocumentNotFoundError

log = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    REGISTERED = "registered"
    REVOKED = "revoked"


class AuditAction(str, Enum):
    UPLOAD = "UPLOAD"
    REGISTER = "REGISTER"
    REVOKE = "REVOKE"
    ISSUE_VC = "ISSUE_VC"
    VERIFY = "VERIFY"
    DISCLOSE = "DISCLOSE"


@dataclass(frozen=True)
class DocumentRecord:
    doc_id: str
    name: str
    doc_type: str
    owner_did: str
    cid: str
    cid_hash: str
    nonce: str  # hex
    wrapped_key: str  # hex
    uploaded_at: str = field(default_factory=_now)
    status: DocumentStatus = DocumentStatus.UPLOADED
    tx_hash: Optional[str] = None

    def with_status(self, status: DocumentStatus, tx_hash: Optional[str] = None) -> "DocumentRecord":
        return replace(self, status=status, tx_hash=tx_hash or self.tx_hash)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentRecord":
        return cls(**{**data, "status": DocumentStatus(data["status"])})


@dataclass(frozen=True)
class AuditLogEntry:
    action: AuditAction
    details: str = ""
    doc_id: Optional[str] = None
    cid: Optional[str] = None
    tx_hash: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        return cls(**{**data, "action": AuditAction(data["action"])})


class RecordStore(Protocol):
    def save_document(self, record: DocumentRecord) -> None: ...
    def get_document(self, doc_id: str) -> DocumentRecord: ...
    def list_documents(self) -> List[DocumentRecord]: ...
    def delete_document(self, doc_id: str) -> None: ...
    def add_audit_entry(self, entry: AuditLogEntry) -> None: ...
    def list_audit_entries(self) -> List[AuditLogEntry]: ...
    def save_credential(self, vc: VerifiableCredential) -> None: ...
    def get_credential_by_cid(self, cid: str) -> Optional[VerifiableCredential]: ...
    def list_credentials(self) -> List[VerifiableCredential]: ...
    def save_user_did(self, did: str) -> None: ...
    def get_user_did(self) -> Optional[str]: ...


class InMemoryRecordStore:
    """RecordStore kept in process memory"""

    def __init__(self):
        self._documents: Dict[str, DocumentRecord] = {}
        self._audit: List[AuditLogEntry] = []
        self._credentials: List[VerifiableCredential] = []
        self._user_did: Optional[str] = None

    # ==================== DOCUMENTS ====================

    def save_document(self, record: DocumentRecord) -> None:
        self._documents[record.doc_id] = record
        self._changed()

    def get_document(self, doc_id: str) -> DocumentRecord:
        try:
            return self._documents[doc_id]
        except KeyError:
            raise DocumentNotFoundError(f"Document not found: {doc_id}") from None

    def list_documents(self) -> List[DocumentRecord]:
        return list(self._documents.values())

    def delete_document(self, doc_id: str) -> None:
        self._documents.pop(doc_id, None)
        self._changed()

    # ==================== AUDIT LOG ====================

    def add_audit_entry(self, entry: AuditLogEntry) -> None:
        self._audit.insert(0, entry)
        self._changed()

    def list_audit_entries(self) -> List[AuditLogEntry]:
        """Newest first"""
        return list(self._audit)

    # ==================== CREDENTIALS ====================

    def save_credential(self, vc: VerifiableCredential) -> None:
        self._credentials.append(vc)
        self._changed()

    def get_credential_by_cid(self, cid: str) -> Optional[VerifiableCredential]:
        for vc in reversed(self._credentials):
            if vc.credential_subject.cid == cid:
                return vc
        return None

    def list_credentials(self) -> List[VerifiableCredential]:
        return list(self._credentials)

    # ==================== USER ====================

    def save_user_did(self, did: str) -> None:
        self._user_did = did
        self._changed()

    def get_user_did(self) -> Optional[str]:
        return self._user_did

    def _changed(self):
        pass


class JsonFileRecordStore(InMemoryRecordStore):
    """RecordStore persisted to a JSON file, rewritten after every change"""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self):
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        self._documents = {
            d["doc_id"]: DocumentRecord.from_dict(d) for d in data.get("documents", [])
        }
        self._audit = [AuditLogEntry.from_dict(e) for e in data.get("audit", [])]
        self._credentials = [VerifiableCredential.from_dict(c) for c in data.get("credentials", [])]
        self._user_did = data.get("user_did")
        log.debug("Loaded %d document records from %s", len(self._documents), self.path)

    def _changed(self):
        data = {
            "documents": [d.to_dict() for d in self._documents.values()],
            "audit": [e.to_dict() for e in self._audit],
            "credentials": [c.to_dict() for c in self._credentials],
            "user_did": self._user_did
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.path)
