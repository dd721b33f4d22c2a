"""
Credentials Registry
====================

Ledger-resident state machine keyed by content fingerprint:

    Unregistered --issue--> Valid --revoke--> Revoked

Registrations are append-only; Revoked is terminal. ``CredentialsRegistry``
is the contract itself, ``LedgerClient`` is the asynchronous surface callers
use: it serialises writes, stamps them into blocks and only returns a
receipt once the write has been applied.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from eth_utils import is_address, to_checksum_address

from .crypto_primitives import ContentFingerprint, keccak_hex
from .did_manager import did_to_address
from .exceptions import (
    AlreadyRegisteredError,
    AlreadyRevokedError,
    InvalidDIDError,
    LedgerUnavailableError,
    NotRegisteredError,
    UnauthorizedRevocationError,
)

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


class EntryState(Enum):
    UNREGISTERED = "unregistered"
    VALID = "valid"
    REVOKED = "revoked"


class RevocationPolicy(Enum):
    """Who may revoke a Valid fingerprint"""
    OWNER = "owner"
    ISSUER = "issuer"
    EITHER = "either"


@dataclass(frozen=True)
class RegistryEntry:
    owner: str
    issuer_did: str
    issued_at: int
    state: EntryState


@dataclass(frozen=True)
class ValidityStatus:
    """Result of the isValid(bytes32) view"""
    valid: bool
    owner: str = ZERO_ADDRESS
    issuer_did: str = ""
    issued_at: int = 0

    def to_dict(self) -> Dict:
        return {
            "valid": self.valid,
            "owner": self.owner,
            "issuerDid": self.issuer_did,
            "issuedAt": self.issued_at
        }


@dataclass(frozen=True)
class RegistryEvent:
    name: str  # Issued | Revoked
    fingerprint: str
    timestamp: int
    owner: Optional[str] = None
    issuer_did: Optional[str] = None
    block_number: int = 0
    tx_hash: str = ""

    def to_dict(self) -> Dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    block_number: int
    events: Tuple[RegistryEvent, ...] = field(default_factory=tuple)


def _as_fingerprint(fingerprint) -> ContentFingerprint:
    if isinstance(fingerprint, ContentFingerprint):
        return fingerprint
    if isinstance(fingerprint, str):
        return ContentFingerprint.from_hex(fingerprint)
    return ContentFingerprint(bytes(fingerprint))


class CredentialsRegistry:
    """
    The registry contract

    Precondition failures are checked before authorisation, so revoking a
    fingerprint that was never issued always reports NotRegisteredError.
    """

    def __init__(
        self,
        policy: RevocationPolicy = RevocationPolicy.OWNER,
        clock: Optional[Callable[[], int]] = None
    ):
        self.policy = policy
        self._clock = clock or (lambda: int(time.time()))
        self._entries: Dict[ContentFingerprint, RegistryEntry] = {}

    def state_of(self, fingerprint) -> EntryState:
        entry = self._entries.get(_as_fingerprint(fingerprint))
        return entry.state if entry else EntryState.UNREGISTERED

    def get_entry(self, fingerprint) -> Optional[RegistryEntry]:
        return self._entries.get(_as_fingerprint(fingerprint))

    # ==================== STATE TRANSITIONS ====================

    def issue(self, fingerprint, owner: str, issuer_did: str, *, sender: str) -> RegistryEvent:
        """
        Register a fingerprint as Valid

        Raises:
            AlreadyRegisteredError: fingerprint is Valid or Revoked
            ValueError: owner is not an address or issuer DID is empty
        """
        fp = _as_fingerprint(fingerprint)
        if fp in self._entries:
            raise AlreadyRegisteredError(
                f"Fingerprint {fp.to_hex()} is already {self._entries[fp].state.value}",
                fp.to_hex()
            )
        if not is_address(owner):
            raise ValueError(f"Owner is not an address: {owner!r}")
        if not issuer_did:
            raise ValueError("Issuer DID must not be empty")

        now = self._clock()
        owner = to_checksum_address(owner)
        self._entries[fp] = RegistryEntry(
            owner=owner,
            issuer_did=issuer_did,
            issued_at=now,
            state=EntryState.VALID
        )
        log.info("Issued %s owner=%s issuer=%s sender=%s", fp.to_hex(), owner, issuer_did, sender)
        return RegistryEvent(
            name="Issued",
            fingerprint=fp.to_hex(),
            timestamp=now,
            owner=owner,
            issuer_did=issuer_did
        )

    def revoke(self, fingerprint, *, sender: str) -> RegistryEvent:
        """
        Move a Valid fingerprint to Revoked

        Raises:
            NotRegisteredError: fingerprint was never issued
            AlreadyRevokedError: fingerprint is already Revoked
            UnauthorizedRevocationError: sender not allowed by the policy
        """
        fp = _as_fingerprint(fingerprint)
        entry = self._entries.get(fp)
        if entry is None:
            raise NotRegisteredError(f"Fingerprint {fp.to_hex()} is not registered", fp.to_hex())
        if entry.state is EntryState.REVOKED:
            raise AlreadyRevokedError(f"Fingerprint {fp.to_hex()} is already revoked", fp.to_hex())
        if not self._may_revoke(entry, sender):
            raise UnauthorizedRevocationError(
                f"{sender} may not revoke {fp.to_hex()} under {self.policy.value} policy",
                fp.to_hex()
            )

        now = self._clock()
        self._entries[fp] = RegistryEntry(
            owner=entry.owner,
            issuer_did=entry.issuer_did,
            issued_at=entry.issued_at,
            state=EntryState.REVOKED
        )
        log.info("Revoked %s sender=%s", fp.to_hex(), sender)
        return RegistryEvent(name="Revoked", fingerprint=fp.to_hex(), timestamp=now)

    def _may_revoke(self, entry: RegistryEntry, sender: str) -> bool:
        if not sender or not is_address(sender):
            return False
        sender = to_checksum_address(sender)

        is_owner = sender == entry.owner
        try:
            is_issuer = sender == did_to_address(entry.issuer_did)
        except InvalidDIDError:
            is_issuer = False

        if self.policy is RevocationPolicy.OWNER:
            return is_owner
        if self.policy is RevocationPolicy.ISSUER:
            return is_issuer
        return is_owner or is_issuer

    # ==================== QUERIES ====================

    def is_valid(self, fingerprint) -> ValidityStatus:
        """Side-effect-free view; fields are zeroed unless the entry is Valid"""
        entry = self._entries.get(_as_fingerprint(fingerprint))
        if entry is None or entry.state is not EntryState.VALID:
            return ValidityStatus(valid=False)
        return ValidityStatus(
            valid=True,
            owner=entry.owner,
            issuer_did=entry.issuer_did,
            issued_at=entry.issued_at
        )


class LedgerClient:
    """
    Asynchronous access to a registry hosted on a ledger

    Writes are applied one at a time in submission order. A receipt is
    returned only after the write is in a block; callers must not assume an
    effect before that. Once submitted, a write cannot be retracted.
    """

    def __init__(self, registry: Optional[CredentialsRegistry] = None, latency: float = 0.0):
        self.registry = registry or CredentialsRegistry()
        self.latency = latency
        self._lock = asyncio.Lock()
        self._block_number = 0
        self._events: List[RegistryEvent] = []
        self._pending_failures = 0

    def simulate_outage(self, failures: int = 1):
        """Make the next ``failures`` ledger calls fail with LedgerUnavailableError"""
        self._pending_failures = failures

    async def _round_trip(self, operation: str):
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._pending_failures > 0:
            self._pending_failures -= 1
            log.warning("Ledger unavailable during %s", operation)
            raise LedgerUnavailableError(f"Ledger unavailable during {operation}")

    async def issue(self, fingerprint, owner: str, issuer_did: str, *, sender: str) -> TransactionReceipt:
        async with self._lock:
            await self._round_trip("issue")
            event = self.registry.issue(fingerprint, owner, issuer_did, sender=sender)
            return self._seal("issue", sender, event)

    async def revoke(self, fingerprint, *, sender: str) -> TransactionReceipt:
        async with self._lock:
            await self._round_trip("revoke")
            event = self.registry.revoke(fingerprint, sender=sender)
            return self._seal("revoke", sender, event)

    async def is_valid(self, fingerprint) -> ValidityStatus:
        await self._round_trip("isValid")
        return self.registry.is_valid(fingerprint)

    def _seal(self, operation: str, sender: str, event: RegistryEvent) -> TransactionReceipt:
        self._block_number += 1
        tx_hash = keccak_hex(
            f"{self._block_number}:{operation}:{sender}:{event.fingerprint}".encode()
        )
        sealed = RegistryEvent(
            name=event.name,
            fingerprint=event.fingerprint,
            timestamp=event.timestamp,
            owner=event.owner,
            issuer_did=event.issuer_did,
            block_number=self._block_number,
            tx_hash=tx_hash
        )
        self._events.append(sealed)
        return TransactionReceipt(tx_hash=tx_hash, block_number=self._block_number, events=(sealed,))

    def events(self, fingerprint=None) -> List[RegistryEvent]:
        """Event log, optionally filtered to one fingerprint"""
        if fingerprint is None:
            return list(self._events)
        fp = _as_fingerprint(fingerprint).to_hex()
        return [e for e in self._events if e.fingerprint == fp]
