"""
Key Manager - Signing accounts and document recipient keys

Supports:
- secp256k1: issuer signing accounts (Ethereum personal_sign, recoverable)
- X25519: recipient keys for wrapping document encryption keys
"""

import base64
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union, runtime_checkable

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from eth_account import Account
from eth_account.messages import encode_defunct

from .did_manager import create_did
from .exceptions import SigningRejectedError

log = logging.getLogger(__name__)

ApprovalCallback = Callable[[bytes], Union[bool, Awaitable[bool]]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _unb64(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


@runtime_checkable
class SigningCapability(Protocol):
    """
    External signing interface tied to one account.

    ``sign_message`` returns a 65-byte recoverable signature over the
    EIP-191 personal message built from ``message``. It may wait on
    out-of-band approval and raises SigningRejectedError when declined.
    """

    @property
    def address(self) -> str: ...

    async def sign_message(self, message: bytes) -> bytes: ...


class LocalAccountSigner:
    """
    Signing capability backed by an in-process eth_account key.

    An optional ``approve`` callback models wallet confirmation; returning
    False rejects the request.
    """

    def __init__(self, private_key: str, approve: Optional[ApprovalCallback] = None):
        self._account = Account.from_key(private_key)
        self._approve = approve

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_message(self, message: bytes) -> bytes:
        if self._approve is not None:
            approved = self._approve(message)
            if inspect.isawaitable(approved):
                approved = await approved
            if not approved:
                log.warning("Signing request rejected for %s", self.address)
                raise SigningRejectedError(f"Signer {self.address} declined the request")

        signed = self._account.sign_message(encode_defunct(primitive=message))
        return bytes(signed.signature)


@dataclass
class KeyPair:
    """A secp256k1 signing key controlled by a DID"""
    key_id: str
    key_type: str
    public_key: str  # Ethereum address
    private_key: Optional[str] = None  # Only stored locally, never shared
    created_at: str = ""
    controller: str = ""
    chain_id: int = 1

    def __post_init__(self):
        if not self.created_at:
            self.created_at = _now()

    def to_verification_method(self) -> Dict[str, Any]:
        """Convert to W3C Verification Method format"""
        return {
            "id": self.key_id,
            "type": self.key_type,
            "controller": self.controller,
            "blockchainAccountId": f"eip155:{self.chain_id}:{self.public_key}"
        }


@dataclass
class RecipientKeyPair:
    """X25519 key pair used to unwrap document keys"""
    key_id: str
    private_key: x25519.X25519PrivateKey
    public_key: x25519.X25519PublicKey

    def public_key_b64(self) -> str:
        return encode_recipient_public_key(self.public_key)


def encode_recipient_public_key(public_key: x25519.X25519PublicKey) -> str:
    return _b64(public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    ))


def decode_recipient_public_key(value: str) -> x25519.X25519PublicKey:
    """Raises ValueError if the value is not a raw 32-byte X25519 key."""
    return x25519.X25519PublicKey.from_public_bytes(_unb64(value))


class KeyManager:
    """
    Manages keys for vault participants

    Features:
    - Generate secp256k1 signing accounts and matching did:ethr identifiers
    - Import existing Ethereum private keys
    - Hand out signing capabilities
    - Generate X25519 recipient keys for document key wrapping
    """

    def __init__(self, chain_id: int = 1):
        self.chain_id = chain_id
        self._keys: Dict[str, KeyPair] = {}
        self._recipients: Dict[str, RecipientKeyPair] = {}

    # ==================== SIGNING KEYS ====================

    def generate_secp256k1_keypair(self) -> KeyPair:
        """
        Generate a new Ethereum account

        Returns:
            KeyPair whose controller is the did:ethr of the new account
        """
        account = Account.create()
        return self._register(account.address, "0x" + bytes(account.key).hex())

    def generate_from_ethereum_key(self, private_key: str) -> KeyPair:
        """
        Create KeyPair from existing Ethereum private key

        Args:
            private_key: Ethereum private key (hex string with 0x prefix)
        """
        account = Account.from_key(private_key)
        return self._register(account.address, private_key)

    def _register(self, address: str, private_key: str) -> KeyPair:
        did = create_did(address, self.chain_id)
        keypair = KeyPair(
            key_id=f"{did}#controller",
            key_type="EcdsaSecp256k1RecoveryMethod2020",
            public_key=address,
            private_key=private_key,
            controller=did,
            chain_id=self.chain_id
        )
        self._keys[keypair.key_id] = keypair
        return keypair

    def signer(self, key_id: str, approve: Optional[ApprovalCallback] = None) -> LocalAccountSigner:
        """Signing capability for a managed key"""
        keypair = self._keys.get(key_id)
        if not keypair or not keypair.private_key:
            raise ValueError(f"Signing key not available: {key_id}")
        return LocalAccountSigner(keypair.private_key, approve=approve)

    # ==================== RECIPIENT KEYS ====================

    def generate_recipient_keypair(self, key_id: str) -> RecipientKeyPair:
        private_key = x25519.X25519PrivateKey.generate()
        recipient = RecipientKeyPair(
            key_id=key_id,
            private_key=private_key,
            public_key=private_key.public_key()
        )
        self._recipients[key_id] = recipient
        return recipient

    def get_recipient(self, key_id: str) -> Optional[RecipientKeyPair]:
        return self._recipients.get(key_id)

    # ==================== KEY MANAGEMENT ====================

    def get_key(self, key_id: str) -> Optional[KeyPair]:
        """Get key by ID"""
        return self._keys.get(key_id)

    def list_keys(self) -> list:
        """List all key IDs"""
        return list(self._keys.keys())

    def export_public_keys(self) -> Dict[str, Dict]:
        """Export all public keys (no private keys)"""
        result = {}
        for key_id, keypair in self._keys.items():
            result[key_id] = keypair.to_verification_method()
        for key_id, recipient in self._recipients.items():
            result[key_id] = {
                "id": key_id,
                "type": "X25519KeyAgreementKey2020",
                "publicKey": recipient.public_key_b64()
            }
        return result
