"""
Crypto Primitives - Document encryption and content fingerprints

- AES-256-GCM for document payloads (12-byte nonce, 16-byte tag)
- ECIES over X25519 + HKDF-SHA256 for wrapping the document key
- keccak-256 content fingerprints, matching the ledger's native hash
"""

import logging
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from eth_utils import keccak

from .exceptions import IntegrityError

log = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
FINGERPRINT_SIZE = 32

WRAP_VERSION = 0x01
WRAP_INFO = b"identity-vault/key-wrap/v1"
_X25519_PUBLIC_SIZE = 32
_WRAP_HEADER_SIZE = 1 + _X25519_PUBLIC_SIZE + NONCE_SIZE


class ContentFingerprint(bytes):
    """32-byte keccak-256 digest of a content identifier."""

    def __new__(cls, value: bytes):
        if len(value) != FINGERPRINT_SIZE:
            raise ValueError(f"Fingerprint must be {FINGERPRINT_SIZE} bytes, got {len(value)}")
        return super().__new__(cls, value)

    @classmethod
    def from_hex(cls, value: str) -> "ContentFingerprint":
        value = value[2:] if value.startswith(("0x", "0X")) else value
        return cls(bytes.fromhex(value))

    def to_hex(self) -> str:
        return "0x" + self.hex()

    def __repr__(self) -> str:
        return f"ContentFingerprint({self.to_hex()})"


@dataclass(frozen=True)
class EncryptedPayload:
    """Ciphertext plus the material needed by the recipient to open it."""
    ciphertext: bytes
    nonce: bytes
    wrapped_key: bytes


# ==================== HASHING ====================

def compute_fingerprint(content_identifier: str) -> ContentFingerprint:
    """
    Derive the registry key for a content identifier.

    The identifier is hashed as opaque UTF-8 text; it is never decoded.
    """
    if not content_identifier:
        raise ValueError("Content identifier must not be empty")
    return ContentFingerprint(keccak(content_identifier.encode("utf-8")))


def keccak_hex(data: bytes) -> str:
    return "0x" + keccak(data).hex()


# ==================== SYMMETRIC ====================

def generate_key() -> bytes:
    """Fresh 256-bit document key. Keys are single-use per document."""
    return AESGCM.generate_key(bit_length=256)


def generate_nonce() -> bytes:
    return secrets.token_bytes(NONCE_SIZE)


def _check_material(key: bytes, nonce: bytes):
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes")
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes")


def encrypt(plaintext: bytes, key: bytes, nonce: bytes) -> bytes:
    """AES-256-GCM encrypt; the authentication tag is appended to the ciphertext."""
    _check_material(key, nonce)
    return AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    AES-256-GCM decrypt.

    Raises:
        IntegrityError: tag did not verify (tampered data, wrong key or nonce)
    """
    _check_material(key, nonce)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise IntegrityError("Ciphertext failed authentication") from e


# ==================== KEY WRAPPING ====================

def _derive_kek(shared_secret: bytes, ephemeral_public: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=ephemeral_public,
        info=WRAP_INFO,
    ).derive(shared_secret)


def _raw_public(public_key: x25519.X25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def wrap_key(raw_key: bytes, recipient_public_key: x25519.X25519PublicKey) -> bytes:
    """
    Seal a document key so only the holder of the recipient's X25519
    private key can recover it.

    Layout: version(1) || ephemeral_public(32) || nonce(12) || ciphertext+tag
    """
    ephemeral = x25519.X25519PrivateKey.generate()
    ephemeral_public = _raw_public(ephemeral.public_key())
    kek = _derive_kek(ephemeral.exchange(recipient_public_key), ephemeral_public)

    nonce = generate_nonce()
    sealed = AESGCM(kek).encrypt(nonce, raw_key, ephemeral_public)
    return bytes([WRAP_VERSION]) + ephemeral_public + nonce + sealed


def unwrap_key(wrapped: bytes, recipient_private_key: x25519.X25519PrivateKey) -> bytes:
    """
    Recover a document key sealed by wrap_key.

    Raises:
        IntegrityError: blob is malformed, tampered, or sealed for another recipient
    """
    if len(wrapped) <= _WRAP_HEADER_SIZE or wrapped[0] != WRAP_VERSION:
        raise IntegrityError("Wrapped key blob is malformed")

    ephemeral_public = wrapped[1:1 + _X25519_PUBLIC_SIZE]
    nonce = wrapped[1 + _X25519_PUBLIC_SIZE:_WRAP_HEADER_SIZE]
    sealed = wrapped[_WRAP_HEADER_SIZE:]

    try:
        peer = x25519.X25519PublicKey.from_public_bytes(ephemeral_public)
        kek = _derive_kek(recipient_private_key.exchange(peer), ephemeral_public)
        return AESGCM(kek).decrypt(nonce, sealed, ephemeral_public)
    except (InvalidTag, ValueError) as e:
        raise IntegrityError("Wrapped key could not be opened") from e


# ==================== DOCUMENT PIPELINE ====================

def encrypt_document(plaintext: bytes, recipient_public_key: x25519.X25519PublicKey) -> EncryptedPayload:
    """Encrypt a document under a fresh key and nonce, then wrap the key."""
    key = generate_key()
    nonce = generate_nonce()
    payload = EncryptedPayload(
        ciphertext=encrypt(plaintext, key, nonce),
        nonce=nonce,
        wrapped_key=wrap_key(key, recipient_public_key)
    )
    log.debug("Encrypted document (%d bytes plaintext)", len(plaintext))
    return payload


def decrypt_document(payload: EncryptedPayload, recipient_private_key: x25519.X25519PrivateKey) -> bytes:
    key = unwrap_key(payload.wrapped_key, recipient_private_key)
    return decrypt(payload.ciphertext, key, payload.nonce)
