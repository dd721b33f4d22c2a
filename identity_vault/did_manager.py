"""
DID Manager - did:ethr identifiers and DID Documents

DID Format: did:ethr:<address> (mainnet) or did:ethr:<hex-chain-id>:<address>

Reference: https://github.com/decentralized-identity/ethr-did-resolver
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from eth_utils import is_address, to_checksum_address

from .exceptions import InvalidDIDError

DID_PREFIX = "did:ethr:"
MAINNET_CHAIN_ID = 1


def create_did(address: str, chain_id: int = MAINNET_CHAIN_ID) -> str:
    """
    Generate a did:ethr identifier for an Ethereum address

    The chain id segment is omitted for mainnet.
    """
    if not address or not is_address(address):
        raise InvalidDIDError(f"Not an Ethereum address: {address!r}")
    if chain_id == MAINNET_CHAIN_ID:
        return f"{DID_PREFIX}{address.lower()}"
    return f"{DID_PREFIX}{hex(chain_id)}:{address.lower()}"


def parse_did(did: str) -> Tuple[str, int]:
    """
    Split a did:ethr into (checksummed address, chain id)

    Raises:
        InvalidDIDError: not a did:ethr or the account segment is not an address
    """
    if not did or not did.startswith(DID_PREFIX):
        raise InvalidDIDError(f"Invalid DID format: {did!r}")

    parts = did[len(DID_PREFIX):].split(":")
    if len(parts) == 1:
        chain_id, address = MAINNET_CHAIN_ID, parts[0]
    elif len(parts) == 2:
        try:
            chain_id = int(parts[0], 0)
        except ValueError:
            raise InvalidDIDError(f"Invalid chain id in DID: {did!r}") from None
        address = parts[1]
    else:
        raise InvalidDIDError(f"Invalid DID format: {did!r}")

    if not is_address(address):
        raise InvalidDIDError(f"DID does not name an Ethereum account: {did!r}")
    return to_checksum_address(address), chain_id


def did_to_address(did: str) -> str:
    """DID-to-account extraction used when checking signers and ledger owners"""
    return parse_did(did)[0]


def is_valid_did(did: str) -> bool:
    try:
        parse_did(did)
        return True
    except InvalidDIDError:
        return False


@dataclass
class DIDDocument:
    """
    W3C DID Document for a did:ethr identifier

    Reference: https://www.w3.org/TR/did-core/#core-properties
    """
    id: str
    controller: str = ""
    verification_method: List[Dict] = field(default_factory=list)
    authentication: List[str] = field(default_factory=list)
    assertion_method: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.controller:
            self.controller = self.id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to W3C DID Document JSON format"""
        return {
            "@context": [
                "https://www.w3.org/ns/did/v1",
                "https://w3id.org/security/suites/secp256k1recovery-2020/v2"
            ],
            "id": self.id,
            "controller": self.controller,
            "verificationMethod": self.verification_method,
            "authentication": self.authentication,
            "assertionMethod": self.assertion_method,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def resolve(did: str) -> DIDDocument:
    """
    Resolve a did:ethr to its default DID Document

    Without an on-chain registry of delegates, the document holds a single
    recoverable-signature method whose account is the DID's address.
    """
    address, chain_id = parse_did(did)
    key_id = f"{did}#controller"
    return DIDDocument(
        id=did,
        verification_method=[{
            "id": key_id,
            "type": "EcdsaSecp256k1RecoveryMethod2020",
            "controller": did,
            "blockchainAccountId": f"eip155:{chain_id}:{address}"
        }],
        authentication=[key_id],
        assertion_method=[key_id]
    )
