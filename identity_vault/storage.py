"""
Content-addressed storage collaborator

The vault only needs put/get by content identifier. The identifier is an
opaque string to the rest of the system: it is hashed, never decoded.
"""

import base64
import hashlib
import logging
from typing import Dict, Protocol

log = logging.getLogger(__name__)

# CIDv1 prefix bytes: version 1, raw codec, sha2-256 multihash of 32 bytes
_CID_PREFIX = bytes([0x01, 0x55, 0x12, 0x20])


class ContentStore(Protocol):
    async def put(self, data: bytes) -> str: ...
    async def get(self, cid: str) -> bytes: ...


def content_identifier(data: bytes) -> str:
    """CIDv1 (raw, sha2-256) in lowercase base32 multibase form"""
    encoded = base64.b32encode(_CID_PREFIX + hashlib.sha256(data).digest())
    return "b" + encoded.decode("ascii").lower().rstrip("=")


class InMemoryContentStore:
    """Content store held in process memory"""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    async def put(self, data: bytes) -> str:
        cid = content_identifier(data)
        self._blobs[cid] = bytes(data)
        log.info("Stored %d bytes as %s", len(data), cid)
        return cid

    async def get(self, cid: str) -> bytes:
        """
        Raises:
            KeyError: nothing stored under ``cid``
        """
        try:
            return self._blobs[cid]
        except KeyError:
            raise KeyError(f"Content not found: {cid}") from None
