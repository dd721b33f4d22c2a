"""
config.py - Centralised settings for the identity vault
"""
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings


class VaultSettings(BaseSettings):
    # Ledger
    CHAIN_ID: int = 1
    REVOCATION_POLICY: str = "owner"  # owner | issuer | either

    # Credentials
    CREDENTIAL_TYPE: str = "IdentityDocument"
    VC_CONTEXT: List[str] = [
        "https://www.w3.org/2018/credentials/v1",
        "https://w3id.org/security/suites/secp256k1-2019/v1",
    ]

    # Documents
    MAX_DOCUMENT_SIZE: int = 10 * 1024 * 1024  # 10MB

    # Issuer key for the dev server (Hardhat account #0, never use in production)
    ISSUER_PRIVATE_KEY: str = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

    # Local record persistence; in-memory when unset
    RECORDS_PATH: Optional[Path] = None

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "VAULT_"


settings = VaultSettings()
