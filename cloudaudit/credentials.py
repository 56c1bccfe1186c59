#!/usr/bin/env python3
"""
Cloud Audit Engine - Credential Vault
Encrypts cloud account secrets at rest with Fernet. The key file is created
on first use beside the active config with 0600 permissions.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from .paths import paths
from .logger import get_logger
from .exceptions import CredentialFormatError

logger = get_logger('credentials')

# Keys whose values are never echoed back in full
SENSITIVE_KEYS = (
    'secret_access_key', 'session_token', 'private_key', 'private_key_id',
    'client_secret', 'secretAccessKey', 'sessionToken', 'clientSecret',
)


class CredentialVault:
    """Fernet encryption for stored account secrets."""

    def __init__(self, key_file: Optional[Path] = None):
        self.key_file = Path(key_file) if key_file else paths.credential_key
        self._fernet = self._init_encryption()

    def _init_encryption(self) -> Fernet:
        """Load the key file, generating it on first use."""
        if self.key_file.exists():
            return Fernet(self.key_file.read_bytes().strip())

        self.key_file.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        self.key_file.write_bytes(key)
        os.chmod(str(self.key_file), 0o600)
        logger.info("Generated new credential encryption key at %s", self.key_file)
        return Fernet(key)

    def encrypt(self, secret: Dict[str, Any]) -> str:
        """Serialize and encrypt a secret dictionary."""
        if not isinstance(secret, dict):
            raise CredentialFormatError("Credentials must be a JSON object")
        return self._fernet.encrypt(json.dumps(secret).encode()).decode()

    def decrypt(self, token: str) -> Dict[str, Any]:
        """Decrypt a stored secret; raises CredentialFormatError if unreadable."""
        if not token:
            raise CredentialFormatError("No credentials stored for this account")
        try:
            raw = self._fernet.decrypt(token.encode())
        except InvalidToken:
            raise CredentialFormatError(
                "Stored credentials cannot be decrypted (wrong or rotated key file)"
            )
        try:
            secret = json.loads(raw.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CredentialFormatError(f"Stored credentials are not valid JSON: {exc}")
        if not isinstance(secret, dict):
            raise CredentialFormatError("Stored credentials must be a JSON object")
        return secret


def mask_secret(secret: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of *secret* with sensitive values reduced to their last 4 characters."""
    masked = {}
    for key, value in secret.items():
        if key in SENSITIVE_KEYS and isinstance(value, str):
            masked[key] = f"****{value[-4:]}" if len(value) > 8 else "****"
        else:
            masked[key] = value
    return masked


def load_secret_file(path: Path) -> Dict[str, Any]:
    """Read a credentials JSON file supplied on the command line."""
    try:
        data = json.loads(Path(path).read_text())
    except OSError as exc:
        raise CredentialFormatError(f"Cannot read credentials file {path}: {exc}")
    except json.JSONDecodeError as exc:
        raise CredentialFormatError(f"Credentials file {path} is not valid JSON: {exc}")
    if not isinstance(data, dict):
        raise CredentialFormatError("Credentials file must contain a JSON object")
    return data


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Get the credential vault singleton."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault
