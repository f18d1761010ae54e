"""Credential vault and credential lifecycle management."""

from .credentials import CredentialManager
from .vault import DATA_FILE, KEY_FILE, CredentialVault, fingerprint

__all__ = [
    "CredentialVault",
    "CredentialManager",
    "fingerprint",
    "KEY_FILE",
    "DATA_FILE",
]
