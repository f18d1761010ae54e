"""Credential lifecycle: keeps vault secrets and store metadata in step."""

from pathlib import Path

from ledger_sync.security.vault import CredentialVault
from ledger_sync.shared.db.records import CredentialInfo
from ledger_sync.shared.db.storage import LocalStore
from ledger_sync.shared.errors import LedgerSyncError
from ledger_sync.shared.utils import setup_logger


class CredentialManager:
    """Register, list, rename and delete API credentials.

    The secret lives only in the vault; the store holds the metadata and
    every fact, task and watermark owned by the credential.
    """

    def __init__(
        self, store: LocalStore, vault: CredentialVault, log_file: Path | None = None
    ) -> None:
        self.store = store
        self.vault = vault
        self.logger = setup_logger(self.__class__.__name__, log_file)

    def register(self, secret: str, display_name: str | None = None) -> CredentialInfo:
        """Store a new secret and its metadata.

        If the metadata write fails the secret is removed again so the
        vault never holds a credential the store does not know about.
        """
        secret = secret.strip()
        if not secret:
            raise ValueError("API key must not be empty")

        info = self.vault.register(secret, display_name=display_name or None)
        try:
            self.store.add_credential(info)
        except LedgerSyncError:
            self.logger.error("Failed to record credential %s; removing secret", info.identity_id)
            self.vault.delete(info.identity_id)
            raise
        return info

    def list(self) -> list[CredentialInfo]:
        return self.store.list_credentials()

    def get(self, identity_id: str) -> CredentialInfo | None:
        return self.store.get_credential(identity_id)

    def rename(self, identity_id: str, display_name: str | None) -> CredentialInfo:
        if not self.store.rename_credential(identity_id, display_name or None):
            raise KeyError(identity_id)
        self.logger.info("Renamed credential %s", identity_id)
        return self.store.get_credential(identity_id)

    def delete(self, identity_id: str) -> None:
        """Remove a credential and everything it owns.

        Owned data goes first, then the metadata row, and the secret last: a
        crash part-way leaves at worst an orphaned secret.
        """
        self.store.clear_credential(identity_id)
        self.store.delete_credential(identity_id)
        self.vault.delete(identity_id)
        self.logger.info("Deleted credential %s", identity_id)

    def clear_all(self) -> None:
        self.store.clear_all()
        self.vault.delete_all()
        self.logger.info("Cleared all credentials and sales data")
