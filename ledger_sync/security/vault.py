"""
Encrypted credential vault.

Secrets are kept in a single AES-256-GCM container on disk, next to the
key that opens it:

    <vault_dir>/.encryption-key   base64 of 32 random bytes (mode 0600)
    <vault_dir>/credentials.enc   base64 of nonce(12) || ciphertext+tag

The plaintext is a JSON object mapping credential identity id to secret.
Every mutation decrypts, edits and re-encrypts the whole container with a
fresh nonce, then atomically replaces the file.

Example:

    vault = CredentialVault(Path("data/vault"))
    info = vault.register("ABCDEF0123456789")
    vault.get(info.identity_id)   # "ABCDEF0123456789"
"""

import base64
import binascii
import json
import os
import secrets
import tempfile
import threading
import uuid
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ledger_sync.shared.db.records import CredentialInfo
from ledger_sync.shared.errors import CryptoError
from ledger_sync.shared.utils import now_ms, setup_logger

KEY_FILE = ".encryption-key"
DATA_FILE = "credentials.enc"

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12
TAG_SIZE = 16
FINGERPRINT_LENGTH = 4


def fingerprint(secret: str) -> str:
    """Last four characters of ``secret`` (the whole secret when shorter)."""
    return secret[-FINGERPRINT_LENGTH:]


class CredentialVault:
    """Encrypted store of API secrets addressed by credential identity id."""

    def __init__(self, vault_dir: Path, log_file: Path | None = None) -> None:
        self.vault_dir = Path(vault_dir)
        self.vault_dir.mkdir(parents=True, exist_ok=True)
        self.key_path = self.vault_dir / KEY_FILE
        self.data_path = self.vault_dir / DATA_FILE
        self.logger = setup_logger(self.__class__.__name__, log_file)
        self._lock = threading.Lock()
        self._aesgcm = AESGCM(self._load_or_create_key())

    # ------------------------------------------------------------------
    # Key handling
    # ------------------------------------------------------------------

    def _load_or_create_key(self) -> bytes:
        if self.key_path.exists():
            try:
                encoded = self.key_path.read_text(encoding="utf-8").strip()
                key = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError, OSError) as e:
                raise CryptoError(f"Unreadable vault key file {self.key_path}: {e}") from e
            if len(key) != KEY_SIZE:
                raise CryptoError(
                    f"Vault key file {self.key_path} holds {len(key)} bytes, expected {KEY_SIZE}"
                )
            return key

        if self.data_path.exists():
            self.logger.warning(
                "Generating a new vault key while %s exists; previously stored secrets "
                "cannot be decrypted",
                self.data_path,
            )

        key = secrets.token_bytes(KEY_SIZE)
        try:
            self._write_atomic(self.key_path, base64.b64encode(key).decode("ascii"))
        except OSError as e:
            raise CryptoError(f"Cannot write vault key file {self.key_path}: {e}") from e
        self.logger.info("Created new vault key at %s", self.key_path)
        return key

    @staticmethod
    def _write_atomic(path: Path, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            try:
                os.chmod(tmp_name, 0o600)
            except OSError:
                # Not supported on every filesystem
                pass
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext`` with a fresh nonce; returns base64(nonce || ciphertext)."""
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Reverse of :meth:`encrypt`.

        Raises:
            CryptoError: On bad base64, truncated input, tag mismatch or a wrong key.
        """
        try:
            blob = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CryptoError(f"Ciphertext is not valid base64: {e}") from e

        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise CryptoError(f"Ciphertext too short ({len(blob)} bytes)")

        nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise CryptoError("Ciphertext failed authentication (corrupted or wrong key)") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoError("Decrypted payload is not UTF-8") from e

    # ------------------------------------------------------------------
    # Container
    # ------------------------------------------------------------------

    def _read_all(self) -> dict[str, str]:
        if not self.data_path.exists():
            return {}
        try:
            token = self.data_path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise CryptoError(f"Cannot read vault file {self.data_path}: {e}") from e

        try:
            secrets_by_id = json.loads(self.decrypt(token))
        except json.JSONDecodeError as e:
            raise CryptoError("Vault payload is not valid JSON") from e

        if not isinstance(secrets_by_id, dict):
            raise CryptoError("Vault payload is not a JSON object")
        return secrets_by_id

    def _write_all(self, secrets_by_id: dict[str, str]) -> None:
        token = self.encrypt(json.dumps(secrets_by_id))
        try:
            self._write_atomic(self.data_path, token)
        except OSError as e:
            raise CryptoError(f"Cannot write vault file {self.data_path}: {e}") from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register(self, secret: str, display_name: str | None = None) -> CredentialInfo:
        """Store ``secret`` under a newly generated identity id."""
        info = CredentialInfo(
            identity_id=str(uuid.uuid4()),
            fingerprint=fingerprint(secret),
            created_at=now_ms(),
            display_name=display_name,
        )
        self.put(info.identity_id, secret)
        self.logger.info("Registered credential %s (%s)", info.identity_id, info.label)
        return info

    def put(self, identity_id: str, secret: str) -> None:
        with self._lock:
            secrets_by_id = self._read_all()
            secrets_by_id[identity_id] = secret
            self._write_all(secrets_by_id)

    def get(self, identity_id: str) -> str | None:
        with self._lock:
            return self._read_all().get(identity_id)

    def delete(self, identity_id: str) -> None:
        with self._lock:
            secrets_by_id = self._read_all()
            if secrets_by_id.pop(identity_id, None) is not None:
                self._write_all(secrets_by_id)

    def delete_all(self) -> None:
        """Remove every stored secret. The key file is kept."""
        with self._lock:
            self.data_path.unlink(missing_ok=True)
        self.logger.info("Removed all secrets from vault %s", self.vault_dir)

    def identities(self) -> list[str]:
        with self._lock:
            return sorted(self._read_all())
