"""Tests for the encrypted credential vault."""

import base64
import logging
import os

import pytest

from ledger_sync.security.vault import (
    DATA_FILE,
    KEY_FILE,
    NONCE_SIZE,
    CredentialVault,
    fingerprint,
)
from ledger_sync.shared.errors import CryptoError

# ---------------------------------------------------------------------------
# Key file
# ---------------------------------------------------------------------------


class TestKeyFile:
    def test_created_on_first_use(self, tmp_path):
        CredentialVault(tmp_path)

        key = base64.b64decode((tmp_path / KEY_FILE).read_text())
        assert len(key) == 32

    @pytest.mark.skipif(os.name != "posix", reason="file modes are POSIX only")
    def test_key_file_is_private(self, tmp_path):
        CredentialVault(tmp_path)
        assert (tmp_path / KEY_FILE).stat().st_mode & 0o777 == 0o600

    def test_key_reused_across_instances(self, tmp_path):
        first = CredentialVault(tmp_path)
        token = first.encrypt("secret")

        second = CredentialVault(tmp_path)
        assert second.decrypt(token) == "secret"

    def test_wrong_length_key_file(self, tmp_path):
        (tmp_path / KEY_FILE).write_text(base64.b64encode(b"short").decode())
        with pytest.raises(CryptoError, match="expected 32"):
            CredentialVault(tmp_path)

    def test_garbage_key_file(self, tmp_path):
        (tmp_path / KEY_FILE).write_text("not base64 !!!")
        with pytest.raises(CryptoError, match="Unreadable"):
            CredentialVault(tmp_path)

    def test_regenerated_key_warns_and_old_secrets_fail(self, tmp_path, caplog):
        CredentialVault(tmp_path).put("k1", "secret")
        (tmp_path / KEY_FILE).unlink()

        with caplog.at_level(logging.WARNING):
            vault = CredentialVault(tmp_path)

        assert "cannot be decrypted" in caplog.text
        with pytest.raises(CryptoError):
            vault.get("k1")


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


class TestEncryption:
    @pytest.mark.parametrize("plaintext", ["", "|", "ABCDEF0123456789", "clé-ünïcode", "a|b|c"])
    def test_round_trip(self, vault, plaintext):
        assert vault.decrypt(vault.encrypt(plaintext)) == plaintext

    def test_fresh_nonce_per_encryption(self, vault):
        first = base64.b64decode(vault.encrypt("same"))
        second = base64.b64decode(vault.encrypt("same"))
        assert first[:NONCE_SIZE] != second[:NONCE_SIZE]
        assert first != second

    def test_invalid_base64(self, vault):
        with pytest.raises(CryptoError, match="base64"):
            vault.decrypt("%%% not base64 %%%")

    def test_truncated(self, vault):
        blob = base64.b64decode(vault.encrypt("secret"))
        with pytest.raises(CryptoError, match="too short"):
            vault.decrypt(base64.b64encode(blob[:20]).decode())

    def test_corrupted(self, vault):
        blob = bytearray(base64.b64decode(vault.encrypt("secret")))
        blob[-1] ^= 0x01
        with pytest.raises(CryptoError, match="authentication"):
            vault.decrypt(base64.b64encode(bytes(blob)).decode())

    def test_wrong_key(self, tmp_path):
        token = CredentialVault(tmp_path / "a").encrypt("secret")
        with pytest.raises(CryptoError):
            CredentialVault(tmp_path / "b").decrypt(token)


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------


class TestContainer:
    def test_put_get(self, vault):
        vault.put("k1", "secret-1")
        vault.put("k2", "secret-2")
        assert vault.get("k1") == "secret-1"
        assert vault.get("k2") == "secret-2"

    def test_get_missing(self, vault):
        assert vault.get("nope") is None

    def test_persisted_encrypted(self, tmp_path):
        CredentialVault(tmp_path).put("k1", "PLAINTEXT-SECRET")

        assert "PLAINTEXT-SECRET" not in (tmp_path / DATA_FILE).read_text()
        assert CredentialVault(tmp_path).get("k1") == "PLAINTEXT-SECRET"

    def test_delete(self, vault):
        vault.put("k1", "a")
        vault.put("k2", "b")
        vault.delete("k1")
        vault.delete("missing")
        assert vault.identities() == ["k2"]

    def test_delete_all_keeps_key(self, tmp_path):
        vault = CredentialVault(tmp_path)
        vault.put("k1", "a")
        vault.delete_all()

        assert not (tmp_path / DATA_FILE).exists()
        assert (tmp_path / KEY_FILE).exists()
        assert vault.identities() == []

    def test_corrupted_data_file(self, tmp_path):
        vault = CredentialVault(tmp_path)
        vault.put("k1", "a")
        (tmp_path / DATA_FILE).write_text("garbage")

        with pytest.raises(CryptoError):
            vault.get("k1")

    def test_non_json_payload(self, tmp_path):
        vault = CredentialVault(tmp_path)
        (tmp_path / DATA_FILE).write_text(vault.encrypt("not json"))

        with pytest.raises(CryptoError, match="JSON"):
            vault.identities()

    def test_no_temp_files_left(self, tmp_path):
        vault = CredentialVault(tmp_path)
        vault.put("k1", "a")
        vault.put("k1", "b")
        assert sorted(p.name for p in tmp_path.iterdir()) == sorted([KEY_FILE, DATA_FILE])


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register(self, vault):
        info = vault.register("ABCDEF0123456789", display_name="Main")

        assert info.fingerprint == "6789"
        assert info.display_name == "Main"
        assert info.created_at > 0
        assert vault.get(info.identity_id) == "ABCDEF0123456789"

    def test_register_generates_distinct_ids(self, vault):
        first = vault.register("same-secret")
        second = vault.register("same-secret")
        assert first.identity_id != second.identity_id

    def test_fingerprint_of_short_secret(self):
        assert fingerprint("abc") == "abc"
        assert fingerprint("abcdef") == "cdef"
