"""
Tests for the encrypted credential vault.
"""

import json

import pytest

from tenant_bridge.errors import CredentialDecryptionError, CredentialNotFoundError, InstanceContextError
from tenant_bridge.vault import CredentialVault, generate_key


def test_store_and_load(vault_key):
    vault = CredentialVault(vault_key)
    vault.store("user-1", "https://n8n.example.com/", "n8n_api_secret_value")

    context = vault.load("user-1")

    assert context.n8n_api_url == "https://n8n.example.com"
    assert context.n8n_api_key == "n8n_api_secret_value"
    assert context.instance_id == "user-1"
    assert "user-1" in vault
    assert vault.users() == ["user-1"]


def test_store_rejects_invalid_credentials(vault_key):
    vault = CredentialVault(vault_key)
    with pytest.raises(InstanceContextError):
        vault.store("user-1", "not-a-url", "your-api-key")
    assert vault.users() == []


def test_store_overwrites(vault_key):
    vault = CredentialVault(vault_key)
    vault.store("user-1", "https://old.example.com", "old_key_123")
    vault.store("user-1", "https://new.example.com", "new_key_456")
    assert vault.load("user-1").n8n_api_url == "https://new.example.com"


def test_load_missing_user(vault_key):
    with pytest.raises(CredentialNotFoundError):
        CredentialVault(vault_key).load("nobody")


def test_delete(vault_key):
    vault = CredentialVault(vault_key)
    vault.store("user-1", "https://n8n.example.com", "n8n_api_secret_value")
    assert vault.delete("user-1") is True
    assert vault.delete("user-1") is False
    assert "user-1" not in vault


def test_file_holds_only_ciphertext(tmp_path, vault_key):
    path = tmp_path / "credentials.json"
    vault = CredentialVault(vault_key, str(path))
    vault.store("user-1", "https://n8n.example.com", "n8n_api_secret_value")

    raw = path.read_text()
    assert "n8n_api_secret_value" not in raw
    assert "n8n.example.com" not in raw
    assert list(json.loads(raw)["credentials"]) == ["user-1"]

    reopened = CredentialVault(vault_key, str(path))
    assert reopened.load("user-1").n8n_api_key == "n8n_api_secret_value"


def test_wrong_key_cannot_decrypt(tmp_path, vault_key):
    path = tmp_path / "credentials.json"
    CredentialVault(vault_key, str(path)).store("user-1", "https://n8n.example.com", "n8n_api_secret_value")

    with pytest.raises(CredentialDecryptionError):
        CredentialVault(generate_key(), str(path)).load("user-1")


def test_corrupt_file_starts_empty(tmp_path, vault_key):
    path = tmp_path / "credentials.json"
    path.write_text("{not json")
    assert CredentialVault(vault_key, str(path)).users() == []


@pytest.mark.parametrize("content", ["[]", "{\"credentials\": [\"token\"]}", "null"])
def test_file_with_wrong_shape_starts_empty(tmp_path, vault_key, content):
    path = tmp_path / "credentials.json"
    path.write_text(content)
    assert CredentialVault(vault_key, str(path)).users() == []


def test_non_string_entries_are_dropped(tmp_path, vault_key):
    path = tmp_path / "credentials.json"
    CredentialVault(vault_key, str(path)).store("user-1", "https://n8n.example.com", "n8n_api_secret_value")
    data = json.loads(path.read_text())
    data["credentials"]["user-2"] = {"n8n_api_key": "plaintext"}
    path.write_text(json.dumps(data))

    vault = CredentialVault(vault_key, str(path))

    assert vault.users() == ["user-1"]
    assert vault.load("user-1").n8n_api_key == "n8n_api_secret_value"
