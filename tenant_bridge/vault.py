"""
Encrypted storage of per-tenant n8n credentials.
Only Fernet ciphertext is kept in memory and written to disk.
"""

import os
import json
import logging
import tempfile
import threading
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from .context import InstanceContext, validate_instance_context, mask_secret
from .errors import CredentialDecryptionError, CredentialNotFoundError

# Set up logging
logger = logging.getLogger('tenant_bridge.vault')


def generate_key() -> str:
    """Generate a new vault encryption key."""
    return Fernet.generate_key().decode()


class CredentialVault:
    """Per-tenant credential store, optionally persisted to a JSON file."""

    def __init__(self, key: str, path: Optional[str] = None):
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        self.path = path
        self._lock = threading.Lock()
        self._entries: Dict[str, str] = {}
        if path:
            self._entries = self._read_file(path)

    @staticmethod
    def _read_file(path: str) -> Dict[str, str]:
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Error loading credentials file {path}: {str(e)}")
            return {}
        entries = data.get("credentials", {}) if isinstance(data, dict) else None
        if not isinstance(entries, dict):
            logger.error(f"Credentials file {path} must hold an object with a \"credentials\" object")
            return {}
        entries = {user_id: token for user_id, token in entries.items() if isinstance(token, str)}
        logger.info(f"Loaded credentials for {len(entries)} tenants from {path}")
        return entries

    def _write_file(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".credentials-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"credentials": self._entries}, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            os.unlink(tmp_path)
            raise

    def store(self, user_id: str, n8n_api_url: str, n8n_api_key: str) -> InstanceContext:
        """Validate and store a tenant's credentials, replacing any existing entry."""
        context = validate_instance_context({
            "n8n_api_url": n8n_api_url,
            "n8n_api_key": n8n_api_key,
            "instance_id": user_id,
        })
        payload = json.dumps({"n8n_api_url": context.n8n_api_url, "n8n_api_key": context.n8n_api_key})
        token = self._fernet.encrypt(payload.encode()).decode()
        with self._lock:
            self._entries[user_id] = token
            if self.path:
                self._write_file()
        logger.info(f"Stored credentials for tenant {user_id} (key {mask_secret(n8n_api_key)})")
        return context

    def load(self, user_id: str) -> InstanceContext:
        """Decrypt a tenant's credentials into an instance context."""
        with self._lock:
            token = self._entries.get(user_id)
        if token is None:
            raise CredentialNotFoundError(f"No credentials stored for tenant {user_id}")
        try:
            payload = json.loads(self._fernet.decrypt(token.encode()))
        except InvalidToken as e:
            raise CredentialDecryptionError(f"Credentials for tenant {user_id} cannot be decrypted with the configured key") from e
        return InstanceContext(
            n8n_api_url=payload["n8n_api_url"],
            n8n_api_key=payload["n8n_api_key"],
            instance_id=user_id,
        )

    def delete(self, user_id: str) -> bool:
        """Remove a tenant's credentials. Returns False if none were stored."""
        with self._lock:
            if user_id not in self._entries:
                return False
            del self._entries[user_id]
            if self.path:
                self._write_file()
        logger.info(f"Deleted credentials for tenant {user_id}")
        return True

    def users(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._entries
