"""
Secure Credential Storage for the Cafe POS client.

This module persists one refresh token per user, plus a pointer to the last
active user, using the system keyring or an encrypted file as fallback.
"""

import os
import json
import logging
from typing import Optional, Dict, Any, List
from pathlib import Path
from cryptography.fernet import Fernet, InvalidToken

from cafe_shared.exceptions import CredentialStoreError, ErrorCode
from cafe_shared.interfaces import ICredentialStore
from cafe_shared.models import UserCredentialRecord

logger = logging.getLogger(__name__)


LAST_ACTIVE_USER_KEY = "last_active_user"


class SecureTokenStorage(ICredentialStore):
    """
    Secure storage for refresh credentials.

    Uses the system keyring when available, falls back to a Fernet-encrypted
    file. Records are keyed by user id; the last active user is stored under
    a separate key.
    """

    def __init__(
        self,
        service_name: str = "cafe-pos-client",
        storage_dir: Optional[Path] = None,
        use_keyring: Optional[bool] = None
    ):
        self.service_name = service_name
        self.keyring_available = (
            self._check_keyring_availability() if use_keyring is None else use_keyring
        )
        self.storage_dir = Path(storage_dir) if storage_dir else self._get_storage_dir()
        self.storage_path = self.storage_dir / 'credentials.enc'
        self.key_path = self.storage_dir / 'credentials.key'

        self._encryption_key: Optional[bytes] = None

        logger.info(f"Credential storage initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        try:
            import keyring
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_storage_dir(self) -> Path:
        """Get directory for encrypted file storage."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        if xdg_config:
            return Path(xdg_config) / 'cafe-pos'
        return Path.home() / '.config' / 'cafe-pos'

    def _get_encryption_key(self) -> bytes:
        """Get or create the key file for the encrypted credential file."""
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(key)
        os.chmod(self.key_path, 0o600)

        self._encryption_key = key
        return key

    def _read_file(self) -> Dict[str, Any]:
        """Read and decrypt the credential file."""
        if not self.storage_path.exists():
            return {}

        fernet = Fernet(self._get_encryption_key())
        try:
            decrypted = fernet.decrypt(self.storage_path.read_bytes()).decode()
        except InvalidToken as e:
            raise CredentialStoreError(
                "Credential file cannot be decrypted",
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            )
        return json.loads(decrypted)

    def _write_file(self, data: Dict[str, Any]) -> None:
        """Encrypt and write the credential file."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        if not data:
            if self.storage_path.exists():
                self.storage_path.unlink()
            return

        fernet = Fernet(self._get_encryption_key())
        self.storage_path.write_bytes(fernet.encrypt(json.dumps(data).encode()))
        os.chmod(self.storage_path, 0o600)

    # Raw key/value access shared by both backends

    def _set(self, key: str, value: str) -> None:
        if self.keyring_available:
            import keyring
            keyring.set_password(self.service_name, key, value)
        else:
            data = self._read_file()
            data[key] = value
            self._write_file(data)

    def _get(self, key: str) -> Optional[str]:
        if self.keyring_available:
            import keyring
            return keyring.get_password(self.service_name, key)
        return self._read_file().get(key)

    def _delete(self, key: str) -> bool:
        if self.keyring_available:
            import keyring
            from keyring.errors import PasswordDeleteError
            try:
                keyring.delete_password(self.service_name, key)
                return True
            except PasswordDeleteError:
                return False

        data = self._read_file()
        if key not in data:
            return False
        del data[key]
        self._write_file(data)
        return True

    @staticmethod
    def _record_key(user_id: str) -> str:
        return f"refresh_{user_id}"

    def store_refresh_token(self, user_id: str, refresh_token: str) -> None:
        """
        Store a user's refresh token and mark the user as last active.

        Args:
            user_id: User identifier
            refresh_token: Refresh credential issued by the server
        """
        record = UserCredentialRecord(user_id=user_id, refresh_token=refresh_token)

        try:
            self._set(self._record_key(user_id), json.dumps(record.to_dict()))
            self._set(LAST_ACTIVE_USER_KEY, user_id)
            self._index_user(user_id)
            logger.info(f"Refresh token stored for user {user_id}")

        except CredentialStoreError:
            raise
        except Exception as e:
            logger.error(f"Failed to store refresh token: {e}")
            raise CredentialStoreError(f"Failed to store refresh token: {e}", cause=e)

    def get_record(self, user_id: str) -> Optional[UserCredentialRecord]:
        """
        Retrieve the stored credential record of a user.

        Args:
            user_id: User identifier

        Returns:
            Credential record or None if not found
        """
        try:
            value = self._get(self._record_key(user_id))
        except Exception as e:
            logger.error(f"Failed to retrieve refresh token: {e}")
            return None

        if not value:
            return None

        try:
            return UserCredentialRecord.from_dict(json.loads(value))
        except (ValueError, KeyError) as e:
            logger.warning(f"Discarding malformed credential record for {user_id}: {e}")
            return None

    def get_refresh_token(self, user_id: str) -> Optional[str]:
        """Get the refresh token stored for a user."""
        record = self.get_record(user_id)
        return record.refresh_token if record else None

    def remove_refresh_token(self, user_id: str) -> bool:
        """
        Remove a user's refresh token.

        Args:
            user_id: User identifier

        Returns:
            True if a token was removed
        """
        try:
            removed = self._delete(self._record_key(user_id))
            self._unindex_user(user_id)
            if removed:
                logger.info(f"Refresh token removed for user {user_id}")
            return removed
        except Exception as e:
            logger.error(f"Failed to remove refresh token: {e}")
            return False

    def get_last_active_user(self) -> Optional[str]:
        """Get the id of the last active user."""
        try:
            return self._get(LAST_ACTIVE_USER_KEY)
        except Exception as e:
            logger.error(f"Failed to read last active user: {e}")
            return None

    def set_last_active_user(self, user_id: str) -> None:
        """Point the last active user at an already stored user."""
        self._set(LAST_ACTIVE_USER_KEY, user_id)

    def clear_last_active_user(self) -> None:
        """Clear the last active user pointer."""
        try:
            self._delete(LAST_ACTIVE_USER_KEY)
        except Exception as e:
            logger.error(f"Failed to clear last active user: {e}")

    # Keyring cannot enumerate keys, so known users are kept in an index entry

    def _index_user(self, user_id: str) -> None:
        users = self.list_stored_users()
        if user_id not in users:
            users.append(user_id)
            self._set("user_index", json.dumps(users))

    def _unindex_user(self, user_id: str) -> None:
        users = self.list_stored_users()
        if user_id in users:
            users.remove(user_id)
            if users:
                self._set("user_index", json.dumps(users))
            else:
                self._delete("user_index")

    def list_stored_users(self) -> List[str]:
        """
        List users that have a stored refresh token.

        Returns:
            List of user ids
        """
        try:
            value = self._get("user_index")
            return list(json.loads(value)) if value else []
        except Exception as e:
            logger.warning(f"Failed to read user index: {e}")
            return []
