"""
Durable key-value storage backends for the Profile Session client.

``MemoryStorage`` keeps everything in a dict and is shared by reference
between session instances of one process. ``EncryptedFileStorage`` keeps the
whole storage area as one Fernet-encrypted JSON document so that several
processes can share it; the encryption key lives in the system keyring when
one is available and in a private key file otherwise.
"""

import os
import json
import logging
import base64
import tempfile
from pathlib import Path
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from session_shared.exceptions import ErrorCode, StorageError
from session_shared.interfaces import IKeyValueStorage

logger = logging.getLogger(__name__)

KEYRING_KEY_NAME = "storage_encryption_key"


def default_storage_path() -> Path:
    """Storage file location under the XDG config directory."""
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        config_dir = Path(xdg_config) / 'profile-session'
    else:
        config_dir = Path.home() / '.config' / 'profile-session'
    return config_dir / 'session_store.enc'


class MemoryStorage(IKeyValueStorage):
    """In-process storage area."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> Dict[str, str]:
        return dict(self._data)


class EncryptedFileStorage(IKeyValueStorage):
    """
    Encrypted file-backed storage area.

    Every write re-reads the file before saving so keys written by other
    processes are preserved (last writer wins per key).
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        service_name: str = "profile-session",
        use_keyring: Optional[bool] = None
    ):
        self.service_name = service_name
        self.storage_path = Path(path) if path else default_storage_path()
        self.key_path = self.storage_path.with_suffix('.key')
        if use_keyring is None:
            use_keyring = self._check_keyring_availability()
        self.keyring_available = use_keyring
        self._fernet: Optional[Fernet] = None

        logger.info(f"Session storage at {self.storage_path} (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if the system keyring can store and return a secret."""
        try:
            import keyring
            test_key = f"{self.service_name}_probe"
            keyring.set_password(self.service_name, test_key, "probe")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "probe"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _derive_key(self) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=os.urandom(16),
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(os.urandom(32)))

    def _load_key(self) -> Optional[bytes]:
        if self.keyring_available:
            import keyring
            try:
                stored = keyring.get_password(self.service_name, KEYRING_KEY_NAME)
            except Exception as e:
                logger.warning(f"Failed to read encryption key from keyring: {e}")
                stored = None
            if stored:
                return stored.encode()
        if self.key_path.exists():
            return self.key_path.read_bytes().strip()
        return None

    def _store_key(self, key: bytes) -> None:
        if self.keyring_available:
            import keyring
            try:
                keyring.set_password(self.service_name, KEYRING_KEY_NAME, key.decode())
                return
            except Exception as e:
                logger.warning(f"Failed to store encryption key in keyring, using key file: {e}")
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(key)
        os.chmod(self.key_path, 0o600)

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            key = self._load_key()
            if key is None:
                key = self._derive_key()
                try:
                    self._store_key(key)
                except OSError as e:
                    raise StorageError(
                        f"Cannot persist storage encryption key: {e}",
                        error_code=ErrorCode.STORAGE_KEY_UNAVAILABLE,
                        cause=e
                    )
            self._fernet = Fernet(key)
        return self._fernet

    def _load(self) -> Dict[str, str]:
        if not self.storage_path.exists():
            return {}
        try:
            decrypted = self._get_fernet().decrypt(self.storage_path.read_bytes())
            data = json.loads(decrypted.decode())
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Session storage at {self.storage_path} is unreadable, treating as empty: {e}")
            return {}
        except OSError as e:
            logger.warning(f"Failed to read session storage: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning("Session storage does not hold an object, treating as empty")
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _save(self, data: Dict[str, str]) -> None:
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            encrypted = self._get_fernet().encrypt(json.dumps(data).encode())
            fd, tmp_name = tempfile.mkstemp(dir=str(self.storage_path.parent), prefix='.session_store.')
            try:
                with os.fdopen(fd, 'wb') as tmp:
                    tmp.write(encrypted)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.storage_path)
            except OSError:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            logger.error(f"Failed to write session storage: {e}")
            raise StorageError(
                f"Failed to write session storage: {e}",
                error_code=ErrorCode.STORAGE_WRITE_FAILED,
                cause=e
            )

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)

    def items(self) -> Dict[str, str]:
        return self._load()
