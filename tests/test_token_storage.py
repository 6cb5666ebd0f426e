#!/usr/bin/env python3
"""
Unit tests for the storage backends.
"""

import os
import stat
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from session_shared.exceptions import ErrorCode, StorageError
from session_client.auth.token_storage import EncryptedFileStorage, MemoryStorage


class TestMemoryStorage:
    """Test the in-process storage area."""

    def test_basic_operations(self):
        """Test get/set/remove/items."""
        storage = MemoryStorage({'a': '1'})
        storage.set('b', '2')
        storage.remove('a')
        storage.remove('missing')

        assert storage.get('a') is None
        assert storage.get('b') == '2'
        assert storage.items() == {'b': '2'}

    def test_items_is_a_copy(self):
        """Test callers cannot mutate the area through items()."""
        storage = MemoryStorage()
        storage.items()['x'] = 'y'
        assert storage.get('x') is None


class TestEncryptedFileStorage:
    """Test the encrypted file-backed storage area."""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for storage files."""
        with tempfile.TemporaryDirectory() as tmp:
            yield Path(tmp)

    @pytest.fixture
    def storage(self, temp_dir):
        """Create file storage that keeps its key in a key file."""
        return EncryptedFileStorage(path=temp_dir / 'session_store.enc', use_keyring=False)

    def test_round_trip(self, storage):
        """Test values survive a write and read."""
        storage.set('auth.access_token', 'secret-token')

        assert storage.get('auth.access_token') == 'secret-token'
        assert storage.items() == {'auth.access_token': 'secret-token'}

    def test_file_is_encrypted_and_private(self, storage):
        """Test nothing is stored in clear text and files are owner-only."""
        storage.set('auth.access_token', 'secret-token')

        assert b'secret-token' not in storage.storage_path.read_bytes()
        assert stat.S_IMODE(os.stat(storage.storage_path).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(storage.key_path).st_mode) == 0o600

    def test_two_instances_share_the_area(self, storage, temp_dir):
        """Test a second handle on the same file sees and preserves writes."""
        other = EncryptedFileStorage(path=temp_dir / 'session_store.enc', use_keyring=False)

        storage.set('a', '1')
        other.set('b', '2')

        assert storage.items() == {'a': '1', 'b': '2'}
        other.remove('a')
        assert storage.get('a') is None

    def test_corrupt_file_reads_as_empty(self, storage):
        """Test an unreadable file is treated as an empty area."""
        storage.set('a', '1')
        storage.storage_path.write_bytes(b'not a fernet token')

        assert storage.items() == {}
        storage.set('b', '2')
        assert storage.items() == {'b': '2'}

    def test_missing_file_reads_as_empty(self, storage):
        """Test a fresh area has no keys."""
        assert storage.get('anything') is None
        assert storage.items() == {}

    def test_write_failure_raises_storage_error(self, storage):
        """Test OS errors during save surface as StorageError."""
        storage.set('a', '1')
        with patch('session_client.auth.token_storage.os.replace', side_effect=OSError("disk full")):
            with pytest.raises(StorageError) as exc_info:
                storage.set('b', '2')

        assert exc_info.value.error_code == ErrorCode.STORAGE_WRITE_FAILED
        assert storage.items() == {'a': '1'}

    def test_keyring_key_is_used_when_available(self, temp_dir):
        """Test the encryption key is kept in the keyring when one is available."""
        secrets = {}

        with patch('keyring.get_password', side_effect=lambda s, k: secrets.get((s, k))), \
             patch('keyring.set_password', side_effect=lambda s, k, v: secrets.__setitem__((s, k), v)):
            storage = EncryptedFileStorage(path=temp_dir / 'store.enc', service_name='test-svc', use_keyring=True)
            storage.set('a', '1')

            assert ('test-svc', 'storage_encryption_key') in secrets
            assert not storage.key_path.exists()
            assert storage.get('a') == '1'
