"""
Unit tests for data models (restore_engine/models.py).

Tests BackupType parsing and serialization of state and sidecar records.
"""

from datetime import datetime, timezone, timedelta

import pytest

from restore_engine.models import BackupType, BackupInfo, EncryptionMetadata, to_utc


class TestBackupType:
    """Test BackupType parsing."""

    @pytest.mark.parametrize('value,expected', [
        ('Full', BackupType.FULL),
        ('incremental', BackupType.INCREMENTAL),
        (' DIFFERENTIAL ', BackupType.DIFFERENTIAL),
        (BackupType.FULL, BackupType.FULL),
    ])
    def test_parse(self, value, expected):
        assert BackupType.parse(value) == expected

    def test_parse_invalid(self):
        """Test unknown names raise ValueError listing valid options."""
        with pytest.raises(ValueError, match='Valid options'):
            BackupType.parse('hourly')


class TestBackupInfo:
    """Test BackupInfo serialization."""

    def test_to_dict_keys(self):
        """Test camelCase keys in the state document."""
        info = BackupInfo('backups/docs/1.zip', datetime(2024, 1, 1, tzinfo=timezone.utc), False, 'local', 10)

        assert info.to_dict() == {
            'path': 'backups/docs/1.zip',
            'timestampUtc': '2024-01-01T00:00:00+00:00',
            'isDiff': False,
            'storageType': 'local',
            'sizeBytes': 10,
        }

    def test_from_dict_tolerates_missing_fields(self):
        """Test older entries without storage type or size load."""
        info = BackupInfo.from_dict({'path': 'a.diff', 'timestampUtc': '2024-01-01T00:00:00+00:00', 'isDiff': True})

        assert info.is_diff is True
        assert info.storage_type is None
        assert info.size_bytes == 0

    def test_timestamps_normalized_to_utc(self):
        """Test offsets are converted and naive values taken as UTC."""
        plus_two = timezone(timedelta(hours=2))
        info = BackupInfo('a.zip', datetime(2024, 1, 1, 12, tzinfo=plus_two))

        assert info.timestamp_utc == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
        assert to_utc(datetime(2024, 1, 1)).tzinfo == timezone.utc

    def test_copy_is_independent(self):
        info = BackupInfo('a.zip', datetime(2024, 1, 1, tzinfo=timezone.utc))
        clone = info.copy()
        clone.path = 'b.zip'

        assert info.path == 'a.zip'


class TestEncryptionMetadata:
    """Test sidecar serialization."""

    def test_roundtrip(self):
        """Test binary fields survive base64 encoding."""
        metadata = EncryptionMetadata(b'\x01' * 32, b'\x02' * 12, b'\x03' * 60, key_derivation_iterations=1000)

        data = metadata.to_dict()
        loaded = EncryptionMetadata.from_dict(data)

        assert set(data) == {'salt', 'iv', 'encryptedDEK', 'algorithm', 'version', 'keyDerivationIterations'}
        assert data['algorithm'] == 'AES-256-GCM'
        assert (loaded.salt, loaded.iv, loaded.encrypted_dek) == (metadata.salt, metadata.iv, metadata.encrypted_dek)
        assert loaded.key_derivation_iterations == 1000

    def test_missing_field_raises(self):
        """Test a sidecar without the wrapped key is rejected."""
        with pytest.raises(KeyError):
            EncryptionMetadata.from_dict({'salt': '', 'iv': '', 'keyDerivationIterations': 1})
