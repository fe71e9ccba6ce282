"""
Unit tests for backup executor (restore_engine/backup/executor.py).

Tests BackupExecutor for full, diff and encrypted backup workflows.
"""

import os
import zipfile
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from restore_engine.config import RetentionConfig, StorageSourceConfig, WatchDirectoryConfig
from restore_engine.models import BackupType
from restore_engine.backup.executor import BackupExecutor, BackupError, backup_all_directories
from restore_engine.backup.restore import RestoreExecutor
from restore_engine.backup.state import StateStore, StateError
from restore_engine.backup.storage import StorageFactory, LocalStorage, StorageError
from restore_engine.utils.password import PasswordProvider


def _remote_files(engine_config):
    root = engine_config.storage_sources['local'].path
    found = []
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            found.append(os.path.relpath(os.path.join(dirpath, name), root).replace(os.sep, '/'))
    return sorted(found)


def _modify(watch_dir):
    report = watch_dir / 'report.bin'
    data = bytearray(report.read_bytes())
    data[5000] ^= 0xFF
    report.write_bytes(bytes(data) + b'appended')


class TestBackupDirectory:
    """Test BackupExecutor.backup_directory."""

    @freeze_time('2024-01-01 10:00:00')
    def test_first_backup_is_full_zip(self, engine_config, state_store, watch_dir):
        """Test a group without history gets a full zip."""
        executor = BackupExecutor(engine_config, state_store)

        info = executor.backup_directory(str(watch_dir))

        assert info.path == 'backups/docs/20240101100000.zip'
        assert info.is_diff is False
        assert info.storage_type == 'local'
        assert info.size_bytes > 0
        assert _remote_files(engine_config) == ['backups/docs/20240101100000.zip']

    def test_full_zip_contains_selected_files(self, engine_config, state_store, watch_dir, local_storage, tmp_path):
        """Test the payload holds every selected file relative to the group."""
        info = BackupExecutor(engine_config, state_store).backup_directory(str(watch_dir))

        out = tmp_path / 'payload.zip'
        local_storage.download(info.path, str(out))
        with zipfile.ZipFile(out) as zipf:
            assert sorted(zipf.namelist()) == ['notes.txt', 'report.bin', 'sub/nested.txt']

    def test_metadata_and_state_saved(self, engine_config, state_store, watch_dir):
        """Test file metadata and history are persisted after the upload."""
        BackupExecutor(engine_config, state_store).backup_directory(str(watch_dir))

        reloaded = StateStore(engine_config.state_file_path)
        reloaded.load_state()

        assert reloaded.get_file_metadata(str(watch_dir / 'notes.txt')) is not None
        assert reloaded.get_file_metadata(str(watch_dir / 'scratch.tmp')) is None
        assert len(reloaded.get_backups_for_group(str(watch_dir))) == 1
        assert reloaded.last_backup_time is not None

    def test_nothing_changed_returns_none(self, engine_config, state_store, watch_dir):
        """Test an unchanged group uploads nothing."""
        executor = BackupExecutor(engine_config, state_store)
        with freeze_time('2024-01-01'):
            executor.backup_directory(str(watch_dir))

        with freeze_time('2024-01-02'):
            assert executor.backup_directory(str(watch_dir)) is None

        assert len(_remote_files(engine_config)) == 1

    def test_second_incremental_backup_is_diff(self, engine_config, state_store, watch_dir):
        """Test a changed group uploads a diff against its full backup."""
        executor = BackupExecutor(engine_config, state_store)
        with freeze_time('2024-01-01'):
            executor.backup_directory(str(watch_dir))

        _modify(watch_dir)
        with freeze_time('2024-01-02'):
            info = executor.backup_directory(str(watch_dir))

        assert info.is_diff is True
        assert info.path == 'backups/docs/20240102000000.diff'
        assert state_store.get_previous_backup_path(str(watch_dir)) == 'backups/docs/20240101000000.zip'

    def test_diff_restores_current_content(self, engine_config, state_store, watch_dir, tmp_path):
        """Test base + diff rebuilds the group as of the diff."""
        executor = BackupExecutor(engine_config, state_store)
        with freeze_time('2024-01-01'):
            executor.backup_directory(str(watch_dir))

        _modify(watch_dir)
        (watch_dir / 'added.txt').write_text('new file')
        with freeze_time('2024-01-02'):
            info = executor.backup_directory(str(watch_dir))

        target = tmp_path / 'restored'
        RestoreExecutor(engine_config, state_store).restore_backup(info.path, str(target))

        assert (target / 'report.bin').read_bytes() == (watch_dir / 'report.bin').read_bytes()
        assert (target / 'added.txt').read_text() == 'new file'
        assert (target / 'sub' / 'nested.txt').read_text() == 'Nested content'

    def test_full_type_always_uploads_zip(self, engine_config, state_store, watch_dir):
        """Test Full runs never diff, even with a base."""
        executor = BackupExecutor(engine_config, state_store)
        with freeze_time('2024-01-01'):
            executor.backup_directory(str(watch_dir), backup_type=BackupType.FULL)
        with freeze_time('2024-01-02'):
            info = executor.backup_directory(str(watch_dir), backup_type='full')

        assert info.is_diff is False
        assert info.path.endswith('.zip')

    def test_missing_base_falls_back_to_full(self, engine_config, state_store, watch_dir, local_storage):
        """Test a base that vanished from storage yields a full zip."""
        executor = BackupExecutor(engine_config, state_store)
        with freeze_time('2024-01-01'):
            first = executor.backup_directory(str(watch_dir))
        local_storage.delete(first.path)

        _modify(watch_dir)
        with freeze_time('2024-01-02'):
            info = executor.backup_directory(str(watch_dir))

        assert info.is_diff is False
        assert info.path == 'backups/docs/20240102000000.zip'

    def test_missing_directory_raises(self, engine_config, state_store, tmp_path):
        """Test a missing source directory raises BackupError."""
        with pytest.raises(BackupError, match='not found'):
            BackupExecutor(engine_config, state_store).backup_directory(str(tmp_path / 'missing'))

    def test_empty_directory_argument(self, engine_config, state_store):
        """Test an empty path is rejected."""
        with pytest.raises(ValueError):
            BackupExecutor(engine_config, state_store).backup_directory('  ')

    def test_per_directory_storage_type(self, engine_config, state_store, watch_dir, tmp_path):
        """Test a directory's storage type selects its backend."""
        engine_config.storage_sources['archive'] = StorageSourceConfig(path=str(tmp_path / 'archive'))
        engine_config.watch_directories = [WatchDirectoryConfig(str(watch_dir), 'archive')]

        StorageFactory.register('archive', LocalStorage)
        try:
            info = BackupExecutor(engine_config, state_store).backup_directory(str(watch_dir))
        finally:
            StorageFactory.unregister('archive')

        assert info.storage_type == 'archive'
        assert (tmp_path / 'archive' / info.path).is_file()

    def test_retention_applied_after_upload(self, engine_config, state_store, watch_dir):
        """Test the group's retention policy runs after each backup."""
        engine_config.retention = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=0)
        executor = BackupExecutor(engine_config, state_store)

        with freeze_time('2024-01-01'):
            executor.backup_directory(str(watch_dir), backup_type=BackupType.FULL)
        with freeze_time('2024-01-02'):
            second = executor.backup_directory(str(watch_dir), backup_type=BackupType.FULL)

        assert [b.path for b in state_store.get_backups_for_group(str(watch_dir))] == [second.path]
        assert _remote_files(engine_config) == [second.path]

    @freeze_time('2024-01-01 10:00:00')
    def test_same_second_backups_get_distinct_keys(self, engine_config, state_store, watch_dir):
        """Test a second upload within the same second moves to the next free key."""
        executor = BackupExecutor(engine_config, state_store)

        first = executor.backup_directory(str(watch_dir), backup_type=BackupType.FULL)
        second = executor.backup_directory(str(watch_dir), backup_type=BackupType.FULL)

        assert first.path == 'backups/docs/20240101100000.zip'
        assert second.path == 'backups/docs/20240101100001.zip'
        assert _remote_files(engine_config) == [first.path, second.path]

    @freeze_time('2024-01-01 10:00:00')
    def test_existing_remote_key_not_overwritten(self, engine_config, state_store, watch_dir, local_storage, tmp_path):
        """Test an object already in storage under the generated key is left alone."""
        stray = tmp_path / 'stray.zip'
        stray.write_bytes(b'unrelated')
        local_storage.upload(str(stray), 'backups/docs/20240101100000.zip')

        info = BackupExecutor(engine_config, state_store).backup_directory(str(watch_dir))

        assert info.path == 'backups/docs/20240101100001.zip'
        out = tmp_path / 'check.zip'
        local_storage.download('backups/docs/20240101100000.zip', str(out))
        assert out.read_bytes() == b'unrelated'

    def test_upload_without_state_save_leaves_orphan(self, engine_config, state_store, watch_dir):
        """Test a failed state save after upload leaves the object unrecorded on disk."""
        executor = BackupExecutor(engine_config, state_store)

        with patch.object(state_store, 'save_state', side_effect=StateError('disk full')):
            with pytest.raises(StateError):
                executor.backup_directory(str(watch_dir))

        reloaded = StateStore(engine_config.state_file_path)
        reloaded.load_state()

        assert len(_remote_files(engine_config)) == 1
        assert reloaded.get_backup_groups() == []

    def test_temp_files_cleaned(self, engine_config, state_store, watch_dir):
        """Test no working files remain after a backup."""
        BackupExecutor(engine_config, state_store).backup_directory(str(watch_dir))

        assert os.listdir(engine_config.temp_dir) == []


class TestEncryptedBackup:
    """Test backups with encryption enabled."""

    def test_encrypted_payload_and_sidecar(self, encrypted_config, state_store, watch_dir, password_provider):
        """Test the payload is .enc and its .meta sidecar is uploaded."""
        with freeze_time('2024-01-01'):
            info = BackupExecutor(encrypted_config, state_store, password_provider).backup_directory(str(watch_dir))

        assert info.path == 'backups/docs/20240101000000.zip.enc'
        assert _remote_files(encrypted_config) == [
            'backups/docs/20240101000000.zip.enc',
            'backups/docs/20240101000000.zip.enc.meta',
        ]

    def test_encrypted_diff_roundtrip(self, encrypted_config, state_store, watch_dir, password_provider, tmp_path):
        """Test an encrypted diff against an encrypted base restores."""
        executor = BackupExecutor(encrypted_config, state_store, password_provider)
        with freeze_time('2024-01-01'):
            executor.backup_directory(str(watch_dir))

        _modify(watch_dir)
        with freeze_time('2024-01-02'):
            info = executor.backup_directory(str(watch_dir))

        assert info.path == 'backups/docs/20240102000000.diff.enc'

        target = tmp_path / 'restored'
        RestoreExecutor(encrypted_config, state_store, password_provider).restore_backup(info.path, str(target))

        assert (target / 'report.bin').read_bytes() == (watch_dir / 'report.bin').read_bytes()

    def test_failed_payload_upload_removes_sidecar(self, encrypted_config, state_store, watch_dir, password_provider):
        """Test the uploaded sidecar is deleted when the payload upload fails."""
        original_upload = LocalStorage.upload

        def failing_upload(self, local_path, remote_path, cancellation_check=None):
            if remote_path.endswith('.enc'):
                raise StorageError('quota exceeded')
            return original_upload(self, local_path, remote_path, cancellation_check)

        with patch.object(LocalStorage, 'upload', autospec=True, side_effect=failing_upload):
            with pytest.raises(StorageError, match='quota exceeded'):
                BackupExecutor(encrypted_config, state_store, password_provider).backup_directory(str(watch_dir))

        assert _remote_files(encrypted_config) == []
        assert state_store.get_backup_groups() == []

    def test_wrong_password_uploads_nothing(self, encrypted_config, state_store, watch_dir):
        """Test a mismatched password fails before upload and is cleared."""
        provider = PasswordProvider(password='not the password')

        with pytest.raises(BackupError, match='does not match'):
            BackupExecutor(encrypted_config, state_store, provider).backup_directory(str(watch_dir))

        assert provider.is_initialized is False
        assert _remote_files(encrypted_config) == []
        assert state_store.get_backup_groups() == []

    def test_no_password_provider(self, encrypted_config, state_store, watch_dir):
        """Test encryption without a provider raises BackupError."""
        with pytest.raises(BackupError, match='no password provider'):
            BackupExecutor(encrypted_config, state_store).backup_directory(str(watch_dir))

    def test_declined_prompt(self, encrypted_config, state_store, watch_dir):
        """Test a prompt returning None raises BackupError."""
        provider = PasswordProvider(prompt=lambda: None)

        with pytest.raises(BackupError, match='no password was provided'):
            BackupExecutor(encrypted_config, state_store, provider).backup_directory(str(watch_dir))


class TestBackupFiles:
    """Test BackupExecutor.backup_files."""

    def test_backs_up_only_listed_files(self, engine_config, state_store, watch_dir, local_storage, tmp_path):
        """Test the zip holds the listed files that still exist and are not excluded."""
        files = [str(watch_dir / 'notes.txt'), str(watch_dir / 'gone.txt'), str(watch_dir / 'scratch.tmp')]

        info = BackupExecutor(engine_config, state_store).backup_files(files, str(watch_dir))

        out = tmp_path / 'payload.zip'
        local_storage.download(info.path, str(out))
        with zipfile.ZipFile(out) as zipf:
            assert zipf.namelist() == ['notes.txt']

        assert info.is_diff is False
        assert state_store.get_file_metadata(str(watch_dir / 'notes.txt')) is not None
        assert state_store.get_file_metadata(str(watch_dir / 'scratch.tmp')) is None

    def test_vanished_files_drop_metadata(self, engine_config, state_store, watch_dir):
        """Test metadata of deleted files is removed even if nothing is uploaded."""
        path = watch_dir / 'notes.txt'
        state_store.add_or_update_file_metadata(str(path))
        path.unlink()

        result = BackupExecutor(engine_config, state_store).backup_files([str(path)], str(watch_dir))

        assert result is None
        assert state_store.get_file_metadata(str(path)) is None
        assert _remote_files(engine_config) == []

    def test_empty_list_returns_none(self, engine_config, state_store, watch_dir):
        """Test no files means no backup."""
        assert BackupExecutor(engine_config, state_store).backup_files([], str(watch_dir)) is None

    def test_none_files_rejected(self, engine_config, state_store, watch_dir):
        """Test files=None raises ValueError."""
        with pytest.raises(ValueError):
            BackupExecutor(engine_config, state_store).backup_files(None, str(watch_dir))


class TestBackupAll:
    """Test backing up every watched directory."""

    def test_summary_counts(self, engine_config, state_store, watch_dir, tmp_path):
        """Test created, unchanged and failed directories are counted."""
        other = tmp_path / 'photos'
        other.mkdir()
        (other / 'a.jpg').write_bytes(b'jpeg')
        engine_config.watch_directories = [
            WatchDirectoryConfig(str(watch_dir)),
            WatchDirectoryConfig(str(other)),
            WatchDirectoryConfig(str(tmp_path / 'missing')),
        ]

        with freeze_time('2024-01-01'):
            BackupExecutor(engine_config, state_store).backup_directory(str(other))
        with freeze_time('2024-01-02'):
            summary = backup_all_directories(engine_config, state_store)

        assert summary['directories_processed'] == 2
        assert summary['backups_created'] == 1
        assert summary['unchanged'] == 1
        assert len(summary['errors']) == 1
        assert 'missing' in summary['errors'][0]
        assert any('Backup run complete' in line for line in summary['logs'])
