"""
Unit tests for archive handling (restore_engine/backup/compression.py).

Tests zip creation and extraction and remote path naming.
"""

import os
import zipfile
from datetime import datetime, timezone

import pytest
from freezegun import freeze_time

from restore_engine.backup.compression import (
    create_archive,
    extract_archive,
    list_archive,
    generate_remote_path,
    sanitize_name,
    group_name,
    metadata_path,
    is_encrypted_path,
    is_diff_path,
    CompressionError
)
from restore_engine.utils.cancellation import CancellationToken, OperationCancelled


class TestCreateArchive:
    """Test create_archive."""

    def test_entries_relative_to_base(self, watch_dir, tmp_path):
        """Test entry names are relative to the group directory."""
        files = [str(watch_dir / 'notes.txt'), str(watch_dir / 'sub' / 'nested.txt')]
        archive = tmp_path / 'out.zip'

        count = create_archive(files, str(watch_dir), str(archive))

        assert count == 2
        assert sorted(list_archive(str(archive))) == ['notes.txt', 'sub/nested.txt']

    def test_entries_sorted(self, watch_dir, tmp_path):
        """Test entries are written in sorted order regardless of input order."""
        files = [str(watch_dir / 'sub' / 'nested.txt'), str(watch_dir / 'report.bin'), str(watch_dir / 'notes.txt')]
        archive = tmp_path / 'out.zip'

        create_archive(files, str(watch_dir), str(archive))

        assert list_archive(str(archive)) == ['notes.txt', 'report.bin', 'sub/nested.txt']

    def test_deterministic_output(self, watch_dir, tmp_path):
        """Test identical inputs produce identical archives."""
        files = [str(watch_dir / 'notes.txt'), str(watch_dir / 'report.bin')]
        first, second = tmp_path / 'first.zip', tmp_path / 'second.zip'

        create_archive(files, str(watch_dir), str(first))
        os.utime(watch_dir / 'notes.txt', (0, 0))
        create_archive(list(reversed(files)), str(watch_dir), str(second))

        assert first.read_bytes() == second.read_bytes()

    def test_file_outside_base_uses_name(self, tmp_path, watch_dir):
        """Test a file outside base_dir is stored under its name."""
        outside = tmp_path / 'outside.txt'
        outside.write_text('x')
        archive = tmp_path / 'out.zip'

        create_archive([str(outside)], str(watch_dir), str(archive))

        assert list_archive(str(archive)) == ['outside.txt']

    def test_vanished_file_skipped(self, watch_dir, tmp_path):
        """Test files deleted before archiving are skipped."""
        files = [str(watch_dir / 'notes.txt'), str(watch_dir / 'gone.txt')]
        archive = tmp_path / 'out.zip'

        count = create_archive(files, str(watch_dir), str(archive))

        assert count == 1
        assert list_archive(str(archive)) == ['notes.txt']

    def test_empty_file_list(self, watch_dir, tmp_path):
        """Test an empty archive is still valid."""
        archive = tmp_path / 'out.zip'

        assert create_archive([], str(watch_dir), str(archive)) == 0
        assert zipfile.is_zipfile(archive)

    def test_cancelled_removes_partial(self, watch_dir, tmp_path):
        """Test a cancelled archive leaves no file."""
        archive = tmp_path / 'out.zip'
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            create_archive([str(watch_dir / 'notes.txt')], str(watch_dir), str(archive), token)

        assert not archive.exists()

    def test_unwritable_destination_raises(self, watch_dir, tmp_path):
        """Test an archive path in a missing directory raises CompressionError."""
        with pytest.raises(CompressionError):
            create_archive([str(watch_dir / 'notes.txt')], str(watch_dir), str(tmp_path / 'missing' / 'out.zip'))


class TestExtractArchive:
    """Test extract_archive."""

    def test_extract_restores_tree(self, watch_dir, tmp_path):
        """Test extraction recreates files and subdirectories."""
        files = [str(watch_dir / 'notes.txt'), str(watch_dir / 'report.bin'), str(watch_dir / 'sub' / 'nested.txt')]
        archive = tmp_path / 'out.zip'
        create_archive(files, str(watch_dir), str(archive))
        target = tmp_path / 'restored'

        extracted = extract_archive(str(archive), str(target))

        assert len(extracted) == 3
        assert (target / 'notes.txt').read_text() == 'Some notes'
        assert (target / 'report.bin').read_bytes() == (watch_dir / 'report.bin').read_bytes()
        assert (target / 'sub' / 'nested.txt').read_text() == 'Nested content'

    def test_extract_overwrites(self, watch_dir, tmp_path):
        """Test existing files are overwritten."""
        archive = tmp_path / 'out.zip'
        create_archive([str(watch_dir / 'notes.txt')], str(watch_dir), str(archive))
        target = tmp_path / 'restored'
        target.mkdir()
        (target / 'notes.txt').write_text('stale')

        extract_archive(str(archive), str(target))

        assert (target / 'notes.txt').read_text() == 'Some notes'

    def test_extract_rejects_escaping_entries(self, tmp_path):
        """Test entries resolving outside the destination are rejected."""
        archive = tmp_path / 'evil.zip'
        with zipfile.ZipFile(archive, 'w') as zipf:
            zipf.writestr('../evil.txt', 'x')

        with pytest.raises(CompressionError, match='escapes'):
            extract_archive(str(archive), str(tmp_path / 'restored'))

        assert not (tmp_path / 'evil.txt').exists()

    def test_extract_invalid_archive(self, tmp_path):
        """Test a non-zip payload raises CompressionError."""
        bogus = tmp_path / 'bogus.zip'
        bogus.write_bytes(b'not a zip')

        with pytest.raises(CompressionError, match='Invalid archive'):
            extract_archive(str(bogus), str(tmp_path / 'restored'))


class TestRemotePaths:
    """Test remote key naming."""

    @freeze_time('2024-05-06 07:08:09')
    def test_generate_full_path(self):
        """Test backups/{group}/{yyyyMMddHHmmss}.zip."""
        assert generate_remote_path('/home/user/Documents') == 'backups/Documents/20240506070809.zip'

    def test_generate_diff_encrypted_path(self):
        """Test the diff and encryption extensions."""
        stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

        path = generate_remote_path('/data/My Files', is_diff=True, encrypted=True, timestamp=stamp)

        assert path == 'backups/My_Files/20240102030405.diff.enc'
        assert metadata_path(path) == 'backups/My_Files/20240102030405.diff.enc.meta'

    @pytest.mark.parametrize('name,expected', [
        ('Documents', 'Documents'),
        ('my docs', 'my_docs'),
        ('a/b\\c', 'a_b_c'),
        ('photos-2024_raw', 'photos-2024_raw'),
        ('', 'root'),
    ])
    def test_sanitize_name(self, name, expected):
        """Test unsafe characters become underscores."""
        assert sanitize_name(name) == expected

    def test_group_name_ignores_trailing_separator(self):
        """Test the group folder is the directory's base name."""
        assert group_name('/home/user/Pictures/') == 'Pictures'

    @pytest.mark.parametrize('path,encrypted,diff', [
        ('backups/a/1.zip', False, False),
        ('backups/a/1.zip.enc', True, False),
        ('backups/a/1.diff', False, True),
        ('backups/a/1.DIFF.ENC', True, True),
    ])
    def test_path_classification(self, path, encrypted, diff):
        """Test is_encrypted_path and is_diff_path."""
        assert is_encrypted_path(path) is encrypted
        assert is_diff_path(path) is diff
