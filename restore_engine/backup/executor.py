"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Select the group's files and ask the state store which changed
2. Create an archive (full) or diff it against the group's base backup
3. Encrypt the payload (if configured)
4. Upload the sidecar metadata, then the payload
5. Record the backup and apply the group's retention policy
6. Update file metadata and save state
7. Cleanup temporary files
"""

import os
import logging
import tempfile
import threading
from datetime import timedelta
from typing import Optional, List, Dict, Any, Callable

from restore_engine.models import BackupType, BackupInfo, utc_now
from restore_engine.utils.crypto import EncryptionEngine, AuthenticationError
from restore_engine.utils.password import verify_configured_password
from restore_engine.backup.sources import FileSelector
from restore_engine.backup.compression import create_archive, generate_remote_path, metadata_path
from restore_engine.backup.diff import create_diff_file
from restore_engine.backup.storage import create_storage, StorageGateway, StorageError
from restore_engine.backup.state import StateError
from restore_engine.backup.retention import RetentionManager
from restore_engine.backup.restore import download_plaintext

logger = logging.getLogger(__name__)

_reserved_paths = set()
_reserved_lock = threading.Lock()


class BackupError(Exception):
    """Raised when a backup run cannot proceed."""
    pass


class BackupExecutor:
    """
    Orchestrates backups of watched directories into their storage backends.
    """

    def __init__(
        self,
        engine_config,
        state_store,
        password_provider=None,
        encryption_engine: Optional[EncryptionEngine] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """
        Initialize backup executor.

        Args:
            engine_config: EngineConfig for the run
            state_store: StateStore with file metadata and backup history
            password_provider: PasswordProvider, required when encryption is enabled
            encryption_engine: EncryptionEngine (default: configured iterations)
            cancellation_check: Optional callable that raises OperationCancelled
        """
        self.engine_config = engine_config
        self.state_store = state_store
        self.password_provider = password_provider
        self.encryption_engine = encryption_engine or EncryptionEngine(
            iterations=engine_config.encryption.key_derivation_iterations
        )
        self.cancellation_check = cancellation_check
        self.selector = FileSelector.from_config(engine_config)
        self.retention_manager = RetentionManager(state_store, engine_config)
        self.logs = []

    def backup_directory(self, source_directory: str, storage_type: Optional[str] = None,
                         backup_type=None) -> Optional[BackupInfo]:
        """
        Back up a watched directory.

        Full runs upload a zip of every selected file. Incremental and
        Differential runs upload a diff of the current snapshot against
        the group's latest full backup, or a full zip if there is none.

        Args:
            source_directory: Directory to back up (the backup group)
            storage_type: Backend override (default: directory's configured type)
            backup_type: BackupType override (default: configured type)

        Returns:
            BackupInfo of the uploaded payload, or None if nothing changed

        Raises:
            BackupError: If the directory is missing or encryption cannot proceed
            StorageError: If an upload fails
        """
        if not source_directory or not source_directory.strip():
            raise ValueError("Source directory cannot be empty")

        group = os.path.abspath(os.path.expandvars(os.path.expanduser(source_directory)))
        if not os.path.isdir(group):
            raise BackupError(f"Source directory not found: {group}")

        backup_type = BackupType.parse(backup_type or self.engine_config.backup_type)
        storage_type = storage_type or self.engine_config.get_storage_type_for_directory(group)

        self._log(f"Starting {backup_type.value} backup of {group} using {storage_type} storage")

        all_files = self.selector.get_files([group])
        self._check_size_threshold(group, all_files)

        changed = self.state_store.get_changed_files(all_files, backup_type, group)
        if not changed:
            self._log("No files need to be backed up based on the current state and backup type.")
            self.state_store.save_state()
            return None

        self._log(f"Preparing to backup {len(changed)} of {len(all_files)} files from {group}")

        base_path = None
        if backup_type != BackupType.FULL:
            base_path = self.state_store.get_previous_backup_path(group)
            if base_path is None:
                self._log("No previous full backup for this group, creating a full backup instead")

        # A snapshot (full or diff) always covers the group's whole file set
        included = all_files

        with self._temp_dir() as temp_dir, create_storage(self.engine_config, storage_type) as storage:
            archive_path = os.path.join(temp_dir, 'snapshot.zip')
            create_archive(included, group, archive_path, self.cancellation_check)

            payload_path = archive_path
            is_diff = False

            if base_path is not None:
                diff_path = self._create_diff(storage, base_path, archive_path, temp_dir)
                if diff_path is not None:
                    payload_path, is_diff = diff_path, True

            info = self._upload_payload(storage, storage_type, group, payload_path, is_diff)

        self._record_files(included)
        return info

    def backup_files(self, files: List[str], base_directory: str,
                     storage_type: Optional[str] = None) -> Optional[BackupInfo]:
        """
        Back up an explicit list of changed files as a full zip.

        Used by the change monitor. Files deleted before archiving are
        skipped and their metadata is dropped.

        Args:
            files: Changed file paths under base_directory
            base_directory: Watched directory the files belong to (the backup group)
            storage_type: Backend override (default: directory's configured type)

        Returns:
            BackupInfo of the uploaded payload, or None if nothing was left to back up
        """
        if files is None:
            raise ValueError("files cannot be None")
        if not base_directory or not base_directory.strip():
            raise ValueError("Base directory cannot be empty")

        file_list = list(files)
        if not file_list:
            self._log("No files provided for backup.")
            return None

        group = os.path.abspath(base_directory)
        storage_type = storage_type or self.engine_config.get_storage_type_for_directory(group)

        self._log(
            f"Starting backup of {len(file_list)} specific files from base directory {group} "
            f"using {storage_type} storage"
        )

        existing = [f for f in file_list if os.path.isfile(f) and not self.selector.should_exclude(f)]
        vanished = [f for f in file_list if not os.path.exists(f)]
        if not existing:
            self._log("All specified files were deleted or excluded before archiving could start.", logging.WARNING)
            self._record_files(vanished)
            return None

        with self._temp_dir() as temp_dir, create_storage(self.engine_config, storage_type) as storage:
            archive_path = os.path.join(temp_dir, 'files.zip')
            create_archive(existing, group, archive_path, self.cancellation_check)
            info = self._upload_payload(storage, storage_type, group, archive_path, False)

        self._record_files(existing + vanished)
        return info

    def backup_all(self) -> Dict[str, Any]:
        """
        Back up every watched directory.

        Returns:
            Dict with summary:
            {
                'directories_processed': int,
                'backups_created': int,
                'unchanged': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        summary = {
            'directories_processed': 0,
            'backups_created': 0,
            'unchanged': 0,
            'errors': []
        }

        for watch in self.engine_config.watch_directories:
            try:
                info = self.backup_directory(watch.path, watch.storage_type)
                summary['directories_processed'] += 1
                if info is None:
                    summary['unchanged'] += 1
                else:
                    summary['backups_created'] += 1
            except Exception as e:
                error_msg = f"Failed to backup directory {watch.path}: {e}"
                self._log(error_msg, logging.ERROR)
                summary['errors'].append(error_msg)

        self._log(
            f"Backup run complete. "
            f"Directories: {summary['directories_processed']}, "
            f"Created: {summary['backups_created']}, "
            f"Unchanged: {summary['unchanged']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _create_diff(self, storage: StorageGateway, base_path: str, archive_path: str,
                     temp_dir: str) -> Optional[str]:
        """
        Diff the new snapshot against the group's base payload.

        Returns:
            Path of the diff file, or None if the base cannot be fetched
        """
        base_plain = os.path.join(temp_dir, 'base.zip')
        try:
            download_plaintext(
                storage, base_path, base_plain, temp_dir,
                self.encryption_engine, self._get_password, self.cancellation_check
            )
        except AuthenticationError:
            self._clear_password()
            raise
        except StorageError as e:
            self._log(f"Base backup {base_path} unavailable ({e}), creating a full backup instead", logging.WARNING)
            return None

        diff_path = os.path.join(temp_dir, 'snapshot.diff')
        stats = create_diff_file(base_plain, archive_path, diff_path, self.cancellation_check)
        self._log(
            f"Diff against {base_path}: {stats['copy']} copied blocks, "
            f"{stats['data']} data blocks ({stats['data_bytes']} bytes)"
        )
        return diff_path

    def _upload_payload(self, storage: StorageGateway, storage_type: str, group: str,
                        payload_path: str, is_diff: bool) -> BackupInfo:
        """Encrypt (if enabled), upload, record, and prune."""
        encrypted = self.engine_config.encryption.enabled
        remote_path = self._reserve_remote_path(storage, group, is_diff, encrypted)
        try:
            info = self._upload_reserved(storage, storage_type, group, payload_path, remote_path, is_diff)
        finally:
            with _reserved_lock:
                _reserved_paths.discard(remote_path.lower())

        try:
            self.retention_manager.apply_group(group)
        except (StorageError, StateError) as e:
            self._log(f"Retention failed for {group}: {e}", logging.ERROR)

        self._log(f"Backup completed: {remote_path}")
        return info

    def _reserve_remote_path(self, storage: StorageGateway, group: str, is_diff: bool, encrypted: bool) -> str:
        """
        Pick a remote key no other backup uses.

        Keys have one-second resolution, so on a collision the timestamp
        moves forward a second at a time.
        """
        when = utc_now()
        with _reserved_lock:
            while True:
                remote_path = generate_remote_path(group, is_diff=is_diff, encrypted=encrypted, timestamp=when)
                taken = (
                    remote_path.lower() in _reserved_paths
                    or self.state_store.find_backup(remote_path)[0] is not None
                    or storage.exists(remote_path)
                )
                if not taken:
                    _reserved_paths.add(remote_path.lower())
                    return remote_path
                self._log(f"Remote key already in use, trying the next second: {remote_path}", logging.WARNING)
                when += timedelta(seconds=1)

    def _upload_reserved(self, storage: StorageGateway, storage_type: str, group: str,
                         payload_path: str, remote_path: str, is_diff: bool) -> BackupInfo:
        encrypted = self.engine_config.encryption.enabled
        upload_path = payload_path
        sidecar_path = None

        if encrypted:
            self._log("Encrypting backup...")
            password = self._get_password()
            upload_path = payload_path + '.enc'
            encryption = self.engine_config.encryption
            metadata = self.encryption_engine.encrypt_file(
                payload_path, upload_path, password,
                salt=encryption.salt_bytes,
                iterations=encryption.key_derivation_iterations,
                cancellation_check=self.cancellation_check
            )

            local_meta = upload_path + '.meta'
            self.encryption_engine.save_metadata(metadata, local_meta)
            sidecar_path = metadata_path(remote_path)
            storage.upload(local_meta, sidecar_path, self.cancellation_check)
            self._log(f"Uploaded encryption metadata: {sidecar_path}")

        size_bytes = os.path.getsize(upload_path)
        self._log(f"Uploading {'diff' if is_diff else 'full'} payload to {remote_path} ({size_bytes / 1024 / 1024:.2f} MB)")
        try:
            storage.upload(upload_path, remote_path, self.cancellation_check)
        except Exception:
            if sidecar_path:
                self._delete_orphan_sidecar(storage, sidecar_path)
            raise

        return self.state_store.add_backup(group, remote_path, is_diff, storage_type, size_bytes)

    def _delete_orphan_sidecar(self, storage: StorageGateway, sidecar_path: str):
        try:
            storage.delete(sidecar_path)
            self._log(f"Removed encryption metadata after failed upload: {sidecar_path}", logging.WARNING)
        except Exception as e:
            self._log(f"Failed to remove encryption metadata {sidecar_path}: {e}", logging.ERROR)

    def _record_files(self, files: List[str]):
        for file_path in files:
            self.state_store.add_or_update_file_metadata(file_path)

        self.state_store.last_backup_time = utc_now()
        self.state_store.save_state()

    def _get_password(self) -> str:
        """
        Get the master password for encryption.

        Raises:
            BackupError: If no password is available or it fails verification
        """
        if self.password_provider is None:
            raise BackupError("Encryption is enabled but no password provider is configured")

        password = self.password_provider.get_password()
        if not password:
            raise BackupError("Encryption is enabled but no password was provided")

        if not verify_configured_password(password, self.engine_config.encryption, self.encryption_engine):
            self._clear_password()
            raise BackupError("Password does not match the configured master password")

        return password

    def _clear_password(self):
        if self.password_provider is not None:
            self.password_provider.clear_password()

    def _check_size_threshold(self, group: str, files: List[str]):
        threshold = self.engine_config.size_threshold_mb * 1024 * 1024
        if threshold <= 0:
            return

        total = 0
        for file_path in files:
            try:
                total += os.path.getsize(file_path)
            except OSError:
                continue

        if total > threshold:
            self._log(f"Warning: Directory size ({total} bytes) exceeds threshold for {group}", logging.WARNING)

    def _temp_dir(self):
        os.makedirs(self.engine_config.temp_dir, exist_ok=True)
        return tempfile.TemporaryDirectory(prefix='restore_backup_', dir=self.engine_config.temp_dir)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = utc_now().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def backup_all_directories(engine_config, state_store, password_provider=None) -> Dict[str, Any]:
    """
    Back up every watched directory.

    Called by the scheduler on the configured backup interval.

    Returns:
        Summary dict from BackupExecutor.backup_all()
    """
    executor = BackupExecutor(engine_config, state_store, password_provider)
    return executor.backup_all()
