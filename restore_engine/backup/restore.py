"""
Restore executor - rebuilds files from stored payloads.

Workflow:
1. Resolve the storage backend the payload was uploaded to
2. Download the payload (and its sidecar if encrypted), decrypt
3. For a diff payload, fetch the base full backup and apply the diff
4. Extract the resulting archive into the target directory
5. Cleanup temporary files
"""

import os
import shutil
import logging
import tempfile
from typing import Optional, List, Callable

from restore_engine.models import utc_now
from restore_engine.utils.crypto import EncryptionEngine, AuthenticationError, MetadataMissingError
from restore_engine.utils.password import verify_configured_password
from restore_engine.backup.compression import extract_archive, is_encrypted_path, is_diff_path, metadata_path
from restore_engine.backup.diff import apply_diff
from restore_engine.backup.storage import create_storage, StorageGateway

logger = logging.getLogger(__name__)


class RestoreError(Exception):
    """Raised when a restore cannot be completed."""
    pass


class BaseBackupMissingError(RestoreError):
    """A diff payload's base full backup is unknown or no longer stored."""
    pass


def download_plaintext(
    storage: StorageGateway,
    remote_path: str,
    dest_path: str,
    work_dir: str,
    encryption_engine: EncryptionEngine,
    get_password: Callable[[], str],
    cancellation_check: Optional[Callable[[], None]] = None
):
    """
    Download a payload and decrypt it if it is encrypted.

    Args:
        storage: Backend holding the payload
        remote_path: Payload key
        dest_path: Where the plaintext payload is written
        work_dir: Scratch directory for the ciphertext and sidecar
        encryption_engine: Engine used for decryption
        get_password: Called only when the payload is encrypted
        cancellation_check: Optional callable invoked between chunks

    Raises:
        MetadataMissingError: If an encrypted payload has no sidecar
        AuthenticationError: Wrong password or tampered payload
        StorageError: If a download fails
    """
    if not is_encrypted_path(remote_path):
        storage.download(remote_path, dest_path, cancellation_check)
        return

    remote_meta = metadata_path(remote_path)
    if not storage.exists(remote_meta):
        raise MetadataMissingError(f"Encryption metadata not found in storage: {remote_meta}")

    local_name = os.path.basename(remote_path)
    local_meta = os.path.join(work_dir, local_name + '.meta')
    local_cipher = os.path.join(work_dir, local_name)

    storage.download(remote_meta, local_meta, cancellation_check)
    metadata = encryption_engine.load_metadata(local_meta)

    storage.download(remote_path, local_cipher, cancellation_check)
    try:
        encryption_engine.decrypt_file(local_cipher, dest_path, get_password(), metadata, cancellation_check)
    finally:
        os.remove(local_cipher)


class RestoreExecutor:
    """
    Restores backup payloads into a directory.
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
        Initialize restore executor.

        Args:
            engine_config: EngineConfig with storage sources and encryption settings
            state_store: StateStore used to locate diff bases
            password_provider: PasswordProvider, required for encrypted payloads
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
        self.temp_dir = None
        self.logs = []

    def restore_backup(self, remote_path: str, target_directory: str,
                       storage_type: Optional[str] = None) -> List[str]:
        """
        Restore one payload into target_directory.

        Args:
            remote_path: Key of the payload (.zip or .diff, optionally .enc)
            target_directory: Directory the archive is extracted into
            storage_type: Backend override (default: recorded type, then global)

        Returns:
            Paths of the restored files

        Raises:
            BaseBackupMissingError: If a diff's base backup cannot be found
            MetadataMissingError: If an encrypted payload has no sidecar
            AuthenticationError: Wrong password or tampered payload
            StorageError: If a download fails
            CompressionError: If the archive cannot be extracted
        """
        if not remote_path:
            raise ValueError("Remote path cannot be empty")

        storage_type = storage_type or self._recorded_storage_type(remote_path)
        self._log(f"Starting restore of {remote_path} from {storage_type} storage")

        base_path = None
        if is_diff_path(remote_path):
            base_path = self.state_store.get_base_backup_path(remote_path)
            if base_path is None:
                raise BaseBackupMissingError(f"Base backup not found for diff: {remote_path}")

        os.makedirs(self.engine_config.temp_dir, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix='restore_', dir=self.engine_config.temp_dir)

        try:
            with create_storage(self.engine_config, storage_type) as storage:
                archive_path = os.path.join(self.temp_dir, 'restore.zip')

                if base_path is not None:
                    if not storage.exists(base_path):
                        raise BaseBackupMissingError(f"Base backup {base_path} is no longer in storage")

                    self._log(f"Applying diff {remote_path} to base {base_path}")
                    base_plain = os.path.join(self.temp_dir, 'base.zip')
                    diff_plain = os.path.join(self.temp_dir, 'payload.diff')
                    self._download(storage, base_path, base_plain)
                    self._download(storage, remote_path, diff_plain)
                    apply_diff(base_plain, diff_plain, archive_path, self.cancellation_check)
                else:
                    self._download(storage, remote_path, archive_path)

                restored = extract_archive(archive_path, target_directory)

            self._log(f"Restore completed: {len(restored)} files written to {target_directory}")
            return restored

        except AuthenticationError:
            if self.password_provider is not None:
                self.password_provider.clear_password()
            self._log("Decryption failed; cached password cleared", logging.ERROR)
            raise

        finally:
            self._cleanup()

    def restore_latest(self, group: str, target_directory: str) -> List[str]:
        """
        Restore the most recent backup of a group.

        Raises:
            RestoreError: If the group has no backups
        """
        backups = self.state_store.get_backups_for_group(group)
        if not backups:
            raise RestoreError(f"No backups found for group: {group}")

        latest = backups[0]
        return self.restore_backup(latest.path, target_directory, latest.storage_type)

    def _download(self, storage: StorageGateway, remote_path: str, dest_path: str):
        download_plaintext(
            storage, remote_path, dest_path, self.temp_dir,
            self.encryption_engine, self._get_password, self.cancellation_check
        )

    def _get_password(self) -> str:
        if self.password_provider is None:
            raise AuthenticationError("Payload is encrypted but no password provider is configured")

        password = self.password_provider.get_password()
        if not password:
            raise AuthenticationError("Payload is encrypted but no password was provided")

        if not verify_configured_password(password, self.engine_config.encryption, self.encryption_engine):
            raise AuthenticationError("Password does not match the configured master password")

        return password

    def _recorded_storage_type(self, remote_path: str) -> str:
        _, backup = self.state_store.find_backup(remote_path)
        if backup is not None and backup.storage_type:
            return backup.storage_type
        return self.engine_config.global_storage_type

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}", logging.WARNING)
        self.temp_dir = None

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
