"""
Storage backends for backup payloads.

Supports:
- StorageGateway: abstract contract every backend implements
- LocalStorage: Store payloads in a local (or mounted) directory
- StorageFactory: maps storage type ids to backend classes
"""

import os
import shutil
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, Callable, Type

from restore_engine.config import ConfigError
from restore_engine.utils.cancellation import check_cancelled

logger = logging.getLogger(__name__)

TRANSFER_CHUNK_SIZE = 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class TransientStorageError(StorageError):
    """Raised for retryable failures (network, rate limiting)."""
    pass


class StorageGateway(ABC):
    """
    Contract between the engine and a remote store.

    Remote keys are forward-slash separated paths such as
    'backups/Documents/20240101120000.zip'. delete() of a missing key
    must succeed.
    """

    @abstractmethod
    def initialize(self, options: Dict[str, str]):
        """
        Configure the backend.

        Args:
            options: Backend-specific options from the storage source config

        Raises:
            StorageError: If required options are missing or invalid
        """

    @abstractmethod
    def upload(self, local_path: str, remote_key: str, cancellation_check: Optional[Callable[[], None]] = None):
        """Copy a local file to remote_key, replacing any existing object."""

    @abstractmethod
    def download(self, remote_key: str, local_path: str, cancellation_check: Optional[Callable[[], None]] = None):
        """Copy remote_key to a local file."""

    @abstractmethod
    def exists(self, remote_key: str) -> bool:
        """Check whether remote_key is present."""

    @abstractmethod
    def delete(self, remote_key: str):
        """Remove remote_key. Missing keys are not an error."""

    def close(self):
        """Release scoped resources (connections, sessions)."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class LocalStorage(StorageGateway):
    """
    Filesystem backend.

    Remote keys map to files under the configured base path:
    {path}/{remote_key}
    """

    def __init__(self):
        self.base_path: Optional[Path] = None

    def initialize(self, options: Dict[str, str]):
        path = options.get('path')
        if not path:
            raise StorageError("Local storage path is required")

        self.base_path = Path(os.path.expandvars(os.path.expanduser(path))).resolve()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

        logger.info(f"Local storage initialized at {self.base_path}")

    def get_full_path(self, remote_key: str) -> Path:
        """
        Resolve a remote key to a path under the base directory.

        Raises:
            StorageError: If not initialized or the key escapes the base path
        """
        if self.base_path is None:
            raise StorageError("Local storage is not initialized")

        relative = remote_key.replace('\\', '/').lstrip('/')
        full_path = (self.base_path / relative).resolve()

        if full_path != self.base_path and self.base_path not in full_path.parents:
            raise StorageError(f"Remote key escapes storage directory: {remote_key}")

        return full_path

    def upload(self, local_path: str, remote_key: str, cancellation_check: Optional[Callable[[], None]] = None):
        """
        Copy a file into local storage.

        Raises:
            StorageError: If the source is missing or the copy fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        dest_path = self.get_full_path(remote_key)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            _copy_file(local_path, str(dest_path), cancellation_check)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

        logger.info(f"Uploaded {local_path} to {remote_key}")

    def download(self, remote_key: str, local_path: str, cancellation_check: Optional[Callable[[], None]] = None):
        """
        Copy a stored file out to local_path.

        Raises:
            StorageError: If the key does not exist or the copy fails
        """
        source_path = self.get_full_path(remote_key)

        if not source_path.is_file():
            raise StorageError(f"File not found in local storage: {remote_key}")

        try:
            parent = os.path.dirname(os.path.abspath(local_path))
            os.makedirs(parent, exist_ok=True)
            _copy_file(str(source_path), local_path, cancellation_check)
        except OSError as e:
            raise StorageError(f"Failed to download {remote_key}: {e}")

        logger.info(f"Downloaded {remote_key} to {local_path}")

    def exists(self, remote_key: str) -> bool:
        return self.get_full_path(remote_key).is_file()

    def delete(self, remote_key: str):
        """
        Delete a file from local storage.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.get_full_path(remote_key)

        if not full_path.exists():
            logger.warning(f"File not found for deletion: {remote_key}")
            return

        try:
            full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

        logger.info(f"Deleted {remote_key}")


def _copy_file(source: str, destination: str, cancellation_check: Optional[Callable[[], None]] = None):
    """Chunked copy through a temporary file that replaces destination on success."""
    temp_path = destination + '.partial'
    try:
        with open(source, 'rb') as src, open(temp_path, 'wb') as dst:
            while True:
                check_cancelled(cancellation_check)
                block = src.read(TRANSFER_CHUNK_SIZE)
                if not block:
                    break
                dst.write(block)
        shutil.copystat(source, temp_path)
        os.replace(temp_path, destination)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


class StorageFactory:
    """Creates initialized storage backends by type id."""

    _backends: Dict[str, Type[StorageGateway]] = {
        'local': LocalStorage,
    }

    @classmethod
    def register(cls, storage_type: str, backend_class: Type[StorageGateway]):
        """
        Register an external backend.

        Args:
            storage_type: Type id used in configuration (case-insensitive)
            backend_class: StorageGateway subclass with a no-argument constructor
        """
        cls._backends[storage_type.lower()] = backend_class

    @classmethod
    def unregister(cls, storage_type: str):
        cls._backends.pop(storage_type.lower(), None)

    @classmethod
    def available_types(cls):
        return sorted(cls._backends)

    @classmethod
    def create(cls, storage_type: str, options: Dict[str, str]) -> StorageGateway:
        """
        Instantiate and initialize a backend.

        Args:
            storage_type: Registered type id
            options: Options passed to initialize()

        Returns:
            Ready-to-use StorageGateway

        Raises:
            StorageError: If the type is unknown or initialization fails
        """
        backend_class = cls._backends.get((storage_type or '').lower())
        if backend_class is None:
            raise StorageError(
                f"Unsupported storage type: {storage_type}. "
                f"Valid options: {cls.available_types()}"
            )

        backend = backend_class()
        backend.initialize(options)
        return backend


def create_storage(engine_config, storage_type: str) -> StorageGateway:
    """
    Create the backend configured for storage_type.

    Args:
        engine_config: EngineConfig holding the storage sources
        storage_type: Storage type id

    Returns:
        Initialized StorageGateway

    Raises:
        StorageError: If the source is not configured or cannot be created
    """
    try:
        source = engine_config.get_storage_source(storage_type)
    except ConfigError as e:
        raise StorageError(str(e))

    return StorageFactory.create(storage_type, source.get_options())
