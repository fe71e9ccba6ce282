"""
Backup engine: change detection, diffing, storage, retention and restore.
"""

from .state import StateStore, StateError
from .diff import create_diff, create_diff_file, apply_diff, DiffError
from .storage import StorageGateway, LocalStorage, StorageFactory, StorageError, TransientStorageError
from .retention import RetentionManager
from .compression import CompressionError
from .executor import BackupExecutor, BackupError
from .restore import RestoreExecutor, RestoreError, BaseBackupMissingError

__all__ = [
    'StateStore', 'StateError',
    'create_diff', 'create_diff_file', 'apply_diff', 'DiffError',
    'StorageGateway', 'LocalStorage', 'StorageFactory', 'StorageError', 'TransientStorageError',
    'RetentionManager',
    'CompressionError',
    'BackupExecutor', 'BackupError',
    'RestoreExecutor', 'RestoreError', 'BaseBackupMissingError',
]
