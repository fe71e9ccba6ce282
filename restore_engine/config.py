import os
import json
import base64
from typing import Optional, Dict, Any, List

from restore_engine.models import BackupType


class Config:
    """Base configuration"""

    # Paths
    DATA_DIR = os.environ.get('RESTORE_DATA_DIR') or os.path.join(os.path.expanduser('~'), 'ReStore')
    STATE_FILE = os.environ.get('RESTORE_STATE_FILE') or os.path.join(DATA_DIR, 'state', 'system_state.json')
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.environ.get('RESTORE_LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    DEBOUNCE_SECONDS = 10
    POLL_INTERVAL_SECONDS = 5

    DEBUG = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    STATE_FILE = os.path.join(DATA_DIR, 'state', 'system_state.json')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


class ConfigError(Exception):
    """Raised when the engine configuration is invalid."""
    pass


class RetentionConfig:
    """Retention policy input. keep_last_per_directory is never below 1."""

    def __init__(self, enabled: bool = False, keep_last_per_directory: int = 10, max_age_days: int = 30):
        self.enabled = enabled
        self.keep_last_per_directory = max(1, int(keep_last_per_directory))
        self.max_age_days = int(max_age_days)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RetentionConfig':
        data = data or {}
        return cls(
            enabled=bool(data.get('enabled', False)),
            keep_last_per_directory=data.get('keepLastPerDirectory', 10),
            max_age_days=data.get('maxAgeDays', 30)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'keepLastPerDirectory': self.keep_last_per_directory,
            'maxAgeDays': self.max_age_days,
        }


class EncryptionConfig:
    """Encryption settings. salt is stored base64-encoded, as in the config file."""

    def __init__(
        self,
        enabled: bool = False,
        salt: Optional[str] = None,
        verification_token: Optional[str] = None,
        key_derivation_iterations: int = 1_000_000
    ):
        self.enabled = enabled
        self.salt = salt
        self.verification_token = verification_token
        self.key_derivation_iterations = int(key_derivation_iterations)

    @property
    def salt_bytes(self) -> Optional[bytes]:
        if not self.salt:
            return None
        return base64.b64decode(self.salt)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EncryptionConfig':
        data = data or {}
        return cls(
            enabled=bool(data.get('enabled', False)),
            salt=data.get('salt'),
            verification_token=data.get('verificationToken'),
            key_derivation_iterations=data.get('keyDerivationIterations', 1_000_000)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'salt': self.salt,
            'verificationToken': self.verification_token,
            'keyDerivationIterations': self.key_derivation_iterations,
        }


class StorageSourceConfig:
    """Options handed to a storage backend's initialize()."""

    def __init__(self, path: str = '', options: Optional[Dict[str, str]] = None):
        self.path = os.path.expandvars(path) if path else ''
        self.options = {k: os.path.expandvars(str(v)) for k, v in (options or {}).items()}

    def get_options(self) -> Dict[str, str]:
        """Backend options with 'path' filled in from the source path if missing."""
        options = dict(self.options)
        if self.path and 'path' not in options:
            options['path'] = self.path
        return options

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageSourceConfig':
        return cls(path=data.get('path', ''), options=data.get('options'))

    def to_dict(self) -> Dict[str, Any]:
        return {'path': self.path, 'options': dict(self.options)}


class WatchDirectoryConfig:
    """A watched directory with an optional per-directory storage type."""

    def __init__(self, path: str, storage_type: Optional[str] = None):
        self.path = os.path.abspath(os.path.expandvars(os.path.expanduser(path)))
        self.storage_type = storage_type

    @classmethod
    def from_value(cls, value) -> 'WatchDirectoryConfig':
        # Legacy format: a bare string path
        if isinstance(value, str):
            return cls(value)
        return cls(value.get('path', ''), value.get('storageType'))

    def to_dict(self) -> Dict[str, Any]:
        return {'path': self.path, 'storageType': self.storage_type}


class EngineConfig:
    """
    Explicit configuration passed into every engine component.

    Built from a dict or JSON file supplied by the caller, with path
    defaults taken from one of the environment-driven Config classes.
    """

    def __init__(
        self,
        watch_directories: Optional[List[WatchDirectoryConfig]] = None,
        global_storage_type: str = 'local',
        storage_sources: Optional[Dict[str, StorageSourceConfig]] = None,
        backup_type: BackupType = BackupType.INCREMENTAL,
        backup_interval_seconds: int = 3600,
        excluded_patterns: Optional[List[str]] = None,
        excluded_paths: Optional[List[str]] = None,
        max_file_size_mb: int = 100,
        size_threshold_mb: int = 500,
        retention: Optional[RetentionConfig] = None,
        encryption: Optional[EncryptionConfig] = None,
        state_file_path: Optional[str] = None,
        temp_dir: Optional[str] = None,
        log_dir: Optional[str] = None,
        debounce_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
        base_config=Config
    ):
        self.watch_directories = watch_directories or []
        self.global_storage_type = global_storage_type
        self.storage_sources = storage_sources or {}
        self.backup_type = BackupType.parse(backup_type)
        self.backup_interval_seconds = int(backup_interval_seconds)
        self.excluded_patterns = list(excluded_patterns) if excluded_patterns is not None else default_excluded_patterns()
        self.excluded_paths = [os.path.expandvars(p) for p in (excluded_paths or [])]
        self.max_file_size_mb = int(max_file_size_mb)
        self.size_threshold_mb = int(size_threshold_mb)
        self.retention = retention or RetentionConfig()
        self.encryption = encryption or EncryptionConfig()
        self.state_file_path = state_file_path or base_config.STATE_FILE
        self.temp_dir = temp_dir or base_config.TEMP_DIR
        self.log_dir = log_dir or base_config.LOG_DIR
        self.debounce_seconds = base_config.DEBOUNCE_SECONDS if debounce_seconds is None else float(debounce_seconds)
        self.poll_interval_seconds = base_config.POLL_INTERVAL_SECONDS if poll_interval_seconds is None else float(poll_interval_seconds)
        self.debug = base_config.DEBUG

    def get_storage_type_for_directory(self, directory: str) -> str:
        """
        Resolve which storage backend a watched directory uploads to.

        Args:
            directory: Watched directory path

        Returns:
            Per-directory storage type, or the global storage type
        """
        normalized = os.path.normcase(os.path.abspath(directory))
        for watch in self.watch_directories:
            if os.path.normcase(watch.path) == normalized and watch.storage_type:
                return watch.storage_type
        return self.global_storage_type

    def get_storage_source(self, storage_type: str) -> StorageSourceConfig:
        """
        Look up storage source settings case-insensitively.

        Raises:
            ConfigError: If no source is configured for storage_type
        """
        for name, source in self.storage_sources.items():
            if name.lower() == storage_type.lower():
                return source
        raise ConfigError(f"Storage type '{storage_type}' not found in configuration")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_config=Config) -> 'EngineConfig':
        """
        Build configuration from the camelCase config document.

        Args:
            data: Parsed configuration document
            base_config: Config class supplying path defaults

        Returns:
            EngineConfig instance

        Raises:
            ConfigError: If a value cannot be parsed
        """
        try:
            storage_sources = {
                name: StorageSourceConfig.from_dict(source or {})
                for name, source in (data.get('storageSources') or {}).items()
            }

            # Global storage type falls back to the first configured source
            global_storage_type = data.get('globalStorageType') or next(iter(storage_sources), 'local')

            return cls(
                watch_directories=[WatchDirectoryConfig.from_value(v) for v in data.get('watchDirectories') or []],
                global_storage_type=global_storage_type,
                storage_sources=storage_sources,
                backup_type=BackupType.parse(data.get('backupType', 'Incremental')),
                backup_interval_seconds=data.get('backupInterval', 3600),
                excluded_patterns=data.get('excludedPatterns'),
                excluded_paths=data.get('excludedPaths'),
                max_file_size_mb=data.get('maxFileSizeMB', 100),
                size_threshold_mb=data.get('sizeThresholdMB', 500),
                retention=RetentionConfig.from_dict(data.get('retention')),
                encryption=EncryptionConfig.from_dict(data.get('encryption')),
                state_file_path=data.get('stateFilePath'),
                temp_dir=data.get('tempDir'),
                log_dir=data.get('logDir'),
                debounce_seconds=data.get('debounceSeconds'),
                poll_interval_seconds=data.get('pollIntervalSeconds'),
                base_config=base_config
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"Invalid configuration: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'watchDirectories': [w.to_dict() for w in self.watch_directories],
            'globalStorageType': self.global_storage_type,
            'storageSources': {k: v.to_dict() for k, v in self.storage_sources.items()},
            'backupType': self.backup_type.value,
            'backupInterval': self.backup_interval_seconds,
            'excludedPatterns': list(self.excluded_patterns),
            'excludedPaths': list(self.excluded_paths),
            'maxFileSizeMB': self.max_file_size_mb,
            'sizeThresholdMB': self.size_threshold_mb,
            'retention': self.retention.to_dict(),
            'encryption': self.encryption.to_dict(),
            'stateFilePath': self.state_file_path,
            'tempDir': self.temp_dir,
            'logDir': self.log_dir,
            'debounceSeconds': self.debounce_seconds,
            'pollIntervalSeconds': self.poll_interval_seconds,
        }


def default_excluded_patterns() -> List[str]:
    return ['*.tmp', '*.temp', '~$*', 'Thumbs.db', '.DS_Store', '*.swp', '__pycache__', '.git']


def load_config(config_path: str, config_name: Optional[str] = None) -> EngineConfig:
    """
    Load engine configuration from a JSON file.

    Args:
        config_path: Path to the JSON configuration document
        config_name: Key into the config dict ('development', 'production');
            defaults to RESTORE_ENV or 'production'

    Returns:
        EngineConfig instance

    Raises:
        ConfigError: If the file is missing or not valid JSON
    """
    if config_name is None:
        config_name = os.environ.get('RESTORE_ENV', 'production')

    base_config = config.get(config_name, config['default'])

    if not os.path.exists(config_path):
        raise ConfigError(f"Configuration file not found at: {config_path}")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Configuration file is not valid JSON: {e}")

    return EngineConfig.from_dict(data, base_config=base_config)
