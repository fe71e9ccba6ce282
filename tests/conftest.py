"""
Shared pytest fixtures for restore_engine tests.

This module provides fixtures for:
- Engine configuration rooted in a temporary directory
- State store, local storage and encryption engine
- Watched directories with sample files
- Mock fixtures for the scheduler
"""

import os
import base64
from unittest.mock import MagicMock, patch

import pytest

from restore_engine.config import (
    EngineConfig, RetentionConfig, EncryptionConfig, StorageSourceConfig, WatchDirectoryConfig
)
from restore_engine.backup.state import StateStore
from restore_engine.backup.storage import LocalStorage
from restore_engine.utils.crypto import EncryptionEngine
from restore_engine.utils.password import PasswordProvider

# Low PBKDF2 cost keeps the suite fast
TEST_ITERATIONS = 1000
TEST_PASSWORD = 'correct horse battery'


@pytest.fixture
def watch_dir(tmp_path):
    """
    Create a watched directory with sample files.

    Creates:
    - docs/notes.txt
    - docs/report.bin (12 KiB, spans several diff blocks)
    - docs/sub/nested.txt
    - docs/scratch.tmp (excluded by default patterns)
    """
    root = tmp_path / 'docs'
    (root / 'sub').mkdir(parents=True)
    (root / 'notes.txt').write_text('Some notes')
    (root / 'report.bin').write_bytes(bytes(range(256)) * 48)
    (root / 'sub' / 'nested.txt').write_text('Nested content')
    (root / 'scratch.tmp').write_text('temporary')
    return root


@pytest.fixture
def engine_config(tmp_path, watch_dir):
    """EngineConfig writing state, temp files and backups under tmp_path."""
    return EngineConfig(
        watch_directories=[WatchDirectoryConfig(str(watch_dir))],
        global_storage_type='local',
        storage_sources={'local': StorageSourceConfig(path=str(tmp_path / 'remote'))},
        backup_type='Incremental',
        retention=RetentionConfig(enabled=False),
        encryption=EncryptionConfig(enabled=False, key_derivation_iterations=TEST_ITERATIONS),
        state_file_path=str(tmp_path / 'state' / 'system_state.json'),
        temp_dir=str(tmp_path / 'temp'),
        log_dir=str(tmp_path / 'logs'),
        debounce_seconds=0.1,
        poll_interval_seconds=0.1
    )


@pytest.fixture
def state_store(engine_config):
    """Empty StateStore backed by the test state file."""
    store = StateStore(engine_config.state_file_path)
    store.load_state()
    return store


@pytest.fixture
def local_storage(engine_config):
    """LocalStorage initialized on the test remote directory."""
    storage = LocalStorage()
    storage.initialize(engine_config.get_storage_source('local').get_options())
    return storage


@pytest.fixture
def encryption_engine():
    return EncryptionEngine(iterations=TEST_ITERATIONS)


@pytest.fixture
def password_provider():
    return PasswordProvider(password=TEST_PASSWORD)


@pytest.fixture
def encrypted_config(engine_config, encryption_engine):
    """
    Enable encryption with a salt and verification token for TEST_PASSWORD.
    """
    salt = encryption_engine.generate_salt()
    engine_config.encryption = EncryptionConfig(
        enabled=True,
        salt=base64.b64encode(salt).decode(),
        verification_token=encryption_engine.create_password_verification_token(TEST_PASSWORD, salt),
        key_derivation_iterations=TEST_ITERATIONS
    )
    return engine_config


@pytest.fixture
def sample_file(tmp_path):
    """A 3-block binary file with a short tail."""
    path = tmp_path / 'sample.bin'
    path.write_bytes(os.urandom(4096 * 3 + 100))
    return path


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('restore_engine.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
