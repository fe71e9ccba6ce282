import os
import logging
from logging.handlers import RotatingFileHandler


def configure_logging(log_dir: str, debug: bool = False):
    """Configure engine logging"""

    # Create logs directory if it doesn't exist
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'restore_engine.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    engine_logger = logging.getLogger('restore_engine')
    engine_logger.setLevel(log_level)
    engine_logger.addHandler(console_handler)
    engine_logger.addHandler(file_handler)

    engine_logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return engine_logger


class Engine:
    """
    Wires the engine components together around one configuration.

    Holds the long-lived state store and password provider; executors are
    created per run.
    """

    def __init__(self, engine_config, state_store, password_provider=None, encryption_engine=None):
        self.config = engine_config
        self.state_store = state_store
        self.password_provider = password_provider
        self.encryption_engine = encryption_engine
        self.change_monitor = None

    def backup_executor(self, cancellation_check=None):
        from restore_engine.backup.executor import BackupExecutor
        return BackupExecutor(
            self.config, self.state_store, self.password_provider,
            self.encryption_engine, cancellation_check
        )

    def restore_executor(self, cancellation_check=None):
        from restore_engine.backup.restore import RestoreExecutor
        return RestoreExecutor(
            self.config, self.state_store, self.password_provider,
            self.encryption_engine, cancellation_check
        )

    def retention_manager(self):
        from restore_engine.backup.retention import RetentionManager
        return RetentionManager(self.state_store, self.config)

    def start(self, watch: bool = True):
        """Start the scheduler (and the change monitor if watch is True)."""
        from restore_engine.scheduler import init_scheduler, start_scheduler, ChangeMonitor
        from restore_engine.backup.sources import FileSelector

        job_scheduler = init_scheduler(self)

        if watch and self.config.watch_directories:
            self.change_monitor = ChangeMonitor(
                roots=[w.path for w in self.config.watch_directories],
                backup_files=lambda files, root: self.backup_executor().backup_files(files, root),
                job_scheduler=job_scheduler,
                debounce_seconds=self.config.debounce_seconds,
                poll_interval_seconds=self.config.poll_interval_seconds,
                selector=FileSelector.from_config(self.config)
            )
            self.change_monitor.start()

        start_scheduler()

    def stop(self):
        from restore_engine.scheduler import stop_scheduler

        if self.change_monitor is not None:
            self.change_monitor.stop()
            self.change_monitor = None
        stop_scheduler()


def create_engine(engine_config, password_provider=None, encryption_engine=None, setup_logging: bool = False):
    """Engine factory"""
    from restore_engine.backup.state import StateStore
    from restore_engine.utils.crypto import EncryptionEngine

    if setup_logging:
        configure_logging(engine_config.log_dir, engine_config.debug)

    # Ensure required directories exist
    os.makedirs(engine_config.temp_dir, exist_ok=True)
    os.makedirs(os.path.dirname(os.path.abspath(engine_config.state_file_path)), exist_ok=True)

    state_store = StateStore(engine_config.state_file_path)
    state_store.load_state()

    if encryption_engine is None:
        encryption_engine = EncryptionEngine(iterations=engine_config.encryption.key_derivation_iterations)

    return Engine(engine_config, state_store, password_provider, encryption_engine)
