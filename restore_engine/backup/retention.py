"""
Retention policy enforcement for backups.

Prunes each backup group's history down to the configured policy: the
newest N backups plus everything younger than the maximum age. The most
recent backup of a group is never deleted.
"""

import logging
from datetime import timedelta
from typing import List, Dict, Any, Optional

from restore_engine.config import RetentionConfig
from restore_engine.models import BackupInfo, utc_now
from restore_engine.backup.compression import is_encrypted_path, metadata_path
from restore_engine.backup.storage import create_storage

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages retention policy enforcement for backup groups.

    Deletions go through the storage backend each backup was uploaded to,
    then the pruned entries are removed from the state store.
    """

    def __init__(self, state_store, engine_config):
        """
        Initialize retention manager.

        Args:
            state_store: StateStore holding the backup history
            engine_config: EngineConfig with the retention policy and storage sources
        """
        self.state_store = state_store
        self.engine_config = engine_config
        self.logs = []

    @property
    def retention(self) -> RetentionConfig:
        return self.engine_config.retention

    @staticmethod
    def select_backups_to_delete(backups: List[BackupInfo], retention: RetentionConfig,
                                 now=None) -> List[BackupInfo]:
        """
        Choose which backups of one group fall outside the policy.

        Keeps the newest keep_last_per_directory backups and, when
        max_age_days is positive, every backup younger than the cutoff.
        The newest backup is always kept.

        Args:
            backups: All backups of one group, in any order
            retention: Policy to apply
            now: Reference time (default: current UTC time)

        Returns:
            Backups to delete, newest first
        """
        if len(backups) <= 1:
            return []

        ordered = sorted(
            (b for b in backups if b.path and b.path.strip()),
            key=lambda b: b.timestamp_utc,
            reverse=True
        )
        if len(ordered) <= 1:
            return []

        keep_count = max(1, retention.keep_last_per_directory)
        keep = set(b.path.lower() for b in ordered[:keep_count])

        if retention.max_age_days > 0:
            cutoff = (now or utc_now()) - timedelta(days=retention.max_age_days)
            keep.update(b.path.lower() for b in ordered if b.timestamp_utc >= cutoff)

        keep.add(ordered[0].path.lower())

        # Entries sharing a remote key with a kept backup are never deleted
        to_delete = []
        seen = set()
        for backup in ordered:
            key = backup.path.lower()
            if key in keep or key in seen:
                continue
            seen.add(key)
            to_delete.append(backup)
        return to_delete

    def apply_group(self, group: str) -> Dict[str, Any]:
        """
        Enforce the retention policy for one backup group.

        Args:
            group: Backup group key

        Returns:
            Dict with summary: {'group': str, 'deleted': int, 'missing': int, 'errors': List[str]}

        Raises:
            StateError: If the pruned state cannot be saved
        """
        result = {'group': group, 'deleted': 0, 'missing': 0, 'errors': []}

        if not self.retention.enabled:
            logger.debug("Retention policy disabled, skipping")
            return result

        backups = self.state_store.get_backups_for_group(group)
        to_delete = self.select_backups_to_delete(backups, self.retention)

        if not to_delete:
            self._log(f"No backups to delete for group: {group}")
            return result

        self._log(f"Retention: {len(to_delete)} of {len(backups)} backups selected for deletion in {group}")

        by_storage: Dict[str, List[BackupInfo]] = {}
        for backup in to_delete:
            storage_type = (backup.storage_type or self.engine_config.global_storage_type).lower()
            by_storage.setdefault(storage_type, []).append(backup)

        removed = []
        for storage_type, storage_backups in by_storage.items():
            try:
                storage = create_storage(self.engine_config, storage_type)
            except Exception as e:
                error_msg = f"Failed to create storage '{storage_type}' for retention in {group}: {e}"
                self._log(error_msg, logging.ERROR)
                result['errors'].append(error_msg)
                continue

            try:
                with storage:
                    for backup in storage_backups:
                        outcome = self._delete_backup(storage, backup, result)
                        if outcome is not None:
                            removed.append(backup.path)
                            result[outcome] += 1
            except Exception as e:
                error_msg = f"Failed to close storage '{storage_type}' after retention in {group}: {e}"
                self._log(error_msg, logging.ERROR)
                result['errors'].append(error_msg)

        if removed:
            self.state_store.remove_backups_from_group(group, removed)
            self.state_store.save_state()
            self._log(f"Removed {len(removed)} backups from state for group: {group}")

        return result

    def _delete_backup(self, storage, backup: BackupInfo, result: Dict[str, Any]) -> Optional[str]:
        """
        Delete one payload (and its sidecar) from storage.

        Returns:
            'deleted', 'missing', or None if the deletion failed
        """
        try:
            if not storage.exists(backup.path):
                self._log(f"Backup not found in storage, removing from state: {backup.path}", logging.WARNING)
                return 'missing'

            storage.delete(backup.path)
            self._log(f"Deleted old backup: {backup.path}")
        except Exception as e:
            error_msg = f"Failed to delete backup {backup.path}: {e}"
            self._log(error_msg, logging.ERROR)
            result['errors'].append(error_msg)
            return None

        if is_encrypted_path(backup.path):
            sidecar = metadata_path(backup.path)
            try:
                storage.delete(sidecar)
                self._log(f"Deleted encryption metadata: {sidecar}")
            except Exception as e:
                self._log(f"Failed to delete encryption metadata {sidecar}: {e}", logging.WARNING)

        return 'deleted'

    def apply_all(self) -> Dict[str, Any]:
        """
        Enforce the retention policy for every backup group.

        Returns:
            Dict with summary of cleanup operations:
            {
                'groups_processed': int,
                'deleted': int,
                'missing': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement for all groups")

        summary = {
            'groups_processed': 0,
            'deleted': 0,
            'missing': 0,
            'errors': []
        }

        for group in self.state_store.get_backup_groups():
            try:
                result = self.apply_group(group)
                summary['groups_processed'] += 1
                summary['deleted'] += result['deleted']
                summary['missing'] += result['missing']
                summary['errors'].extend(result['errors'])
            except Exception as e:
                error_msg = f"Failed to enforce policy for group {group}: {e}"
                self._log(error_msg, logging.ERROR)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Groups: {summary['groups_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Missing: {summary['missing']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

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


def enforce_retention_policies(state_store, engine_config) -> Dict[str, Any]:
    """
    Enforce retention policies for all groups.

    Called by the scheduler on a daily basis.

    Returns:
        Summary dict from RetentionManager.apply_all()
    """
    manager = RetentionManager(state_store, engine_config)
    return manager.apply_all()
