"""
Backup state: per-file metadata and per-group backup history.

The whole state is one JSON document, rewritten on every save. A crash
between a successful upload and save_state() leaves the uploaded object
in remote storage without a history entry.
"""

import os
import re
import json
import logging
import threading
from datetime import datetime, timezone
from typing import List, Dict, Optional, Iterable

from restore_engine.models import BackupType, BackupInfo, FileMetadata, utc_now, to_utc
from restore_engine.utils.hashing import compute_file_hash

logger = logging.getLogger(__name__)

_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)
_TIMESTAMP_RE = re.compile(r'(\d{14})(?:[^\d]|$)')


class StateError(Exception):
    """Raised when the state document cannot be written."""
    pass


def _key(path: str) -> str:
    return os.path.normcase(path)


class StateStore:
    """
    Single source of truth for what changed and what backups exist.

    All in-memory access goes through one re-entrant lock; saves are
    additionally serialized so concurrent writers never interleave.
    """

    def __init__(self, state_file_path: str):
        """
        Args:
            state_file_path: Location of the JSON state document
        """
        self.state_file_path = state_file_path
        self.last_backup_time: Optional[datetime] = None
        self.file_metadata: Dict[str, FileMetadata] = {}
        self.backup_history: Dict[str, List[BackupInfo]] = {}

        self._lock = threading.RLock()
        self._save_lock = threading.Lock()

    # -- change detection -------------------------------------------------

    def get_changed_files(self, all_paths: List[str], backup_type, group: Optional[str] = None) -> List[str]:
        """
        Decide which files qualify for a backup run.

        Args:
            all_paths: Candidate file paths
            backup_type: BackupType (or its name)
            group: Backup group whose last full backup bounds a Differential run;
                if omitted, the newest full backup across all groups is used

        Returns:
            Paths to include. Files whose metadata cannot be read are included.
        """
        backup_type = BackupType.parse(backup_type)

        if backup_type == BackupType.FULL:
            logger.info("Full backup requested, including all files.")
            return all_paths

        with self._lock:
            last_full_time = self.get_last_full_backup_time(group)
            snapshot = dict(self.file_metadata)

        changed = []
        for path in all_paths:
            try:
                stat = os.stat(path)
            except FileNotFoundError:
                logger.debug(f"File no longer exists, skipping: {path}")
                continue
            except OSError as e:
                logger.warning(f"Error checking file {path}: {e}. Including in backup.")
                changed.append(path)
                continue

            size = stat.st_size
            modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            previous = snapshot.get(_key(path))

            if previous is None:
                logger.debug(f"New file detected: {path}")
                changed.append(path)
            elif backup_type == BackupType.INCREMENTAL:
                if modified > previous.last_modified_utc or size != previous.size:
                    logger.debug(f"File changed (Incremental): {path}")
                    changed.append(path)
            elif backup_type == BackupType.DIFFERENTIAL:
                if modified > last_full_time:
                    logger.debug(f"File changed (Differential): {path}")
                    changed.append(path)

        logger.info(
            f"Found {len(changed)} changed files out of {len(all_paths)} total files "
            f"for {backup_type.value} backup."
        )
        return changed

    def has_file_changed(self, path: str, current_hash: str) -> bool:
        """Check a content hash against the stored metadata."""
        with self._lock:
            previous = self.file_metadata.get(_key(path))
            return previous is None or previous.content_hash != current_hash

    def add_or_update_file_metadata(self, path: str):
        """
        Record the current size, mtime and hash of a backed-up file.

        Removes the entry if the file has been deleted. Read errors are
        logged and the file is skipped.
        """
        if not os.path.exists(path):
            with self._lock:
                if self.file_metadata.pop(_key(path), None) is not None:
                    logger.debug(f"Removed metadata for deleted file: {path}")
            return

        try:
            stat = os.stat(path)
            content_hash = compute_file_hash(path)
        except OSError as e:
            logger.warning(f"Error updating metadata for {path}: {e}. Skipping file.")
            return

        with self._lock:
            self.file_metadata[_key(path)] = FileMetadata(
                path=path,
                size=stat.st_size,
                last_modified_utc=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                content_hash=content_hash
            )

    def get_file_metadata(self, path: str) -> Optional[FileMetadata]:
        with self._lock:
            return self.file_metadata.get(_key(path))

    def get_tracked_files_in_directory(self, directory: str) -> List[str]:
        """Paths with stored metadata at or below directory."""
        root = _key(directory.rstrip('/\\'))
        prefix = root + os.sep

        with self._lock:
            return [
                meta.path for key, meta in self.file_metadata.items()
                if key == root or key.startswith(prefix)
            ]

    # -- backup history ---------------------------------------------------

    def add_backup(
        self,
        group: str,
        remote_path: str,
        is_diff: bool,
        storage_type: Optional[str] = None,
        size_bytes: int = 0
    ) -> BackupInfo:
        """
        Append a completed upload to a group's history.

        Returns:
            The new BackupInfo, stamped with the current UTC time
        """
        info = BackupInfo(
            path=remote_path,
            timestamp_utc=utc_now(),
            is_diff=is_diff,
            storage_type=storage_type,
            size_bytes=size_bytes
        )

        with self._lock:
            self.backup_history.setdefault(group, []).append(info)

        return info

    def get_backup_groups(self) -> List[str]:
        with self._lock:
            return list(self.backup_history.keys())

    def get_backups_for_group(self, group: str) -> List[BackupInfo]:
        """Copies of a group's backups, newest first."""
        with self._lock:
            backups = self.backup_history.get(group, [])
            return [b.copy() for b in sorted(backups, key=lambda b: b.timestamp_utc, reverse=True)]

    def find_backup(self, remote_path: str):
        """
        Locate a backup by remote path.

        Returns:
            (group, BackupInfo) or (None, None)
        """
        with self._lock:
            for group, backups in self.backup_history.items():
                for backup in backups:
                    if backup.path == remote_path:
                        return group, backup.copy()
        return None, None

    def remove_backups_from_group(self, group: str, backup_paths: Iterable[str]):
        """Drop entries by remote path; a group left empty is removed."""
        paths = {p.lower() for p in backup_paths if p and p.strip()}
        if not paths:
            return

        with self._lock:
            backups = self.backup_history.get(group)
            if not backups:
                return

            backups[:] = [b for b in backups if b.path.lower() not in paths]
            if not backups:
                del self.backup_history[group]

    def get_last_full_backup_time(self, group: Optional[str] = None) -> datetime:
        """Timestamp of the newest non-diff backup (in group, or overall)."""
        with self._lock:
            if group is not None:
                histories = [self.backup_history.get(group, [])]
            else:
                histories = list(self.backup_history.values())

            times = [b.timestamp_utc for history in histories for b in history if not b.is_diff]
            return max(times) if times else _MIN_TIME

    def get_previous_backup_path(self, group: str) -> Optional[str]:
        """
        Most recent non-diff backup in a group, used as the base for a diff.

        Returns:
            Remote path, or None when a full backup must be made instead
        """
        with self._lock:
            fulls = [b for b in self.backup_history.get(group, []) if not b.is_diff and b.path]
            if not fulls:
                return None
            return max(fulls, key=lambda b: b.timestamp_utc).path

    def get_base_backup_path(self, diff_remote_path: str) -> Optional[str]:
        """
        Find the full backup a diff was computed against.

        Returns:
            Remote path of the newest non-diff backup older than the diff,
            or None if there is none
        """
        group, diff_info = self.find_backup(diff_remote_path)

        with self._lock:
            if diff_info is not None:
                diff_time = diff_info.timestamp_utc
                histories = [self.backup_history.get(group, [])]
            else:
                diff_time = self._timestamp_from_path(diff_remote_path)
                histories = list(self.backup_history.values())

            candidates = [
                b for history in histories for b in history
                if not b.is_diff and b.path != diff_remote_path and b.timestamp_utc < diff_time
            ]

        if not candidates:
            return None
        return max(candidates, key=lambda b: b.timestamp_utc).path

    @staticmethod
    def _timestamp_from_path(path: str) -> datetime:
        name = os.path.basename(path)
        match = _TIMESTAMP_RE.search(name)
        if not match:
            logger.warning(f"No valid timestamp found in filename: {name}")
            return _MIN_TIME
        try:
            return datetime.strptime(match.group(1), '%Y%m%d%H%M%S').replace(tzinfo=timezone.utc)
        except ValueError:
            logger.warning(f"Failed to parse timestamp from path '{path}'")
            return _MIN_TIME

    # -- persistence ------------------------------------------------------

    def to_dict(self) -> Dict:
        with self._lock:
            return {
                'lastBackupTime': to_utc(self.last_backup_time).isoformat() if self.last_backup_time else None,
                'fileMetadata': {meta.path: meta.to_dict() for meta in self.file_metadata.values()},
                'backupHistory': {
                    group: [b.to_dict() for b in backups]
                    for group, backups in self.backup_history.items()
                },
            }

    def save_state(self):
        """
        Rewrite the whole state document.

        Raises:
            StateError: If the document cannot be written
        """
        with self._save_lock:
            document = self.to_dict()
            temp_path = self.state_file_path + '.tmp'
            try:
                os.makedirs(os.path.dirname(os.path.abspath(self.state_file_path)), exist_ok=True)
                with open(temp_path, 'w', encoding='utf-8') as f:
                    json.dump(document, f, indent=2)
                os.replace(temp_path, self.state_file_path)
            except OSError as e:
                raise StateError(f"Error saving state to {self.state_file_path}: {e}")

        logger.info(f"State saved to {self.state_file_path}")

    def load_state(self):
        """
        Load the state document, starting empty if it is missing or corrupt.
        """
        if not os.path.exists(self.state_file_path):
            logger.info(f"State file not found, initializing empty state: {self.state_file_path}")
            self._reset()
            return

        try:
            with open(self.state_file_path, 'r', encoding='utf-8') as f:
                document = json.load(f)

            last_backup = document.get('lastBackupTime')
            last_backup_time = to_utc(datetime.fromisoformat(last_backup)) if last_backup else None
            file_metadata = {}
            for path, data in (document.get('fileMetadata') or {}).items():
                meta = FileMetadata.from_dict(data)
                meta.path = meta.path or path
                file_metadata[_key(meta.path)] = meta

            backup_history = {
                group: [BackupInfo.from_dict(b) for b in backups]
                for group, backups in (document.get('backupHistory') or {}).items()
            }
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"Error loading state from {self.state_file_path}: {e}. Initializing empty state.")
            self._reset()
            return

        with self._lock:
            self.last_backup_time = last_backup_time
            self.file_metadata = file_metadata
            self.backup_history = backup_history

        logger.info(
            f"Loaded state: {len(file_metadata)} file metadata entries, "
            f"{len(backup_history)} backup history entries."
        )

    def _reset(self):
        with self._lock:
            self.last_backup_time = None
            self.file_metadata = {}
            self.backup_history = {}
