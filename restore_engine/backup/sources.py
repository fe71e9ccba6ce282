"""
File selection for backup groups.

Enumerates the files of watched directories, applying excluded paths,
exclude glob patterns, hidden files and the maximum file size.
"""

import os
import logging
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional


logger = logging.getLogger(__name__)


class FileSelector:
    """Decides which files of a watched directory are backed up."""

    def __init__(
        self,
        exclude_patterns: Optional[List[str]] = None,
        excluded_paths: Optional[List[str]] = None,
        max_file_size_mb: int = 0
    ):
        """
        Args:
            exclude_patterns: Glob patterns matched against file names and paths (e.g., *.tmp, .git)
            excluded_paths: Path prefixes never backed up
            max_file_size_mb: Largest file included; 0 disables the limit
        """
        self.exclude_patterns = exclude_patterns or []
        self._name_patterns = [p[3:].lower() if p.startswith('**/') else p.lower() for p in self.exclude_patterns]
        self.excluded_paths = [os.path.normcase(os.path.abspath(p)) for p in (excluded_paths or [])]
        self.max_file_size_bytes = max_file_size_mb * 1024 * 1024

    @classmethod
    def from_config(cls, engine_config) -> 'FileSelector':
        return cls(
            exclude_patterns=engine_config.excluded_patterns,
            excluded_paths=engine_config.excluded_paths,
            max_file_size_mb=engine_config.max_file_size_mb
        )

    def _matches_pattern(self, path: Path) -> bool:
        """
        Check if a path matches any exclude pattern.

        Args:
            path: Path to check

        Returns:
            True if the full path or the file name matches (case-insensitive)
        """
        path_str = os.path.normcase(str(path))
        path_name = path.name.lower()

        for pattern, name_pattern in zip(self.exclude_patterns, self._name_patterns):
            if fnmatch(path_str, os.path.normcase(pattern)) or fnmatch(path_name, name_pattern):
                return True

        return False

    def should_exclude(self, file_path: str) -> bool:
        """
        Check if a file is left out of backups.

        Missing files and files that cannot be inspected are excluded.
        """
        path = Path(file_path)

        if not path.exists():
            return True

        normalized = os.path.normcase(os.path.abspath(file_path))
        for excluded in self.excluded_paths:
            if normalized == excluded or normalized.startswith(excluded.rstrip(os.sep) + os.sep):
                return True

        if path.name.startswith('.') and path.name not in ('.', '..'):
            return True

        if path.is_file():
            try:
                size = path.stat().st_size
            except OSError as e:
                logger.warning(f"Error accessing file {file_path}: {e}")
                return True

            if self.max_file_size_bytes and size > self.max_file_size_bytes:
                logger.debug(f"Skipping large file: {file_path} ({size // (1024 * 1024)}MB)")
                return True

        return self._matches_pattern(path)

    def get_files(self, include_paths: List[str]) -> List[str]:
        """
        Enumerate the files to back up under include_paths.

        Args:
            include_paths: Files or directories

        Returns:
            Sorted absolute file paths that pass the filters
        """
        files = []

        for include_path in include_paths:
            source = Path(include_path).expanduser()

            if source.is_file():
                if not self.should_exclude(str(source)):
                    files.append(str(source.resolve()))
            elif source.is_dir():
                for root, dirnames, filenames in os.walk(source, onerror=self._on_walk_error):
                    # Prune excluded directories before descending
                    dirnames[:] = [d for d in dirnames if not self._is_excluded_dir(os.path.join(root, d))]

                    for name in filenames:
                        full_path = os.path.join(root, name)
                        if not self.should_exclude(full_path):
                            files.append(os.path.abspath(full_path))
            else:
                logger.warning(f"Path not found: {include_path}")

        return sorted(files)

    def _is_excluded_dir(self, directory: str) -> bool:
        name = os.path.basename(directory)
        if name.startswith('.'):
            return True

        normalized = os.path.normcase(os.path.abspath(directory))
        if any(normalized == p or normalized.startswith(p.rstrip(os.sep) + os.sep) for p in self.excluded_paths):
            return True

        return any(fnmatch(name.lower(), p) for p in self._name_patterns)

    @staticmethod
    def _on_walk_error(error: OSError):
        logger.error(f"Error accessing path {error.filename}: {error}")


def find_watch_root(file_path: str, roots: List[str]) -> Optional[str]:
    """
    Find the deepest watched directory containing file_path.

    Args:
        file_path: Changed file
        roots: Watched directory paths

    Returns:
        Matching root, or None if the file is outside every root
    """
    normalized = os.path.normcase(os.path.abspath(file_path))
    best = None

    for root in roots:
        root_norm = os.path.normcase(os.path.abspath(root)).rstrip(os.sep)
        if normalized == root_norm or normalized.startswith(root_norm + os.sep):
            if best is None or len(root_norm) > len(os.path.normcase(os.path.abspath(best)).rstrip(os.sep)):
                best = root

    return best
