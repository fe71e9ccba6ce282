"""
Archive handling for backup payloads.

Full payloads are zip archives with entries stored relative to the
backup group's directory, written in sorted order with fixed entry
timestamps so identical inputs produce identical archives. That keeps
block diffs between two snapshots of a group small.
"""

import os
import zipfile
import logging
from pathlib import Path
from typing import List, Optional, Callable
from datetime import datetime

from restore_engine.models import utc_now, to_utc
from restore_engine.utils.cancellation import check_cancelled

logger = logging.getLogger(__name__)

REMOTE_ROOT = 'backups'
FULL_EXTENSION = '.zip'
DIFF_EXTENSION = '.diff'
ENCRYPTED_EXTENSION = '.enc'
METADATA_EXTENSION = '.meta'

_ENTRY_DATE = (1980, 1, 1, 0, 0, 0)
_COPY_BUFFER = 1024 * 1024


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


def create_archive(
    files: List[str],
    base_dir: str,
    archive_path: str,
    cancellation_check: Optional[Callable[[], None]] = None
) -> int:
    """
    Create a zip archive of files, stored relative to base_dir.

    Files that vanish or cannot be read are skipped with a warning.

    Args:
        files: Absolute file paths to include
        base_dir: Directory entry names are relative to
        archive_path: Output archive path
        cancellation_check: Optional callable invoked between files

    Returns:
        Number of files written to the archive

    Raises:
        CompressionError: If the archive cannot be written
    """
    base = Path(base_dir).resolve()
    entries = {}

    for file_path in files:
        source = Path(file_path).resolve()
        try:
            arcname = source.relative_to(base).as_posix()
        except ValueError:
            arcname = source.name
        entries[arcname] = source

    written = 0
    try:
        with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            for arcname in sorted(entries):
                check_cancelled(cancellation_check)
                source = entries[arcname]

                try:
                    _write_entry(zipf, source, arcname)
                    written += 1
                except FileNotFoundError:
                    logger.warning(f"File vanished before archiving, skipping: {source}")
                except PermissionError as e:
                    logger.warning(f"Permission denied reading {source}, skipping: {e}")
    except OSError as e:
        _remove_partial(archive_path)
        raise CompressionError(f"Failed to create archive: {e}")
    except BaseException:
        _remove_partial(archive_path)
        raise

    return written


def _write_entry(zipf: zipfile.ZipFile, source: Path, arcname: str):
    info = zipfile.ZipInfo(arcname, date_time=_ENTRY_DATE)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16

    with open(source, 'rb') as src, zipf.open(info, 'w') as dst:
        for block in iter(lambda: src.read(_COPY_BUFFER), b''):
            dst.write(block)


def extract_archive(archive_path: str, destination: str) -> List[str]:
    """
    Extract a zip archive, overwriting existing files.

    Args:
        archive_path: Zip archive to extract
        destination: Target directory

    Returns:
        Paths of the extracted files

    Raises:
        CompressionError: If the archive is invalid or an entry escapes destination
    """
    target = Path(destination).resolve()
    extracted = []

    try:
        target.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive_path, 'r') as zipf:
            for member in zipf.infolist():
                if member.is_dir():
                    continue

                out_path = (target / member.filename).resolve()
                if target not in out_path.parents:
                    raise CompressionError(f"Archive entry escapes destination: {member.filename}")

                out_path.parent.mkdir(parents=True, exist_ok=True)
                with zipf.open(member) as src, open(out_path, 'wb') as dst:
                    for block in iter(lambda: src.read(_COPY_BUFFER), b''):
                        dst.write(block)
                extracted.append(str(out_path))
    except zipfile.BadZipFile as e:
        raise CompressionError(f"Invalid archive {archive_path}: {e}")
    except OSError as e:
        raise CompressionError(f"Failed to extract archive: {e}")

    return extracted


def list_archive(archive_path: str) -> List[str]:
    """Entry names in an archive."""
    try:
        with zipfile.ZipFile(archive_path, 'r') as zipf:
            return [m.filename for m in zipf.infolist() if not m.is_dir()]
    except (zipfile.BadZipFile, OSError) as e:
        raise CompressionError(f"Invalid archive {archive_path}: {e}")


def sanitize_name(name: str) -> str:
    """Replace anything but letters, digits, '-' and '_' with underscores."""
    safe = "".join(c if c.isalnum() or c in ('-', '_') else '_' for c in name)
    return safe or 'root'


def group_name(group: str) -> str:
    """Remote folder name for a backup group."""
    return sanitize_name(os.path.basename(os.path.normpath(group)))


def generate_remote_path(group: str, is_diff: bool = False, encrypted: bool = False,
                         timestamp: Optional[datetime] = None) -> str:
    """
    Generate the remote key for a new payload.

    Format: backups/{group_name}/{yyyyMMddHHmmss}.zip|.diff[.enc]

    Args:
        group: Backup group (watched directory path or component key)
        is_diff: Whether the payload is a diff
        encrypted: Whether the payload is encrypted
        timestamp: Payload time (default: now, UTC)

    Returns:
        Forward-slash separated remote key
    """
    stamp = to_utc(timestamp or utc_now()).strftime('%Y%m%d%H%M%S')
    extension = DIFF_EXTENSION if is_diff else FULL_EXTENSION
    if encrypted:
        extension += ENCRYPTED_EXTENSION

    return f"{REMOTE_ROOT}/{group_name(group)}/{stamp}{extension}"


def metadata_path(remote_path: str) -> str:
    """Sidecar key for an encrypted payload."""
    return remote_path + METADATA_EXTENSION


def is_encrypted_path(remote_path: str) -> bool:
    return remote_path.lower().endswith(ENCRYPTED_EXTENSION)


def is_diff_path(remote_path: str) -> bool:
    name = remote_path.lower()
    if name.endswith(ENCRYPTED_EXTENSION):
        name = name[:-len(ENCRYPTED_EXTENSION)]
    return name.endswith(DIFF_EXTENSION)


def _remove_partial(archive_path: str):
    if os.path.exists(archive_path):
        try:
            os.remove(archive_path)
        except OSError as e:
            logger.warning(f"Failed to remove partial archive {archive_path}: {e}")
