"""
Data model for the backup engine.

Plain classes that round-trip through the JSON state document and the
encryption sidecar files.
"""

import base64
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


class BackupType(Enum):
    """Which files a backup run includes."""
    FULL = 'Full'
    INCREMENTAL = 'Incremental'
    DIFFERENTIAL = 'Differential'

    @classmethod
    def parse(cls, value) -> 'BackupType':
        """
        Parse a backup type name case-insensitively.

        Args:
            value: BackupType instance or name such as 'incremental'

        Returns:
            Matching BackupType

        Raises:
            ValueError: If value is not a known backup type
        """
        if isinstance(value, cls):
            return value

        for member in cls:
            if str(value).strip().lower() == member.value.lower():
                return member

        raise ValueError(
            f"Invalid backup type: {value}. "
            f"Valid options: {[m.value for m in cls]}"
        )


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_utc(value).isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return to_utc(datetime.fromisoformat(value))


class FileMetadata:
    """Last known size/mtime/hash of a tracked file (change detection only)"""

    def __init__(self, path: str, size: int, last_modified_utc: datetime, content_hash: str = ''):
        self.path = path
        self.size = size
        self.last_modified_utc = to_utc(last_modified_utc)
        self.content_hash = content_hash

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'size': self.size,
            'lastModifiedUtc': _format_datetime(self.last_modified_utc),
            'contentHash': self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileMetadata':
        return cls(
            path=data.get('path', ''),
            size=int(data.get('size', 0)),
            last_modified_utc=_parse_datetime(data.get('lastModifiedUtc')) or datetime.min.replace(tzinfo=timezone.utc),
            content_hash=data.get('contentHash', ''),
        )

    def __eq__(self, other):
        if not isinstance(other, FileMetadata):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f'<FileMetadata {self.path} size={self.size}>'


class BackupInfo:
    """One completed upload in a backup group's history"""

    def __init__(
        self,
        path: str,
        timestamp_utc: datetime,
        is_diff: bool = False,
        storage_type: Optional[str] = None,
        size_bytes: int = 0
    ):
        self.path = path
        self.timestamp_utc = to_utc(timestamp_utc)
        self.is_diff = is_diff
        self.storage_type = storage_type
        self.size_bytes = size_bytes

    def copy(self) -> 'BackupInfo':
        return BackupInfo(self.path, self.timestamp_utc, self.is_diff, self.storage_type, self.size_bytes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'timestampUtc': _format_datetime(self.timestamp_utc),
            'isDiff': self.is_diff,
            'storageType': self.storage_type,
            'sizeBytes': self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupInfo':
        return cls(
            path=data.get('path', ''),
            timestamp_utc=_parse_datetime(data.get('timestampUtc')) or datetime.min.replace(tzinfo=timezone.utc),
            is_diff=bool(data.get('isDiff', False)),
            storage_type=data.get('storageType'),
            size_bytes=int(data.get('sizeBytes') or 0),
        )

    def __eq__(self, other):
        if not isinstance(other, BackupInfo):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self):
        return hash((self.path, self.timestamp_utc))

    def __repr__(self):
        return f'<BackupInfo {self.path} diff={self.is_diff} at={self.timestamp_utc.isoformat()}>'


class EncryptionMetadata:
    """
    Sidecar record needed (with the password) to decrypt one payload.

    Losing it makes the payload permanently unrecoverable.
    """

    ALGORITHM = 'AES-256-GCM'
    VERSION = 1

    def __init__(
        self,
        salt: bytes,
        iv: bytes,
        encrypted_dek: bytes,
        algorithm: str = ALGORITHM,
        version: int = VERSION,
        key_derivation_iterations: int = 1_000_000
    ):
        self.salt = salt
        self.iv = iv
        self.encrypted_dek = encrypted_dek
        self.algorithm = algorithm
        self.version = version
        self.key_derivation_iterations = key_derivation_iterations

    def to_dict(self) -> Dict[str, Any]:
        return {
            'salt': base64.b64encode(self.salt).decode(),
            'iv': base64.b64encode(self.iv).decode(),
            'encryptedDEK': base64.b64encode(self.encrypted_dek).decode(),
            'algorithm': self.algorithm,
            'version': self.version,
            'keyDerivationIterations': self.key_derivation_iterations,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EncryptionMetadata':
        return cls(
            salt=base64.b64decode(data['salt']),
            iv=base64.b64decode(data['iv']),
            encrypted_dek=base64.b64decode(data['encryptedDEK']),
            algorithm=data.get('algorithm', cls.ALGORITHM),
            version=int(data.get('version', cls.VERSION)),
            key_derivation_iterations=int(data['keyDerivationIterations']),
        )

    def __repr__(self):
        return f'<EncryptionMetadata {self.algorithm} v{self.version} iterations={self.key_derivation_iterations}>'
