"""
Master password provider.

Holds the master password in memory only, obtained from a caller-supplied
prompt (GUI dialog, terminal, keyring...). The cached value is cleared after
an authentication failure so the next operation prompts again.
"""

import threading
from typing import Optional, Callable


class PasswordProvider:
    """Caches the master password for the lifetime of the process."""

    def __init__(self, prompt: Optional[Callable[[], Optional[str]]] = None, password: Optional[str] = None):
        """
        Args:
            prompt: Callable returning the password, or None if the user declined
            password: Optional password to pre-seed the cache with
        """
        self._prompt = prompt
        self._password = password
        self._lock = threading.Lock()

    def get_password(self) -> Optional[str]:
        """
        Return the cached password, prompting once if it is not cached.

        Returns:
            Password, or None if none is available
        """
        with self._lock:
            if self._password:
                return self._password

            if self._prompt is None:
                return None

            password = self._prompt()
            if password:
                self._password = password
            return password

    def clear_password(self):
        """Forget the cached password."""
        with self._lock:
            self._password = None

    @property
    def is_initialized(self) -> bool:
        """Check if a password is currently cached."""
        return self._password is not None


def verify_configured_password(password: str, encryption_config, encryption_engine) -> bool:
    """
    Check a password against the verification token in the encryption config.

    Returns:
        True if it matches, or if no token has been configured yet
    """
    if not encryption_config.verification_token or not encryption_config.salt:
        return True

    return encryption_engine.verify_password(
        password,
        encryption_config.salt_bytes,
        encryption_config.verification_token,
        encryption_config.key_derivation_iterations
    )
