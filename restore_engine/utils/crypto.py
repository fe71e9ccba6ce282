"""
Password-based authenticated encryption for backup payloads.

Two-tier key hierarchy:
- KEK (key encryption key): derived from the master password with PBKDF2
- DEK (data encryption key): random per payload, stored only encrypted
  under the KEK in the sidecar metadata

Payloads are AES-256-GCM encrypted in bounded chunks so memory use does
not depend on file size.
"""

import os
import json
import base64
from typing import Optional, Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from restore_engine.models import EncryptionMetadata
from restore_engine.utils.cancellation import check_cancelled

KEY_SIZE_BYTES = 32
SALT_SIZE_BYTES = 32
IV_SIZE_BYTES = 12
TAG_SIZE_BYTES = 16
DEFAULT_ITERATIONS = 1_000_000
CHUNK_SIZE = 1024 * 1024

VERIFICATION_TEXT = b'ReStore_Password_Verification_Token'


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""
    pass


class AuthenticationError(EncryptionError):
    """Wrong password, or ciphertext/metadata failed GCM tag verification."""
    pass


class MetadataMissingError(EncryptionError):
    """The sidecar metadata is gone; the payload cannot be decrypted."""
    pass


class EncryptionEngine:
    """Handles key derivation and DEK/KEK file encryption."""

    def __init__(self, iterations: int = DEFAULT_ITERATIONS, chunk_size: int = CHUNK_SIZE):
        """
        Initialize the encryption engine.

        Args:
            iterations: PBKDF2 iterations used for new payloads and tokens
            chunk_size: Bytes processed per streaming step
        """
        self.iterations = iterations
        self.chunk_size = chunk_size

    @staticmethod
    def generate_salt() -> bytes:
        """Generate a random 32-byte salt."""
        return os.urandom(SALT_SIZE_BYTES)

    def derive_key(self, password: str, salt: bytes, iterations: Optional[int] = None) -> bytes:
        """
        Derive a 32-byte KEK from a password using PBKDF2-HMAC-SHA256.

        Args:
            password: Master password
            salt: Salt bytes
            iterations: PBKDF2 iterations (default: engine setting)

        Returns:
            32-byte key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE_BYTES,
            salt=salt,
            iterations=iterations or self.iterations,
        )
        return kdf.derive(password.encode())

    @staticmethod
    def validate_password(password: Optional[str]) -> bool:
        """Check the minimum password policy (non-blank, 8+ characters)."""
        if not password or not password.strip():
            return False
        return len(password) >= 8

    def create_password_verification_token(self, password: str, salt: bytes, iterations: Optional[int] = None) -> str:
        """
        Encrypt a fixed known plaintext under the password's KEK.

        The token is stored in configuration and used to confirm a typed
        password matches the configured master password.

        Returns:
            Base64 token (nonce || ciphertext || tag)
        """
        kek = self.derive_key(password, salt, iterations)
        nonce = os.urandom(IV_SIZE_BYTES)
        ciphertext = AESGCM(kek).encrypt(nonce, VERIFICATION_TEXT, None)
        return base64.b64encode(nonce + ciphertext).decode()

    def verify_password(self, password: str, salt: bytes, token: str, iterations: Optional[int] = None) -> bool:
        """
        Check a password against a verification token.

        Returns:
            True if the token decrypts to the known plaintext, False otherwise
        """
        try:
            combined = base64.b64decode(token)
            if len(combined) < IV_SIZE_BYTES + TAG_SIZE_BYTES:
                return False

            kek = self.derive_key(password, salt, iterations)
            nonce, ciphertext = combined[:IV_SIZE_BYTES], combined[IV_SIZE_BYTES:]
            return AESGCM(kek).decrypt(nonce, ciphertext, None) == VERIFICATION_TEXT
        except InvalidTag:
            return False
        except (ValueError, TypeError):
            # Malformed base64 or token
            return False

    def encrypt_file(
        self,
        input_path: str,
        output_path: str,
        password: str,
        salt: Optional[bytes] = None,
        iterations: Optional[int] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> EncryptionMetadata:
        """
        Encrypt a file under a fresh DEK wrapped by the password's KEK.

        Output layout: iv || ciphertext || tag. Written to a temporary file
        and renamed into place only when complete.

        Args:
            input_path: Plaintext file
            output_path: Destination for the ciphertext
            password: Master password
            salt: KEK salt (default: newly generated)
            iterations: PBKDF2 iterations (default: engine setting)
            cancellation_check: Optional callable invoked between chunks

        Returns:
            EncryptionMetadata to persist as the payload's sidecar

        Raises:
            EncryptionError: If the input cannot be read or output written
        """
        if salt is None:
            salt = self.generate_salt()
        iterations = iterations or self.iterations

        kek = self.derive_key(password, salt, iterations)
        dek = os.urandom(KEY_SIZE_BYTES)
        iv = os.urandom(IV_SIZE_BYTES)

        dek_nonce = os.urandom(IV_SIZE_BYTES)
        encrypted_dek = dek_nonce + AESGCM(kek).encrypt(dek_nonce, dek, None)

        temp_path = output_path + '.partial'
        try:
            encryptor = Cipher(algorithms.AES(dek), modes.GCM(iv)).encryptor()

            with open(input_path, 'rb') as src, open(temp_path, 'wb') as dst:
                dst.write(iv)
                for block in iter(lambda: src.read(self.chunk_size), b''):
                    check_cancelled(cancellation_check)
                    dst.write(encryptor.update(block))
                dst.write(encryptor.finalize())
                dst.write(encryptor.tag)

            os.replace(temp_path, output_path)
        except OSError as e:
            raise EncryptionError(f"Failed to encrypt {input_path}: {e}")
        finally:
            _remove_quietly(temp_path)

        return EncryptionMetadata(
            salt=salt,
            iv=iv,
            encrypted_dek=encrypted_dek,
            key_derivation_iterations=iterations
        )

    def decrypt_file(
        self,
        input_path: str,
        output_path: str,
        password: str,
        metadata: EncryptionMetadata,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """
        Decrypt a payload produced by encrypt_file().

        Plaintext is written to a temporary file and only moved to
        output_path after the GCM tag verifies.

        Raises:
            AuthenticationError: Wrong password or tampered data/metadata
            EncryptionError: If the payload cannot be read or output written
        """
        kek = self.derive_key(password, metadata.salt, metadata.key_derivation_iterations)
        dek = self._decrypt_dek(metadata.encrypted_dek, kek)

        temp_path = output_path + '.partial'
        try:
            total_size = os.path.getsize(input_path)
            if total_size < IV_SIZE_BYTES + TAG_SIZE_BYTES:
                raise AuthenticationError("Decryption failed. Payload is truncated or corrupted.")

            with open(input_path, 'rb') as src:
                stored_iv = src.read(IV_SIZE_BYTES)
                if stored_iv != metadata.iv:
                    raise AuthenticationError("Decryption failed. Payload does not match its metadata.")

                src.seek(total_size - TAG_SIZE_BYTES)
                tag = src.read(TAG_SIZE_BYTES)
                src.seek(IV_SIZE_BYTES)

                decryptor = Cipher(algorithms.AES(dek), modes.GCM(metadata.iv, tag)).decryptor()
                remaining = total_size - IV_SIZE_BYTES - TAG_SIZE_BYTES

                with open(temp_path, 'wb') as dst:
                    while remaining > 0:
                        check_cancelled(cancellation_check)
                        block = src.read(min(self.chunk_size, remaining))
                        if not block:
                            break
                        remaining -= len(block)
                        dst.write(decryptor.update(block))

                    try:
                        dst.write(decryptor.finalize())
                    except InvalidTag:
                        raise AuthenticationError("Decryption failed. Invalid password or corrupted data.")

            os.replace(temp_path, output_path)
        except OSError as e:
            raise EncryptionError(f"Failed to decrypt {input_path}: {e}")
        finally:
            _remove_quietly(temp_path)

    @staticmethod
    def _decrypt_dek(encrypted_dek: bytes, kek: bytes) -> bytes:
        if len(encrypted_dek) < IV_SIZE_BYTES + TAG_SIZE_BYTES:
            raise AuthenticationError("Failed to decrypt DEK. Metadata is corrupted.")

        nonce, ciphertext = encrypted_dek[:IV_SIZE_BYTES], encrypted_dek[IV_SIZE_BYTES:]
        try:
            return AESGCM(kek).decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise AuthenticationError("Failed to decrypt DEK. Invalid password.")

    @staticmethod
    def save_metadata(metadata: EncryptionMetadata, metadata_path: str):
        """Write the sidecar metadata as indented JSON."""
        with open(metadata_path, 'w', encoding='utf-8') as f:
            json.dump(metadata.to_dict(), f, indent=2)

    @staticmethod
    def load_metadata(metadata_path: str) -> EncryptionMetadata:
        """
        Read sidecar metadata.

        Raises:
            MetadataMissingError: If the sidecar does not exist
            EncryptionError: If the sidecar cannot be parsed
        """
        if not os.path.exists(metadata_path):
            raise MetadataMissingError(f"Encryption metadata not found: {metadata_path}")

        try:
            with open(metadata_path, 'r', encoding='utf-8') as f:
                return EncryptionMetadata.from_dict(json.load(f))
        except (ValueError, KeyError, TypeError) as e:
            raise EncryptionError(f"Failed to parse encryption metadata: {e}")


def _remove_quietly(path: str):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError:
        pass
