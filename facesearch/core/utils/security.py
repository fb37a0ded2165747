"""
Helpers for handling biometric data in memory.

Embeddings are held sealed with AES-GCM while a session is alive and every
buffer that carried face data is overwritten before it is released.
"""
import base64
import os
import secrets
from typing import Optional

import numpy as np
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from facesearch.core.logging import get_logger

logger = get_logger(__name__)

SESSION_ID_BYTES = 32
NONCE_LENGTH = 12
EMBEDDING_AAD = b"face_embedding"


def generate_session_id() -> str:
    """Generate a URL-safe session id from 32 random bytes (43 characters)."""
    return secrets.token_urlsafe(SESSION_ID_BYTES)


def secure_erase(buffer) -> None:
    """Overwrite a numpy array or bytearray in place.

    Random bytes go in first, then zeros, so the final state is all zeros.
    Immutable objects are ignored.
    """
    if buffer is None:
        return
    if isinstance(buffer, np.ndarray):
        if not buffer.flags.writeable or buffer.size == 0:
            return
        if not buffer.flags.c_contiguous:
            buffer[...] = 0
            return
        view = buffer.reshape(-1).view(np.uint8)
        view[:] = np.frombuffer(os.urandom(view.size), dtype=np.uint8)
        view[:] = 0
    elif isinstance(buffer, bytearray):
        buffer[:] = os.urandom(len(buffer))
        buffer[:] = bytes(len(buffer))


class SealedEmbedding:
    """An embedding encrypted with AES-GCM."""

    __slots__ = ("nonce", "ciphertext", "dimension")

    def __init__(self, nonce: bytes, ciphertext: bytearray, dimension: int) -> None:
        self.nonce = nonce
        self.ciphertext = ciphertext
        self.dimension = dimension

    def wipe(self) -> None:
        """Overwrite the ciphertext in place."""
        secure_erase(self.ciphertext)


class EmbeddingCipher:
    """Authenticated encryption envelope for face embeddings.

    Example:
        ```python
        cipher = EmbeddingCipher.from_key_material(settings.ENCRYPTION_KEY)
        sealed = cipher.seal(embedding)
        restored = cipher.open(sealed)
        ```
    """

    def __init__(self, key: bytes) -> None:
        if len(key) not in (16, 24, 32):
            raise ValueError("AES-GCM key must be 16, 24 or 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_key_material(cls, encoded_key: Optional[str]) -> "EmbeddingCipher":
        """Build a cipher from a base64 key, or an ephemeral key when absent.

        The decoded key material is stretched to 256 bits with HKDF-SHA256 so
        any key of at least 16 bytes is usable.
        """
        if not encoded_key:
            logger.warning(
                "ENCRYPTION_KEY not set, using a process-ephemeral random key"
            )
            return cls(AESGCM.generate_key(bit_length=256))

        material = base64.b64decode(encoded_key)
        if len(material) < 16:
            raise ValueError("ENCRYPTION_KEY must decode to at least 16 bytes")
        key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b"facesearch-embedding-key",
        ).derive(material)
        return cls(key)

    def seal(self, embedding: np.ndarray) -> SealedEmbedding:
        """Encrypt an embedding; the plaintext copy made here is erased."""
        plaintext = bytearray(np.ascontiguousarray(embedding, dtype=np.float64).tobytes())
        try:
            nonce = os.urandom(NONCE_LENGTH)
            ciphertext = self._aead.encrypt(nonce, bytes(plaintext), EMBEDDING_AAD)
        finally:
            secure_erase(plaintext)
        return SealedEmbedding(
            nonce=nonce,
            ciphertext=bytearray(ciphertext),
            dimension=int(np.asarray(embedding).size),
        )

    def open(self, sealed: SealedEmbedding) -> np.ndarray:
        """Decrypt a sealed embedding into a fresh, writable array.

        Raises:
            ValueError: If the ciphertext fails authentication
        """
        try:
            plaintext = self._aead.decrypt(sealed.nonce, bytes(sealed.ciphertext), EMBEDDING_AAD)
        except InvalidTag:
            raise ValueError("Sealed embedding failed authentication")
        return np.frombuffer(plaintext, dtype=np.float64).copy()

