"""
AES-256-GCM message encryption.

Every message gets a fresh 12-byte random nonce and no associated data.
The envelope carries the nonce next to the ciphertext and its 16-byte tag.
"""

import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailure, SessionClosed
from .key_agreement import SharedKey


NONCE_SIZE = 12
TAG_SIZE = 16


@dataclass(frozen=True)
class EncryptedEnvelope:
    """
    One encrypted message as it travels on the wire.

    Attributes:
        nonce: 12 random bytes, unique per message
        ciphertext: Encrypted message followed by the authentication tag
    """
    nonce: bytes
    ciphertext: bytes

    def __post_init__(self):
        if len(self.nonce) != NONCE_SIZE:
            raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(self.nonce)}")

    def to_dict(self) -> Dict:
        """Convert to the wire payload (`iv`/`data` byte arrays)"""
        return {
            'iv': list(self.nonce),
            'data': list(self.ciphertext)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedEnvelope':
        """Create from a wire payload"""
        return cls(
            nonce=bytes(data['iv']),
            ciphertext=bytes(data['data'])
        )


def encrypt(key: SharedKey, plaintext: bytes) -> EncryptedEnvelope:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: Derived session key
        plaintext: Message to encrypt

    Returns:
        EncryptedEnvelope with a fresh random nonce
    """
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(bytes(key)).encrypt(nonce, plaintext, None)
    return EncryptedEnvelope(nonce=nonce, ciphertext=ciphertext)


def decrypt(key: SharedKey, envelope: EncryptedEnvelope) -> bytes:
    """
    Decrypt and verify a message using AES-256-GCM.

    Raises:
        AuthenticationFailure: If the tag does not verify
    """
    try:
        return AESGCM(bytes(key)).decrypt(envelope.nonce, envelope.ciphertext, None)
    except InvalidTag as e:
        raise AuthenticationFailure("Message authentication failed") from e


class CipherSession:
    """
    Encrypts and decrypts under one session key.

    Nonce generation and encryption run under a lock so that concurrent
    callers never race on the same key. Once closed, the key is dropped and
    every pending or later call raises SessionClosed, including a call that
    was already running when close() happened.
    """

    def __init__(self, key: SharedKey):
        self._aesgcm: Optional[AESGCM] = AESGCM(bytes(key))
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._aesgcm is None

    def _require_open(self) -> AESGCM:
        aesgcm = self._aesgcm
        if aesgcm is None:
            raise SessionClosed("Cipher session is closed")
        return aesgcm

    def encrypt(self, plaintext: bytes) -> EncryptedEnvelope:
        """Encrypt under the session key with a fresh nonce"""
        with self._lock:
            aesgcm = self._require_open()
            nonce = os.urandom(NONCE_SIZE)
            ciphertext = aesgcm.encrypt(nonce, plaintext, None)
            self._require_open()
            return EncryptedEnvelope(nonce=nonce, ciphertext=ciphertext)

    def decrypt(self, envelope: EncryptedEnvelope) -> bytes:
        """
        Decrypt under the session key.

        Raises:
            AuthenticationFailure: Tag did not verify
            SessionClosed: The session was closed
        """
        with self._lock:
            aesgcm = self._require_open()
            try:
                plaintext = aesgcm.decrypt(envelope.nonce, envelope.ciphertext, None)
            except InvalidTag as e:
                raise AuthenticationFailure("Message authentication failed") from e
            self._require_open()
            return plaintext

    def close(self):
        """Drop the key. Does not wait for a running operation."""
        self._aesgcm = None
