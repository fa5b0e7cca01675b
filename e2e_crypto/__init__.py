"""
End-to-end encryption core for two-party chat over an untrusted relay.

- Ephemeral ECDH (P-256) key agreement per connection
- AES-256-GCM encryption of every message with a fresh nonce
- Handshake state machine driven by transport events
"""

from .cipher import CipherSession, EncryptedEnvelope, encrypt, decrypt
from .errors import (
    SecureChatError,
    CryptoError,
    KeyGenerationFailure,
    InvalidKeyEncoding,
    DerivationFailure,
    AuthenticationFailure,
    SessionClosed,
    SessionNotReady,
    TransportError,
    FrameError
)
from .frames import KeyFrame, DataFrame, encode_frame, decode_frame
from .handshake import SessionHandshake, SessionListener, SessionState, Transport
from .key_agreement import (
    KeyAgreement,
    Keypair,
    PeerPublicKey,
    SharedKey,
    DERIVE_HKDF,
    DERIVE_RAW
)

__all__ = [
    'CipherSession',
    'EncryptedEnvelope',
    'encrypt',
    'decrypt',
    'SecureChatError',
    'CryptoError',
    'KeyGenerationFailure',
    'InvalidKeyEncoding',
    'DerivationFailure',
    'AuthenticationFailure',
    'SessionClosed',
    'SessionNotReady',
    'TransportError',
    'FrameError',
    'KeyFrame',
    'DataFrame',
    'encode_frame',
    'decode_frame',
    'SessionHandshake',
    'SessionListener',
    'SessionState',
    'Transport',
    'KeyAgreement',
    'Keypair',
    'PeerPublicKey',
    'SharedKey',
    'DERIVE_HKDF',
    'DERIVE_RAW'
]
